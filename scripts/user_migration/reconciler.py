"""Create-or-reuse reconciliation of one canonical user against WorkOS.

The only component that talks to the identity service. Verification and
password updates are side effects whose failure is logged as a warning and
never changes the outcome. ThrottleSignal is never caught in this
module.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from scripts.user_migration.errors import ReconciliationFailure, RemoteServiceError
from scripts.user_migration.models import (
    CanonicalUserRecord,
    EmailVerifiedMode,
    Failed,
    Imported,
    Outcome,
    Skipped,
)

logger = logging.getLogger("migration.reconciler")

MULTI_EMAIL_SKIP_REASON = "multiple emails, multi-email disabled"
NOT_FOUND_MESSAGE = "could not find or create user"

# Errors from a single remote call that are not throttling
_REMOTE_ERRORS = (RemoteServiceError, requests.RequestException)


class IdentityService(Protocol):
    def create_user(self, email, first_name=None, last_name=None,
                    password_hash=None, password_hash_type=None) -> dict: ...

    def list_users_by_email(self, email) -> list[dict]: ...

    def update_user(self, user_id, email_verified=None, password_hash=None,
                    password_hash_type=None) -> dict: ...


class Reconciler:
    def __init__(
        self,
        client: IdentityService,
        process_multi_email: bool = False,
        email_verified_mode: EmailVerifiedMode = EmailVerifiedMode.NEVER,
    ) -> None:
        self.client = client
        self.process_multi_email = process_multi_email
        self.email_verified_mode = EmailVerifiedMode(email_verified_mode)

    def reconcile(self, record: CanonicalUserRecord) -> Outcome:
        """Return the outcome for one record. ThrottleSignal propagates."""
        try:
            return self._find_or_create(record)
        except ReconciliationFailure as exc:
            return Failed(str(exc))

    def _find_or_create(self, record: CanonicalUserRecord) -> Outcome:
        # Clerk gives no hint which of several addresses is primary, so the
        # first one is only trusted when explicitly allowed.
        if len(record.email_addresses) > 1 and not self.process_multi_email:
            logger.info(
                "Multiple email addresses found and multi-email processing is disabled, skipping",
                extra={"source_id": record.id},
            )
            return Skipped(MULTI_EMAIL_SKIP_REASON)

        email = record.primary_email
        try:
            created = self.client.create_user(
                email,
                first_name=record.first_name,
                last_name=record.last_name,
                password_hash=record.password_digest,
                password_hash_type=record.password_hasher if record.password_digest else None,
            )
        except _REMOTE_ERRORS as exc:
            logger.debug("Create failed for %s, looking up existing user: %s", record.id, exc)
            return self._reuse_existing(record)

        user_id = created["id"]
        self._mark_verified(record, user_id, "created")
        return Imported(user_id)

    def _reuse_existing(self, record: CanonicalUserRecord) -> Outcome:
        try:
            matches = self.client.list_users_by_email(record.primary_email.lower())
        except _REMOTE_ERRORS as exc:
            raise ReconciliationFailure(str(exc)) from exc
        if len(matches) != 1:
            raise ReconciliationFailure(NOT_FOUND_MESSAGE)

        user_id = matches[0]["id"]
        if record.password_digest:
            try:
                self.client.update_user(
                    user_id,
                    password_hash=record.password_digest,
                    password_hash_type=record.password_hasher,
                )
            except _REMOTE_ERRORS as exc:
                logger.warning(
                    "Failed to update password for existing user %s: %s", user_id, exc,
                    extra={"source_id": record.id, "remote_user_id": user_id},
                )
        self._mark_verified(record, user_id, "existing")
        return Imported(user_id)

    def _mark_verified(self, record: CanonicalUserRecord, user_id: str, kind: str) -> None:
        if not self.email_verified_mode.should_mark(record):
            return
        try:
            self.client.update_user(user_id, email_verified=True)
        except _REMOTE_ERRORS as exc:
            logger.warning(
                "Failed to mark email verified for %s user %s: %s", kind, user_id, exc,
                extra={"source_id": record.id, "remote_user_id": user_id},
            )

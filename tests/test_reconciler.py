from __future__ import annotations

import logging

import pytest
import requests

from conftest import BCRYPT_DIGEST
from scripts.user_migration.errors import RemoteServiceError, ThrottleSignal
from scripts.user_migration.models import (
    CanonicalUserRecord,
    EmailVerifiedMode,
    Failed,
    Imported,
    Skipped,
)
from scripts.user_migration.reconciler import (
    MULTI_EMAIL_SKIP_REASON,
    NOT_FOUND_MESSAGE,
    Reconciler,
)


def _user(*emails: str, **fields) -> CanonicalUserRecord:
    return CanonicalUserRecord(id=fields.pop("id", "clerk_1"), email_addresses=emails, **fields)


def test_multiple_emails_skipped_without_remote_calls(fake_service) -> None:
    reconciler = Reconciler(fake_service, process_multi_email=False)

    outcome = reconciler.reconcile(_user("a@x.com", "b@x.com"))

    assert outcome == Skipped(MULTI_EMAIL_SKIP_REASON)
    assert fake_service.calls == []


def test_multiple_emails_use_first_when_enabled(fake_service) -> None:
    reconciler = Reconciler(fake_service, process_multi_email=True)

    outcome = reconciler.reconcile(_user("a@x.com", "b@x.com"))

    assert isinstance(outcome, Imported)
    assert fake_service.calls_to("create_user")[0][1] == "a@x.com"


def test_create_passes_names_and_password(fake_service) -> None:
    reconciler = Reconciler(fake_service)

    outcome = reconciler.reconcile(_user(
        "a@x.com", first_name="Ann", last_name="Lee",
        password_digest=BCRYPT_DIGEST, password_hasher="bcrypt",
    ))

    assert outcome == Imported("user_01")
    assert fake_service.calls_to("create_user") == [
        ("create_user", "a@x.com", "Ann", "Lee", BCRYPT_DIGEST, "bcrypt"),
    ]
    assert fake_service.calls_to("update_user") == []


@pytest.mark.parametrize(
    "mode, recorded, expected",
    [
        (EmailVerifiedMode.NEVER, True, False),
        (EmailVerifiedMode.ALWAYS, None, True),
        (EmailVerifiedMode.FROM_CSV, True, True),
        (EmailVerifiedMode.FROM_CSV, False, False),
        (EmailVerifiedMode.FROM_CSV, None, False),
    ],
)
def test_email_verified_modes(fake_service, mode, recorded, expected) -> None:
    reconciler = Reconciler(fake_service, email_verified_mode=mode)

    outcome = reconciler.reconcile(_user("a@x.com", primary_email_verified=recorded))

    assert isinstance(outcome, Imported)
    assert (outcome.remote_user_id in fake_service.verified) is expected


def test_verification_failure_is_a_soft_warning(fake_service, caplog) -> None:
    fake_service.fail_next("update_user", "user_01", RemoteServiceError(500, "boom"))
    reconciler = Reconciler(fake_service, email_verified_mode=EmailVerifiedMode.ALWAYS)

    with caplog.at_level(logging.WARNING, logger="migration"):
        outcome = reconciler.reconcile(_user("a@x.com"))

    assert outcome == Imported("user_01")
    assert "Failed to mark email verified" in caplog.text
    assert "a@x.com" not in caplog.text


def test_existing_user_is_reused_with_password_and_verification(fake_service) -> None:
    fake_service.add_existing("ann@x.com", "user_existing")
    reconciler = Reconciler(fake_service, email_verified_mode=EmailVerifiedMode.ALWAYS)

    outcome = reconciler.reconcile(_user(
        "Ann@X.com", password_digest=BCRYPT_DIGEST, password_hasher="bcrypt",
    ))

    assert outcome == Imported("user_existing")
    assert fake_service.calls_to("list_users_by_email") == [("list_users_by_email", "ann@x.com")]
    assert fake_service.passwords["user_existing"] == BCRYPT_DIGEST
    assert "user_existing" in fake_service.verified


def test_password_update_failure_does_not_fail_existing_user(fake_service, caplog) -> None:
    fake_service.add_existing("a@x.com", "user_existing")
    fake_service.fail_next("update_user", "user_existing", requests.ConnectionError("reset"))
    reconciler = Reconciler(fake_service)

    with caplog.at_level(logging.WARNING, logger="migration"):
        outcome = reconciler.reconcile(_user("a@x.com", password_digest=BCRYPT_DIGEST, password_hasher="bcrypt"))

    assert outcome == Imported("user_existing")
    assert "Failed to update password" in caplog.text


@pytest.mark.parametrize("existing", [[], ["user_a", "user_b"]])
def test_no_unique_match_fails(fake_service, existing) -> None:
    fake_service.fail_next("create_user", "a@x.com", RemoteServiceError(422, "invalid"))
    for user_id in existing:
        fake_service.add_existing("a@x.com", user_id)

    outcome = Reconciler(fake_service).reconcile(_user("a@x.com"))

    assert outcome == Failed(NOT_FOUND_MESSAGE)


def test_lookup_error_after_create_error_is_a_failed_outcome(fake_service) -> None:
    fake_service.fail_next("create_user", "a@x.com", RemoteServiceError(422, "invalid"))
    fake_service.fail_next("list_users_by_email", "a@x.com", RemoteServiceError(500, "boom"))

    outcome = Reconciler(fake_service).reconcile(_user("a@x.com"))

    assert outcome == Failed("500: boom")


def test_lookup_connection_error_is_a_failed_outcome(fake_service) -> None:
    fake_service.add_existing("a@x.com", "user_existing")
    fake_service.fail_next("list_users_by_email", "a@x.com", requests.ConnectionError("reset"))

    outcome = Reconciler(fake_service).reconcile(_user("a@x.com"))

    assert outcome == Failed("reset")


@pytest.mark.parametrize("method, key", [
    ("create_user", "a@x.com"),
    ("list_users_by_email", "a@x.com"),
    ("update_user", "user_existing"),
])
def test_throttle_propagates_from_every_step(fake_service, method, key) -> None:
    fake_service.add_existing("a@x.com", "user_existing")
    if method == "create_user":
        fake_service.users.clear()
    fake_service.fail_next(method, key, ThrottleSignal(3))
    reconciler = Reconciler(fake_service, email_verified_mode=EmailVerifiedMode.ALWAYS)

    with pytest.raises(ThrottleSignal) as excinfo:
        reconciler.reconcile(_user("a@x.com", password_digest=BCRYPT_DIGEST, password_hasher="bcrypt"))

    assert excinfo.value.retry_after_seconds == 3

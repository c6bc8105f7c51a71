from __future__ import annotations

import csv
import itertools
import json
import logging
import threading
import time
from pathlib import Path
from typing import Iterator, Optional

import pytest

from scripts.user_migration.errors import RemoteServiceError

CSV_HEADER = [
    "id",
    "first_name",
    "last_name",
    "username",
    "primary_email_address",
    "primary_phone_number",
    "verified_email_addresses",
    "unverified_email_addresses",
    "verified_phone_numbers",
    "unverified_phone_numbers",
    "totp_secret",
    "password_digest",
    "password_hasher",
]

# Sample bcrypt digest, only ever passed through
BCRYPT_DIGEST = "$2a$10$N9qo8uLOickgx2ZMRZoMyeIjZAgcfl7p92ldGxad68LJZdL17lhWy"


class FakeIdentityService:
    """In-memory stand-in for the WorkOS client, safe for concurrent use.

    Errors can be scripted per (method, key): key is the email for
    create_user / list_users_by_email and the user id for update_user.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[tuple] = []
        self.users: dict[str, list[str]] = {}
        self.verified: set[str] = set()
        self.passwords: dict[str, str] = {}
        self.active = 0
        self.max_active = 0
        self._scripted: dict[tuple[str, str], list[Exception]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add_existing(self, email: str, user_id: str) -> None:
        self.users.setdefault(email.lower(), []).append(user_id)

    def fail_next(self, method: str, key: str, exc: Exception) -> None:
        self._scripted.setdefault((method, key), []).append(exc)

    def close(self) -> None:
        pass

    def calls_to(self, method: str) -> list[tuple]:
        with self._lock:
            return [c for c in self.calls if c[0] == method]

    def _enter(self, method: str, key: str, *args) -> None:
        with self._lock:
            self.calls.append((method, key) + args)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            scripted = self._scripted.get((method, key))
            exc = scripted.pop(0) if scripted else None
        try:
            if self.delay:
                time.sleep(self.delay)
            if exc is not None:
                raise exc
        except BaseException:
            self._leave()
            raise

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def create_user(self, email, first_name=None, last_name=None,
                    password_hash=None, password_hash_type=None) -> dict:
        self._enter("create_user", email, first_name, last_name, password_hash, password_hash_type)
        try:
            with self._lock:
                if email.lower() in self.users:
                    raise RemoteServiceError(422, "email_not_available")
                user_id = f"user_{next(self._ids):02d}"
                self.users[email.lower()] = [user_id]
                if password_hash:
                    self.passwords[user_id] = password_hash
            return {"id": user_id, "email": email}
        finally:
            self._leave()

    def list_users_by_email(self, email) -> list[dict]:
        self._enter("list_users_by_email", email)
        try:
            with self._lock:
                return [{"id": user_id} for user_id in self.users.get(email.lower(), [])]
        finally:
            self._leave()

    def update_user(self, user_id, email_verified=None, password_hash=None,
                    password_hash_type=None) -> dict:
        self._enter("update_user", user_id, email_verified, password_hash, password_hash_type)
        try:
            with self._lock:
                if email_verified:
                    self.verified.add(user_id)
                if password_hash:
                    self.passwords[user_id] = password_hash
            return {"id": user_id}
        finally:
            self._leave()


@pytest.fixture
def fake_service() -> FakeIdentityService:
    return FakeIdentityService()


@pytest.fixture(autouse=True)
def _reset_migration_logger() -> Iterator[None]:
    """configure_logging() detaches the logger from root; undo it for caplog."""
    yield
    logger = logging.getLogger("migration")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def write_csv(path: Path, rows: list[dict], header: Optional[list[str]] = None) -> Path:
    header = header or CSV_HEADER
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=header)
        writer.writeheader()
        for row in rows:
            writer.writerow({name: row.get(name, "") for name in header})
    return path


def write_json(path: Path, users: list) -> Path:
    path.write_text(json.dumps(users), encoding="utf-8")
    return path

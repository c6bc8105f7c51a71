"""WorkOS User Management REST client.

Only the three operations the migration needs. HTTP 429 is surfaced as a
ThrottleSignal carrying the Retry-After seconds; every other error status is
a RemoteServiceError. Retrying is the dispatch engine's job, not the client's.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter

from scripts.user_migration.config import WorkOSConfig
from scripts.user_migration.errors import RemoteServiceError, ThrottleSignal

logger = logging.getLogger("migration.workos")

_USERS_PATH = "/user_management/users"


class WorkOSClient:
    """Thin wrapper around a shared requests.Session.

    The session is used concurrently by every worker thread; its connection
    pool is sized to the concurrency ceiling.
    """

    def __init__(
        self,
        config: WorkOSConfig,
        pool_size: int = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base = config.api_base_url.rstrip("/")
        self._timeout = config.timeout_seconds
        self._session = session or requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        if session is None:
            self._session.mount("https://", adapter)
            self._session.mount("http://", adapter)
        self._session.headers.update({
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
            "User-Agent": "user-migration",
        })

    def close(self) -> None:
        self._session.close()

    def create_user(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_hash_type: Optional[str] = None,
    ) -> dict:
        body = _drop_none({
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "password_hash": password_hash,
            "password_hash_type": password_hash_type,
        })
        return self._request("POST", _USERS_PATH, json=body)

    def list_users_by_email(self, email: str) -> list[dict]:
        data = self._request("GET", _USERS_PATH, params={"email": email})
        return list(data.get("data", []))

    def update_user(
        self,
        user_id: str,
        email_verified: Optional[bool] = None,
        password_hash: Optional[str] = None,
        password_hash_type: Optional[str] = None,
    ) -> dict:
        body = _drop_none({
            "email_verified": email_verified,
            "password_hash": password_hash,
            "password_hash_type": password_hash_type,
        })
        return self._request("PUT", f"{_USERS_PATH}/{user_id}", json=body)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        resp = self._session.request(
            method, f"{self._base}{path}", timeout=self._timeout, **kwargs
        )
        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            logger.debug("WorkOS rate limit on %s %s", method, path)
            raise ThrottleSignal(retry_after)
        if not resp.ok:
            raise RemoteServiceError(resp.status_code, _error_message(resp))
        if not resp.content:
            return {}
        return resp.json()


def _drop_none(body: dict) -> dict:
    return {k: v for k, v in body.items() if v is not None}


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return None


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:500] or resp.reason or "request failed"
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("code") or payload)[:500]
    return str(payload)[:500]

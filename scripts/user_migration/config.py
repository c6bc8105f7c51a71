"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables (local dev)
  - .env files in the working directory
  - AWS Secrets Manager (aws-secret://name#key) for the API key
  - GCP Secret Manager (gcp-secret://name) for the API key
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from scripts.user_migration.secrets import resolve_secret

DEFAULT_API_BASE_URL = "https://api.workos.com"


@dataclass(frozen=True)
class WorkOSConfig:
    api_key: str
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class DispatchConfig:
    concurrency: int = 10
    default_retry_after: int = 10  # used when the service sends no Retry-After
    max_throttle_retries: int = 5


@dataclass(frozen=True)
class MigrationConfig:
    workos: WorkOSConfig
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)


def _int_env(name: str, default: str, minimum: int = 1) -> int:
    raw = os.environ.get(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


def load_config() -> MigrationConfig:
    """Load configuration from environment variables.

    The API key may be a plain value or a secret manager reference; it is
    resolved here so nothing downstream ever sees the reference form.
    """
    load_dotenv()

    api_key_raw = os.environ.get("WORKOS_SECRET_KEY", "")
    if not api_key_raw:
        raise ValueError("WORKOS_SECRET_KEY environment variable is required")

    workos = WorkOSConfig(
        api_key=resolve_secret(api_key_raw),
        api_base_url=os.environ.get("WORKOS_API_BASE_URL", DEFAULT_API_BASE_URL),
        timeout_seconds=float(os.environ.get("WORKOS_REQUEST_TIMEOUT", "30")),
    )

    dispatch = DispatchConfig(
        concurrency=_int_env("MIGRATION_CONCURRENCY", "10"),
        default_retry_after=_int_env("MIGRATION_DEFAULT_RETRY_AFTER", "10", minimum=0),
        max_throttle_retries=_int_env("MIGRATION_MAX_THROTTLE_RETRIES", "5", minimum=0),
    )

    return MigrationConfig(workos=workos, dispatch=dispatch)

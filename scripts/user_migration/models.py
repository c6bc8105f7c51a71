"""Data model shared by the source, reconciler, engine and aggregator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Union


class RecordLayout(enum.Enum):
    """Physical shape a raw record was decoded from."""

    ROW = "row"  # CSV row keyed by header
    OBJECT = "object"  # element of a JSON array


@dataclass(frozen=True)
class RawRecord:
    layout: RecordLayout
    data: Any

    @property
    def source_id(self) -> Optional[str]:
        """Best-effort id for failure reports when normalization fails."""
        value = self.data.get("id") if isinstance(self.data, Mapping) else None
        if value is None or str(value).strip() == "":
            return None
        return str(value)


@dataclass(frozen=True)
class CanonicalUserRecord:
    id: str
    email_addresses: tuple[str, ...]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    password_digest: Optional[str] = None
    password_hasher: Optional[str] = None
    primary_email_verified: Optional[bool] = None
    unsafe_metadata: Mapping[str, Any] = field(default_factory=dict)
    public_metadata: Mapping[str, Any] = field(default_factory=dict)
    private_metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def primary_email(self) -> str:
        return self.email_addresses[0]


class EmailVerifiedMode(str, enum.Enum):
    NEVER = "never"
    ALWAYS = "always"
    FROM_CSV = "from-csv"

    def should_mark(self, record: CanonicalUserRecord) -> bool:
        if self is EmailVerifiedMode.ALWAYS:
            return True
        if self is EmailVerifiedMode.FROM_CSV:
            return record.primary_email_verified is True
        return False


@dataclass(frozen=True)
class DispatchUnit:
    record_number: int
    payload: Union[CanonicalUserRecord, RawRecord]
    throttle_retries: int = 0

    def normalized(self, record: CanonicalUserRecord) -> "DispatchUnit":
        return replace(self, payload=record)

    def retried(self) -> "DispatchUnit":
        return replace(self, throttle_retries=self.throttle_retries + 1)

    @property
    def source_id(self) -> Optional[str]:
        return self.payload.id if isinstance(self.payload, CanonicalUserRecord) else self.payload.source_id

    @property
    def primary_email(self) -> Optional[str]:
        if isinstance(self.payload, CanonicalUserRecord):
            return self.payload.primary_email
        return None


# ------------------------------------------------------------------
# Outcomes
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Imported:
    remote_user_id: str


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    error_message: str


Outcome = Union[Imported, Skipped, Failed]


@dataclass(frozen=True)
class FailureDetail:
    record_number: int
    error_message: str
    timestamp: str
    source_id: Optional[str] = None
    primary_email: Optional[str] = None


@dataclass(frozen=True)
class RunSummary:
    """Schema for everything reported at the end of a run."""

    run_id: str
    total: int
    imported: int
    skipped: int
    warnings: int
    errors: int
    failures: tuple[FailureDetail, ...] = ()
    duration_s: float = 0.0

    @property
    def status(self) -> str:
        if self.errors == 0:
            return "Success"
        return "Partial" if self.imported > 0 else "Failed"

    def render_lines(self) -> list[str]:
        """Terminal summary. Per-record failure details are never included."""
        return [
            f"Status:   {self.status}",
            f"Duration: {self.duration_s:.1f}s",
            f"Total:    {self.total}",
            f"Imported: {self.imported}",
            f"Skipped:  {self.skipped}",
            f"Warnings: {self.warnings}",
            f"Errors:   {self.errors}",
        ]

"""Error taxonomy for the migration.

Per-record errors (ValidationError, ReconciliationFailure, RemoteServiceError)
end up as failed outcomes at the dispatch boundary. ThrottleSignal is not a
failure: the engine backs off and retries. FatalSetupError aborts the run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from scripts.user_migration.models import RunSummary


class MigrationError(Exception):
    """Base class for all migration errors."""


class ValidationError(MigrationError):
    """An exported record is missing a required field or has a malformed one."""


class ReconciliationFailure(MigrationError):
    """No single remote user could be created or matched for a record."""


class RemoteServiceError(MigrationError):
    """The identity service rejected a request for a reason other than throttling."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ThrottleSignal(MigrationError):
    """The identity service asked the caller to slow down."""

    def __init__(self, retry_after_seconds: Optional[int] = None) -> None:
        super().__init__(f"rate limit exceeded (retry after {retry_after_seconds}s)")
        self.retry_after_seconds = retry_after_seconds


class FatalSetupError(MigrationError):
    """The run cannot proceed, e.g. the export file is unreadable.

    When raised after dispatch began, `summary` accounts for the records
    that were admitted before the failure.
    """

    summary: Optional[RunSummary] = None


class RecordDecodeError(FatalSetupError):
    """The export document is malformed at the given element position (1-based)."""

    def __init__(self, position: int, detail: str) -> None:
        super().__init__(f"Malformed export at record {position}: {detail}")
        self.position = position

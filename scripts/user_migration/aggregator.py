"""Thread-safe accumulation of per-record outcomes into a RunSummary."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

from scripts.user_migration.models import (
    FailureDetail,
    Failed,
    Imported,
    Outcome,
    RunSummary,
    Skipped,
)


class OutcomeAggregator:
    """Append-only outcome store. Every record number may be recorded once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[int] = set()
        self._imported = 0
        self._skipped = 0
        self._warnings = 0
        self._failures: list[FailureDetail] = []

    def record(
        self,
        record_number: int,
        outcome: Outcome,
        source_id: Optional[str] = None,
        primary_email: Optional[str] = None,
    ) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            if record_number in self._seen:
                raise ValueError(f"Outcome for record {record_number} already recorded")
            self._seen.add(record_number)
            if isinstance(outcome, Imported):
                self._imported += 1
            elif isinstance(outcome, Skipped):
                self._skipped += 1
            elif isinstance(outcome, Failed):
                self._failures.append(FailureDetail(
                    record_number=record_number,
                    error_message=outcome.error_message,
                    timestamp=timestamp,
                    source_id=source_id,
                    primary_email=primary_email,
                ))
            else:
                raise TypeError(f"Unknown outcome type: {type(outcome).__name__}")

    def record_throttle(self) -> None:
        with self._lock:
            self._warnings += 1

    @property
    def recorded(self) -> int:
        with self._lock:
            return len(self._seen)

    def finalize(self, run_id: str, duration_s: float = 0.0) -> RunSummary:
        """Snapshot the counts. Only meaningful once no worker is running."""
        with self._lock:
            failures = tuple(sorted(self._failures, key=lambda f: f.record_number))
            return RunSummary(
                run_id=run_id,
                total=len(self._seen),
                imported=self._imported,
                skipped=self._skipped,
                warnings=self._warnings,
                errors=len(failures),
                failures=failures,
                duration_s=round(duration_s, 3),
            )

"""Optional per-record error report: CSV for *.csv paths, JSON otherwise."""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Iterable, Union

from scripts.user_migration.models import FailureDetail

REPORT_FIELDS = ["recordNumber", "clerkUserId", "email", "errorMessage", "timestamp"]


def _as_row(failure: FailureDetail) -> dict:
    return {
        "recordNumber": failure.record_number,
        "clerkUserId": failure.source_id or "",
        "email": failure.primary_email or "",
        "errorMessage": failure.error_message,
        "timestamp": failure.timestamp,
    }


def write_error_report(path: Union[str, Path], failures: Iterable[FailureDetail]) -> int:
    """Write one row per failure sorted by record number. Returns the row count."""
    path = Path(path)
    rows = [_as_row(f) for f in sorted(failures, key=lambda f: f.record_number)]

    if path.suffix.lower() == ".csv":
        with path.open("w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=REPORT_FIELDS, quoting=csv.QUOTE_ALL)
            writer.writeheader()
            writer.writerows(rows)
    else:
        with path.open("w", encoding="utf-8") as f:
            json.dump(rows, f, indent=2)
            f.write("\n")
    return len(rows)

from __future__ import annotations

import csv
import json
import threading

import pytest

from scripts.user_migration.aggregator import OutcomeAggregator
from scripts.user_migration.error_report import REPORT_FIELDS, write_error_report
from scripts.user_migration.models import Failed, Imported, Skipped


def _populated() -> OutcomeAggregator:
    aggregator = OutcomeAggregator()
    aggregator.record(4, Failed("could not find or create user"), source_id="clerk_4", primary_email="d@x.com")
    aggregator.record(1, Imported("user_01"))
    aggregator.record(3, Skipped("multiple emails, multi-email disabled"))
    aggregator.record(2, Failed('bad "quoted", value'), source_id="clerk_2")
    aggregator.record_throttle()
    return aggregator


def test_finalize_counts_and_sorts_failures() -> None:
    summary = _populated().finalize("run-1", duration_s=1.23456)

    assert (summary.total, summary.imported, summary.skipped, summary.errors, summary.warnings) == (4, 1, 1, 2, 1)
    assert [f.record_number for f in summary.failures] == [2, 4]
    assert summary.failures[1].primary_email == "d@x.com"
    assert summary.duration_s == 1.235
    assert summary.status == "Partial"


def test_recording_a_record_twice_is_rejected() -> None:
    aggregator = OutcomeAggregator()
    aggregator.record(1, Imported("user_01"))

    with pytest.raises(ValueError):
        aggregator.record(1, Failed("again"))


def test_concurrent_appends_are_not_lost() -> None:
    aggregator = OutcomeAggregator()

    def worker(offset: int) -> None:
        for n in range(offset, offset + 500):
            aggregator.record(n, Imported(f"user_{n}") if n % 2 else Failed("x"))

    threads = [threading.Thread(target=worker, args=(i * 500 + 1,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    summary = aggregator.finalize("run-1")
    assert summary.total == 4000
    assert summary.imported + summary.errors == 4000
    assert [f.record_number for f in summary.failures] == sorted(f.record_number for f in summary.failures)


def test_all_failed_status() -> None:
    aggregator = OutcomeAggregator()
    aggregator.record(1, Failed("x"))
    assert aggregator.finalize("run-1").status == "Failed"


def test_render_lines_never_include_failure_details() -> None:
    lines = _populated().finalize("run-1").render_lines()

    text = "\n".join(lines)
    assert "Errors:   2" in text
    assert "clerk_4" not in text
    assert "d@x.com" not in text


def test_csv_error_report_round_trips(tmp_path) -> None:
    summary = _populated().finalize("run-1")
    path = tmp_path / "errors.csv"

    assert write_error_report(path, reversed(summary.failures)) == 2

    with path.open(encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        assert reader.fieldnames == REPORT_FIELDS
        rows = list(reader)
    assert [(int(r["recordNumber"]), r["errorMessage"]) for r in rows] == [
        (f.record_number, f.error_message) for f in summary.failures
    ]
    assert rows[0]["email"] == ""
    assert rows[1]["clerkUserId"] == "clerk_4"
    assert path.read_text(encoding="utf-8").startswith('"recordNumber","clerkUserId"')


def test_json_error_report(tmp_path) -> None:
    summary = _populated().finalize("run-1")
    path = tmp_path / "errors.json"

    write_error_report(path, summary.failures)

    rows = json.loads(path.read_text(encoding="utf-8"))
    assert [r["recordNumber"] for r in rows] == [2, 4]
    assert set(rows[0]) == set(REPORT_FIELDS)

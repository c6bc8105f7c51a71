"""Lazy record source over a Clerk user export.

Two physical encodings sit behind `open_export`:
  - `.csv`: row-oriented, header row names the fields
  - anything else: one JSON document whose top level is an array of objects

Both yield one `RawRecord` at a time in file order. The JSON path decodes
incrementally from ijson parse events, so an export far larger than memory
still streams; each array element is yielded as soon as it is complete.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import IO, Iterator, Union

import ijson

from scripts.user_migration.errors import FatalSetupError, RecordDecodeError
from scripts.user_migration.models import RawRecord, RecordLayout

logger = logging.getLogger("migration.export_stream")

_CONTAINER_START = ("start_map", "start_array")
_CONTAINER_END = ("end_map", "end_array")


def open_export(path: Union[str, Path]) -> Iterator[RawRecord]:
    """Open an export file and return a single-pass iterator over its records.

    The file is opened here rather than on first iteration so an unreadable
    export fails the run before any record is dispatched.
    """
    path = Path(path)
    is_csv = path.suffix.lower() == ".csv"
    try:
        if is_csv:
            handle = path.open("r", encoding="utf-8-sig", newline="")
        else:
            handle = path.open("rb")
    except OSError as exc:
        raise FatalSetupError(f"Cannot read user export {path}: {exc}") from exc

    logger.info("Streaming %s export from %s", "CSV" if is_csv else "JSON", path)
    if is_csv:
        return _iter_csv_rows(handle)
    return _iter_json_array(handle)


def _iter_csv_rows(handle: IO[str]) -> Iterator[RawRecord]:
    """Yield one record per non-blank data row.

    Field names and values are trimmed. Short rows leave trailing fields
    absent and long rows drop the surplus values.
    """
    with handle:
        reader = csv.reader(handle)
        header = None
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            if header is None:
                header = [name.strip() for name in row]
                continue
            data = {
                name: value.strip()
                for name, value in zip(header, row)
                if name
            }
            yield RawRecord(layout=RecordLayout.ROW, data=data)


def _iter_json_array(handle: IO[bytes]) -> Iterator[RawRecord]:
    """Yield each top-level array element once its closing token is parsed."""
    position = 1  # element that would be yielded next
    with handle:
        events = ijson.parse(handle, use_float=True)
        try:
            first = next(events, None)
            if first is None:
                return
            prefix, event, _ = first
            if event != "start_array":
                raise RecordDecodeError(position, f"top-level value is {event}, expected an array")

            builder = None
            for prefix, event, value in events:
                if builder is not None:
                    builder.event(event, value)
                    if prefix == "item" and event in _CONTAINER_END:
                        yield RawRecord(layout=RecordLayout.OBJECT, data=builder.value)
                        position += 1
                        builder = None
                elif prefix == "item" and event in _CONTAINER_START:
                    builder = ijson.ObjectBuilder()
                    builder.event(event, value)
                elif prefix == "item":
                    # Scalar element: still occupies a record number, the
                    # normalizer rejects it.
                    yield RawRecord(layout=RecordLayout.OBJECT, data=value)
                    position += 1
                elif prefix == "" and event == "end_array":
                    for _ in events:
                        raise RecordDecodeError(position, "trailing data after array")
                    return
        except (ijson.JSONError, UnicodeDecodeError) as exc:
            raise RecordDecodeError(position, str(exc)) from exc

"""Bounded-concurrency dispatch of export records to the reconciler.

One admitter (the thread calling `run`) pulls records from the source, and
only when a slot is free and the throttle gate is open; that is the only
backpressure on the source. Admitted units run on a thread pool of the same
size as the slot count, so at most `concurrency` records are in flight.

When a unit is throttled the shared gate closes for `retry_after + 1`
seconds. Units already in flight keep running; the throttled unit waits for
the gate, keeping its slot, and then retries once. A throttle arriving while
the gate is closed extends the window to the later deadline instead of
adding another full wait. Each throttle event buys one retry, up to
`max_throttle_retries` per record.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from scripts.user_migration.aggregator import OutcomeAggregator
from scripts.user_migration.errors import FatalSetupError, ThrottleSignal, ValidationError
from scripts.user_migration.models import (
    CanonicalUserRecord,
    DispatchUnit,
    Failed,
    Imported,
    Outcome,
    RawRecord,
    RunSummary,
    Skipped,
)
from scripts.user_migration.normalizer import normalize
from scripts.user_migration.reconciler import Reconciler

logger = logging.getLogger("migration.dispatch")

RETRY_PADDING_SECONDS = 1


class EngineState(enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    DRAINING = "draining"
    DONE = "done"


class ThrottleGate:
    """Shared back-off window. Closed until the latest requested deadline."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._reopens_at = 0.0

    def close_for(self, seconds: float) -> None:
        with self._cond:
            self._reopens_at = max(self._reopens_at, self._clock() + seconds)

    @property
    def is_open(self) -> bool:
        with self._cond:
            return self._clock() >= self._reopens_at

    def wait_open(self) -> None:
        with self._cond:
            while True:
                remaining = self._reopens_at - self._clock()
                if remaining <= 0:
                    return
                self._cond.wait(remaining)


class DispatchEngine:
    def __init__(
        self,
        reconciler: Reconciler,
        concurrency: int = 10,
        default_retry_after: int = 10,
        max_throttle_retries: int = 5,
        normalizer: Callable[[RawRecord], CanonicalUserRecord] = normalize,
        aggregator: Optional[OutcomeAggregator] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.reconciler = reconciler
        self.concurrency = concurrency
        self.default_retry_after = default_retry_after
        self.max_throttle_retries = max_throttle_retries
        self.normalizer = normalizer
        self.aggregator = aggregator or OutcomeAggregator()
        self.run_id = str(uuid.uuid4())

        self._gate = ThrottleGate()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._lock = threading.Lock()
        self._state = EngineState.RUNNING
        self._in_flight = 0
        self._max_in_flight = 0
        self._internal_error: Optional[BaseException] = None

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    @property
    def max_in_flight(self) -> int:
        """High-water mark of concurrently processed records."""
        with self._lock:
            return self._max_in_flight

    def run(self, source: Iterable[RawRecord]) -> RunSummary:
        """Dispatch every record from `source` and return the final summary.

        A failing source (decode error) stops admission; in-flight units are
        allowed to finish, then the error propagates. A FatalSetupError
        carries the summary of the records admitted before it.
        """
        started = time.monotonic()
        logger.info(
            "Dispatch started with concurrency %d", self.concurrency,
            extra={"run_id": self.run_id},
        )
        records = iter(source)
        admitted = 0
        source_error: Optional[Exception] = None

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="migrate"
        ) as pool:
            try:
                while self._internal_error is None:
                    self._slots.acquire()
                    self._gate.wait_open()
                    try:
                        raw = next(records)
                    except StopIteration:
                        self._slots.release()
                        break
                    except Exception as exc:
                        self._slots.release()
                        logger.error(
                            "Record source failed after %d records: %s", admitted, exc,
                            extra={"run_id": self.run_id},
                        )
                        source_error = exc
                        break
                    admitted += 1
                    self._track(1)
                    future = pool.submit(self._run_unit, DispatchUnit(admitted, raw))
                    future.add_done_callback(self._check_worker)
            finally:
                self._transition(EngineState.DRAINING)

        if self._internal_error is not None:
            raise self._internal_error

        summary = self.aggregator.finalize(self.run_id, time.monotonic() - started)
        if source_error is not None:
            logger.warning(
                "Dispatch stopped early: imported=%d skipped=%d errors=%d warnings=%d",
                summary.imported, summary.skipped, summary.errors, summary.warnings,
                extra={"run_id": self.run_id, "records": summary.total},
            )
            if isinstance(source_error, FatalSetupError):
                source_error.summary = summary
            raise source_error

        self._transition(EngineState.DONE)
        logger.info(
            "Dispatch complete: imported=%d skipped=%d errors=%d warnings=%d",
            summary.imported, summary.skipped, summary.errors, summary.warnings,
            extra={
                "run_id": self.run_id,
                "records": summary.total,
                "duration_s": summary.duration_s,
            },
        )
        return summary

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _run_unit(self, unit: DispatchUnit) -> None:
        try:
            unit, outcome = self._process(unit)
            self.aggregator.record(
                unit.record_number,
                outcome,
                source_id=unit.source_id,
                primary_email=unit.primary_email,
            )
            self._log_outcome(unit, outcome)
        finally:
            self._track(-1)
            self._slots.release()

    def _process(self, unit: DispatchUnit) -> tuple[DispatchUnit, Outcome]:
        try:
            unit = unit.normalized(self.normalizer(unit.payload))
        except ValidationError as exc:
            return unit, Failed(str(exc))
        except Exception as exc:
            return unit, self._unexpected(unit, exc)
        return unit, self._reconcile(unit)

    def _reconcile(self, unit: DispatchUnit) -> Outcome:
        while True:
            try:
                return self.reconciler.reconcile(unit.payload)
            except ThrottleSignal as signal:
                if unit.throttle_retries >= self.max_throttle_retries:
                    return Failed(
                        f"rate limit exceeded after {unit.throttle_retries} retries"
                    )
                unit = unit.retried()
                self._back_off(unit, signal)
            except Exception as exc:
                return self._unexpected(unit, exc)

    def _unexpected(self, unit: DispatchUnit, exc: Exception) -> Failed:
        """Isolate an unexpected error to its own record."""
        logger.error(
            "Unexpected error for record %d: %s", unit.record_number, exc,
            exc_info=True,
            extra={"run_id": self.run_id, "record_number": unit.record_number},
        )
        return Failed(str(exc) or type(exc).__name__)

    def _back_off(self, unit: DispatchUnit, signal: ThrottleSignal) -> None:
        retry_after = signal.retry_after_seconds
        if retry_after is None:
            retry_after = self.default_retry_after
        wait = retry_after + RETRY_PADDING_SECONDS

        self.aggregator.record_throttle()
        self._gate.close_for(wait)
        with self._lock:
            if self._state is EngineState.RUNNING:
                self._set_state(EngineState.PAUSED)
        logger.warning(
            "Rate limit exceeded. Pausing admission for %d seconds.", wait,
            extra={
                "run_id": self.run_id,
                "record_number": unit.record_number,
                "retry_after": wait,
            },
        )

        self._gate.wait_open()
        with self._lock:
            if self._state is EngineState.PAUSED and self._gate.is_open:
                self._set_state(EngineState.RUNNING)

    def _log_outcome(self, unit: DispatchUnit, outcome: Outcome) -> None:
        extra = {
            "run_id": self.run_id,
            "record_number": unit.record_number,
            "source_id": unit.source_id,
        }
        if isinstance(outcome, Imported):
            extra["remote_user_id"] = outcome.remote_user_id
            logger.info(
                "(%d) Imported Clerk user %s as WorkOS user %s",
                unit.record_number, unit.source_id, outcome.remote_user_id,
                extra=extra,
            )
        elif isinstance(outcome, Skipped):
            logger.info(
                "(%d) Skipped Clerk user %s: %s",
                unit.record_number, unit.source_id, outcome.reason,
                extra=extra,
            )
        else:
            logger.error(
                "(%d) Failed record: %s", unit.record_number, outcome.error_message,
                extra=extra,
            )

    def _check_worker(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None and self._internal_error is None:
            logger.error("Dispatch worker crashed: %s", exc, extra={"run_id": self.run_id})
            self._internal_error = exc

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------

    def _track(self, delta: int) -> None:
        with self._lock:
            self._in_flight += delta
            self._max_in_flight = max(self._max_in_flight, self._in_flight)

    def _transition(self, state: EngineState) -> None:
        with self._lock:
            self._set_state(state)

    def _set_state(self, state: EngineState) -> None:
        """Caller holds self._lock."""
        if state is not self._state:
            logger.info(
                "Dispatch state %s -> %s", self._state.value, state.value,
                extra={"run_id": self.run_id, "state": state.value},
            )
            self._state = state

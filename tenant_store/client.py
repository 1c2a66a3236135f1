"""Client for the remote row store: batching, retry with backoff and a circuit breaker."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Sequence, TypeVar

from . import metrics
from .backends.base import BackendError, Row, RowRange, RowStoreBackend, RowUpdate
from .errors import CircuitOpenError, FatalStoreError, SchemaMismatchError, TransientStoreError
from .logging import get_logger, log_event

logger = get_logger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS = 429
TransientException = (TimeoutError, OSError)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 2.0
    max_delay: float = 20.0

    def delay_for(self, attempt: int, *, rate_limited: bool) -> float:
        """Backoff before retry number ``attempt`` (1-based); rate limits start from twice the base."""

        base = self.initial_delay * 2 if rate_limited else self.initial_delay
        return min(base * (2 ** (attempt - 1)), self.max_delay)


class CircuitBreaker:
    """Pause backend calls after consecutive rate-limit failures.

    ``failure_threshold=0`` disables the breaker.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        open_seconds: float = 60.0,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._threshold = failure_threshold
        self._open_seconds = open_seconds
        self._time = time_source or time.monotonic
        self._lock = RLock()
        self._state = "closed"
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        if self._threshold <= 0:
            return
        with self._lock:
            if self._state == "open":
                elapsed = self._time() - (self._opened_at or 0.0)
                if elapsed < self._open_seconds:
                    raise CircuitOpenError(
                        "Row store calls are paused after repeated rate limiting",
                        details={"retry_after_seconds": round(self._open_seconds - elapsed, 3)},
                    )
                self._transition("half_open")
            if self._state == "half_open":
                if self._trial_in_flight:
                    raise CircuitOpenError("Row store trial call already in flight")
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != "closed":
                self._transition("closed")
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self, *, rate_limited: bool) -> None:
        if self._threshold <= 0:
            return
        with self._lock:
            if self._state == "half_open":
                self._transition("open")
                return
            if not rate_limited:
                return
            self._failures += 1
            if self._failures >= self._threshold:
                self._transition("open")

    def _transition(self, target: str) -> None:
        if self._state != target:
            log_event(
                logger,
                f"row_store.circuit.{target}",
                level=logging.WARNING if target == "open" else logging.INFO,
                from_state=self._state,
                failures=self._failures,
            )
        self._state = target
        self._failures = 0
        self._trial_in_flight = False
        self._opened_at = self._time() if target == "open" else None


class RowStoreClient:
    """Table-scoped access to a raw row store backend.

    Row indexes are absolute: the header sits at 0 and data starts at 1.
    The client keeps no state between calls apart from the injected breaker.
    """

    def __init__(
        self,
        backend: RowStoreBackend,
        *,
        table: str,
        header: Sequence[str],
        batch_limit: int = 100,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        call_timeout: timedelta = timedelta(seconds=30),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_limit < 1:
            raise ValueError("batch_limit must be >= 1")
        self._backend = backend
        self._table = table
        self._header = tuple(header)
        self._batch_limit = batch_limit
        self._policy = retry_policy or RetryPolicy()
        self._breaker = breaker or CircuitBreaker(failure_threshold=0)
        self._call_timeout = call_timeout.total_seconds()
        self._sleep = sleep

    @property
    def table(self) -> str:
        return self._table

    @property
    def header(self) -> tuple[str, ...]:
        return self._header

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def verify_schema(self, *, initialise: bool = False) -> None:
        rows = self.read_range(RowRange.single(0))
        actual = [str(value).strip() for value in rows[0]] if rows else []
        if not any(actual):
            if initialise:
                self.append_row(self._header)
                log_event(logger, "row_store.header.initialised", table=self._table)
                return
            raise SchemaMismatchError(
                f"Table {self._table!r} has no header row",
                details={"table": self._table, "expected": list(self._header)},
            )
        if tuple(actual) != self._header:
            raise SchemaMismatchError(
                f"Table {self._table!r} header does not match the expected columns",
                details={"table": self._table, "expected": list(self._header), "actual": actual},
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_range(self, rng: RowRange, *, timeout: timedelta | None = None) -> list[Row]:
        return self._call("read_range", self._backend.read_range, rng, timeout=timeout)

    def read_data_rows(self, *, timeout: timedelta | None = None) -> list[Row]:
        """All rows below the header; list position ``n`` is row index ``n + 1``."""

        return self.read_range(RowRange(1), timeout=timeout)

    def batch_read(self, ranges: Sequence[RowRange], *, timeout: timedelta | None = None) -> list[list[Row]]:
        results: list[list[Row]] = []
        for chunk in self._chunks(ranges):
            results.extend(self._call("batch_read", self._backend.batch_read, chunk, timeout=timeout))
        return results

    def modified_at(self, *, timeout: timedelta | None = None) -> datetime | None:
        return self._call("modified_at", self._backend.modified_at, timeout=timeout)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def batch_write(self, updates: Sequence[RowUpdate], *, timeout: timedelta | None = None) -> int:
        cells = 0
        for chunk in self._chunks(updates):
            cells += int(self._call("batch_write", self._backend.batch_write, chunk, timeout=timeout))
        return cells

    def write_row(self, row_index: int, values: Sequence[Any], *, timeout: timedelta | None = None) -> int:
        return self.batch_write([RowUpdate(row_index, tuple(values))], timeout=timeout)

    def append_row(self, row: Sequence[Any], *, timeout: timedelta | None = None) -> int:
        return int(self._call("append_row", self._backend.append_row, list(row), timeout=timeout))

    def delete_row(self, row_index: int, *, timeout: timedelta | None = None) -> None:
        if row_index < 1:
            raise ValueError("The header row cannot be deleted")
        self._call("delete_row", self._backend.delete_row, row_index, timeout=timeout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _chunks(self, items: Sequence[T]) -> list[list[T]]:
        items = list(items)
        return [items[start : start + self._batch_limit] for start in range(0, len(items), self._batch_limit)]

    def _call(self, operation: str, func: Callable[..., T], *args: Any, timeout: timedelta | None = None) -> T:
        seconds = timeout.total_seconds() if timeout is not None else self._call_timeout
        attempt = 1
        while True:
            self._breaker.before_call()
            try:
                result = func(self._table, *args, timeout=seconds)
            except BackendError as exc:
                status = exc.status_code
                if status is None or (status != RATE_LIMIT_STATUS and status < 500):
                    self._breaker.record_success()
                    raise FatalStoreError(
                        f"Row store rejected {operation}: {exc}",
                        details={"table": self._table, "operation": operation, "status": status},
                    ) from exc
                rate_limited = status == RATE_LIMIT_STATUS
                failure: Exception = exc
            except TransientException as exc:
                rate_limited = False
                failure = exc
            except Exception as exc:
                self._breaker.record_failure(rate_limited=False)
                raise FatalStoreError(
                    f"Row store {operation} failed unexpectedly: {exc}",
                    details={"table": self._table, "operation": operation, "error": repr(exc)},
                ) from exc
            else:
                self._breaker.record_success()
                return result

            self._breaker.record_failure(rate_limited=rate_limited)
            if attempt >= max(self._policy.max_attempts, 1):
                raise TransientStoreError(
                    f"Row store {operation} failed after {attempt} attempt(s)",
                    details={"table": self._table, "operation": operation, "rate_limited": rate_limited},
                ) from failure

            delay = self._policy.delay_for(attempt, rate_limited=rate_limited)
            metrics.record_retry()
            log_event(
                logger,
                "row_store.retry",
                level=logging.WARNING,
                table=self._table,
                operation=operation,
                attempt=attempt,
                delay_seconds=delay,
                rate_limited=rate_limited,
                error=repr(failure),
            )
            self._sleep(delay)
            attempt += 1

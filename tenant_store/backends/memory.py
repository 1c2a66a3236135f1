"""In-process row store and lock provider."""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Sequence

from .base import BackendError, Row, RowRange, RowUpdate


def _now() -> datetime:
    return datetime.now(timezone.utc)


def synchronized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class MemoryRowStore:
    """Dictionary of tables, each a list of rows with the header at index 0."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._tables: dict[str, list[Row]] = {}
        self._modified: dict[str, datetime] = {}
        self._clock = clock or _now
        self._lock = threading.RLock()

    @synchronized
    def create_table(self, table: str) -> None:
        if table not in self._tables:
            self._tables[table] = []
            self._touch(table)

    @synchronized
    def read_range(self, table: str, rng: RowRange, *, timeout: float) -> list[Row]:
        rows = self._rows(table)
        return copy.deepcopy(rows[rng.start : rng.stop])

    @synchronized
    def batch_read(self, table: str, ranges: Sequence[RowRange], *, timeout: float) -> list[list[Row]]:
        rows = self._rows(table)
        return [copy.deepcopy(rows[rng.start : rng.stop]) for rng in ranges]

    @synchronized
    def batch_write(self, table: str, updates: Sequence[RowUpdate], *, timeout: float) -> int:
        rows = self._rows(table)
        cells = 0
        for update in updates:
            if update.row_index < 0:
                raise BackendError(f"Invalid row index {update.row_index}", status_code=400)
            while len(rows) <= update.row_index:
                rows.append([])
            rows[update.row_index] = list(update.values)
            cells += len(update.values)
        if updates:
            self._touch(table)
        return cells

    @synchronized
    def append_row(self, table: str, row: Sequence[Any], *, timeout: float) -> int:
        rows = self._rows(table)
        rows.append(list(row))
        self._touch(table)
        return len(rows) - 1

    @synchronized
    def delete_row(self, table: str, row_index: int, *, timeout: float) -> None:
        rows = self._rows(table)
        if row_index < 0 or row_index >= len(rows):
            raise BackendError(f"Row {row_index} is out of range", status_code=400)
        del rows[row_index]
        self._touch(table)

    @synchronized
    def modified_at(self, table: str, *, timeout: float) -> datetime | None:
        self._rows(table)
        return self._modified.get(table)

    def _rows(self, table: str) -> list[Row]:
        try:
            return self._tables[table]
        except KeyError:
            raise BackendError(f"Table {table!r} does not exist", status_code=404) from None

    def _touch(self, table: str) -> None:
        self._modified[table] = self._clock()


class MemoryLockProvider:
    """Named locks backed by ``threading.Lock`` objects."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def acquire(self, key: str, timeout: float) -> bool:
        return self._lock_for(key).acquire(timeout=max(timeout, 0.0))

    def release(self, key: str) -> None:
        self._lock_for(key).release()

    def locked(self, key: str) -> bool:
        return self._lock_for(key).locked()

"""Lock-guarded execution of read-modify-write sequences."""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Iterator, TypeVar

from . import metrics
from .backends.base import LockPrimitive
from .errors import LockReentryError, LockTimeoutError
from .logging import get_logger, log_event

logger = get_logger(__name__)

T = TypeVar("T")

_HELD_LOCKS: contextvars.ContextVar[frozenset[str]] = contextvars.ContextVar("tenant_store_held_locks", default=frozenset())


def write_lock_key(table: str) -> str:
    return f"{table}:write"


def held_locks() -> frozenset[str]:
    return _HELD_LOCKS.get()


class LockGuardedWriter:
    """Runs callables while holding a named lock.

    A caller that already holds the lock in the current context gets
    ``LockReentryError`` instead of waiting on itself.
    """

    def __init__(self, primitive: LockPrimitive, *, default_timeout: timedelta = timedelta(seconds=5)) -> None:
        self._primitive = primitive
        self._default_timeout = default_timeout

    @contextmanager
    def hold(self, lock_key: str, *, timeout: timedelta | None = None) -> Iterator[None]:
        held = _HELD_LOCKS.get()
        if lock_key in held:
            raise LockReentryError(
                f"Lock {lock_key!r} is already held by this call stack",
                details={"lock_key": lock_key},
            )
        wait = timeout if timeout is not None else self._default_timeout
        if not self._primitive.acquire(lock_key, wait.total_seconds()):
            metrics.record_error(LockTimeoutError.default_code)
            log_event(logger, "lock.timeout", level=logging.WARNING, lock_key=lock_key, timeout_seconds=wait.total_seconds())
            raise LockTimeoutError(
                f"Could not acquire {lock_key!r} within {wait.total_seconds():g}s; retry shortly",
                details={"lock_key": lock_key, "timeout_seconds": wait.total_seconds()},
            )
        token = _HELD_LOCKS.set(held | {lock_key})
        try:
            yield
        finally:
            _HELD_LOCKS.reset(token)
            self._primitive.release(lock_key)

    def with_lock(self, lock_key: str, fn: Callable[[], T], *, timeout: timedelta | None = None) -> T:
        with self.hold(lock_key, timeout=timeout):
            return fn()

"""Three-tier cache: execution-local memo, per-principal tier and shared tier.

Key scheme used by the repository::

    tenant:{id}:record              serialized TenantRecord
    principal-index:{email}         tenant id owned by a principal
    sheet-index:{spreadsheetId}     tenant id owning a spreadsheet, or None

Per-principal entries are stored as ``{key}#{principal}`` so prefix
invalidation of ``tenant:{id}:`` reaches every principal's copy.
"""

from __future__ import annotations

import contextvars
import json
import logging
import time
from contextlib import contextmanager
from datetime import timedelta
from enum import Enum
from threading import RLock
from typing import Any, Callable, Iterator, Protocol

from cachetools import TLRUCache

from . import metrics
from .logging import get_logger, log_event

logger = get_logger(__name__)

_PRINCIPAL_SEPARATOR = "#"


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Missing()


class CacheTier(str, Enum):
    EXECUTION = "execution"
    PRINCIPAL = "principal"
    SHARED = "shared"


LOOKUP_ORDER: tuple[CacheTier, ...] = (CacheTier.EXECUTION, CacheTier.PRINCIPAL, CacheTier.SHARED)


class CacheBackend(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any, ttl: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...

    def purge_expired(self) -> int:
        ...

    def clear(self) -> None:
        ...


def _time_to_use(_key: str, value: tuple[float, str], now: float) -> float:
    return now + value[0]


class LocalCacheBackend:
    """Bounded in-process cache with a TTL per entry.

    Expired entries go first; when the cache is full the least recently used
    entry is evicted. Values are stored JSON-encoded so callers never share
    mutable state through the cache.
    """

    def __init__(self, *, maxsize: int, timer: Callable[[], float] = time.monotonic) -> None:
        self._cache: TLRUCache[str, tuple[float, str]] = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=timer)
        self._lock = RLock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._cache.get(key)
        if entry is None:
            return MISS
        return json.loads(entry[1])

    def set(self, key: str, value: Any, ttl: float) -> None:
        encoded = json.dumps(value, ensure_ascii=False, sort_keys=True)
        with self._lock:
            self._cache[key] = (max(ttl, 0.0), encoded)

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            matches = [key for key in self._cache if key.startswith(prefix)]
            for key in matches:
                self._cache.pop(key, None)
        return len(matches)

    def purge_expired(self) -> int:
        with self._lock:
            expired = self._cache.expire()
        return len(expired) if expired else 0

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class TieredCache:
    """Cache facade over the three tiers.

    Failures of the shared or per-principal backend are logged, counted and
    reported as a miss; they never reach the caller.
    """

    def __init__(
        self,
        shared: CacheBackend,
        principal: CacheBackend,
        *,
        principal_provider: Callable[[], str | None] | None = None,
        shared_ttl: timedelta = timedelta(minutes=15),
        principal_ttl: timedelta = timedelta(minutes=5),
        max_value_bytes: int = 100_000,
    ) -> None:
        self._backends: dict[CacheTier, CacheBackend] = {
            CacheTier.SHARED: shared,
            CacheTier.PRINCIPAL: principal,
        }
        self._default_ttl = {
            CacheTier.SHARED: shared_ttl.total_seconds(),
            CacheTier.PRINCIPAL: principal_ttl.total_seconds(),
        }
        self._principal_provider = principal_provider or (lambda: None)
        self._max_value_bytes = max_value_bytes
        self._scope: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
            f"tenant_store_execution_scope_{id(self)}",
            default=None,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> None:
        purged = self.purge_expired()
        log_event(logger, "cache.init", purged=purged, max_value_bytes=self._max_value_bytes)

    def clear(self) -> None:
        for tier, backend in self._backends.items():
            self._guard(tier, "clear", backend.clear)
        scope = self._scope.get()
        if scope is not None:
            scope.clear()

    def purge_expired(self) -> int:
        total = 0
        for tier, backend in self._backends.items():
            purged = self._guard(tier, "purge", backend.purge_expired)
            if purged:
                total += int(purged)
        return total

    @contextmanager
    def execution(self) -> Iterator[dict[str, Any]]:
        """Open an execution scope; nested scopes reuse the outermost one."""

        current = self._scope.get()
        if current is not None:
            yield current
            return
        scope: dict[str, Any] = {}
        token = self._scope.set(scope)
        try:
            yield scope
        finally:
            self._scope.reset(token)

    def current_principal(self) -> str | None:
        principal = self._principal_provider()
        if not principal:
            return None
        return str(principal).strip().lower() or None

    # ------------------------------------------------------------------
    # Tier operations
    # ------------------------------------------------------------------

    def get(self, tier: CacheTier, key: str, *, principal: str | None = None) -> Any:
        if tier is CacheTier.EXECUTION:
            scope = self._scope.get()
            value = MISS if scope is None else scope.get(key, MISS)
            metrics.record_cache(tier.value, hit=value is not MISS)
            return value

        backend_key = self._backend_key(tier, key, principal)
        if backend_key is None:
            return MISS
        value = self._guard(tier, "get", self._backends[tier].get, backend_key, default=MISS)
        metrics.record_cache(tier.value, hit=value is not MISS)
        return value

    def set(
        self,
        tier: CacheTier,
        key: str,
        value: Any,
        ttl: timedelta | None = None,
        *,
        principal: str | None = None,
    ) -> bool:
        """Store ``value``; returns False when the value was not cached."""

        if tier is CacheTier.EXECUTION:
            scope = self._scope.get()
            if scope is None:
                return False
            scope[key] = value
            return True

        backend_key = self._backend_key(tier, key, principal)
        if backend_key is None:
            return False
        if not self._fits(key, value):
            return False
        seconds = ttl.total_seconds() if ttl is not None else self._default_ttl[tier]
        return self._guard(tier, "set", self._backends[tier].set, backend_key, value, seconds, default=False) is not False

    def remove(self, tier: CacheTier, key: str, *, principal: str | None = None) -> None:
        if tier is CacheTier.EXECUTION:
            scope = self._scope.get()
            if scope is not None:
                scope.pop(key, None)
            return
        if tier is CacheTier.PRINCIPAL and principal is None:
            # without a named principal every principal's copy goes
            self._guard(tier, "delete_prefix", self._backends[tier].delete_prefix, key + _PRINCIPAL_SEPARATOR)
            return
        backend_key = self._backend_key(tier, key, principal)
        if backend_key is not None:
            self._guard(tier, "delete", self._backends[tier].delete, backend_key)

    def remove_everywhere(self, key: str) -> None:
        for tier in LOOKUP_ORDER:
            self.remove(tier, key)

    def invalidate_pattern(self, tier: CacheTier, prefix: str) -> int:
        if tier is CacheTier.EXECUTION:
            scope = self._scope.get()
            if scope is None:
                return 0
            matches = [key for key in scope if key.startswith(prefix)]
            for key in matches:
                scope.pop(key, None)
            return len(matches)
        removed = self._guard(tier, "delete_prefix", self._backends[tier].delete_prefix, prefix, default=0)
        return int(removed or 0)

    def invalidate_everywhere(self, prefix: str) -> None:
        for tier in LOOKUP_ORDER:
            self.invalidate_pattern(tier, prefix)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _backend_key(self, tier: CacheTier, key: str, principal: str | None) -> str | None:
        if tier is CacheTier.SHARED:
            return key
        owner = principal.strip().lower() if principal else self.current_principal()
        if not owner:
            return None
        return f"{key}{_PRINCIPAL_SEPARATOR}{owner}"

    def _fits(self, key: str, value: Any) -> bool:
        if not self._max_value_bytes:
            return True
        try:
            size = len(json.dumps(value, ensure_ascii=False, sort_keys=True).encode("utf-8"))
        except (TypeError, ValueError):
            log_event(logger, "cache.value.unserializable", level=logging.WARNING, key=key)
            return False
        if size > self._max_value_bytes:
            log_event(logger, "cache.value.too_large", level=logging.WARNING, key=key, size=size, limit=self._max_value_bytes)
            return False
        return True

    def _guard(self, tier: CacheTier, action: str, func: Callable[..., Any], *args: Any, default: Any = None) -> Any:
        try:
            result = func(*args)
        except Exception as exc:
            metrics.record_cache_error()
            log_event(
                logger,
                "cache.backend.error",
                level=logging.WARNING,
                tier=tier.value,
                action=action,
                error=repr(exc),
            )
            return default
        if action == "set":
            return True
        return result

"""Redis-backed shared cache tier and write lock."""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any

from redis import Redis
from redis.exceptions import LockNotOwnedError

from ..cache import MISS
from ..logging import get_logger, log_event

logger = get_logger(__name__)

DEFAULT_NAMESPACE = "tenant-store"
DEFAULT_LOCK_LEASE_SECONDS = 30.0

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def connect(url: str) -> Redis:
    return Redis.from_url(url, encoding="utf-8", decode_responses=True)


def _escape_glob(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class RedisCacheBackend:
    """Cache backend storing JSON-encoded values with native Redis expiry.

    Redis raises on connection problems; the tiered cache turns those into
    misses, so nothing here catches ``RedisError``.
    """

    def __init__(self, client: Redis, *, namespace: str = DEFAULT_NAMESPACE, scan_count: int = 500) -> None:
        self._client = client
        self._prefix = f"{namespace}:cache:"
        self._scan_count = scan_count

    def get(self, key: str) -> Any:
        raw = self._client.get(self._prefix + key)
        if raw is None:
            return MISS
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: float) -> None:
        payload = json.dumps(value, ensure_ascii=False, sort_keys=True)
        self._client.set(self._prefix + key, payload, px=max(int(ttl * 1000), 1))

    def delete(self, key: str) -> None:
        self._client.delete(self._prefix + key)

    def delete_prefix(self, prefix: str) -> int:
        pattern = _escape_glob(self._prefix + prefix) + "*"
        batch: list[str] = []
        removed = 0
        for name in self._client.scan_iter(match=pattern, count=self._scan_count):
            batch.append(name)
            if len(batch) >= self._scan_count:
                removed += int(self._client.delete(*batch))
                batch.clear()
        if batch:
            removed += int(self._client.delete(*batch))
        return removed

    def purge_expired(self) -> int:
        return 0

    def clear(self) -> None:
        self.delete_prefix("")


class RedisLockProvider:
    """Named locks shared by every process talking to the same Redis."""

    def __init__(
        self,
        client: Redis,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        lease_seconds: float = DEFAULT_LOCK_LEASE_SECONDS,
    ) -> None:
        self._client = client
        self._prefix = f"{namespace}:lock:"
        self._lease = lease_seconds
        self._held: dict[str, Any] = {}
        self._guard = threading.Lock()

    def acquire(self, key: str, timeout: float) -> bool:
        lock = self._client.lock(self._prefix + key, timeout=self._lease, blocking_timeout=max(timeout, 0.0))
        if not lock.acquire(blocking=True):
            return False
        with self._guard:
            self._held[key] = lock
        return True

    def release(self, key: str) -> None:
        with self._guard:
            lock = self._held.pop(key, None)
        if lock is None:
            return
        try:
            lock.release()
        except LockNotOwnedError:
            log_event(logger, "lock.lease_expired", level=logging.ERROR, lock_key=key, lease_seconds=self._lease)

from __future__ import annotations

import re
from datetime import timedelta

from redis.exceptions import LockNotOwnedError

from tenant_store.backends.redis_backend import RedisCacheBackend, RedisLockProvider
from tenant_store.cache import MISS, CacheTier, LocalCacheBackend, TieredCache


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Redis glob semantics: ``*``, ``?`` and backslash escapes."""

    parts: list[str] = []
    chars = iter(pattern)
    for char in chars:
        if char == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


class FakeLock:
    def __init__(self, owner: "FakeRedis", name: str, timeout: float, blocking_timeout: float) -> None:
        self.owner = owner
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.expired = False

    def acquire(self, blocking: bool = True) -> bool:
        if self.name in self.owner.locks:
            return False
        self.owner.locks.add(self.name)
        return True

    def release(self) -> None:
        if self.expired:
            raise LockNotOwnedError("lease expired")
        self.owner.locks.discard(self.name)


class FakeRedis:
    """Just enough of the redis-py client for the cache and lock backends."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry_ms: dict[str, int] = {}
        self.locks: set[str] = set()
        self.issued: list[FakeLock] = []

    def get(self, name: str):
        return self.data.get(name)

    def set(self, name: str, value: str, px: int | None = None) -> bool:
        self.data[name] = value
        if px is not None:
            self.expiry_ms[name] = px
        return True

    def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                removed += 1
            self.expiry_ms.pop(name, None)
        return removed

    def scan_iter(self, match: str = "*", count: int | None = None):
        for name in list(self.data):
            if _glob_to_regex(match).fullmatch(name):
                yield name

    def lock(self, name: str, timeout: float, blocking_timeout: float) -> FakeLock:
        lock = FakeLock(self, name, timeout, blocking_timeout)
        self.issued.append(lock)
        return lock


def test_cache_values_are_namespaced_with_expiry() -> None:
    client = FakeRedis()
    backend = RedisCacheBackend(client)

    backend.set("tenant:1:record", {"id": "1"}, 900.0)

    assert client.data["tenant-store:cache:tenant:1:record"] == '{"id": "1"}'
    assert client.expiry_ms["tenant-store:cache:tenant:1:record"] == 900_000
    assert backend.get("tenant:1:record") == {"id": "1"}
    assert backend.get("tenant:2:record") is MISS


def test_cached_none_is_distinct_from_miss() -> None:
    backend = RedisCacheBackend(FakeRedis())
    backend.set("sheet-index:s1", None, 60.0)
    assert backend.get("sheet-index:s1") is None


def test_delete_prefix_matches_literal_prefix_only() -> None:
    client = FakeRedis()
    backend = RedisCacheBackend(client, scan_count=1)
    backend.set("tenant:1:record", 1, 60.0)
    backend.set("tenant:1:record#a@example.com", 2, 60.0)
    backend.set("tenant:10:record", 3, 60.0)
    backend.set("tenant:[1]:record", 4, 60.0)

    assert backend.delete_prefix("tenant:1:") == 2
    assert backend.get("tenant:10:record") == 3
    assert backend.delete_prefix("tenant:[1]:") == 1
    assert backend.get("tenant:10:record") == 3


def test_clear_only_touches_own_namespace() -> None:
    client = FakeRedis()
    client.data["other:key"] = "x"
    backend = RedisCacheBackend(client)
    backend.set("a", 1, 60.0)

    backend.clear()

    assert client.data == {"other:key": "x"}


def test_redis_backend_plugs_into_tiered_cache() -> None:
    client = FakeRedis()
    cache = TieredCache(
        RedisCacheBackend(client),
        LocalCacheBackend(maxsize=10),
        principal_provider=lambda: "a@example.com",
        shared_ttl=timedelta(minutes=15),
    )

    cache.set(CacheTier.SHARED, "tenant:1:record", {"id": "1"})
    assert cache.get(CacheTier.SHARED, "tenant:1:record") == {"id": "1"}
    cache.invalidate_everywhere("tenant:1:")
    assert cache.get(CacheTier.SHARED, "tenant:1:record") is MISS


def test_lock_provider_acquires_and_releases() -> None:
    client = FakeRedis()
    provider = RedisLockProvider(client, lease_seconds=12)

    assert provider.acquire("tenants:write", 2.5) is True
    assert client.issued[0].name == "tenant-store:lock:tenants:write"
    assert client.issued[0].timeout == 12
    assert client.issued[0].blocking_timeout == 2.5
    assert provider.acquire("tenants:write", 0.1) is False

    provider.release("tenants:write")
    assert client.locks == set()
    assert provider.acquire("tenants:write", 0.1) is True


def test_release_after_lease_expiry_is_logged_not_raised() -> None:
    client = FakeRedis()
    provider = RedisLockProvider(client)
    provider.acquire("tenants:write", 1.0)
    client.issued[0].expired = True

    provider.release("tenants:write")
    provider.release("never-held")

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

_DEFAULT_OPERATIONS = ("find", "create", "update", "delete", "list")
_DEFAULT_TIERS = ("execution", "principal", "shared")

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    operations: Mapping[str, int]
    errors: Mapping[str, int]
    cache_hits: Mapping[str, int]
    cache_misses: Mapping[str, int]
    cache_errors: int
    retries: int
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing counters for Prometheus export."""

    __slots__ = ("_operations", "_errors", "_hits", "_misses", "_cache_errors", "_retries", "_lock", "_started_at")

    def __init__(self) -> None:
        self._operations: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._hits: Counter[str] = Counter()
        self._misses: Counter[str] = Counter()
        self._cache_errors = 0
        self._retries = 0
        self._lock = RLock()
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._operations[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_cache(self, tier: str, *, hit: bool) -> None:
        key = tier.strip().lower() or "unknown"
        with self._lock:
            if hit:
                self._hits[key] += 1
            else:
                self._misses[key] += 1

    def record_cache_error(self, *, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._cache_errors += count

    def record_retry(self, *, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._retries += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations: dict[str, int] = {name: int(self._operations.get(name, 0)) for name in _DEFAULT_OPERATIONS}
            for name, value in self._operations.items():
                if name not in operations:
                    operations[name] = int(value)
            errors = {code: int(value) for code, value in self._errors.items()}
            hits = {tier: int(self._hits.get(tier, 0)) for tier in _DEFAULT_TIERS}
            misses = {tier: int(self._misses.get(tier, 0)) for tier in _DEFAULT_TIERS}
            uptime = max(monotonic() - self._started_at, 0.0)
            return MetricsSnapshot(
                operations=operations,
                errors=errors,
                cache_hits=hits,
                cache_misses=misses,
                cache_errors=self._cache_errors,
                retries=self._retries,
                uptime_seconds=uptime,
            )

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._errors.clear()
            self._hits.clear()
            self._misses.clear()
            self._cache_errors = 0
            self._retries = 0
            self._started_at = monotonic()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_operation(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_cache(tier: str, *, hit: bool) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_cache(tier, hit=hit)


def record_cache_error() -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_cache_error()


def record_retry() -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_retry()


def format_prometheus(snapshot: MetricsSnapshot, *, tenants_current: int) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP tenant_store_ops_total Total repository operations executed by type.")
    lines.append("# TYPE tenant_store_ops_total counter")
    for name in sorted(snapshot.operations):
        lines.append(f'tenant_store_ops_total{{op="{name}"}} {snapshot.operations[name]}')

    lines.append("# HELP tenant_store_errors_total Total errors raised, grouped by error code.")
    lines.append("# TYPE tenant_store_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            lines.append(f'tenant_store_errors_total{{code="{code}"}} {snapshot.errors[code]}')
    else:
        lines.append('tenant_store_errors_total{code="none"} 0')

    lines.append("# HELP tenant_store_cache_requests_total Cache lookups by tier and result.")
    lines.append("# TYPE tenant_store_cache_requests_total counter")
    for tier in sorted(snapshot.cache_hits):
        lines.append(f'tenant_store_cache_requests_total{{tier="{tier}",result="hit"}} {snapshot.cache_hits[tier]}')
    for tier in sorted(snapshot.cache_misses):
        lines.append(f'tenant_store_cache_requests_total{{tier="{tier}",result="miss"}} {snapshot.cache_misses[tier]}')

    lines.append("# HELP tenant_store_cache_backend_errors_total Cache backend failures degraded to misses.")
    lines.append("# TYPE tenant_store_cache_backend_errors_total counter")
    lines.append(f"tenant_store_cache_backend_errors_total {snapshot.cache_errors}")

    lines.append("# HELP tenant_store_backend_retries_total Row store calls retried after transient failures.")
    lines.append("# TYPE tenant_store_backend_retries_total counter")
    lines.append(f"tenant_store_backend_retries_total {snapshot.retries}")

    lines.append("# HELP tenant_store_tenants_current Current tenant row count.")
    lines.append("# TYPE tenant_store_tenants_current gauge")
    lines.append(f"tenant_store_tenants_current {tenants_current}")

    lines.append("# HELP tenant_store_uptime_seconds Runtime uptime in seconds.")
    lines.append("# TYPE tenant_store_uptime_seconds gauge")
    lines.append(f"tenant_store_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"

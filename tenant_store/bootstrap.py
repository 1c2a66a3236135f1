"""Runtime wiring: builds the store components from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from . import metrics
from .audit import AuditLogSink
from .backends.base import LockPrimitive, RowStoreBackend
from .backends.memory import MemoryLockProvider, MemoryRowStore
from .cache import CacheBackend, LocalCacheBackend, TieredCache
from .client import CircuitBreaker, RetryPolicy, RowStoreClient
from .config import Config, load_config
from .errors import FatalStoreError
from .eviction import CacheSweeper
from .index import IndexBuilder
from .locking import LockGuardedWriter
from .logging import configure_logging, get_logger, log_event
from .models import AUDIT_HEADER, TENANT_HEADER
from .principal import PrincipalProvider, auth_context_principal, utc_now
from .repository import TenantRepository

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class StoreRuntime:
    config: Config
    repository: TenantRepository
    cache: TieredCache
    index: IndexBuilder
    tenant_client: RowStoreClient
    audit_client: RowStoreClient
    audit: AuditLogSink
    writer: LockGuardedWriter
    registry: metrics.MetricsRegistry
    sweeper: CacheSweeper | None = None
    closed: bool = False

    def close(self) -> None:
        if self.closed:
            return
        if self.sweeper is not None:
            self.sweeper.stop()
        self.cache.clear()
        if metrics.get_registry_optional() is self.registry:
            metrics.install_registry(None)
        self.closed = True

    def prometheus(self) -> str:
        return metrics.format_prometheus(self.registry.snapshot(), tenants_current=self.repository.count_tenants())

    def __enter__(self) -> StoreRuntime:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


def _build_backend(config: Config, clock: Callable[[], datetime]) -> RowStoreBackend:
    if config.backend == "memory":
        return MemoryRowStore(clock=clock)
    from .backends.lance import LanceRowStore

    return LanceRowStore(config.storage_dir, clock=clock)


def _build_shared_tier(config: Config) -> tuple[CacheBackend, LockPrimitive | None]:
    if not config.redis_url:
        return LocalCacheBackend(maxsize=config.shared_cache_max_entries), None
    from .backends.redis_backend import RedisCacheBackend, RedisLockProvider, connect

    client = connect(config.redis_url)
    return RedisCacheBackend(client), RedisLockProvider(client)


def _ensure_tables(backend: RowStoreBackend, tables: Sequence[str]) -> None:
    create = getattr(backend, "create_table", None)
    if create is None:
        return
    for table in tables:
        create(table)


def open_runtime(
    config: Config,
    *,
    principal_provider: PrincipalProvider | None = None,
    clock: Callable[[], datetime] | None = None,
    backend: RowStoreBackend | None = None,
    lock_primitive: LockPrimitive | None = None,
    shared_backend: CacheBackend | None = None,
    sleep: Callable[[float], None] | None = None,
    start_sweeper: bool = True,
) -> StoreRuntime:
    """Wire every component, verify both table headers and return the runtime.

    Raises ``SchemaMismatchError`` when an existing table has the wrong header.
    """

    clock = clock or utc_now
    backend = backend or _build_backend(config, clock)
    if shared_backend is None:
        shared_backend, redis_lock = _build_shared_tier(config)
    else:
        redis_lock = None
    lock_primitive = lock_primitive or redis_lock or MemoryLockProvider()

    _ensure_tables(backend, (config.tenant_table, config.audit_table))

    policy = RetryPolicy(
        max_attempts=config.retry_max_attempts,
        initial_delay=config.retry_initial_delay.total_seconds(),
        max_delay=config.retry_max_delay.total_seconds(),
    )
    breaker = CircuitBreaker(
        failure_threshold=config.circuit_failure_threshold,
        open_seconds=config.circuit_open_duration.total_seconds(),
    )
    client_options = {
        "batch_limit": config.batch_limit,
        "retry_policy": policy,
        "breaker": breaker,
        "call_timeout": config.call_timeout,
    }
    if sleep is not None:
        client_options["sleep"] = sleep
    tenant_client = RowStoreClient(backend, table=config.tenant_table, header=TENANT_HEADER, **client_options)
    audit_client = RowStoreClient(backend, table=config.audit_table, header=AUDIT_HEADER, **client_options)
    tenant_client.verify_schema(initialise=True)
    audit_client.verify_schema(initialise=True)

    cache = TieredCache(
        shared_backend,
        LocalCacheBackend(maxsize=config.principal_cache_max_entries),
        principal_provider=principal_provider or auth_context_principal,
        shared_ttl=config.shared_cache_ttl,
        principal_ttl=config.principal_cache_ttl,
        max_value_bytes=config.cache_max_value_bytes,
    )
    cache.init()

    index = IndexBuilder(tenant_client, max_age=config.index_max_age, clock=clock)
    writer = LockGuardedWriter(lock_primitive, default_timeout=config.update_lock_timeout)
    audit = AuditLogSink(audit_client)
    repository = TenantRepository(
        tenant_client,
        index,
        cache,
        writer,
        audit,
        clock=clock,
        update_lock_timeout=config.update_lock_timeout,
        create_lock_timeout=config.create_lock_timeout,
        negative_cache_ttl=config.negative_cache_ttl,
    )

    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)

    sweeper: CacheSweeper | None = None
    if start_sweeper and config.cache_sweep_interval.total_seconds() > 0:
        sweeper = CacheSweeper(cache, interval=config.cache_sweep_interval)
        sweeper.start()

    log_event(
        LOGGER,
        "runtime.opened",
        backend=config.backend,
        tenant_table=config.tenant_table,
        audit_table=config.audit_table,
        shared_cache="redis" if config.redis_url else "local",
    )
    return StoreRuntime(
        config=config,
        repository=repository,
        cache=cache,
        index=index,
        tenant_client=tenant_client,
        audit_client=audit_client,
        audit=audit,
        writer=writer,
        registry=registry,
        sweeper=sweeper,
    )


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint: open the store, verify its tables and report their state."""

    config = load_config(argv)
    configure_logging(config.log_level)
    log_event(
        LOGGER,
        "config.loaded",
        backend=config.backend,
        storage_dir=str(config.storage_dir),
        redis=bool(config.redis_url),
    )

    try:
        runtime = open_runtime(config)
    except FatalStoreError as exc:
        log_event(
            LOGGER,
            "runtime.open_failed",
            level=logging.ERROR,
            exc_info=exc,
            code=exc.code,
            details=dict(exc.details or {}),
        )
        raise SystemExit(1) from exc

    with runtime:
        try:
            tenants = runtime.repository.list_tenants()
            duplicates = runtime.repository.duplicates()
        except FatalStoreError as exc:
            log_event(
                LOGGER,
                "tenant_store.read_failed",
                level=logging.ERROR,
                exc_info=exc,
                code=exc.code,
                details=dict(exc.details or {}),
            )
            raise SystemExit(1) from exc
        log_event(
            LOGGER,
            "tenant_store.status",
            tenants=len(tenants),
            active=sum(1 for record in tenants if record.active),
            published=sum(1 for record in tenants if record.config.is_published),
            duplicates=len(duplicates),
        )
        for duplicate in duplicates:
            log_event(
                LOGGER,
                "index.duplicates",
                level=logging.WARNING,
                field=duplicate.field,
                key=duplicate.key,
                kept_offset=duplicate.kept_offset,
                duplicate_offset=duplicate.duplicate_offset,
            )


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()

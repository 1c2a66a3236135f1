from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from tenant_store.backends import BackendError, MemoryLockProvider, MemoryRowStore, RowRange
from tenant_store.bootstrap import StoreRuntime, open_runtime
from tenant_store.cache import MISS, CacheTier, LocalCacheBackend
from tenant_store.config import load_config
from tenant_store.errors import (
    DuplicateKeyError,
    LockReentryError,
    LockTimeoutError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from tenant_store.locking import write_lock_key
from tenant_store.models import DeleteAck, TenantRecord
from tenant_store.principal import static_principal
from tenant_store.repository import record_key

OWNER = "owner@example.com"
ADMIN = "admin@example.com"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class CountingRowStore(MemoryRowStore):
    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock=clock)
        self.reads = 0
        self.failing_tables: set[str] = set()

    def read_range(self, table, rng, *, timeout):
        self.reads += 1
        return super().read_range(table, rng, timeout=timeout)

    def batch_read(self, table, ranges, *, timeout):
        self.reads += 1
        return super().batch_read(table, ranges, timeout=timeout)

    def append_row(self, table, row, *, timeout):
        if table in self.failing_tables:
            raise BackendError("permission denied", status_code=403)
        return super().append_row(table, row, timeout=timeout)


def _open(
    clock: FakeClock,
    *extra_args: str,
    backend: CountingRowStore | None = None,
    lock: MemoryLockProvider | None = None,
    shared: LocalCacheBackend | None = None,
    principal: str | None = OWNER,
) -> StoreRuntime:
    config = load_config(argv=["--backend", "memory", "--retry-max-attempts", "1", *extra_args], environ={})
    return open_runtime(
        config,
        clock=clock,
        backend=backend if backend is not None else CountingRowStore(clock),
        lock_primitive=lock,
        shared_backend=shared,
        principal_provider=static_principal(principal),
        sleep=lambda _seconds: None,
        start_sweeper=False,
    )


def _bump(config) -> None:
    config.extras["counter"] = int(config.extras.get("counter", 0)) + 1


class GatedCacheBackend(LocalCacheBackend):
    """Blocks the first write of ``key`` made from the thread named ``thread_name``."""

    def __init__(self) -> None:
        super().__init__(maxsize=100)
        self.key: str | None = None
        self.thread_name: str | None = None
        self.paused = threading.Event()
        self.release = threading.Event()

    def gate(self, key: str, *, thread_name: str) -> None:
        self.key = key
        self.thread_name = thread_name

    def set(self, key, value, ttl):
        if (
            key == self.key
            and threading.current_thread().name == self.thread_name
            and not self.paused.is_set()
        ):
            self.paused.set()
            self.release.wait(timeout=5.0)
        super().set(key, value, ttl)


def _stored_record(runtime: StoreRuntime, backend: CountingRowStore, row_index: int = 1) -> TenantRecord:
    rows = backend.read_range(runtime.config.tenant_table, RowRange.single(row_index), timeout=5.0)
    return TenantRecord.from_row(rows[0])


def test_create_update_delete_scenario() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        repo = runtime.repository

        created = repo.create_tenant("Owner@Example.com", {"setupStatus": "pending"})
        assert created.principal_email == OWNER
        assert created.active is True
        assert created.config.etag

        clock.advance(seconds=1)
        updated = repo.update_config(created.id, lambda config: setattr(config, "display_mode", "named"))

        assert updated.config.display_mode == "named"
        assert updated.last_modified > created.last_modified
        assert updated.config.etag != created.config.etag
        assert repo.find_by_id(created.id).config.display_mode == "named"

        ack = repo.delete_tenant(created.id, ADMIN, "cleanup")

        assert ack == DeleteAck(target_id=created.id, audit_recorded=True)
        assert repo.find_by_id(created.id) is None
        assert repo.find_by_principal(OWNER) is None
        entries = runtime.audit.entries()
        assert len(entries) == 1
        assert entries[0].actor_principal == ADMIN
        assert entries[0].target_record_id == created.id
        assert entries[0].target_principal_email == OWNER
        assert entries[0].reason == "cleanup"

        operations = runtime.registry.snapshot().operations
        assert operations["create"] == 1
        assert operations["delete"] == 1


def test_repeated_reads_do_not_reach_backend() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    with _open(clock, backend=backend) as runtime:
        created = runtime.repository.create_tenant(OWNER)
        runtime.cache.clear()

        first = runtime.repository.find_by_id(created.id)
        reads_after_first = backend.reads
        second = runtime.repository.find_by_id(created.id)
        by_principal = runtime.repository.find_by_principal(OWNER)

        assert first == second == by_principal == created
        assert backend.reads == reads_after_first


def test_principal_lookup_is_case_insensitive() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        created = runtime.repository.create_tenant(OWNER)
        runtime.cache.clear()

        assert runtime.repository.find_by_principal("  OWNER@example.COM") == created
        assert runtime.repository.find_by_principal("nobody@example.com") is None
        assert runtime.repository.find_by_id("missing-id") is None


def test_owner_copy_is_kept_in_principal_tier() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        owned = runtime.repository.create_tenant(OWNER)
        other = runtime.repository.create_tenant("someone@example.com")

        assert runtime.cache.get(CacheTier.PRINCIPAL, record_key(owned.id)) is not MISS
        assert runtime.cache.get(CacheTier.PRINCIPAL, record_key(other.id)) is MISS
        assert runtime.cache.get(CacheTier.SHARED, record_key(other.id)) is not MISS


def test_duplicate_principal_is_rejected() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        runtime.repository.create_tenant(OWNER)

        with pytest.raises(DuplicateKeyError):
            runtime.repository.create_tenant(" Owner@EXAMPLE.com ")

        assert runtime.repository.count_tenants() == 1
        assert runtime.registry.snapshot().errors["DUPLICATE_KEY"] == 1


def test_invalid_input_is_rejected_before_writing() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        with pytest.raises(ValidationError):
            runtime.repository.create_tenant("not-an-email")
        with pytest.raises(ValidationError):
            runtime.repository.create_tenant(OWNER, {"isPublished": "yes"})

        assert runtime.repository.count_tenants() == 0


def test_delete_missing_tenant_raises_not_found() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        with pytest.raises(NotFoundError):
            runtime.repository.delete_tenant("missing-id", ADMIN, "cleanup")
        created = runtime.repository.create_tenant(OWNER)
        with pytest.raises(ValidationError):
            runtime.repository.delete_tenant(created.id, "  ", "cleanup")
        assert runtime.audit.entries() == []


def test_delete_survives_audit_failure() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    with _open(clock, backend=backend) as runtime:
        created = runtime.repository.create_tenant(OWNER)
        backend.failing_tables.add(runtime.config.audit_table)

        ack = runtime.repository.delete_tenant(created.id, ADMIN, "cleanup")

        assert ack.audit_recorded is False
        assert runtime.repository.find_by_id(created.id) is None
        assert runtime.audit.entries() == []


def test_shared_tier_keeps_runtimes_coherent() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    lock = MemoryLockProvider()
    shared = LocalCacheBackend(maxsize=100)
    with _open(clock, backend=backend, lock=lock, shared=shared) as first:
        with _open(clock, backend=backend, lock=lock, shared=shared, principal=ADMIN) as second:
            created = first.repository.create_tenant(OWNER)
            assert second.repository.find_by_id(created.id) == created

            clock.advance(seconds=1)
            first.repository.update_config(created.id, lambda config: setattr(config, "is_published", True))

            assert second.repository.find_by_id(created.id).config.is_published is True


def test_writes_follow_rows_that_moved() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    lock = MemoryLockProvider()
    with _open(clock, backend=backend, lock=lock) as first:
        with _open(clock, backend=backend, lock=lock, principal=ADMIN) as second:
            t1 = first.repository.create_tenant("one@example.com")
            first.repository.create_tenant("two@example.com")
            t3 = first.repository.create_tenant("three@example.com")
            assert second.repository.find_by_id(t3.id) == t3

            first.repository.delete_tenant(t1.id, ADMIN, "moved rows")
            second.repository.update_config(t3.id, _bump)

            rows = backend.read_range(first.config.tenant_table, RowRange(1), timeout=1)
            assert [row[0] for row in rows][1] == t3.id
            assert json.loads(rows[1][3])["counter"] == 1
            assert [row[1] for row in rows] == ["two@example.com", "three@example.com"]


def test_concurrent_updates_are_not_lost() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    with _open(clock, backend=backend) as runtime:
        created = runtime.repository.create_tenant(OWNER)
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                runtime.repository.update_config(created.id, _bump)
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        stored = _stored_record(runtime, backend)
        assert stored.config.extras["counter"] == 8
        cached = runtime.cache.get(CacheTier.SHARED, record_key(created.id))
        assert TenantRecord.from_dict(cached) == stored
        assert runtime.repository.find_by_id(created.id) == stored


def test_paused_writer_cannot_cache_over_a_later_update() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    shared = GatedCacheBackend()
    with _open(clock, backend=backend, shared=shared) as runtime:
        repo = runtime.repository
        created = repo.create_tenant(OWNER)
        shared.gate(record_key(created.id), thread_name="writer-a")
        errors: list[BaseException] = []

        def set_flag(flag: str):
            def run() -> None:
                try:
                    repo.update_config(created.id, lambda config: config.extras.__setitem__(flag, True))
                except BaseException as exc:
                    errors.append(exc)

            return run

        writer_a = threading.Thread(target=set_flag("f"), name="writer-a")
        writer_a.start()
        assert shared.paused.wait(timeout=5.0)

        writer_b = threading.Thread(target=set_flag("g"), name="writer-b")
        writer_b.start()
        writer_b.join(timeout=0.2)
        assert writer_b.is_alive()

        shared.release.set()
        writer_a.join()
        writer_b.join()

        assert errors == []
        stored = _stored_record(runtime, backend)
        assert stored.config.extras["f"] is True
        assert stored.config.extras["g"] is True
        cached = runtime.cache.get(CacheTier.SHARED, record_key(created.id))
        assert TenantRecord.from_dict(cached) == stored
        assert repo.find_by_id(created.id) == stored


def test_population_skips_tiers_holding_a_newer_version() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    with _open(clock, backend=backend) as runtime:
        repo = runtime.repository
        created = repo.create_tenant(OWNER)
        updated = repo.update_config(created.id, _bump)

        runtime.cache.set(CacheTier.SHARED, record_key(created.id), updated.to_dict())
        runtime.cache.set(CacheTier.PRINCIPAL, record_key(created.id), updated.to_dict())
        repo._populate(created)

        for tier in (CacheTier.SHARED, CacheTier.PRINCIPAL):
            cached = runtime.cache.get(tier, record_key(created.id))
            assert TenantRecord.from_dict(cached) == updated


def test_spreadsheet_lookup_with_negative_caching() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        repo = runtime.repository
        assert repo.find_by_spreadsheet_id("sheet-9") is None
        assert runtime.cache.get(CacheTier.SHARED, "sheet-index:sheet-9") is None

        created = repo.create_tenant(OWNER, {"spreadsheetId": "sheet-9"})
        assert repo.find_by_spreadsheet_id("sheet-9") == created

        repo.update_config(created.id, lambda config: setattr(config, "spreadsheet_id", "sheet-10"))
        assert repo.find_by_spreadsheet_id("sheet-9") is None
        assert repo.find_by_spreadsheet_id("sheet-10").id == created.id

        repo.set_active(created.id, False)
        assert repo.find_by_spreadsheet_id("sheet-10") is None
        assert repo.find_by_spreadsheet_id("") is None


def test_list_filters() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        repo = runtime.repository
        published = repo.create_tenant("a@example.com", {"isPublished": True})
        inactive = repo.create_tenant("b@example.com")
        repo.create_tenant("c@example.com")
        repo.set_active(inactive.id, False)

        assert len(repo.list_tenants()) == 3
        assert {record.principal_email for record in repo.list_active_tenants()} == {"a@example.com", "c@example.com"}
        assert [record.id for record in repo.list_tenants(published_only=True)] == [published.id]
        assert [r.principal_email for r in repo.list_tenants(predicate=lambda r: r.principal_email.startswith("c"))] == [
            "c@example.com"
        ]
        assert repo.find_by_id(inactive.id) is None
        assert repo.find_by_id(inactive.id, include_inactive=True).active is False


def test_stale_etag_is_rejected() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        created = runtime.repository.create_tenant(OWNER)

        with pytest.raises(StaleWriteError):
            runtime.repository.update_config(created.id, _bump, expected_etag="not-the-etag")

        updated = runtime.repository.update_config(created.id, _bump, expected_etag=created.config.etag)
        assert updated.config.extras["counter"] == 1


def test_update_times_out_when_lock_is_held() -> None:
    clock = FakeClock()
    lock = MemoryLockProvider()
    with _open(clock, "--update-lock-timeout", "50ms", lock=lock) as runtime:
        created = runtime.repository.create_tenant(OWNER)
        key = write_lock_key(runtime.config.tenant_table)
        assert lock.acquire(key, 0)
        try:
            with pytest.raises(LockTimeoutError):
                runtime.repository.update_config(created.id, _bump)
        finally:
            lock.release(key)

        assert runtime.repository.update_config(created.id, _bump).config.extras["counter"] == 1


def test_mutator_cannot_reenter_write_operations() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        repo = runtime.repository
        created = repo.create_tenant(OWNER)

        def reentrant(config) -> None:
            repo.set_active(created.id, False)

        with pytest.raises(LockReentryError):
            repo.update_config(created.id, reentrant)

        assert repo.find_by_id(created.id).active is True
        assert repo.update_config(created.id, _bump).config.extras["counter"] == 1


def test_failed_validation_leaves_row_unchanged() -> None:
    clock = FakeClock()
    with _open(clock) as runtime:
        created = runtime.repository.create_tenant(OWNER)

        with pytest.raises(ValidationError):
            runtime.repository.update_config(created.id, lambda config: setattr(config, "is_published", "yes"))

        runtime.cache.clear()
        assert runtime.repository.find_by_id(created.id) == created


def test_corrupt_row_is_hidden_but_deletable() -> None:
    clock = FakeClock()
    backend = CountingRowStore(clock)
    with _open(clock, backend=backend) as runtime:
        table = runtime.config.tenant_table
        backend.append_row(table, ["broken", "broken@example.com", True, "{not json", ""], timeout=1)
        runtime.index.invalidate()

        assert runtime.repository.find_by_id("broken") is None
        with pytest.raises(ValidationError):
            runtime.repository.update_config("broken", _bump)

        ack = runtime.repository.delete_tenant("broken", ADMIN, "corrupt row")
        assert ack.audit_recorded is True
        assert backend.read_range(table, RowRange(1), timeout=1) == []

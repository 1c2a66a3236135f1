"""Tenant record repository: cached lookups and lock-guarded writes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from . import metrics
from .audit import AuditLogSink
from .backends.base import Row, RowRange
from .cache import LOOKUP_ORDER, MISS, CacheTier, TieredCache
from .client import RowStoreClient
from .errors import DuplicateKeyError, NotFoundError, StaleWriteError, TenantStoreError, ValidationError
from .index import EMAIL_FIELD, ID_FIELD, DuplicateKey, IndexBuilder, normalize_key
from .locking import LockGuardedWriter, write_lock_key
from .logging import get_logger, log_event
from .models import TENANT_HEADER, AuditEntry, DeleteAck, TenantConfig, TenantRecord, format_timestamp, parse_timestamp
from .principal import utc_now
from .validation import merge_initial_config, normalize_email, prepare_config_for_write

logger = get_logger(__name__)

ConfigMutator = Callable[[TenantConfig], "TenantConfig | None"]

_MIN_TICK = timedelta(microseconds=1)


def record_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:record"


def tenant_prefix(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:"


def principal_index_key(email: str) -> str:
    return f"principal-index:{email}"


def sheet_index_key(spreadsheet_id: str) -> str:
    return f"sheet-index:{spreadsheet_id}"


def _instrumented(operation: str):
    def decorator(method):
        @wraps(method)
        def wrapper(self, *args, **kwargs):
            metrics.record_operation(operation)
            try:
                return method(self, *args, **kwargs)
            except TenantStoreError as exc:
                metrics.record_error(exc.code)
                raise

        return wrapper

    return decorator


@dataclass(slots=True)
class _Located:
    offset: int
    row: Row
    record: TenantRecord | None


class TenantRepository:
    """Facade over the row store, index, cache tiers, write lock and audit log.

    Reads consult the execution, per-principal and shared tiers before the
    index and the remote row. Mutations run under the table-wide write lock,
    read the row fresh, invalidate every cached copy before writing and
    repopulate the tiers once the write is confirmed, before the lock is
    released. A tier already holding a newer version is left untouched.
    """

    def __init__(
        self,
        client: RowStoreClient,
        index: IndexBuilder,
        cache: TieredCache,
        writer: LockGuardedWriter,
        audit: AuditLogSink,
        *,
        clock: Callable[[], datetime] = utc_now,
        update_lock_timeout: timedelta = timedelta(seconds=5),
        create_lock_timeout: timedelta = timedelta(seconds=10),
        negative_cache_ttl: timedelta = timedelta(seconds=60),
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._client = client
        self._index = index
        self._cache = cache
        self._writer = writer
        self._audit = audit
        self._clock = clock
        self._update_timeout = update_lock_timeout
        self._create_timeout = create_lock_timeout
        self._negative_ttl = negative_cache_ttl
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._lock_key = write_lock_key(client.table)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @_instrumented("find")
    def find_by_id(self, tenant_id: str, *, include_inactive: bool = False) -> TenantRecord | None:
        key = normalize_key(ID_FIELD, tenant_id)
        if not key:
            return None
        with self._cache.execution():
            record = self._find_record(key)
        return self._visible(record, include_inactive)

    @_instrumented("find")
    def find_by_principal(self, email: str, *, include_inactive: bool = False) -> TenantRecord | None:
        key = normalize_key(EMAIL_FIELD, email)
        if not key:
            return None
        with self._cache.execution():
            record = None
            tenant_id = self._cached(principal_index_key(key))
            if isinstance(tenant_id, str):
                record = self._find_record(tenant_id)
                if record is None or record.principal_email != key:
                    self._cache.remove_everywhere(principal_index_key(key))
                    record = None
            if record is None:
                located = self._locate(EMAIL_FIELD, key)
                record = located.record if located else None
                if record is not None:
                    self._populate(record)
        return self._visible(record, include_inactive)

    @_instrumented("find")
    def find_by_spreadsheet_id(self, spreadsheet_id: str) -> TenantRecord | None:
        """Active tenant whose configuration points at ``spreadsheet_id``.

        Found and not-found answers are both cached in the shared tier; a miss
        is kept only for the negative cache TTL.
        """

        sheet = str(spreadsheet_id or "").strip()
        if not sheet:
            return None
        pointer_key = sheet_index_key(sheet)
        with self._cache.execution():
            cached = self._cached(pointer_key)
            if cached is None:
                return None
            if isinstance(cached, str):
                record = self._visible(self._find_record(cached), False)
                if record is not None and record.config.spreadsheet_id == sheet:
                    return record
                self._cache.remove_everywhere(pointer_key)

            for record in self._scan(active_only=True):
                if record.config.spreadsheet_id == sheet:
                    self._cache.set(CacheTier.SHARED, pointer_key, record.id)
                    self._cache.set(CacheTier.EXECUTION, pointer_key, record.id)
                    self._populate(record)
                    return record
            self._cache.set(CacheTier.SHARED, pointer_key, None, self._negative_ttl)
            return None

    @_instrumented("list")
    def list_tenants(
        self,
        *,
        active_only: bool = False,
        published_only: bool = False,
        predicate: Callable[[TenantRecord], bool] | None = None,
    ) -> list[TenantRecord]:
        """One full-table read filtered client-side; nothing is cached per key."""

        result: list[TenantRecord] = []
        for record in self._scan(active_only=active_only):
            if published_only and not record.config.is_published:
                continue
            if predicate is not None and not predicate(record):
                continue
            result.append(record)
        return result

    def list_active_tenants(self) -> list[TenantRecord]:
        return self.list_tenants(active_only=True)

    def duplicates(self) -> tuple[DuplicateKey, ...]:
        return self._index.duplicates()

    def count_tenants(self) -> int:
        return self._index.row_count()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @_instrumented("create")
    def create_tenant(self, email: str, initial_config: Mapping[str, Any] | None = None) -> TenantRecord:
        normalized = normalize_email(email)
        config = merge_initial_config(initial_config)
        prepared = prepare_config_for_write(config, now=self._clock())

        def _create() -> TenantRecord:
            self._index.invalidate()
            if self._index.get_index(EMAIL_FIELD, require_fresh=True).get(normalized) is not None:
                raise DuplicateKeyError(
                    "A tenant is already registered for this principal",
                    details={"principalEmail": normalized},
                )
            tenant_id = normalize_key(ID_FIELD, self._id_factory())
            if not tenant_id or self._index.get_index(ID_FIELD, require_fresh=True).get(tenant_id) is not None:
                raise DuplicateKeyError("A tenant with this id already exists", details={"id": tenant_id})
            record = TenantRecord(
                id=tenant_id,
                principal_email=normalized,
                active=True,
                config=prepared,
                last_modified=self._next_timestamp(None),
            )
            self._invalidate(record.id, record.principal_email, [prepared.spreadsheet_id])
            self._client.append_row(record.to_row())
            self._index.invalidate()
            self._populate(record)
            return record

        with self._cache.execution():
            record = self._writer.with_lock(self._lock_key, _create, timeout=self._create_timeout)
        log_event(logger, "tenant.created", tenant_id=record.id, principal=record.principal_email)
        return record

    @_instrumented("update")
    def update_config(
        self,
        tenant_id: str,
        mutator: ConfigMutator,
        *,
        expected_etag: str | None = None,
    ) -> TenantRecord:
        """Apply ``mutator`` to a fresh copy of the stored configuration.

        The mutator may edit the copy in place or return a replacement. It runs
        while the write lock is held and must not call back into the
        repository's write operations.
        """

        key = normalize_key(ID_FIELD, tenant_id)

        def _update() -> TenantRecord:
            located = self._locate_for_write(key)
            current = self._require_record(located)
            if expected_etag is not None:
                stored = current.config.etag or format_timestamp(current.last_modified)
                if expected_etag != stored:
                    raise StaleWriteError(
                        "Configuration changed since it was read",
                        details={"id": key, "expected": expected_etag, "stored": stored},
                    )
            draft = current.config.copy()
            returned = mutator(draft)
            candidate = returned if returned is not None else draft
            prepared = prepare_config_for_write(candidate, now=self._clock())
            updated = current.with_changes(config=prepared, last_modified=self._next_timestamp(current.last_modified))
            self._invalidate(key, current.principal_email, [current.config.spreadsheet_id, prepared.spreadsheet_id])
            self._client.write_row(located.offset, updated.to_row())
            self._populate(updated)
            return updated

        with self._cache.execution():
            record = self._writer.with_lock(self._lock_key, _update, timeout=self._update_timeout)
        log_event(logger, "tenant.updated", tenant_id=record.id, last_modified=format_timestamp(record.last_modified))
        return record

    @_instrumented("update")
    def set_active(self, tenant_id: str, active: bool) -> TenantRecord:
        key = normalize_key(ID_FIELD, tenant_id)

        def _toggle() -> TenantRecord:
            located = self._locate_for_write(key)
            current = self._require_record(located)
            updated = current.with_changes(active=bool(active), last_modified=self._next_timestamp(current.last_modified))
            self._invalidate(key, current.principal_email, [current.config.spreadsheet_id])
            self._client.write_row(located.offset, updated.to_row())
            self._populate(updated)
            return updated

        with self._cache.execution():
            record = self._writer.with_lock(self._lock_key, _toggle, timeout=self._update_timeout)
        log_event(logger, "tenant.updated", tenant_id=record.id, active=record.active)
        return record

    @_instrumented("delete")
    def delete_tenant(self, tenant_id: str, actor: str, reason: str) -> DeleteAck:
        """Remove the tenant row and append an audit entry.

        A failed audit append does not undo the deletion; the returned ack
        reports ``audit_recorded=False`` instead.
        """

        key = normalize_key(ID_FIELD, tenant_id)
        actor_value = str(actor or "").strip()
        if not actor_value:
            raise ValidationError("Deletion requires an actor principal")

        def _delete() -> DeleteAck:
            located = self._locate_for_write(key)
            if located is None:
                raise NotFoundError("Tenant not found", details={"id": key})
            email = normalize_key(EMAIL_FIELD, located.row[1] if len(located.row) > 1 else "")
            sheets = [located.record.config.spreadsheet_id] if located.record is not None else []
            self._invalidate(key, email, sheets)
            self._client.delete_row(located.offset)
            self._index.invalidate()
            self._invalidate(key, email, sheets)

            entry = AuditEntry(
                timestamp=self._clock(),
                actor_principal=actor_value,
                target_record_id=key,
                target_principal_email=email,
                reason=str(reason or ""),
            )
            try:
                self._audit.record(entry)
            except TenantStoreError as exc:
                metrics.record_error(exc.code)
                log_event(
                    logger,
                    "tenant.delete.audit-incomplete",
                    level=logging.ERROR,
                    tenant_id=key,
                    actor=actor_value,
                    code=exc.code,
                    error=exc.message,
                )
                return DeleteAck(target_id=key, audit_recorded=False)
            return DeleteAck(target_id=key, audit_recorded=True)

        ack = self._writer.with_lock(self._lock_key, _delete, timeout=self._update_timeout)
        log_event(logger, "tenant.deleted", tenant_id=key, actor=actor_value, audit_recorded=ack.audit_recorded)
        return ack

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _find_record(self, tenant_id: str) -> TenantRecord | None:
        cached = self._cached(record_key(tenant_id))
        if isinstance(cached, Mapping):
            try:
                return TenantRecord.from_dict(cached)
            except (KeyError, TypeError, ValueError):
                log_event(logger, "cache.value.corrupt", level=logging.WARNING, key=record_key(tenant_id))
                self._cache.remove_everywhere(record_key(tenant_id))
        located = self._locate(ID_FIELD, tenant_id)
        if located is None or located.record is None:
            return None
        self._populate(located.record)
        return located.record

    def _cached(self, key: str) -> Any:
        """First hit across the tiers in lookup order, promoted to the execution tier."""

        for tier in LOOKUP_ORDER:
            value = self._cache.get(tier, key)
            if value is MISS:
                continue
            if tier is not CacheTier.EXECUTION:
                self._cache.set(CacheTier.EXECUTION, key, value)
            return value
        return MISS

    def _populate(self, record: TenantRecord) -> None:
        """Cache ``record`` in every tier unless a tier already holds a newer version."""

        payload = record.to_dict()
        key = record_key(record.id)
        pointer = principal_index_key(record.principal_email)
        self._cache.set(CacheTier.EXECUTION, key, payload)
        self._cache.set(CacheTier.EXECUTION, pointer, record.id)
        tiers = [CacheTier.SHARED]
        if record.principal_email == self._cache.current_principal():
            tiers.append(CacheTier.PRINCIPAL)
        for tier in tiers:
            if self._holds_newer(tier, key, record):
                continue
            self._cache.set(tier, key, payload)
            self._cache.set(tier, pointer, record.id)

    def _holds_newer(self, tier: CacheTier, key: str, record: TenantRecord) -> bool:
        cached = self._cache.get(tier, key)
        if not isinstance(cached, Mapping):
            return False
        try:
            cached_modified = parse_timestamp(cached["lastModified"])
        except (KeyError, TypeError, ValueError):
            return False
        return cached_modified > record.last_modified

    def _invalidate(self, tenant_id: str, email: str, spreadsheet_ids: Iterable[str | None]) -> None:
        self._cache.invalidate_everywhere(tenant_prefix(tenant_id))
        if email:
            self._cache.remove_everywhere(principal_index_key(email))
        for sheet in spreadsheet_ids:
            if sheet:
                self._cache.remove_everywhere(sheet_index_key(sheet))

    def _locate(self, field_name: str, key: str, *, require_fresh: bool = False) -> _Located | None:
        """Find the row for ``key`` and confirm it still holds that key.

        A row that moved since the index was built triggers one rebuild.
        """

        column = 0 if field_name == ID_FIELD else 1
        for _ in range(2):
            offset = self._index.lookup(field_name, key, require_fresh=require_fresh)
            if offset is None:
                return None
            rows = self._client.read_range(RowRange.single(offset))
            row = list(rows[0]) if rows else []
            if len(row) > column and normalize_key(field_name, row[column]) == key:
                return _Located(offset=offset, row=row, record=self._decode(row))
            log_event(logger, "index.offset.moved", field=field_name, key=key, offset=offset)
            self._index.invalidate()
        return None

    def _locate_for_write(self, tenant_id: str) -> _Located | None:
        return self._locate(ID_FIELD, tenant_id, require_fresh=True)

    @staticmethod
    def _require_record(located: _Located | None) -> TenantRecord:
        if located is None:
            raise NotFoundError("Tenant not found")
        if located.record is None:
            raise ValidationError("Stored tenant row is corrupt", details={"offset": located.offset})
        return located.record

    def _scan(self, *, active_only: bool) -> list[TenantRecord]:
        records: list[TenantRecord] = []
        for row in self._client.read_data_rows():
            if not row or not any(row):
                continue
            record = self._decode(row)
            if record is None:
                continue
            if active_only and not record.active:
                continue
            records.append(record)
        return records

    def _decode(self, row: Row) -> TenantRecord | None:
        try:
            return TenantRecord.from_row(row)
        except ValueError as exc:
            log_event(
                logger,
                "tenant.row.corrupt",
                level=logging.WARNING,
                tenant_id=row[0] if row else None,
                columns=list(TENANT_HEADER),
                error=str(exc),
            )
            return None

    def _next_timestamp(self, previous: datetime | None) -> datetime:
        now = self._clock()
        if previous is not None and now <= previous:
            return previous + _MIN_TICK
        return now

    @staticmethod
    def _visible(record: TenantRecord | None, include_inactive: bool) -> TenantRecord | None:
        if record is None:
            return None
        if not record.active and not include_inactive:
            return None
        return record

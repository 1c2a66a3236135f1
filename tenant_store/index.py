"""Lookup index over the tenant table: key to absolute row index."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Callable, Mapping

from .client import RowStoreClient
from .errors import TenantStoreError
from .logging import get_logger, log_event
from .principal import utc_now

logger = get_logger(__name__)

ID_FIELD = "id"
EMAIL_FIELD = "principalEmail"
INDEX_FIELDS: tuple[str, ...] = (ID_FIELD, EMAIL_FIELD)

_COLUMN_POSITIONS = {ID_FIELD: 0, EMAIL_FIELD: 1}


def normalize_key(field_name: str, key: object) -> str:
    text = str(key or "").strip()
    if field_name == EMAIL_FIELD:
        return text.lower()
    return text


@dataclass(frozen=True, slots=True)
class DuplicateKey:
    field: str
    key: str
    kept_offset: int
    duplicate_offset: int


@dataclass(frozen=True, slots=True)
class IndexSnapshot:
    """Key to row index mapping for one field, as of ``built_at``."""

    field: str
    entries: Mapping[str, int]
    duplicates: tuple[DuplicateKey, ...]
    built_at: datetime
    possibly_stale: bool = False

    def get(self, key: object) -> int | None:
        return self.entries.get(normalize_key(self.field, key))

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(slots=True)
class _Build:
    entries: dict[str, dict[str, int]]
    duplicates: list[DuplicateKey]
    built_at: datetime
    source_modified_at: datetime | None
    row_count: int
    possibly_stale: bool = False


class IndexBuilder:
    """Builds the index with one full-table read and serves lookups from it."""

    def __init__(
        self,
        client: RowStoreClient,
        *,
        max_age: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._max_age = max_age
        self._clock = clock
        self._lock = RLock()
        self._build: _Build | None = None
        self._invalidated = False

    def get_index(self, key_field: str = ID_FIELD, *, require_fresh: bool = False) -> IndexSnapshot:
        build = self._current(require_fresh=require_fresh)
        return self._view(build, key_field)

    def lookup(self, key_field: str, key: object, *, require_fresh: bool = False) -> int | None:
        """Row index for ``key``; on a miss, rebuilds once if the table changed since the build."""

        build = self._current(require_fresh=require_fresh)
        normalized = normalize_key(key_field, key)
        offset = self._view(build, key_field).entries.get(normalized)
        if offset is not None or build.possibly_stale:
            return offset

        modified = self._client.modified_at()
        if modified is None or (build.source_modified_at is not None and modified <= build.source_modified_at):
            return None
        with self._lock:
            if self._build is build:
                build = self._rebuild(require_fresh=require_fresh)
            else:
                build = self._current(require_fresh=require_fresh)
        return self._view(build, key_field).entries.get(normalized)

    def invalidate(self) -> None:
        with self._lock:
            self._invalidated = True

    def duplicates(self) -> tuple[DuplicateKey, ...]:
        return tuple(self._current().duplicates)

    def row_count(self) -> int:
        return self._current().row_count

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current(self, *, require_fresh: bool = False) -> _Build:
        with self._lock:
            build = self._build
            if build is None or self._is_stale():
                build = self._rebuild(require_fresh=require_fresh)
            return build

    def _is_stale(self) -> bool:
        if self._build is None or self._invalidated or self._build.possibly_stale:
            return True
        return self._clock() - self._build.built_at >= self._max_age

    def _rebuild(self, *, require_fresh: bool) -> _Build:
        """Replace the build from a full read; on failure keep the previous one flagged stale."""

        previous = self._build
        try:
            modified = self._client.modified_at()
            rows = self._client.read_data_rows()
        except TenantStoreError as exc:
            if previous is None or require_fresh:
                raise
            log_event(
                logger,
                "index.rebuild_failed",
                level=logging.WARNING,
                table=self._client.table,
                code=exc.code,
                error=exc.message,
            )
            previous.possibly_stale = True
            return previous

        entries: dict[str, dict[str, int]] = {name: {} for name in INDEX_FIELDS}
        duplicates: list[DuplicateKey] = []
        for position, row in enumerate(rows):
            row_index = position + 1
            for name in INDEX_FIELDS:
                column = _COLUMN_POSITIONS[name]
                key = normalize_key(name, row[column] if len(row) > column else "")
                if not key:
                    continue
                kept = entries[name].get(key)
                if kept is None:
                    entries[name][key] = row_index
                else:
                    duplicates.append(DuplicateKey(name, key, kept, row_index))

        build = _Build(
            entries=entries,
            duplicates=duplicates,
            built_at=self._clock(),
            source_modified_at=modified,
            row_count=len(rows),
        )
        self._build = build
        self._invalidated = False
        log_event(logger, "index.rebuilt", level=logging.DEBUG, table=self._client.table, rows=len(rows))
        if duplicates:
            log_event(
                logger,
                "index.duplicates",
                level=logging.WARNING,
                table=self._client.table,
                duplicates=[f"{item.field}={item.key}@{item.duplicate_offset}" for item in duplicates],
            )
        return build

    @staticmethod
    def _view(build: _Build, key_field: str) -> IndexSnapshot:
        if key_field not in INDEX_FIELDS:
            raise ValueError(f"Unknown index field {key_field!r}")
        return IndexSnapshot(
            field=key_field,
            entries=dict(build.entries[key_field]),
            duplicates=tuple(item for item in build.duplicates if item.field == key_field),
            built_at=build.built_at,
            possibly_stale=build.possibly_stale,
        )

"""LanceDB-backed row store that behaves like a spreadsheet tab per table."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Sequence

import lancedb
import pyarrow as pa

from ..logging import get_logger, log_event
from .base import BackendError, Row, RowRange, RowUpdate

logger = get_logger(__name__)

_META_TABLE_NAME = "_table_meta"

_ROWS_SCHEMA = pa.schema(
    [
        pa.field("row_index", pa.int64()),
        pa.field("values_json", pa.large_string()),
    ]
)

_META_SCHEMA = pa.schema(
    [
        pa.field("table_name", pa.string()),
        pa.field("modified_at", pa.timestamp("us", tz="UTC")),
    ]
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return None


def _quote_literal(value: str) -> str:
    escaped = value.replace("'", "\\'")
    return f"'{escaped}'"


def _encode_row(values: Sequence[Any]) -> str:
    try:
        return json.dumps(list(values), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise BackendError("Row values are not serializable", status_code=400) from exc


def synchronized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            try:
                return method(self, *args, **kwargs)
            except (BackendError, OSError):
                raise
            except Exception as exc:
                raise BackendError(f"LanceDB operation failed: {exc}", status_code=500) from exc

    return wrapper


class LanceRowStore:
    """Durable row store: one LanceDB table per logical table plus a metadata table."""

    def __init__(self, storage_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._root = Path(storage_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._clock = clock or _now
        self._lock = RLock()
        self._tables: dict[str, Any] = {}

        try:
            self._db = lancedb.connect(str(self._root))
        except Exception as exc:  # pragma: no cover - environment specific
            raise BackendError(f"Unable to open LanceDB database at {self._root}", status_code=500) from exc

        self._meta = self._ensure_meta_table()

    # ------------------------------------------------------------------
    # Table management
    # ------------------------------------------------------------------

    @synchronized
    def create_table(self, table: str) -> None:
        if table in self._tables:
            return
        if table in set(self._db.table_names()):
            self._tables[table] = self._open_rows_table(table)
            return
        self._tables[table] = self._db.create_table(table, schema=_ROWS_SCHEMA)
        self._touch(table)
        log_event(logger, "lancedb.table.created", table=table, path=str(self._root))

    # ------------------------------------------------------------------
    # Row operations
    # ------------------------------------------------------------------

    @synchronized
    def read_range(self, table: str, rng: RowRange, *, timeout: float) -> list[Row]:
        return self._slice(self._load_rows(table), rng)

    @synchronized
    def batch_read(self, table: str, ranges: Sequence[RowRange], *, timeout: float) -> list[list[Row]]:
        rows = self._load_rows(table)
        return [self._slice(rows, rng) for rng in ranges]

    @synchronized
    def batch_write(self, table: str, updates: Sequence[RowUpdate], *, timeout: float) -> int:
        if not updates:
            return 0
        handle = self._table(table)
        latest: dict[int, tuple[Any, ...]] = {}
        for update in updates:
            if update.row_index < 0:
                raise BackendError(f"Invalid row index {update.row_index}", status_code=400)
            latest[update.row_index] = update.values
        indexes = ", ".join(str(index) for index in sorted(latest))
        handle.delete(where=f"row_index IN ({indexes})")
        handle.add([{"row_index": index, "values_json": _encode_row(values)} for index, values in sorted(latest.items())])
        self._touch(table)
        return sum(len(update.values) for update in updates)

    @synchronized
    def append_row(self, table: str, row: Sequence[Any], *, timeout: float) -> int:
        handle = self._table(table)
        row_index = self._next_index(handle)
        handle.add([{"row_index": row_index, "values_json": _encode_row(row)}])
        self._touch(table)
        return row_index

    @synchronized
    def delete_row(self, table: str, row_index: int, *, timeout: float) -> None:
        handle = self._table(table)
        if row_index < 0 or row_index >= self._next_index(handle):
            raise BackendError(f"Row {row_index} is out of range", status_code=400)
        handle.delete(where=f"row_index = {row_index}")
        handle.update(where=f"row_index > {row_index}", values_sql={"row_index": "row_index - 1"})
        self._touch(table)

    @synchronized
    def modified_at(self, table: str, *, timeout: float) -> datetime | None:
        self._table(table)
        for row in self._meta.to_arrow().to_pylist():
            if row.get("table_name") == table:
                return _coerce_timestamp(row.get("modified_at"))
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_meta_table(self):
        table_names = set(self._db.table_names())
        if _META_TABLE_NAME in table_names:
            table = self._db.open_table(_META_TABLE_NAME)
            missing = [field.name for field in _META_SCHEMA if field.name not in table.schema.names]
            if missing:
                raise BackendError("Existing metadata table missing required columns", status_code=500)
            return table
        return self._db.create_table(_META_TABLE_NAME, schema=_META_SCHEMA)

    def _open_rows_table(self, table: str):
        handle = self._db.open_table(table)
        missing = [field.name for field in _ROWS_SCHEMA if field.name not in handle.schema.names]
        if missing:
            raise BackendError(f"Existing table {table!r} missing required columns {missing}", status_code=500)
        return handle

    def _table(self, table: str):
        handle = self._tables.get(table)
        if handle is not None:
            return handle
        if table not in set(self._db.table_names()):
            raise BackendError(f"Table {table!r} does not exist", status_code=404)
        handle = self._open_rows_table(table)
        self._tables[table] = handle
        return handle

    def _load_rows(self, table: str) -> list[Row]:
        records = sorted(self._table(table).to_arrow().to_pylist(), key=lambda record: record["row_index"])
        return [json.loads(record["values_json"]) for record in records]

    @staticmethod
    def _slice(rows: list[Row], rng: RowRange) -> list[Row]:
        return [list(row) for row in rows[rng.start : rng.stop]]

    @staticmethod
    def _next_index(handle) -> int:
        return int(handle.count_rows())

    def _touch(self, table: str) -> None:
        self._meta.delete(where=f"table_name = {_quote_literal(table)}")
        self._meta.add([{"table_name": table, "modified_at": self._clock()}])

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tenant_store.backends import BackendError, RowRange, RowUpdate
from tenant_store.backends.lance import LanceRowStore

TABLE = "tenants"


def _store(tmp_path) -> tuple[LanceRowStore, list[datetime]]:
    now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
    store = LanceRowStore(tmp_path, clock=lambda: now[0])
    store.create_table(TABLE)
    for row in (["id", "principalEmail"], ["t1", "a@example.com"], ["t2", "b@example.com"], ["t3", "c@example.com"]):
        store.append_row(TABLE, row, timeout=1)
    return store, now


def test_rows_survive_reopen(tmp_path) -> None:
    store, _ = _store(tmp_path)
    del store

    reopened = LanceRowStore(tmp_path)
    reopened.create_table(TABLE)

    assert reopened.read_range(TABLE, RowRange(1), timeout=1) == [
        ["t1", "a@example.com"],
        ["t2", "b@example.com"],
        ["t3", "c@example.com"],
    ]


def test_append_returns_next_absolute_index(tmp_path) -> None:
    store, _ = _store(tmp_path)
    assert store.append_row(TABLE, ["t4", "d@example.com"], timeout=1) == 4


def test_batch_write_replaces_rows(tmp_path) -> None:
    store, _ = _store(tmp_path)

    cells = store.batch_write(TABLE, [RowUpdate(2, ("t2", "new@example.com", True))], timeout=1)

    assert cells == 3
    assert store.batch_read(TABLE, [RowRange.single(2), RowRange.single(3)], timeout=1) == [
        [["t2", "new@example.com", True]],
        [["t3", "c@example.com"]],
    ]


def test_delete_shifts_rows_up(tmp_path) -> None:
    store, _ = _store(tmp_path)

    store.delete_row(TABLE, 1, timeout=1)

    assert store.read_range(TABLE, RowRange(0), timeout=1) == [
        ["id", "principalEmail"],
        ["t2", "b@example.com"],
        ["t3", "c@example.com"],
    ]
    assert store.append_row(TABLE, ["t4", "d@example.com"], timeout=1) == 3


def test_delete_out_of_range_is_rejected(tmp_path) -> None:
    store, _ = _store(tmp_path)
    with pytest.raises(BackendError) as excinfo:
        store.delete_row(TABLE, 10, timeout=1)
    assert excinfo.value.status_code == 400


def test_modified_at_follows_writes(tmp_path) -> None:
    store, now = _store(tmp_path)
    assert store.modified_at(TABLE, timeout=1) == now[0]

    now[0] += timedelta(minutes=1)
    store.append_row(TABLE, ["t4", "d@example.com"], timeout=1)

    assert store.modified_at(TABLE, timeout=1) == now[0]


def test_unknown_table_is_not_found(tmp_path) -> None:
    store = LanceRowStore(tmp_path)
    with pytest.raises(BackendError) as excinfo:
        store.read_range("missing", RowRange(0), timeout=1)
    assert excinfo.value.status_code == 404

"""Raw backend contracts consumed by the row store client and the lock writer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence

Row = list[Any]


@dataclass(frozen=True, slots=True)
class RowRange:
    """Half-open range of absolute row indexes; row 0 is the header.

    ``stop=None`` reads through the last row of the table.
    """

    start: int
    stop: int | None = None

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError("RowRange.start must be >= 0")
        if self.stop is not None and self.stop < self.start:
            raise ValueError("RowRange.stop must be >= start")

    @classmethod
    def single(cls, row_index: int) -> RowRange:
        return cls(row_index, row_index + 1)


@dataclass(frozen=True, slots=True)
class RowUpdate:
    row_index: int
    values: tuple[Any, ...]


class BackendError(Exception):
    """Raw failure reported by a row store backend.

    ``status_code`` follows HTTP conventions so the client can classify the
    failure as transient (429, 5xx) or fatal (everything else).
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RowStoreBackend(Protocol):
    def read_range(self, table: str, rng: RowRange, *, timeout: float) -> list[Row]:
        ...

    def batch_read(self, table: str, ranges: Sequence[RowRange], *, timeout: float) -> list[list[Row]]:
        ...

    def batch_write(self, table: str, updates: Sequence[RowUpdate], *, timeout: float) -> int:
        ...

    def append_row(self, table: str, row: Sequence[Any], *, timeout: float) -> int:
        ...

    def delete_row(self, table: str, row_index: int, *, timeout: float) -> None:
        ...

    def modified_at(self, table: str, *, timeout: float) -> datetime | None:
        ...


class LockPrimitive(Protocol):
    def acquire(self, key: str, timeout: float) -> bool:
        ...

    def release(self, key: str) -> None:
        ...

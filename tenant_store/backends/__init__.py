"""Row store and lock backends."""

from .base import BackendError, LockPrimitive, Row, RowRange, RowStoreBackend, RowUpdate
from .memory import MemoryLockProvider, MemoryRowStore

__all__ = [
    "BackendError",
    "LockPrimitive",
    "MemoryLockProvider",
    "MemoryRowStore",
    "Row",
    "RowRange",
    "RowStoreBackend",
    "RowUpdate",
]

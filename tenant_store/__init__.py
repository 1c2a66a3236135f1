"""Multi-tenant configuration store with tiered caching over a rate-limited row store."""

from .bootstrap import StoreRuntime, main, open_runtime
from .cache import MISS, CacheTier, LocalCacheBackend, TieredCache
from .client import CircuitBreaker, RetryPolicy, RowStoreClient
from .config import Config, ConfigError, load_config
from .index import IndexBuilder, IndexSnapshot
from .locking import LockGuardedWriter
from .logging import configure_logging
from .models import AuditEntry, DeleteAck, DisplaySettings, TenantConfig, TenantRecord
from .repository import TenantRepository

__all__ = [
    "AuditEntry",
    "CacheTier",
    "CircuitBreaker",
    "Config",
    "ConfigError",
    "DeleteAck",
    "DisplaySettings",
    "IndexBuilder",
    "IndexSnapshot",
    "LocalCacheBackend",
    "LockGuardedWriter",
    "MISS",
    "RetryPolicy",
    "RowStoreClient",
    "StoreRuntime",
    "TenantConfig",
    "TenantRecord",
    "TenantRepository",
    "TieredCache",
    "configure_logging",
    "load_config",
    "main",
    "open_runtime",
]

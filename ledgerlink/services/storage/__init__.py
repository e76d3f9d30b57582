"""
Storage Services Package

Provides the quota-bounded backend interface, its file and memory
implementations, and the namespaced persistent cache built on top.
"""

from ledgerlink.services.storage.interface import (
    AuditStorageInterface,
    CacheBackend,
    QuotaExceeded,
    StorageError,
)
from ledgerlink.services.storage.backends import (
    JsonFileBackend,
    MemoryAuditStorage,
    MemoryBackend,
)
from ledgerlink.services.storage.cache_store import (
    PersistentCacheStore,
    merge_records,
    project_record,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "CacheBackend",
    # Exceptions
    "QuotaExceeded",
    "StorageError",
    # Implementations
    "JsonFileBackend",
    "MemoryAuditStorage",
    "MemoryBackend",
    "PersistentCacheStore",
    "merge_records",
    "project_record",
]

"""Services package."""

from ledgerlink.services.remote import (
    AuthError,
    HttpLedgerClient,
    LedgerClientInterface,
    LedgerError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailable,
)
from ledgerlink.services.storage import (
    AuditStorageInterface,
    CacheBackend,
    JsonFileBackend,
    MemoryAuditStorage,
    MemoryBackend,
    PersistentCacheStore,
    QuotaExceeded,
    StorageError,
)
from ledgerlink.services.ui import (
    ConfirmationInterface,
    DenyConfirmation,
    LoggingNotifier,
    NotificationLevel,
    NotifierInterface,
)

__all__ = [
    # Remote ledger client
    "AuthError",
    "HttpLedgerClient",
    "LedgerClientInterface",
    "LedgerError",
    "NetworkError",
    "NotFoundError",
    "RateLimitError",
    "ServiceUnavailable",
    # Storage services
    "AuditStorageInterface",
    "CacheBackend",
    "JsonFileBackend",
    "MemoryAuditStorage",
    "MemoryBackend",
    "PersistentCacheStore",
    "QuotaExceeded",
    "StorageError",
    # User interaction
    "ConfirmationInterface",
    "DenyConfirmation",
    "LoggingNotifier",
    "NotificationLevel",
    "NotifierInterface",
]

"""
Abstract Storage Interface

DESIGN DECISION: The persistent cache talks to a small key/value backend
instead of the filesystem directly. This allows us to:
1. Keep the cache store's quota and eviction logic backend-agnostic
2. Use in-memory storage for testing
3. Enforce the same byte quota on every backend

Backends store opaque JSON strings under a handful of namespace keys.
They are synchronous; only remote I/O is async.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from ledgerlink.models.audit import AuditEvent


class CacheBackend(ABC):
    """
    Abstract quota-bounded key/value backend.

    Any backend (directory of JSON files, in-memory dict, ...) must
    implement these methods.
    """

    def __init__(self, quota_bytes: int):
        self.quota_bytes = quota_bytes

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """
        Read the raw value stored under a key.

        Returns:
            The stored string, or None if the key is absent

        Raises:
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    def write(self, key: str, data: str) -> None:
        """
        Store a raw value, replacing any previous value.

        Raises:
            QuotaExceeded: If the write would exceed the quota
            StorageError: If the backend cannot be written
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            True if the key existed
        """
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        """List all stored keys."""
        pass

    @abstractmethod
    def size_of(self, key: str) -> int:
        """Stored size of a key in bytes (0 when absent)."""
        pass

    def usage(self) -> int:
        """Total bytes currently stored."""
        return sum(self.size_of(key) for key in self.keys())

    def has_capacity(self, key: str, size: int) -> bool:
        """Whether replacing ``key`` with ``size`` bytes stays within quota."""
        return self.usage() - self.size_of(key) + size <= self.quota_bytes

    def check_quota(self, key: str, size: int) -> None:
        if not self.has_capacity(key, size):
            raise QuotaExceeded(
                f"Writing {size} bytes to '{key}' exceeds quota of {self.quota_bytes} bytes"
            )


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one balancing flow).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'tag', 'transaction')
            entity_id: Tag value or remote id

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class QuotaExceeded(StorageError):
    """A write would exceed the backend's byte quota."""
    pass

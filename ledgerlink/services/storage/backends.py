"""
Storage Backends

Concrete implementations of the storage interfaces:

- JsonFileBackend: one JSON file per namespace key inside a directory
- MemoryBackend: process-local dict, used in tests and as a fallback
- MemoryAuditStorage: append-only in-memory audit log

TRADEOFFS:
- JsonFileBackend rewrites a whole namespace on every set. Namespaces
  are few and small (the quota bounds them), so this stays cheap.
- Quota is measured on the UTF-8 encoded payload, not on disk blocks.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog

from ledgerlink.models.audit import AuditEvent
from ledgerlink.services.storage.interface import (
    AuditStorageInterface,
    CacheBackend,
    StorageError,
)


logger = structlog.get_logger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class MemoryBackend(CacheBackend):
    """Quota-bounded in-memory backend."""

    def __init__(self, quota_bytes: int):
        super().__init__(quota_bytes)
        self._data: dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, data: str) -> None:
        self.check_quota(key, len(data.encode("utf-8")))
        self._data[key] = data

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def size_of(self, key: str) -> int:
        value = self._data.get(key)
        return len(value.encode("utf-8")) if value is not None else 0


class JsonFileBackend(CacheBackend):
    """
    Directory-backed backend storing each key as ``<key>.json``.

    Writes go to a temporary file first and are moved into place, so a
    crash mid-write never leaves a truncated namespace behind.
    """

    SUFFIX = ".json"

    def __init__(self, directory: Path, quota_bytes: int):
        super().__init__(quota_bytes)
        self._directory = Path(directory)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create cache directory {self._directory}: {e}")

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self._directory / f"{key}{self.SUFFIX}"

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}")

    def write(self, key: str, data: str) -> None:
        encoded = data.encode("utf-8")
        self.check_quota(key, len(encoded))

        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(encoded)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StorageError(f"Failed to write {path}: {e}")

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}")

    def keys(self) -> list[str]:
        return sorted(p.stem for p in self._directory.glob(f"*{self.SUFFIX}"))

    def size_of(self, key: str) -> int:
        try:
            return self._path(key).stat().st_size
        except FileNotFoundError:
            return 0


class MemoryAuditStorage(AuditStorageInterface):
    """
    Audit log kept in process memory.

    Bounded to ``max_events``; the oldest events are dropped first.
    """

    def __init__(self, max_events: int = 1000):
        self._events: list[AuditEvent] = []
        self._max_events = max_events

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        if len(self._events) > self._max_events:
            dropped = len(self._events) - self._max_events
            del self._events[:dropped]
            logger.debug("audit_events_dropped", count=dropped)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return list(reversed(self._events[-limit:]))

"""Two-tier cache and delta sync in front of the remote ledger client."""

from ledgerlink.sync.manager import MemoryEntry, SyncCacheManager

__all__ = ["MemoryEntry", "SyncCacheManager"]

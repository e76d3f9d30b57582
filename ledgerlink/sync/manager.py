"""
Sync Cache Manager

Centralized data access with two cache tiers and delta sync:

1. In-process tier: short-lived (TTL), per session, always writable
2. Persistent tier: validity is determined by the sync cursor, not age

All modules read transactions through ``get_transactions`` and write
through the mutation API below. Records are fetched per ledger in bulk
and filtered client-side, which keeps remote calls to a handful per
ledger instead of one per account/category/month.

DESIGN DECISION: Read-path failures degrade to the most specific cache
still available, with a one-time warning per error class. Write-path
failures propagate. Every write invalidates its own cache entries, so
callers never have to remember to.
"""

import time
from datetime import date
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from ledgerlink.audit import AuditLogger
from ledgerlink.config import CacheSettings
from ledgerlink.models.ledger import (
    Category,
    LedgerDetail,
    LedgerSummary,
    MonthDetail,
    Transaction,
    TransactionDraft,
    TransactionFilter,
    years_ago,
)
from ledgerlink.services.remote.interface import LedgerClientInterface, LedgerError
from ledgerlink.services.storage.cache_store import (
    PersistentCacheStore,
    merge_records,
    project_record,
)
from ledgerlink.services.ui.interface import (
    LoggingNotifier,
    NotificationLevel,
    NotifierInterface,
)
from ledgerlink.store.reactive import ReactiveLedgerStore


logger = structlog.get_logger(__name__)

QUOTA_WARNING = (
    "Storage limit reached. Data will be cached in memory only for this "
    "session. Consider using a shorter time range."
)


class MemoryEntry(BaseModel):
    """In-process cache entry for one ledger's transactions."""

    records: list[Transaction] = Field(default_factory=list)
    timestamp: float
    since: Optional[date] = None


def _to_models(records: Iterable[dict[str, Any]]) -> list[Transaction]:
    return [Transaction.model_validate(r) for r in records]


class SyncCacheManager:
    """
    Two-tier transaction cache in front of the remote ledger client.

    Fetch decision per (ledger, since, force_refresh):
    1. fresh in-process entry covering ``since`` -> serve it
       (a storage-degraded ledger serves it even when it does not cover)
    2. persistent entry covering ``since`` -> delta fetch with its cursor
    3. otherwise -> full fetch from ``since``, replacing set and cursor
    4. remote failure -> in-process, then persistent cache; raise if none
    """

    def __init__(
        self,
        client: LedgerClientInterface,
        cache_store: PersistentCacheStore,
        store: ReactiveLedgerStore,
        notifier: Optional[NotifierInterface] = None,
        settings: Optional[CacheSettings] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._cache_store = cache_store
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or CacheSettings()
        self._audit = audit or AuditLogger()
        self._clock = clock

        self._memory_transactions: dict[str, MemoryEntry] = {}
        self._memory_months: dict[str, tuple[MonthDetail, float]] = {}
        self._storage_failed: set[str] = set()
        self._quota_warning_shown = False
        self._errors_shown: set[str] = set()

    @property
    def client(self) -> LedgerClientInterface:
        return self._client

    @property
    def store(self) -> ReactiveLedgerStore:
        return self._store

    def default_since(self) -> date:
        return years_ago(self._settings.default_history_years)

    def is_degraded(self, ledger_id: str) -> bool:
        return ledger_id in self._storage_failed

    def _is_fresh(self, timestamp: float, ttl: float) -> bool:
        return self._clock() - timestamp < ttl

    # =========================================================================
    # TRANSACTIONS (read path)
    # =========================================================================

    async def get_transactions(
        self,
        ledger_id: str,
        since: Optional[date] = None,
        force_refresh: bool = False,
        filters: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        """
        Get a ledger's transactions, served from cache where possible.

        Args:
            ledger_id: Ledger to read
            since: Requested coverage floor (defaults to the history window)
            force_refresh: Skip both caches and do a full fetch
            filters: Client-side filters applied to the served records

        Raises:
            LedgerError: Only if the remote call failed and no cache exists
        """
        requested = since or self.default_since()
        serve_filter = self._serve_filter(since, filters)

        memory = self._memory_transactions.get(ledger_id)
        if (
            not force_refresh
            and memory is not None
            and self._is_fresh(memory.timestamp, self._settings.memory_ttl_seconds)
        ):
            if memory.since is None or requested >= memory.since:
                return serve_filter.apply(memory.records)
            if self.is_degraded(ledger_id):
                logger.info("serving_memory_cache_for_degraded_ledger", ledger_id=ledger_id)
                return serve_filter.apply(memory.records)

        stored = None
        if not force_refresh and not self.is_degraded(ledger_id):
            stored = self._cache_store.get_cached_transactions(ledger_id)

        if stored is not None and stored.sync_cursor is not None:
            if stored.since_watermark is None or requested >= stored.since_watermark:
                return await self._delta_sync(ledger_id, stored, serve_filter)
            logger.info(
                "requested_floor_older_than_cache",
                ledger_id=ledger_id,
                requested=requested.isoformat(),
                cached=stored.since_watermark.isoformat(),
            )

        return await self._full_fetch(ledger_id, requested, serve_filter)

    @staticmethod
    def _serve_filter(since: Optional[date], filters: Optional[TransactionFilter]) -> TransactionFilter:
        serve_filter = filters.model_copy() if filters else TransactionFilter()
        if since and (serve_filter.since is None or since > serve_filter.since):
            serve_filter.since = since
        return serve_filter

    async def _delta_sync(self, ledger_id: str, stored, serve_filter: TransactionFilter) -> list[Transaction]:
        try:
            page = await self._client.list_transactions(ledger_id, since_cursor=stored.sync_cursor)
        except LedgerError as e:
            return await self._fallback(ledger_id, e, serve_filter)

        cursor = page.cursor if page.cursor is not None else stored.sync_cursor
        logger.debug(
            "delta_sync_received",
            ledger_id=ledger_id,
            changes=len(page.transactions),
            cursor=cursor,
        )

        if self._cache_store.update_cached_transactions(ledger_id, page.transactions, cursor):
            merged = self._cache_store.get_cached_transactions(ledger_id)
            records = _to_models(merged.records) if merged else []
        else:
            records = _to_models(merge_records(stored.records, page.transactions))
            await self._mark_degraded(ledger_id, "delta merge could not be stored")

        self._publish(ledger_id, records, stored.since_watermark)
        return serve_filter.apply(records)

    async def _full_fetch(self, ledger_id: str, since: date, serve_filter: TransactionFilter) -> list[Transaction]:
        try:
            page = await self._client.list_transactions(ledger_id, since_date=since)
        except LedgerError as e:
            return await self._fallback(ledger_id, e, serve_filter)

        records = _to_models(project_record(t) for t in page.transactions if not t.deleted)
        logger.info("full_fetch_completed", ledger_id=ledger_id, count=len(records), since=since.isoformat())

        if not self.is_degraded(ledger_id):
            if not self._cache_store.set_cached_transactions(ledger_id, records, page.cursor, since):
                await self._mark_degraded(ledger_id, "transaction cache could not be stored")

        self._publish(ledger_id, records, since)
        return serve_filter.apply(records)

    async def _fallback(self, ledger_id: str, error: LedgerError, serve_filter: TransactionFilter) -> list[Transaction]:
        """Serve the most specific cache still available, or re-raise."""
        memory = self._memory_transactions.get(ledger_id)
        if memory is not None and memory.records:
            logger.warning("remote_fetch_failed_using_memory", ledger_id=ledger_id, error=str(error))
            self._warn_once(error)
            await self._audit.log_sync_fallback(ledger_id, "memory", str(error))
            return serve_filter.apply(memory.records)

        stored = self._cache_store.get_cached_transactions(ledger_id)
        if stored is not None and stored.records:
            logger.warning("remote_fetch_failed_using_storage", ledger_id=ledger_id, error=str(error))
            self._warn_once(error)
            await self._audit.log_sync_fallback(ledger_id, "persistent", str(error))
            records = _to_models(stored.records)
            self._memory_transactions[ledger_id] = MemoryEntry(
                records=records,
                timestamp=self._clock(),
                since=stored.since_watermark,
            )
            self._store.set_transactions(ledger_id, records, synced_at=stored.last_fetch)
            return serve_filter.apply(records)

        self._warn_once(error)
        raise error

    def _publish(self, ledger_id: str, records: list[Transaction], since: Optional[date]) -> None:
        now = self._clock()
        self._memory_transactions[ledger_id] = MemoryEntry(records=records, timestamp=now, since=since)
        self._store.set_transactions(ledger_id, records, synced_at=now)

    def _warn_once(self, error: Exception) -> None:
        """Notify once per session per error class."""
        key = type(error).__name__
        if key in self._errors_shown:
            return
        self._errors_shown.add(key)
        message = getattr(error, "user_message", None) or f"Error: {error}"
        self._notifier.notify(message, NotificationLevel.ERROR)

    async def _mark_degraded(self, ledger_id: str, reason: str) -> None:
        self._storage_failed.add(ledger_id)
        logger.warning("ledger_storage_degraded", ledger_id=ledger_id, reason=reason)
        await self._audit.log_cache_degraded(ledger_id, reason)
        if not self._quota_warning_shown:
            self._quota_warning_shown = True
            self._notifier.notify(QUOTA_WARNING, NotificationLevel.WARNING)

    async def preload(
        self,
        ledger_ids: Iterable[str],
        since: Optional[date] = None,
    ) -> dict[str, list[Transaction]]:
        """
        Load several ledgers one after another.

        A ledger that fails to load yields an empty list instead of
        aborting the others.
        """
        results = {}
        for ledger_id in ledger_ids:
            try:
                results[ledger_id] = await self.get_transactions(ledger_id, since=since)
            except LedgerError as e:
                logger.error("preload_failed", ledger_id=ledger_id, error=str(e))
                results[ledger_id] = []
        return results

    async def get_account_activity_for_month(self, ledger_id: str, account_id: str, month: str) -> int:
        """Sum of an account's transaction amounts within a month."""
        txns = await self.get_transactions(
            ledger_id, filters=TransactionFilter(account_id=account_id, month=month)
        )
        return sum(t.amount for t in txns)

    # =========================================================================
    # MONTHS, LEDGERS (aggregate cache)
    # =========================================================================

    @staticmethod
    def _month_cache_key(ledger_id: str, month: str) -> str:
        return f"{ledger_id}_{month}"

    async def get_month(self, ledger_id: str, month: str) -> MonthDetail:
        """Month data (per-category budgeted/activity/balance), cached."""
        key = self._month_cache_key(ledger_id, month)
        cached = self._memory_months.get(key)
        if cached is not None and self._is_fresh(cached[1], self._settings.memory_ttl_seconds):
            return cached[0]

        stored = self._cache_store.get_cached_month(ledger_id, month)
        if stored is not None:
            detail = MonthDetail.model_validate(stored)
        else:
            detail = await self._client.get_month(ledger_id, month)
            if not self._cache_store.set_cached_month(ledger_id, month, detail.model_dump(mode="json")):
                logger.warning("month_cache_not_stored", ledger_id=ledger_id, month=month)

        self._memory_months[key] = (detail, self._clock())
        return detail

    async def get_category_for_month(
        self,
        ledger_id: str,
        category_id: str,
        month: str,
    ) -> Optional[Category]:
        detail = await self.get_month(ledger_id, month)
        return detail.find_category(category_id)

    async def preload_months(self, ledger_id: str, months: Iterable[str]) -> dict[str, Optional[MonthDetail]]:
        results = {}
        for month in months:
            try:
                results[month] = await self.get_month(ledger_id, month)
            except LedgerError as e:
                logger.error("preload_month_failed", ledger_id=ledger_id, month=month, error=str(e))
                results[month] = None
        return results

    async def get_ledgers(self, force_refresh: bool = False) -> list[LedgerSummary]:
        if not force_refresh:
            cached = self._cache_store.get_cached_ledgers()
            if cached is not None:
                return [LedgerSummary.model_validate(item) for item in cached]

        ledgers = await self._client.list_ledgers()
        self._cache_store.set_cached_ledgers([item.model_dump(mode="json") for item in ledgers])
        return ledgers

    async def get_ledger_detail(self, ledger_id: str, force_refresh: bool = False) -> LedgerDetail:
        if not force_refresh:
            cached = self._cache_store.get_cached_ledger_detail(ledger_id)
            if cached is not None:
                return LedgerDetail.model_validate(cached)

        detail = await self._client.get_ledger(ledger_id)
        self._cache_store.set_cached_ledger_detail(ledger_id, detail.model_dump(mode="json"))
        return detail

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    def invalidate_ledger(self, ledger_id: str) -> None:
        """
        Force the next read of a ledger to re-sync.

        Only the in-process entry is dropped; the persistent entry stays
        so the next read is a cheap delta sync.
        """
        self._memory_transactions.pop(ledger_id, None)

    def invalidate_month(self, ledger_id: str, month: str) -> None:
        self._memory_months.pop(self._month_cache_key(ledger_id, month), None)
        self._cache_store.clear_cached_month(ledger_id, month)

    def invalidate_ledger_detail(self, ledger_id: str) -> None:
        self._cache_store.clear_cached_ledger_detail(ledger_id)

    def clear_all_caches(self) -> None:
        self._memory_transactions.clear()
        self._memory_months.clear()
        self._cache_store.clear_all_transaction_caches()
        self._cache_store.clear_cache()
        logger.info("all_caches_cleared")

    # =========================================================================
    # MUTATIONS (write path)
    # =========================================================================

    async def create_transaction(self, ledger_id: str, draft: TransactionDraft) -> Transaction:
        """Create remotely, apply to the store, invalidate the ledger."""
        txn = await self._client.create_transaction(ledger_id, draft)
        self._store.upsert_transaction(ledger_id, txn)
        self.invalidate_ledger(ledger_id)
        return txn

    async def update_transaction(
        self,
        ledger_id: str,
        transaction_id: str,
        draft: TransactionDraft,
    ) -> Transaction:
        txn = await self._client.update_transaction(ledger_id, transaction_id, draft)
        self._store.upsert_transaction(ledger_id, txn)
        self.invalidate_ledger(ledger_id)
        return txn

    async def delete_transaction(self, ledger_id: str, transaction_id: str) -> Transaction:
        txn = await self._client.delete_transaction(ledger_id, transaction_id)
        self._store.remove_transaction(ledger_id, transaction_id)
        self.invalidate_ledger(ledger_id)
        return txn

    async def update_category_budget(
        self,
        ledger_id: str,
        month: str,
        category_id: str,
        budgeted: int,
    ) -> Category:
        category = await self._client.update_category_budget(ledger_id, month, category_id, budgeted)
        self.invalidate_month(ledger_id, month)
        self.invalidate_ledger_detail(ledger_id)
        return category

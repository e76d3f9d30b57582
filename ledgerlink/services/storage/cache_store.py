"""
Persistent Cache Store

Namespaced JSON storage on top of a quota-bounded CacheBackend:

- credential       the remote API token
- config           the household configuration
- cache            aggregate data: ledger list, ledger details, month data
                   and their fetch timestamps
- transactions     per ledger: cached records, sync cursor, since-watermark
- balancing_plans  resumable balancing state machines keyed by tag

DESIGN DECISION: Writes are write-through with exactly one retry. On a
quota failure we evict (month data first, then transaction history older
than the retention window, then the whole transaction cache) and retry
once. A second failure returns False; callers decide how to degrade.
QuotaExceeded never escapes this module.
"""

import json
import time
from datetime import date
from typing import Any, Callable, Iterable, Optional, Union

import structlog

from ledgerlink.config import CacheSettings
from ledgerlink.models.ledger import (
    CACHED_TRANSACTION_FIELDS,
    HouseholdConfig,
    LedgerCacheEntry,
    Transaction,
    years_ago,
)
from ledgerlink.models.reconciliation import BalancingPlan
from ledgerlink.services.storage.interface import (
    CacheBackend,
    QuotaExceeded,
    StorageError,
)


logger = structlog.get_logger(__name__)


KEY_CREDENTIAL = "credential"
KEY_CONFIG = "config"
KEY_CACHE = "cache"
KEY_TRANSACTIONS = "transactions"
KEY_BALANCING_PLANS = "balancing_plans"

MONTH_PREFIX = "month_"

TransactionLike = Union[Transaction, dict[str, Any]]


def project_record(txn: TransactionLike) -> dict[str, Any]:
    """Reduce a transaction (model or raw dict) to the cached projection."""
    if isinstance(txn, Transaction):
        return txn.to_cache_record()
    return {field: txn[field] for field in CACHED_TRANSACTION_FIELDS if field in txn}


def merge_records(
    records: Iterable[dict[str, Any]],
    delta: Iterable[TransactionLike],
) -> list[dict[str, Any]]:
    """Apply a delta by id: deleted records are removed, others upserted."""
    merged = {record["id"]: record for record in records}
    for txn in delta:
        record = project_record(txn)
        if record.get("deleted"):
            merged.pop(record["id"], None)
        else:
            merged[record["id"]] = record
    return list(merged.values())


def _empty_aggregate() -> dict[str, Any]:
    return {
        "ledgers": None,
        "ledger_details": {},
        "months": {},
        "last_fetch": {},
    }


class PersistentCacheStore:
    """
    Quota-aware persistent cache.

    All getters return None (or an empty default) on a missing or
    unreadable namespace; a corrupt namespace is logged and ignored.
    """

    def __init__(
        self,
        backend: CacheBackend,
        settings: Optional[CacheSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._settings = settings or CacheSettings()
        self._clock = clock

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    # =========================================================================
    # RAW ACCESS
    # =========================================================================

    def get(self, key: str) -> Any:
        try:
            raw = self._backend.read(key)
        except StorageError as e:
            logger.error("storage_read_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("storage_entry_corrupt", key=key, error=str(e))
            return None

    def set(self, key: str, value: Any) -> bool:
        """
        Write-through set with a single retry after eviction.

        Returns:
            True if the value was stored
        """
        data = json.dumps(value, separators=(",", ":"), default=str)
        try:
            self._backend.write(key, data)
            return True
        except QuotaExceeded:
            logger.warning("storage_quota_exceeded", key=key, size=len(data))
        except StorageError as e:
            logger.error("storage_write_failed", key=key, error=str(e))
            return False

        value = self.free_up_space(key, value)
        data = json.dumps(value, separators=(",", ":"), default=str)
        try:
            self._backend.write(key, data)
            logger.info("storage_write_recovered", key=key)
            return True
        except StorageError as e:
            logger.error("storage_write_failed_after_eviction", key=key, error=str(e))
            return False

    def remove(self, key: str) -> bool:
        try:
            return self._backend.delete(key)
        except StorageError as e:
            logger.error("storage_remove_failed", key=key, error=str(e))
            return False

    # =========================================================================
    # EVICTION
    # =========================================================================

    def free_up_space(self, target_key: str, pending: Any = None) -> Any:
        """
        Evict cached data until ``pending`` fits under ``target_key``.

        Steps run in order and stop as soon as the pending value fits:
        1. drop all month data from the aggregate cache
        2. trim every ledger's transactions to the retention window
        3. drop the entire transaction cache

        When the target is the transaction cache itself, step 2 trims the
        pending value as well. Returns the (possibly trimmed) pending value.
        """
        cutoff = years_ago(self._settings.default_history_years).isoformat()

        self._drop_month_data()
        if self._fits(target_key, pending):
            return pending

        if target_key == KEY_TRANSACTIONS and isinstance(pending, dict):
            pending = self._trim_transaction_cache(pending, cutoff)
        else:
            stored = self.get(KEY_TRANSACTIONS)
            if stored:
                trimmed = self._trim_transaction_cache(stored, cutoff)
                try:
                    self._backend.write(
                        KEY_TRANSACTIONS,
                        json.dumps(trimmed, separators=(",", ":"), default=str),
                    )
                except StorageError as e:
                    logger.warning("storage_trim_write_failed", error=str(e))
        if self._fits(target_key, pending):
            return pending

        self.remove(KEY_TRANSACTIONS)
        logger.warning("storage_transaction_cache_dropped", target=target_key)
        return pending

    def _fits(self, key: str, value: Any) -> bool:
        size = len(json.dumps(value, separators=(",", ":"), default=str).encode("utf-8"))
        return self._backend.has_capacity(key, size)

    def _drop_month_data(self) -> None:
        cache = self.get(KEY_CACHE)
        if not cache:
            return
        cache["months"] = {}
        last_fetch = cache.get("last_fetch") or {}
        cache["last_fetch"] = {
            k: v for k, v in last_fetch.items() if not k.startswith(MONTH_PREFIX)
        }
        try:
            self._backend.write(KEY_CACHE, json.dumps(cache, separators=(",", ":"), default=str))
            logger.info("storage_month_data_cleared")
        except StorageError as e:
            logger.warning("storage_month_data_clear_failed", error=str(e))

    def _trim_transaction_cache(self, cache: dict[str, Any], cutoff: str) -> dict[str, Any]:
        trimmed = {}
        for ledger_id, entry in cache.items():
            records = entry.get("records") or []
            kept = [r for r in records if str(r.get("date", "")) >= cutoff]
            if len(kept) != len(records):
                logger.info(
                    "storage_transactions_trimmed",
                    ledger_id=ledger_id,
                    removed=len(records) - len(kept),
                )
            watermark = entry.get("since_watermark")
            if watermark is None or watermark < cutoff:
                watermark = cutoff
            trimmed[ledger_id] = {**entry, "records": kept, "since_watermark": watermark}
        return trimmed

    # =========================================================================
    # CREDENTIAL
    # =========================================================================

    def get_credential(self) -> Optional[str]:
        return self.get(KEY_CREDENTIAL)

    def set_credential(self, token: str) -> bool:
        return self.set(KEY_CREDENTIAL, token)

    def clear_credential(self) -> bool:
        return self.remove(KEY_CREDENTIAL)

    # =========================================================================
    # HOUSEHOLD CONFIGURATION
    # =========================================================================

    def get_config(self) -> HouseholdConfig:
        data = self.get(KEY_CONFIG)
        if not data:
            return HouseholdConfig()
        try:
            return HouseholdConfig.model_validate(data)
        except ValueError as e:
            logger.warning("storage_config_invalid", error=str(e))
            return HouseholdConfig()

    def set_config(self, config: HouseholdConfig) -> bool:
        return self.set(KEY_CONFIG, config.model_dump(mode="json"))

    def update_config(self, **updates: Any) -> HouseholdConfig:
        """Merge ``updates`` into the stored config, persist and return it."""
        current = self.get_config().model_dump()
        current.update(updates)
        config = HouseholdConfig.model_validate(current)
        self.set_config(config)
        return config

    # =========================================================================
    # AGGREGATE CACHE (ledgers, ledger details, months)
    # =========================================================================

    def get_cache(self) -> dict[str, Any]:
        cache = self.get(KEY_CACHE) or {}
        merged = _empty_aggregate()
        merged.update(cache)
        return merged

    def set_cache(self, cache: dict[str, Any]) -> bool:
        return self.set(KEY_CACHE, cache)

    def clear_cache(self) -> bool:
        return self.remove(KEY_CACHE)

    def _is_fresh(self, cache: dict[str, Any], fetch_key: str, max_age: float) -> bool:
        fetched = cache["last_fetch"].get(fetch_key)
        return fetched is not None and self._clock() - fetched < max_age

    def get_cached_ledgers(self) -> Optional[list[dict[str, Any]]]:
        cache = self.get_cache()
        if cache["ledgers"] is not None and self._is_fresh(
            cache, "ledgers", self._settings.ledger_list_ttl_seconds
        ):
            return cache["ledgers"]
        return None

    def set_cached_ledgers(self, ledgers: list[dict[str, Any]]) -> bool:
        cache = self.get_cache()
        cache["ledgers"] = ledgers
        cache["last_fetch"]["ledgers"] = self._clock()
        return self.set_cache(cache)

    def get_cached_ledger_detail(self, ledger_id: str) -> Optional[dict[str, Any]]:
        cache = self.get_cache()
        detail = cache["ledger_details"].get(ledger_id)
        if detail is not None and self._is_fresh(
            cache, f"ledger_{ledger_id}", self._settings.ledger_detail_ttl_seconds
        ):
            return detail
        return None

    def set_cached_ledger_detail(self, ledger_id: str, detail: dict[str, Any]) -> bool:
        cache = self.get_cache()
        cache["ledger_details"][ledger_id] = detail
        cache["last_fetch"][f"ledger_{ledger_id}"] = self._clock()
        return self.set_cache(cache)

    def clear_cached_ledger_detail(self, ledger_id: str) -> bool:
        cache = self.get(KEY_CACHE)
        if not cache:
            return True
        cache.get("ledger_details", {}).pop(ledger_id, None)
        cache.get("last_fetch", {}).pop(f"ledger_{ledger_id}", None)
        return self.set_cache(cache)

    @staticmethod
    def _month_key(ledger_id: str, month: str) -> str:
        return f"{MONTH_PREFIX}{ledger_id}_{month}"

    def get_cached_month(self, ledger_id: str, month: str) -> Optional[dict[str, Any]]:
        cache = self.get_cache()
        key = self._month_key(ledger_id, month)
        data = cache["months"].get(key)
        if data is not None and self._is_fresh(cache, key, self._settings.month_ttl_seconds):
            return data
        return None

    def set_cached_month(self, ledger_id: str, month: str, data: dict[str, Any]) -> bool:
        cache = self.get_cache()
        key = self._month_key(ledger_id, month)
        cache["months"][key] = data
        cache["last_fetch"][key] = self._clock()
        return self.set_cache(cache)

    def clear_cached_month(self, ledger_id: str, month: str) -> bool:
        cache = self.get(KEY_CACHE)
        if not cache:
            return True
        key = self._month_key(ledger_id, month)
        cache.get("months", {}).pop(key, None)
        cache.get("last_fetch", {}).pop(key, None)
        return self.set_cache(cache)

    # =========================================================================
    # TRANSACTION CACHE (delta sync)
    # =========================================================================

    def get_transaction_cache(self) -> dict[str, Any]:
        return self.get(KEY_TRANSACTIONS) or {}

    def get_cached_transactions(
        self,
        ledger_id: str,
        max_age: Optional[float] = None,
    ) -> Optional[LedgerCacheEntry]:
        """
        Get the cached entry for a ledger.

        Args:
            ledger_id: Ledger to look up
            max_age: Optional freshness bound in seconds. The persistent
                tier is normally validated by its sync cursor, not age.

        Returns:
            The entry, or None if absent, unreadable or older than max_age
        """
        raw = self.get_transaction_cache().get(ledger_id)
        if not raw:
            return None
        try:
            entry = LedgerCacheEntry.model_validate(raw)
        except ValueError as e:
            logger.warning("storage_cache_entry_invalid", ledger_id=ledger_id, error=str(e))
            return None
        if max_age is not None and self._clock() - entry.last_fetch > max_age:
            return None
        return entry

    def get_sync_cursor(self, ledger_id: str) -> Optional[int]:
        entry = self.get_cached_transactions(ledger_id)
        return entry.sync_cursor if entry else None

    def set_cached_transactions(
        self,
        ledger_id: str,
        transactions: Iterable[TransactionLike],
        sync_cursor: Optional[int],
        since: Optional[date],
    ) -> bool:
        """Replace a ledger's cached records and cursor."""
        entry = LedgerCacheEntry(
            records=[project_record(t) for t in transactions],
            sync_cursor=sync_cursor,
            since_watermark=since,
            last_fetch=self._clock(),
        )
        return self._store_entry(ledger_id, entry)

    def update_cached_transactions(
        self,
        ledger_id: str,
        delta: Iterable[TransactionLike],
        sync_cursor: Optional[int],
    ) -> bool:
        """
        Merge a delta into a ledger's cached records.

        Deleted records are removed, everything else is upserted by id.
        The cursor and last-fetch time advance even for an empty delta.
        """
        existing = self.get_cached_transactions(ledger_id)
        if existing is None:
            return self.set_cached_transactions(ledger_id, delta, sync_cursor, None)

        entry = existing.model_copy(update={
            "records": merge_records(existing.records, delta),
            "sync_cursor": sync_cursor,
            "last_fetch": self._clock(),
        })
        return self._store_entry(ledger_id, entry)

    def _store_entry(self, ledger_id: str, entry: LedgerCacheEntry) -> bool:
        cache = self.get_transaction_cache()
        cache[ledger_id] = entry.model_dump(mode="json")
        return self.set(KEY_TRANSACTIONS, cache)

    def clear_ledger_transaction_cache(self, ledger_id: str) -> bool:
        cache = self.get_transaction_cache()
        if ledger_id not in cache:
            return True
        del cache[ledger_id]
        return self.set(KEY_TRANSACTIONS, cache)

    def clear_all_transaction_caches(self) -> bool:
        return self.remove(KEY_TRANSACTIONS)

    # =========================================================================
    # BALANCING PLANS
    # =========================================================================

    def get_balancing_plan(self, tag: str) -> Optional[BalancingPlan]:
        raw = (self.get(KEY_BALANCING_PLANS) or {}).get(tag)
        if not raw:
            return None
        return BalancingPlan.model_validate(raw)

    def save_balancing_plan(self, plan: BalancingPlan) -> bool:
        plans = self.get(KEY_BALANCING_PLANS) or {}
        plans[plan.tag] = plan.model_dump(mode="json")
        return self.set(KEY_BALANCING_PLANS, plans)

    def delete_balancing_plan(self, tag: str) -> bool:
        plans = self.get(KEY_BALANCING_PLANS) or {}
        if plans.pop(tag, None) is None:
            return False
        return self.set(KEY_BALANCING_PLANS, plans)

    def list_balancing_plans(self, include_finished: bool = False) -> list[BalancingPlan]:
        plans = [
            BalancingPlan.model_validate(raw)
            for raw in (self.get(KEY_BALANCING_PLANS) or {}).values()
        ]
        if not include_finished:
            plans = [p for p in plans if not p.is_finished]
        return sorted(plans, key=lambda p: p.created_at)

    # =========================================================================
    # HOUSEKEEPING
    # =========================================================================

    def clear_all(self) -> None:
        for key in (KEY_CREDENTIAL, KEY_CONFIG, KEY_CACHE, KEY_TRANSACTIONS, KEY_BALANCING_PLANS):
            self.remove(key)

    def get_storage_info(self) -> dict[str, Any]:
        """Size breakdown per namespace, for diagnostics."""
        sizes = {key: self._backend.size_of(key) for key in self._backend.keys()}
        total = sum(sizes.values())
        return {
            "total_bytes": total,
            "quota_bytes": self._backend.quota_bytes,
            "total": f"{total / 1024 / 1024:.2f} MB",
            "breakdown": {key: f"{size / 1024:.2f} KB" for key, size in sizes.items()},
        }

"""Tests for the two-tier transaction cache and delta sync."""

from datetime import timedelta

import pytest

from ledgerlink.models.audit import AuditEventType
from ledgerlink.models.ledger import TransactionDraft, TransactionFilter, years_ago
from ledgerlink.services.remote.interface import NetworkError, NotFoundError, ServiceUnavailable
from ledgerlink.services.storage import MemoryBackend, PersistentCacheStore
from ledgerlink.services.ui import NotificationLevel
from ledgerlink.store import ReactiveLedgerStore
from ledgerlink.sync import SyncCacheManager
from ledgerlink.sync.manager import QUOTA_WARNING

from tests.conftest import ALICE_LEDGER, BOB_LEDGER, CURRENT_MONTH, RECENT, TODAY


def _add(client, ledger_id=ALICE_LEDGER, **fields):
    fields.setdefault("date", RECENT)
    fields.setdefault("amount", -1000)
    fields.setdefault("account_id", "alice-checking")
    fields.setdefault("category_id", "alice-shared")
    return client.add_transaction(ledger_id, **fields)


def _ids(txns):
    return sorted(t.id for t in txns)


class TestFetchDecision:
    """Tests for memory hit, delta sync and full fetch selection."""

    @pytest.mark.asyncio
    async def test_first_read_is_full_fetch(self, sync, fake_client, cache_store, store):
        """A cold read fetches from the default floor and fills both tiers and the store."""
        recent = _add(fake_client)
        _add(fake_client, date=TODAY - timedelta(days=5 * 365))

        txns = await sync.get_transactions(ALICE_LEDGER)

        assert _ids(txns) == [recent.id]
        (call,) = fake_client.calls_to("list_transactions")
        assert call == ("list_transactions", ALICE_LEDGER, years_ago(2), None)

        entry = cache_store.get_cached_transactions(ALICE_LEDGER)
        assert entry.sync_cursor == fake_client.ledgers[ALICE_LEDGER].knowledge
        assert entry.since_watermark == years_ago(2)
        assert [t.id for t in store.get_transactions(ALICE_LEDGER)] == [recent.id]
        assert store.get_transactions(ALICE_LEDGER)[0].ledger_id == ALICE_LEDGER

    @pytest.mark.asyncio
    async def test_fresh_memory_entry_is_served(self, sync, fake_client):
        """A second read within the TTL makes no remote call."""
        _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)
        await sync.get_transactions(ALICE_LEDGER)

        assert len(fake_client.calls_to("list_transactions")) == 1

    @pytest.mark.asyncio
    async def test_delta_sync_after_memory_expiry(self, sync, fake_client, clock, store):
        """An expired memory entry triggers a delta sync with the stored cursor."""
        first = _add(fake_client)
        second = _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)
        cursor = fake_client.ledgers[ALICE_LEDGER].knowledge

        await fake_client.delete_transaction(ALICE_LEDGER, first.id)
        third = _add(fake_client, amount=-2500)
        clock.advance(601)

        txns = await sync.get_transactions(ALICE_LEDGER)

        assert _ids(txns) == sorted([second.id, third.id])
        last_call = fake_client.calls_to("list_transactions")[-1]
        assert last_call == ("list_transactions", ALICE_LEDGER, None, cursor)
        assert _ids(store.get_transactions(ALICE_LEDGER)) == sorted([second.id, third.id])

    @pytest.mark.asyncio
    async def test_empty_delta_keeps_records(self, sync, fake_client, clock, cache_store):
        """A delta with no changes serves the same set and refreshes the entry."""
        _add(fake_client)
        _add(fake_client)
        before = await sync.get_transactions(ALICE_LEDGER)

        clock.advance(601)
        after = await sync.get_transactions(ALICE_LEDGER)

        assert _ids(after) == _ids(before)
        assert cache_store.get_cached_transactions(ALICE_LEDGER).last_fetch == clock.now

    @pytest.mark.asyncio
    async def test_force_refresh_is_full_fetch(self, sync, fake_client):
        """force_refresh skips both caches."""
        _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)
        await sync.get_transactions(ALICE_LEDGER, force_refresh=True)

        calls = fake_client.calls_to("list_transactions")
        assert len(calls) == 2
        assert calls[1][3] is None

    @pytest.mark.asyncio
    async def test_older_floor_triggers_full_fetch(self, sync, fake_client, cache_store):
        """A floor older than the cached watermark refetches from that floor."""
        old = _add(fake_client, date=TODAY - timedelta(days=3 * 365))
        _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        floor = years_ago(4)
        txns = await sync.get_transactions(ALICE_LEDGER, since=floor)

        assert old.id in _ids(txns)
        last_call = fake_client.calls_to("list_transactions")[-1]
        assert last_call[2] == floor
        assert cache_store.get_cached_transactions(ALICE_LEDGER).since_watermark == floor

    @pytest.mark.asyncio
    async def test_newer_floor_is_served_from_cache(self, sync, fake_client):
        """A floor inside the cached window is a cache hit, filtered by date."""
        older = _add(fake_client, date=TODAY - timedelta(days=60))
        newer = _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        txns = await sync.get_transactions(ALICE_LEDGER, since=TODAY - timedelta(days=30))

        assert _ids(txns) == [newer.id]
        assert older.id not in _ids(txns)
        assert len(fake_client.calls_to("list_transactions")) == 1

    @pytest.mark.asyncio
    async def test_filters_apply_to_served_records(self, sync, fake_client):
        """Account and category filters are applied client-side."""
        wanted = _add(fake_client, account_id="alice-checking", category_id="alice-shared")
        _add(fake_client, account_id="alice-savings", category_id="alice-shared")
        _add(fake_client, account_id="alice-checking", category_id="groceries")

        txns = await sync.get_transactions(
            ALICE_LEDGER,
            filters=TransactionFilter(account_id="alice-checking", category_id="alice-shared"),
        )

        assert _ids(txns) == [wanted.id]

    @pytest.mark.asyncio
    async def test_account_activity_for_month(self, sync, fake_client):
        """Activity sums one account's amounts inside the month."""
        _add(fake_client, date=TODAY.replace(day=1), amount=-1000)
        _add(fake_client, date=TODAY.replace(day=1), amount=-2000)
        _add(fake_client, date=TODAY.replace(day=1), amount=-4000, account_id="other")

        total = await sync.get_account_activity_for_month(ALICE_LEDGER, "alice-checking", CURRENT_MONTH)

        assert total == -3000


class TestFallback:
    """Tests for read-path degradation on remote failure."""

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_and_warns_once(self, sync, fake_client, clock, notifier, audit_storage):
        """A failed delta serves the stale memory entry with a single notification."""
        txn = _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        fake_client.fail("list_transactions", NetworkError("offline"), times=2)
        clock.advance(601)
        first = await sync.get_transactions(ALICE_LEDGER)
        clock.advance(601)
        second = await sync.get_transactions(ALICE_LEDGER)

        assert _ids(first) == _ids(second) == [txn.id]
        assert notifier.at_level(NotificationLevel.ERROR) == [NetworkError.user_message]

        events = await audit_storage.get_recent_events()
        fallbacks = [e for e in events if e.event_type == AuditEventType.SYNC_FALLBACK]
        assert len(fallbacks) == 2
        assert fallbacks[0].details["tier"] == "memory"

    @pytest.mark.asyncio
    async def test_each_error_class_warns_once(self, sync, fake_client, clock, notifier):
        """Different error classes each get their own notification."""
        _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        fake_client.fail("list_transactions", NetworkError("offline"))
        fake_client.fail("list_transactions", ServiceUnavailable("down", 503))
        for _ in range(2):
            clock.advance(601)
            await sync.get_transactions(ALICE_LEDGER)

        assert notifier.at_level(NotificationLevel.ERROR) == [
            NetworkError.user_message,
            ServiceUnavailable.user_message,
        ]

    @pytest.mark.asyncio
    async def test_falls_back_to_persistent_cache(
        self, sync, fake_client, cache_store, household, notifier, cache_settings, audit, clock, audit_storage,
    ):
        """A new session with an unreachable remote serves the persisted records."""
        txn = _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        fresh_store = ReactiveLedgerStore(config=household)
        restarted = SyncCacheManager(
            client=fake_client,
            cache_store=cache_store,
            store=fresh_store,
            notifier=notifier,
            settings=cache_settings,
            audit=audit,
            clock=clock,
        )
        fake_client.fail("list_transactions", NetworkError("offline"))

        txns = await restarted.get_transactions(ALICE_LEDGER)

        assert _ids(txns) == [txn.id]
        assert _ids(fresh_store.get_transactions(ALICE_LEDGER)) == [txn.id]
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.SYNC_FALLBACK
        assert events[0].details["tier"] == "persistent"

    @pytest.mark.asyncio
    async def test_raises_when_nothing_is_cached(self, sync, fake_client, notifier):
        """With no cache at all the remote error propagates."""
        fake_client.fail("list_transactions", NetworkError("offline"))

        with pytest.raises(NetworkError):
            await sync.get_transactions(ALICE_LEDGER)

        assert notifier.at_level(NotificationLevel.ERROR) == [NetworkError.user_message]

    @pytest.mark.asyncio
    async def test_preload_yields_empty_list_for_failed_ledger(self, sync, fake_client):
        """One failing ledger does not abort the others."""
        alice = _add(fake_client)
        bob = _add(fake_client, BOB_LEDGER, account_id="bob-checking", category_id="bob-shared")

        results = await sync.preload([ALICE_LEDGER, "unknown-ledger", BOB_LEDGER])

        assert _ids(results[ALICE_LEDGER]) == [alice.id]
        assert results["unknown-ledger"] == []
        assert _ids(results[BOB_LEDGER]) == [bob.id]


class TestDegradedStorage:
    """Tests for ledgers whose persistent write failed."""

    @pytest.fixture
    def tiny_sync(self, fake_client, household, notifier, cache_settings, audit, clock):
        cache_store = PersistentCacheStore(MemoryBackend(quota_bytes=1024), cache_settings, clock=clock)
        return SyncCacheManager(
            client=fake_client,
            cache_store=cache_store,
            store=ReactiveLedgerStore(config=household),
            notifier=notifier,
            settings=cache_settings,
            audit=audit,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_quota_failure_degrades_to_memory(self, tiny_sync, fake_client, notifier):
        """Records are still served and the quota warning shown once."""
        for _ in range(5):
            _add(fake_client, memo="x" * 300)
            _add(fake_client, BOB_LEDGER, account_id="bob-checking", memo="y" * 300)

        alice = await tiny_sync.get_transactions(ALICE_LEDGER)
        bob = await tiny_sync.get_transactions(BOB_LEDGER)

        assert len(alice) == 5
        assert len(bob) == 5
        assert tiny_sync.is_degraded(ALICE_LEDGER)
        assert tiny_sync.is_degraded(BOB_LEDGER)
        assert notifier.at_level(NotificationLevel.WARNING) == [QUOTA_WARNING]

    @pytest.mark.asyncio
    async def test_degraded_ledger_serves_memory_for_any_floor(self, tiny_sync, fake_client):
        """A degraded ledger never refetches while its memory entry is fresh."""
        for _ in range(5):
            _add(fake_client, memo="x" * 300)
        await tiny_sync.get_transactions(ALICE_LEDGER)

        await tiny_sync.get_transactions(ALICE_LEDGER, since=years_ago(5))

        assert len(fake_client.calls_to("list_transactions")) == 1


class TestMonthsAndLedgers:
    """Tests for month, ledger list and ledger detail caching."""

    @pytest.mark.asyncio
    async def test_month_is_cached_until_invalidated(self, sync, fake_client):
        """get_month hits the remote once until the month is invalidated."""
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing", budgeted=5000)

        first = await sync.get_month(ALICE_LEDGER, CURRENT_MONTH)
        await sync.get_month(ALICE_LEDGER, CURRENT_MONTH)
        assert len(fake_client.calls_to("get_month")) == 1
        assert first.find_category("alice-balancing").budgeted == 5000

        sync.invalidate_month(ALICE_LEDGER, CURRENT_MONTH)
        await sync.get_month(ALICE_LEDGER, CURRENT_MONTH)
        assert len(fake_client.calls_to("get_month")) == 2

    @pytest.mark.asyncio
    async def test_category_for_month(self, sync, fake_client):
        """A single category is looked up inside the cached month."""
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared", budgeted=100, activity=-40)

        category = await sync.get_category_for_month(ALICE_LEDGER, "alice-shared", CURRENT_MONTH)

        assert category.balance == 60
        assert await sync.get_category_for_month(ALICE_LEDGER, "nope", CURRENT_MONTH) is None

    @pytest.mark.asyncio
    async def test_preload_months_tolerates_missing(self, sync, fake_client):
        """Months the remote does not know come back as None."""
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared")

        results = await sync.preload_months(ALICE_LEDGER, [CURRENT_MONTH, "1999-01-01"])

        assert results[CURRENT_MONTH] is not None
        assert results["1999-01-01"] is None

    @pytest.mark.asyncio
    async def test_ledger_list_cached(self, sync, fake_client):
        """The ledger list is cached until force_refresh."""
        first = await sync.get_ledgers()
        await sync.get_ledgers()
        await sync.get_ledgers(force_refresh=True)

        assert {l.id for l in first} == {ALICE_LEDGER, BOB_LEDGER, "shared-ledger"}
        assert len(fake_client.calls_to("list_ledgers")) == 2

    @pytest.mark.asyncio
    async def test_ledger_detail_cached(self, sync, fake_client):
        """Ledger detail is cached and keeps transfer payees."""
        detail = await sync.get_ledger_detail("shared-ledger")
        await sync.get_ledger_detail("shared-ledger")

        assert detail.find_account("shared-bob").transfer_payee_id == "payee-shared-bob"
        assert len(fake_client.calls_to("get_ledger")) == 1

    @pytest.mark.asyncio
    async def test_clear_all_caches(self, sync, fake_client, cache_store):
        """Clearing caches forces a full fetch next time."""
        _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)
        sync.clear_all_caches()

        assert cache_store.get_cached_transactions(ALICE_LEDGER) is None
        await sync.get_transactions(ALICE_LEDGER)
        calls = fake_client.calls_to("list_transactions")
        assert len(calls) == 2
        assert calls[1][3] is None


class TestMutations:
    """Tests for the write path."""

    @pytest.mark.asyncio
    async def test_create_updates_store_and_invalidates(self, sync, fake_client, store):
        """A created transaction appears in the store and the next read re-syncs."""
        _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        created = await sync.create_transaction(ALICE_LEDGER, TransactionDraft(
            account_id="alice-checking", date=RECENT, amount=-700, memo="Lunch",
        ))

        assert store.find_transaction(ALICE_LEDGER, created.id) is not None
        txns = await sync.get_transactions(ALICE_LEDGER)
        assert created.id in _ids(txns)
        assert fake_client.calls_to("list_transactions")[-1][3] is not None

    @pytest.mark.asyncio
    async def test_update_replaces_store_copy(self, sync, fake_client, store):
        """An update replaces the transaction in the store."""
        txn = _add(fake_client, memo="Old")
        await sync.get_transactions(ALICE_LEDGER)

        await sync.update_transaction(ALICE_LEDGER, txn.id, TransactionDraft(memo="New"))

        assert store.find_transaction(ALICE_LEDGER, txn.id).memo == "New"

    @pytest.mark.asyncio
    async def test_delete_removes_from_store(self, sync, fake_client, store):
        """A delete removes the transaction from the store."""
        txn = _add(fake_client)
        await sync.get_transactions(ALICE_LEDGER)

        await sync.delete_transaction(ALICE_LEDGER, txn.id)

        assert store.find_transaction(ALICE_LEDGER, txn.id) is None
        assert await sync.get_transactions(ALICE_LEDGER) == []

    @pytest.mark.asyncio
    async def test_write_errors_propagate(self, sync, fake_client):
        """Write failures are not swallowed."""
        with pytest.raises(NotFoundError):
            await sync.delete_transaction(ALICE_LEDGER, "missing")

    @pytest.mark.asyncio
    async def test_budget_update_invalidates_month(self, sync, fake_client):
        """Changing a budget drops the cached month."""
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing", budgeted=1000)
        await sync.get_month(ALICE_LEDGER, CURRENT_MONTH)

        await sync.update_category_budget(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing", 3000)
        month = await sync.get_month(ALICE_LEDGER, CURRENT_MONTH)

        assert month.find_category("alice-balancing").budgeted == 3000
        assert len(fake_client.calls_to("get_month")) == 2

"""
Shared fixtures: a two-participant household (Alice and Bob) wired to an
in-memory remote service, memory-backed persistent cache and fake clock.
"""

from datetime import date, timedelta

import pytest

from ledgerlink.audit import AuditLogger
from ledgerlink.config import CacheSettings
from ledgerlink.models.ledger import HouseholdConfig, ParticipantBinding, month_key
from ledgerlink.reconciliation import ReconciliationEngine
from ledgerlink.services.storage import MemoryAuditStorage, MemoryBackend, PersistentCacheStore
from ledgerlink.store import ReactiveLedgerStore
from ledgerlink.sync import SyncCacheManager

from tests.fakes import FakeClock, FakeLedgerClient, FixedConfirmation, RecordingNotifier


SHARED_LEDGER = "shared-ledger"
ALICE_LEDGER = "alice-ledger"
BOB_LEDGER = "bob-ledger"

TODAY = date.today()
RECENT = TODAY - timedelta(days=3)
CURRENT_MONTH = month_key(TODAY)


def make_household() -> HouseholdConfig:
    return HouseholdConfig(
        shared_ledger_id=SHARED_LEDGER,
        participants=[
            ParticipantBinding(
                name="Alice",
                personal_ledger_id=ALICE_LEDGER,
                shared_category_id="alice-shared",
                balancing_category_id="alice-balancing",
                contribution_account_id="shared-alice",
            ),
            ParticipantBinding(
                name="Bob",
                personal_ledger_id=BOB_LEDGER,
                shared_category_id="bob-shared",
                balancing_category_id="bob-balancing",
                contribution_account_id="shared-bob",
            ),
        ],
    )


def make_client(mirror_transfers: bool = True) -> FakeLedgerClient:
    client = FakeLedgerClient(mirror_transfers=mirror_transfers)
    client.add_ledger(ALICE_LEDGER, "Alice Personal")
    client.add_account(ALICE_LEDGER, "alice-checking", "Alice Checking")
    client.add_ledger(BOB_LEDGER, "Bob Personal")
    client.add_account(BOB_LEDGER, "bob-checking", "Bob Checking")
    client.add_ledger(SHARED_LEDGER, "Household")
    client.add_account(SHARED_LEDGER, "shared-alice", "Alice Contributions")
    client.add_account(SHARED_LEDGER, "shared-bob", "Bob Contributions")
    client.add_category(SHARED_LEDGER, "rta", "Inflow: Ready to Assign")
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_settings():
    return CacheSettings()


@pytest.fixture
def backend():
    return MemoryBackend(quota_bytes=5 * 1024 * 1024)


@pytest.fixture
def cache_store(backend, cache_settings, clock):
    return PersistentCacheStore(backend, cache_settings, clock=clock)


@pytest.fixture
def household():
    return make_household()


@pytest.fixture
def fake_client():
    return make_client()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def confirmer():
    return FixedConfirmation(answer=True)


@pytest.fixture
def audit_storage():
    return MemoryAuditStorage()


@pytest.fixture
def audit(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def store(household):
    return ReactiveLedgerStore(config=household)


@pytest.fixture
def sync(fake_client, cache_store, store, notifier, cache_settings, audit, clock):
    return SyncCacheManager(
        client=fake_client,
        cache_store=cache_store,
        store=store,
        notifier=notifier,
        settings=cache_settings,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def engine(sync, cache_store, notifier, confirmer, audit):
    return ReconciliationEngine(
        sync=sync,
        cache_store=cache_store,
        notifier=notifier,
        confirmer=confirmer,
        audit=audit,
    )

"""
Reactive Ledger Store

Source of truth for derived reconciliation state. The store:
1. Receives raw transactions from the sync manager (it never calls the API)
2. Recomputes linked groups, unlinked lists, sync status and balances
3. Publishes every derived value on a named channel

Data flow:
    remote API -> SyncCacheManager -> ReactiveLedgerStore -> subscribers

DESIGN DECISION: Recomputation is synchronous and complete. Every setter
returns only after all derived state is rebuilt and all subscribers have
run, so a read right after a mutation always sees consistent state.
Linked groups are never persisted; they are rebuilt from scratch each time.
"""

from collections import defaultdict
from typing import Any, Callable, Iterable, Optional, Union

import structlog

from ledgerlink.models.ledger import (
    HouseholdConfig,
    Transaction,
    TransactionFilter,
)
from ledgerlink.models.reconciliation import (
    LinkedEntry,
    LinkedGroup,
    ParticipantBalance,
    SharedEntry,
    SyncStatus,
)
from ledgerlink.models.tags import Tag, TagKind
from ledgerlink.tags import codec


logger = structlog.get_logger(__name__)


Subscriber = Callable[[Any], None]
Unsubscribe = Callable[[], None]

CHANNEL_CONFIG = "config"
CHANNEL_TRANSACTIONS = "transactions"
CHANNEL_LINKED_GROUPS = "linked_groups"
CHANNEL_UNLINKED_PERSONAL = "unlinked_personal"
CHANNEL_UNLINKED_SHARED = "unlinked_shared"
CHANNEL_LINKED_PERSONAL = "linked_personal"
CHANNEL_LINKED_SHARED = "linked_shared"
CHANNEL_SYNC_STATUS = "sync_status"
CHANNEL_BALANCES = "balances"

DERIVED_CHANNELS = (
    CHANNEL_LINKED_GROUPS,
    CHANNEL_UNLINKED_PERSONAL,
    CHANNEL_UNLINKED_SHARED,
    CHANNEL_LINKED_PERSONAL,
    CHANNEL_LINKED_SHARED,
    CHANNEL_SYNC_STATUS,
    CHANNEL_BALANCES,
)


def transactions_channel(ledger_id: str) -> str:
    return f"{CHANNEL_TRANSACTIONS}.{ledger_id}"


def is_group_complete(
    kind: TagKind,
    personal_count: int,
    shared_count: int,
    participant_count: int,
) -> bool:
    """
    Structural completeness rule for a linked group.

    - Balancing: one personal leg and one shared leg per participant
    - Monthly: at least one shared transaction
    - Regular: at least one personal and one shared transaction
    """
    if kind == TagKind.BALANCING:
        return personal_count == participant_count and shared_count == participant_count
    if kind == TagKind.MONTHLY:
        return shared_count >= 1
    return personal_count >= 1 and shared_count >= 1


def _by_date_desc(items: list, key: Callable[[Any], Any]) -> list:
    return sorted(items, key=key, reverse=True)


class _Bucket:
    """Mutable accumulator for one tag during recomputation."""

    def __init__(self, tag: Tag):
        self.tag = tag
        self.personal: dict[str, list[Transaction]] = {}
        self.shared: list[SharedEntry] = []


class ReactiveLedgerStore:
    """
    Raw transactions plus derived reconciliation state, with pub/sub.

    Channels: ``config``, ``transactions`` and ``transactions.<ledger>``,
    ``linked_groups``, ``unlinked_personal``, ``unlinked_shared``,
    ``linked_personal``, ``linked_shared``, ``sync_status``, ``balances``.
    A change on ``transactions.<ledger>`` also notifies ``transactions``.
    """

    def __init__(self, config: Optional[HouseholdConfig] = None, cache_store=None):
        """
        Args:
            config: Initial household configuration
            cache_store: Optional PersistentCacheStore; config changes are
                persisted to it
        """
        self._cache_store = cache_store
        self._config = config or HouseholdConfig()
        self._transactions: dict[str, list[Transaction]] = {}
        self._last_sync: dict[str, float] = {}

        self._linked_groups: list[LinkedGroup] = []
        self._unlinked_personal: dict[str, list[Transaction]] = {}
        self._unlinked_shared: dict[str, list[Transaction]] = {}
        self._linked_personal: dict[str, list[LinkedEntry]] = {}
        self._linked_shared: dict[str, list[LinkedEntry]] = {}
        self._sync_status = SyncStatus()
        self._balances: dict[str, ParticipantBalance] = {}

        self._listeners: dict[str, list[Subscriber]] = defaultdict(list)
        self._error_counts: dict[str, int] = defaultdict(int)

    # =========================================================================
    # PUB/SUB
    # =========================================================================

    def subscribe(self, channel: str, callback: Subscriber) -> Unsubscribe:
        """
        Subscribe to a channel.

        Returns:
            A callable that removes the subscription
        """
        self._listeners[channel].append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(channel, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _deliver(self, channel: str, value: Any) -> None:
        for callback in list(self._listeners.get(channel, [])):
            try:
                callback(value)
            except Exception:
                self._error_counts[channel] += 1
                logger.exception("store_subscriber_failed", channel=channel)

    def _notify(self, channel: str) -> None:
        self._deliver(channel, self.get(channel))
        if "." in channel:
            parent = channel.split(".", 1)[0]
            self._deliver(parent, self.get(parent))

    def get_error_counts(self) -> dict[str, int]:
        return dict(self._error_counts)

    def get(self, channel: str) -> Any:
        """Current value published on ``channel``."""
        if channel.startswith(f"{CHANNEL_TRANSACTIONS}."):
            ledger_id = channel.split(".", 1)[1]
            return list(self._transactions.get(ledger_id, []))
        values = {
            CHANNEL_CONFIG: self._config,
            CHANNEL_TRANSACTIONS: {k: list(v) for k, v in self._transactions.items()},
            CHANNEL_LINKED_GROUPS: self._linked_groups,
            CHANNEL_UNLINKED_PERSONAL: self._unlinked_personal,
            CHANNEL_UNLINKED_SHARED: self._unlinked_shared,
            CHANNEL_LINKED_PERSONAL: self._linked_personal,
            CHANNEL_LINKED_SHARED: self._linked_shared,
            CHANNEL_SYNC_STATUS: self._sync_status,
            CHANNEL_BALANCES: self._balances,
        }
        if channel not in values:
            raise KeyError(f"Unknown channel: {channel}")
        return values[channel]

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    @property
    def config(self) -> HouseholdConfig:
        return self._config

    def set_config(self, config: HouseholdConfig) -> None:
        self._config = config
        if self._cache_store is not None:
            self._cache_store.set_config(config)
        self._notify(CHANNEL_CONFIG)
        self.recompute()

    def update_config(self, **updates: Any) -> HouseholdConfig:
        data = self._config.model_dump()
        data.update(updates)
        self.set_config(HouseholdConfig.model_validate(data))
        return self._config

    # =========================================================================
    # RAW TRANSACTIONS
    # =========================================================================

    @staticmethod
    def _coerce(ledger_id: str, txn: Union[Transaction, dict[str, Any]]) -> Transaction:
        if not isinstance(txn, Transaction):
            txn = Transaction.model_validate(txn)
        if txn.ledger_id != ledger_id:
            txn = txn.model_copy(update={"ledger_id": ledger_id})
        return txn

    def set_transactions(
        self,
        ledger_id: str,
        transactions: Iterable[Union[Transaction, dict[str, Any]]],
        synced_at: Optional[float] = None,
    ) -> None:
        """Replace the raw transactions of a ledger."""
        self._transactions[ledger_id] = [self._coerce(ledger_id, t) for t in transactions]
        if synced_at is not None:
            self._last_sync[ledger_id] = synced_at
        self._notify(transactions_channel(ledger_id))
        self.recompute()

    def upsert_transaction(
        self,
        ledger_id: str,
        transaction: Union[Transaction, dict[str, Any]],
    ) -> bool:
        """
        Insert or replace one transaction by id.

        Ignored (returns False) when the ledger has not been loaded, so a
        partial list never masquerades as a loaded ledger.
        """
        txns = self._transactions.get(ledger_id)
        if txns is None:
            return False

        txn = self._coerce(ledger_id, transaction)
        for index, existing in enumerate(txns):
            if existing.id == txn.id:
                txns[index] = txn
                break
        else:
            txns.append(txn)

        self._notify(transactions_channel(ledger_id))
        self.recompute()
        return True

    def remove_transaction(self, ledger_id: str, transaction_id: str) -> bool:
        txns = self._transactions.get(ledger_id)
        if not txns:
            return False

        remaining = [t for t in txns if t.id != transaction_id]
        if len(remaining) == len(txns):
            return False

        self._transactions[ledger_id] = remaining
        self._notify(transactions_channel(ledger_id))
        self.recompute()
        return True

    def clear_ledger(self, ledger_id: str) -> None:
        self._transactions.pop(ledger_id, None)
        self._last_sync.pop(ledger_id, None)
        self._notify(transactions_channel(ledger_id))
        self.recompute()

    def has_transactions(self, ledger_id: str) -> bool:
        return bool(self._transactions.get(ledger_id))

    def loaded_ledger_ids(self) -> list[str]:
        return list(self._transactions.keys())

    def last_sync(self, ledger_id: str) -> Optional[float]:
        return self._last_sync.get(ledger_id)

    def get_transactions(
        self,
        ledger_id: str,
        filters: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        txns = list(self._transactions.get(ledger_id, []))
        return filters.apply(txns) if filters else txns

    def find_transaction(self, ledger_id: str, transaction_id: str) -> Optional[Transaction]:
        for txn in self._transactions.get(ledger_id, []):
            if txn.id == transaction_id:
                return txn
        return None

    def is_before_cutoff(self, txn: Transaction) -> bool:
        """True when ``txn`` predates the household's reconciliation cutoff."""
        cutoff = self._config.reconciliation_cutoff_date
        return cutoff is not None and txn.date < cutoff

    # =========================================================================
    # DERIVED STATE
    # =========================================================================

    def _personal_transactions(self, binding) -> list[Transaction]:
        """Shared-expense and balancing category transactions, deduplicated."""
        seen: set[str] = set()
        result = []
        for category_id in binding.personal_category_ids:
            for txn in self.get_transactions(
                binding.personal_ledger_id,
                TransactionFilter(category_id=category_id),
            ):
                if txn.id not in seen:
                    seen.add(txn.id)
                    result.append(txn)
        return result

    def _shared_transactions(self, binding) -> list[Transaction]:
        return self.get_transactions(
            self._config.shared_ledger_id,
            TransactionFilter(account_id=binding.contribution_account_id),
        )

    @staticmethod
    def _read_tag(txn: Transaction) -> Optional[Tag]:
        tags = codec.extract_all(txn.memo)
        if not tags:
            return None
        if len(tags) > 1:
            logger.warning(
                "multiple_tags_in_note",
                transaction_id=txn.id,
                tags=tags,
                used=tags[0],
            )
        try:
            return codec.parse(tags[0])
        except ValueError:
            logger.warning("malformed_tag_ignored", transaction_id=txn.id, tag=tags[0])
            return None

    def recompute(self) -> None:
        """Rebuild all derived state and notify derived channels."""
        config = self._config
        buckets: dict[str, _Bucket] = {}
        unlinked_personal: dict[str, list[Transaction]] = {}
        unlinked_shared: dict[str, list[Transaction]] = {}
        linked_personal: dict[str, list[LinkedEntry]] = {}
        linked_shared: dict[str, list[LinkedEntry]] = {}

        if config.is_configured:
            for binding in config.participants:
                name = binding.name
                unlinked_personal[name] = []
                unlinked_shared[name] = []
                linked_personal[name] = []
                linked_shared[name] = []

                for txn in self._personal_transactions(binding):
                    if txn.deleted:
                        continue
                    tag = self._read_tag(txn)
                    if tag is None:
                        unlinked_personal[name].append(txn)
                        continue
                    bucket = buckets.setdefault(tag.value, _Bucket(tag))
                    bucket.personal.setdefault(name, []).append(txn)
                    linked_personal[name].append(
                        LinkedEntry(participant=name, tag=tag.value, transaction=txn)
                    )

                for txn in self._shared_transactions(binding):
                    if txn.deleted:
                        continue
                    tag = self._read_tag(txn)
                    if tag is None:
                        unlinked_shared[name].append(txn)
                        continue
                    bucket = buckets.setdefault(tag.value, _Bucket(tag))
                    bucket.shared.append(SharedEntry(participant=name, transaction=txn))
                    linked_shared[name].append(
                        LinkedEntry(participant=name, tag=tag.value, transaction=txn)
                    )

        participant_count = config.participant_count
        groups = []
        for bucket in buckets.values():
            group = LinkedGroup(tag=bucket.tag, personal=bucket.personal, shared=bucket.shared)
            group.complete = is_group_complete(
                group.kind, group.personal_count, group.shared_count, participant_count
            )
            groups.append(group)

        self._linked_groups = _by_date_desc(groups, key=lambda g: g.latest_date)
        self._unlinked_personal = {
            k: _by_date_desc(v, key=lambda t: t.date) for k, v in unlinked_personal.items()
        }
        self._unlinked_shared = {
            k: _by_date_desc(v, key=lambda t: t.date) for k, v in unlinked_shared.items()
        }
        self._linked_personal = {
            k: _by_date_desc(v, key=lambda e: e.transaction.date) for k, v in linked_personal.items()
        }
        self._linked_shared = {
            k: _by_date_desc(v, key=lambda e: e.transaction.date) for k, v in linked_shared.items()
        }
        self._sync_status = self._compute_sync_status()
        self._balances = self._compute_balances()

        for channel in DERIVED_CHANNELS:
            self._notify(channel)

    def _compute_sync_status(self) -> SyncStatus:
        complete = sum(1 for g in self._linked_groups if g.complete)
        unlinked = sum(
            1
            for txns in (*self._unlinked_personal.values(), *self._unlinked_shared.values())
            for txn in txns
            if not self.is_before_cutoff(txn)
        )
        linked = len(self._linked_groups)
        return SyncStatus(
            linked=linked,
            complete=complete,
            incomplete=linked - complete,
            unlinked=unlinked,
            total=linked + unlinked,
        )

    def _compute_balances(self) -> dict[str, ParticipantBalance]:
        if not self._config.is_configured:
            return {}

        balances = {}
        for binding in self._config.participants:
            personal = sum(
                t.amount
                for t in self.get_transactions(
                    binding.personal_ledger_id,
                    TransactionFilter(category_id=binding.shared_category_id),
                )
                if not t.deleted
            )
            shared = sum(t.amount for t in self._shared_transactions(binding) if not t.deleted)
            balances[binding.name] = ParticipantBalance(
                personal=personal,
                shared=shared,
                net=personal + shared,
            )
        return balances

    # =========================================================================
    # QUERIES
    # =========================================================================

    @property
    def linked_groups(self) -> list[LinkedGroup]:
        return list(self._linked_groups)

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    @property
    def balances(self) -> dict[str, ParticipantBalance]:
        return dict(self._balances)

    def unlinked_personal(self, participant: str) -> list[Transaction]:
        return list(self._unlinked_personal.get(participant, []))

    def unlinked_shared(self, participant: str) -> list[Transaction]:
        return list(self._unlinked_shared.get(participant, []))

    def linked_personal(self, participant: str) -> list[LinkedEntry]:
        return list(self._linked_personal.get(participant, []))

    def linked_shared(self, participant: str) -> list[LinkedEntry]:
        return list(self._linked_shared.get(participant, []))

    def find_group(self, tag: str) -> Optional[LinkedGroup]:
        for group in self._linked_groups:
            if group.tag_value == tag:
                return group
        return None

    def missing_details(self, group: LinkedGroup) -> list[str]:
        """Human-readable list of what an incomplete group lacks."""
        missing = []
        if group.kind == TagKind.BALANCING:
            shared_participants = {entry.participant for entry in group.shared}
            for binding in self._config.participants:
                if not group.personal.get(binding.name):
                    missing.append(f"{binding.name} personal")
                if binding.name not in shared_participants:
                    missing.append(f"{binding.name} shared")
        elif group.kind == TagKind.MONTHLY:
            if group.shared_count == 0:
                missing.append("shared transaction")
        else:
            if group.personal_count == 0:
                missing.append("personal")
            if group.shared_count == 0:
                missing.append("shared")
        return missing

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def hydrate_from(self, cache_store) -> None:
        """
        Load configuration and cached transactions at startup.

        Recomputes once at the end instead of once per ledger.
        """
        self._cache_store = cache_store
        self._config = cache_store.get_config()
        for ledger_id, raw in cache_store.get_transaction_cache().items():
            records = raw.get("records") or []
            self._transactions[ledger_id] = [self._coerce(ledger_id, r) for r in records]
            self._last_sync[ledger_id] = raw.get("last_fetch") or 0.0

        logger.info(
            "store_hydrated",
            configured=self._config.is_configured,
            ledgers_loaded=len(self._transactions),
        )
        self._notify(CHANNEL_CONFIG)
        self.recompute()

    def snapshot(self) -> dict[str, Any]:
        """JSON-compatible dump of raw and derived state, for debugging."""
        return {
            "config": self._config.model_dump(mode="json"),
            "transactions": {
                ledger_id: [t.model_dump(mode="json") for t in txns]
                for ledger_id, txns in self._transactions.items()
            },
            "last_sync": dict(self._last_sync),
            "linked_groups": [g.model_dump(mode="json") for g in self._linked_groups],
            "sync_status": self._sync_status.model_dump(),
            "balances": {k: v.model_dump() for k, v in self._balances.items()},
            "subscribers": {k: len(v) for k, v in self._listeners.items() if v},
        }

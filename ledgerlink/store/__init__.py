"""Reactive derived-state store."""

from ledgerlink.store.reactive import (
    CHANNEL_BALANCES,
    CHANNEL_CONFIG,
    CHANNEL_LINKED_GROUPS,
    CHANNEL_LINKED_PERSONAL,
    CHANNEL_LINKED_SHARED,
    CHANNEL_SYNC_STATUS,
    CHANNEL_TRANSACTIONS,
    CHANNEL_UNLINKED_PERSONAL,
    CHANNEL_UNLINKED_SHARED,
    ReactiveLedgerStore,
    Subscriber,
    is_group_complete,
    transactions_channel,
)

__all__ = [
    "CHANNEL_BALANCES",
    "CHANNEL_CONFIG",
    "CHANNEL_LINKED_GROUPS",
    "CHANNEL_LINKED_PERSONAL",
    "CHANNEL_LINKED_SHARED",
    "CHANNEL_SYNC_STATUS",
    "CHANNEL_TRANSACTIONS",
    "CHANNEL_UNLINKED_PERSONAL",
    "CHANNEL_UNLINKED_SHARED",
    "ReactiveLedgerStore",
    "Subscriber",
    "is_group_complete",
    "transactions_channel",
]

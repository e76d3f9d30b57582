"""
Data Models Package

This package contains all Pydantic models used by ledgerlink.
Remote payloads, cache entries and derived reconciliation state all
pass through these schemas.
"""

from ledgerlink.models.ledger import (
    CACHED_TRANSACTION_FIELDS,
    Account,
    BudgetDirection,
    Category,
    ClearedStatus,
    HouseholdConfig,
    LedgerCacheEntry,
    LedgerDetail,
    LedgerSummary,
    MonthDetail,
    ParticipantBinding,
    Transaction,
    TransactionDraft,
    TransactionFilter,
    TransactionPage,
    from_milliunits,
    month_key,
    to_milliunits,
    years_ago,
)
from ledgerlink.models.tags import (
    BalancingTag,
    MonthlyInfo,
    MonthlyTag,
    RegularTag,
    Tag,
    TagKind,
)
from ledgerlink.models.reconciliation import (
    BALANCING_SET_SIZE,
    BalancingPlan,
    BalancingStep,
    DeletionReport,
    DeletionTarget,
    LinkedEntry,
    LinkedGroup,
    ParticipantBalance,
    SharedEntry,
    SyncStatus,
)
from ledgerlink.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "CACHED_TRANSACTION_FIELDS",
    "Account",
    "BudgetDirection",
    "Category",
    "ClearedStatus",
    "HouseholdConfig",
    "LedgerCacheEntry",
    "LedgerDetail",
    "LedgerSummary",
    "MonthDetail",
    "ParticipantBinding",
    "Transaction",
    "TransactionDraft",
    "TransactionFilter",
    "TransactionPage",
    "from_milliunits",
    "month_key",
    "to_milliunits",
    "years_ago",
    # Tag models
    "BalancingTag",
    "MonthlyInfo",
    "MonthlyTag",
    "RegularTag",
    "Tag",
    "TagKind",
    # Reconciliation models
    "BALANCING_SET_SIZE",
    "BalancingPlan",
    "BalancingStep",
    "DeletionReport",
    "DeletionTarget",
    "LinkedEntry",
    "LinkedGroup",
    "ParticipantBalance",
    "SharedEntry",
    "SyncStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

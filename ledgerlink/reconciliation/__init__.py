"""
Reconciliation Package

Match suggestions, the balancing state machine and the user-triggered
reconciliation flows.
"""

from ledgerlink.reconciliation.balancing import BalancingCoordinator
from ledgerlink.reconciliation.engine import ReconciliationEngine, exclusive
from ledgerlink.reconciliation.errors import (
    ConfigurationError,
    InsufficientBudgetError,
    NoteTooLongError,
    PartialFailure,
    ReconciliationError,
)
from ledgerlink.reconciliation.matching import (
    READY_TO_ASSIGN,
    SharedTransactionType,
    classify_shared,
    is_good_match,
    suggest_matches,
)

__all__ = [
    "BalancingCoordinator",
    "ReconciliationEngine",
    "exclusive",
    # Errors
    "ConfigurationError",
    "InsufficientBudgetError",
    "NoteTooLongError",
    "PartialFailure",
    "ReconciliationError",
    # Matching
    "READY_TO_ASSIGN",
    "SharedTransactionType",
    "classify_shared",
    "is_good_match",
    "suggest_matches",
]

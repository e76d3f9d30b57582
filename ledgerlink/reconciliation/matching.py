"""
Match scoring and shared-transaction classification.

Suggestions only: nothing here writes to a ledger.
"""

from enum import Enum
from typing import Optional

from ledgerlink.config import ReconciliationSettings
from ledgerlink.models.ledger import Transaction
from ledgerlink.models.tags import TagKind
from ledgerlink.tags import codec


READY_TO_ASSIGN = "Inflow: Ready to Assign"


class SharedTransactionType(str, Enum):
    """What a shared-ledger transaction represents for its participant."""
    EXPENSE = "expense"
    REIMBURSEMENT = "reimbursement"
    CONTRIBUTION = "contribution"
    BALANCING = "balancing"


def is_good_match(
    personal: Optional[Transaction],
    shared: Optional[Transaction],
    settings: Optional[ReconciliationSettings] = None,
) -> bool:
    """
    Whether two transactions plausibly describe the same expense.

    Amounts must differ by less than the tolerance (100 milliunits by
    default) and dates by at most ``match_max_days``.
    """
    if personal is None or shared is None:
        return False
    settings = settings or ReconciliationSettings()
    amount_ok = abs(personal.amount - shared.amount) < settings.match_amount_tolerance
    days_ok = abs((personal.date - shared.date).days) <= settings.match_max_days
    return amount_ok and days_ok


def suggest_matches(
    txn: Transaction,
    candidates: list[Transaction],
    settings: Optional[ReconciliationSettings] = None,
) -> list[Transaction]:
    """Good matches for ``txn``, closest amount first, then closest date."""
    matches = [c for c in candidates if is_good_match(txn, c, settings)]
    return sorted(
        matches,
        key=lambda c: (abs(txn.amount - c.amount), abs((txn.date - c.date).days)),
    )


def classify_shared(txn: Transaction) -> SharedTransactionType:
    """
    Classify a shared-ledger transaction.

    Transfers are balancing legs. Inflows are contributions when tagged
    Monthly, or when untagged and uncategorised (or "Ready to Assign");
    other inflows are reimbursements. Outflows are expenses.
    """
    if txn.is_transfer:
        return SharedTransactionType.BALANCING
    if txn.amount > 0:
        tag = codec.extract(txn.memo)
        if tag and codec.classify(tag) == TagKind.MONTHLY:
            return SharedTransactionType.CONTRIBUTION
        if not tag and (not txn.category_name or txn.category_name == READY_TO_ASSIGN):
            return SharedTransactionType.CONTRIBUTION
        return SharedTransactionType.REIMBURSEMENT
    return SharedTransactionType.EXPENSE

"""
Reconciliation Models

Derived state produced by the reactive store (linked groups, sync status,
balances) and the records the reconciliation engine keeps for its
multi-step balancing protocol.

DESIGN DECISION: Linked groups are a projection. They are rebuilt from
scratch on every recomputation and never written to storage. Balancing
plans are the only reconciliation records that are persisted, because a
balancing set spans several independent remote calls and must be
resumable after a failure.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ledgerlink.models.ledger import Transaction
from ledgerlink.models.tags import MonthlyInfo, MonthlyTag, Tag, TagKind


# Two personal legs plus the two shared legs of one transfer
BALANCING_SET_SIZE = 4


class SharedEntry(BaseModel):
    """A shared-ledger transaction together with the participant whose account holds it."""

    participant: str
    transaction: Transaction


class LinkedEntry(BaseModel):
    """A tagged transaction as listed in a participant's linked column."""

    participant: str
    tag: str
    transaction: Transaction


class LinkedGroup(BaseModel):
    """
    All non-deleted transactions, across ledgers, sharing one tag.

    ``complete`` is computed by the reactive store from the structural
    rule for the tag's kind.
    """

    tag: Tag
    personal: dict[str, list[Transaction]] = Field(default_factory=dict)
    shared: list[SharedEntry] = Field(default_factory=list)
    complete: bool = False

    @property
    def tag_value(self) -> str:
        return self.tag.value

    @property
    def kind(self) -> TagKind:
        return self.tag.kind

    @property
    def monthly_info(self) -> Optional[MonthlyInfo]:
        if isinstance(self.tag, MonthlyTag):
            return self.tag.info
        return None

    @property
    def personal_count(self) -> int:
        return sum(len(txns) for txns in self.personal.values())

    @property
    def shared_count(self) -> int:
        return len(self.shared)

    @property
    def latest_date(self) -> Optional[date]:
        dates = [t.date for txns in self.personal.values() for t in txns]
        dates.extend(entry.transaction.date for entry in self.shared)
        return max(dates) if dates else None

    def participants(self) -> set[str]:
        names = {name for name, txns in self.personal.items() if txns}
        names.update(entry.participant for entry in self.shared)
        return names


class SyncStatus(BaseModel):
    """Counts summarising how much of the household is reconciled."""

    linked: int = 0
    complete: int = 0
    incomplete: int = 0
    unlinked: int = 0
    total: int = 0


class ParticipantBalance(BaseModel):
    """
    Per-participant totals in milliunits.

    ``personal`` sums the shared-expense category of the personal ledger,
    ``shared`` sums the contribution account in the shared ledger.
    """

    personal: int = 0
    shared: int = 0
    net: int = 0


# =============================================================================
# BALANCING PROTOCOL
# =============================================================================

class BalancingStep(str, Enum):
    """
    Progress of one balancing set.

    Creation walks PENDING → BUDGET_READY → PAYER_CREATED →
    PAYEE_CREATED → TRANSFER_CREATED → COMPLETE. Deletion moves any
    state to DELETING and finally DELETED.
    """
    PENDING = "pending"
    BUDGET_READY = "budget_ready"
    PAYER_CREATED = "payer_created"
    PAYEE_CREATED = "payee_created"
    TRANSFER_CREATED = "transfer_created"
    COMPLETE = "complete"
    DELETING = "deleting"
    DELETED = "deleted"


CREATION_ORDER = [
    BalancingStep.PENDING,
    BalancingStep.BUDGET_READY,
    BalancingStep.PAYER_CREATED,
    BalancingStep.PAYEE_CREATED,
    BalancingStep.TRANSFER_CREATED,
    BalancingStep.COMPLETE,
]


class BalancingPlan(BaseModel):
    """
    Persisted state machine for one balancing set, keyed by its tag.

    The tag doubles as the idempotency key: every created leg carries it,
    so a resumed plan can be checked against what the remote already has.
    """

    tag: str
    payer: str
    payee: str
    amount: int = Field(..., gt=0, description="Amount in milliunits")
    date: date
    memo: str = ""
    payer_account_id: str
    payee_account_id: str
    month: str = Field(..., description="Budget month (YYYY-MM-01) for budget moves")
    step: BalancingStep = BalancingStep.PENDING
    expected_count: int = BALANCING_SET_SIZE
    budget_moved: int = Field(default=0, ge=0)
    created_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Leg name (payer/payee/transfer) to remote transaction id"
    )
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_finished(self) -> bool:
        return self.step in (BalancingStep.COMPLETE, BalancingStep.DELETED)

    def reached(self, step: BalancingStep) -> bool:
        """True once creation has progressed to (or past) ``step``."""
        if self.step not in CREATION_ORDER or step not in CREATION_ORDER:
            return False
        return CREATION_ORDER.index(self.step) >= CREATION_ORDER.index(step)

    def advance(self, step: BalancingStep) -> None:
        self.step = step
        self.last_error = None
        self.updated_at = datetime.utcnow()


class DeletionTarget(BaseModel):
    """One transaction scheduled for deletion as part of a balancing set."""

    ledger_id: str
    transaction: Transaction
    participant: str
    side: str = Field(..., pattern="^(personal|shared)$")


class DeletionReport(BaseModel):
    """Outcome of unwinding a balancing set."""

    tag: str
    deleted: list[str] = Field(default_factory=list)
    not_found: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    expected_count: int = BALANCING_SET_SIZE
    budget_adjustments: dict[str, int] = Field(
        default_factory=dict,
        description="Participant to milliunits moved back into shared expenses (negative = drawn)"
    )

    @property
    def found_count(self) -> int:
        return len(self.deleted) + len(self.not_found) + len(self.failed)

    @property
    def missing(self) -> int:
        """Legs that never existed locally (e.g. a creation step that failed)."""
        return max(self.expected_count - self.found_count, 0)

    @property
    def succeeded(self) -> bool:
        return not self.failed

"""
Core Ledger Models

These models describe the data the remote ledger service owns
(transactions, accounts, categories) and the household configuration
that ties participants to their ledgers.

Amounts are signed integers in milliunits (1/1000 of the display
currency unit), exactly as the remote service reports them.

DESIGN DECISION: The local system only ever holds a reduced projection
of a transaction (see CACHED_TRANSACTION_FIELDS). Models ignore unknown
fields so full remote payloads can be validated directly.
"""

import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Fields kept in both cache tiers; everything else is dropped on fetch
CACHED_TRANSACTION_FIELDS = (
    "id",
    "date",
    "amount",
    "payee_name",
    "memo",
    "account_id",
    "category_id",
    "category_name",
    "deleted",
    "cleared",
)

MILLIUNITS_PER_UNIT = 1000
MEMO_MAX_LENGTH = 500


def to_milliunits(amount: float) -> int:
    """Convert a display amount to milliunits."""
    return int(round(amount * MILLIUNITS_PER_UNIT))


def from_milliunits(milliunits: int) -> float:
    """Convert milliunits to a display amount."""
    return milliunits / MILLIUNITS_PER_UNIT


def month_key(value: date) -> str:
    """First day of the month in ISO format, as the remote API expects."""
    return value.replace(day=1).isoformat()


def years_ago(years: int, today: Optional[date] = None) -> date:
    """Same calendar day ``years`` back (Feb 29 falls back to Feb 28)."""
    today = today or date.today()
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        return today.replace(year=today.year - years, day=28)


# =============================================================================
# ENUMS
# =============================================================================

class ClearedStatus(str, Enum):
    """Clearing state of a transaction."""
    CLEARED = "cleared"
    UNCLEARED = "uncleared"
    RECONCILED = "reconciled"


class BudgetDirection(str, Enum):
    """Direction of a budget move between a participant's two categories."""
    TO_BALANCING = "to_balancing"
    TO_SHARED = "to_shared"


# =============================================================================
# REMOTE RECORDS
# =============================================================================

class Transaction(BaseModel):
    """
    A transaction as seen locally.

    This is the cached, field-reduced projection of the remote record.
    ``transfer_account_id`` is only present on freshly fetched or
    freshly written records; it is not part of the cached projection.
    ``ledger_id`` is stamped locally by the reactive store.
    """
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    ledger_id: Optional[str] = None
    date: date
    amount: int = Field(..., description="Signed amount in milliunits")
    payee_name: Optional[str] = None
    memo: Optional[str] = None
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    deleted: bool = False
    cleared: ClearedStatus = ClearedStatus.UNCLEARED
    transfer_account_id: Optional[str] = None

    @property
    def is_transfer(self) -> bool:
        return self.transfer_account_id is not None

    def to_cache_record(self) -> dict[str, Any]:
        """Reduce to the cached projection (JSON-compatible)."""
        data = self.model_dump(mode="json")
        return {field: data[field] for field in CACHED_TRANSACTION_FIELDS if field in data}


class TransactionDraft(BaseModel):
    """
    Payload for creating or updating a remote transaction.

    Only fields that are set are sent; an update with just ``memo``
    leaves every other remote field untouched.
    """
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[str] = None
    date: Optional[dt.date] = None
    amount: Optional[int] = None
    payee_id: Optional[str] = None
    payee_name: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[str] = None
    memo: Optional[str] = Field(default=None, max_length=MEMO_MAX_LENGTH)
    cleared: Optional[ClearedStatus] = None
    approved: Optional[bool] = None
    flag_color: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class TransactionFilter(BaseModel):
    """
    Client-side filter over cached transactions.

    ``month`` accepts ``YYYY-MM`` or ``YYYY-MM-DD`` and matches on the
    year-month prefix.
    """

    account_id: Optional[str] = None
    category_id: Optional[str] = None
    since: Optional[dt.date] = None
    until: Optional[dt.date] = None
    month: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}(-\d{2})?$")

    def matches(self, txn: Transaction) -> bool:
        if self.account_id and txn.account_id != self.account_id:
            return False
        if self.category_id and txn.category_id != self.category_id:
            return False
        if self.since and txn.date < self.since:
            return False
        if self.until and txn.date > self.until:
            return False
        if self.month and not txn.date.isoformat().startswith(self.month[:7]):
            return False
        return True

    def apply(self, transactions: list[Transaction]) -> list[Transaction]:
        return [t for t in transactions if self.matches(t)]


class TransactionPage(BaseModel):
    """Result of a bulk transaction listing, with the new sync cursor."""

    transactions: list[Transaction] = Field(default_factory=list)
    cursor: Optional[int] = Field(
        default=None,
        description="Server knowledge to send on the next delta request"
    )


class Account(BaseModel):
    """An account inside a ledger."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    type: Optional[str] = None
    balance: int = 0
    closed: bool = False
    deleted: bool = False
    transfer_payee_id: Optional[str] = None


class Category(BaseModel):
    """A budget category, optionally scoped to a month."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    category_group_name: Optional[str] = None
    budgeted: int = 0
    activity: int = 0
    balance: int = 0
    hidden: bool = False
    deleted: bool = False


class MonthDetail(BaseModel):
    """Budget month with per-category budgeted/activity/balance."""
    model_config = ConfigDict(extra="ignore")

    month: date
    categories: list[Category] = Field(default_factory=list)

    def find_category(self, category_id: Optional[str]) -> Optional[Category]:
        if not category_id:
            return None
        for category in self.categories:
            if category.id == category_id:
                return category
        return None


class LedgerSummary(BaseModel):
    """Minimal ledger information from the ledger list."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    last_modified_on: Optional[datetime] = None


class LedgerDetail(LedgerSummary):
    """Full ledger with its accounts and categories."""

    accounts: list[Account] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    cursor: Optional[int] = None

    def find_account(self, account_id: Optional[str]) -> Optional[Account]:
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None


# =============================================================================
# HOUSEHOLD CONFIGURATION
# =============================================================================

class ParticipantBinding(BaseModel):
    """
    Binds one participant to their personal ledger and to their
    contribution account in the shared ledger.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    personal_ledger_id: str = Field(..., min_length=1)
    shared_category_id: str = Field(
        ...,
        min_length=1,
        description="Personal-ledger category holding shared expenses"
    )
    balancing_category_id: Optional[str] = Field(
        default=None,
        description="Personal-ledger category holding balancing transfers"
    )
    contribution_account_id: str = Field(
        ...,
        min_length=1,
        description="Shared-ledger account tracking this participant"
    )

    @property
    def personal_category_ids(self) -> list[str]:
        ids = [self.shared_category_id]
        if self.balancing_category_id and self.balancing_category_id not in ids:
            ids.append(self.balancing_category_id)
        return ids


class HouseholdConfig(BaseModel):
    """
    The active household configuration.

    ``monthly_allocations`` maps ``YYYY-MM`` to participant name to the
    allocated amount in milliunits.
    """

    shared_ledger_id: Optional[str] = None
    participants: list[ParticipantBinding] = Field(default_factory=list)
    reconciliation_cutoff_date: Optional[date] = None
    monthly_allocations: dict[str, dict[str, int]] = Field(default_factory=dict)

    @field_validator('participants')
    @classmethod
    def unique_names(cls, v: list[ParticipantBinding]) -> list[ParticipantBinding]:
        names = [p.name for p in v]
        if len(names) != len(set(names)):
            raise ValueError("Participant names must be unique")
        return v

    @property
    def is_configured(self) -> bool:
        return bool(self.shared_ledger_id and self.participants)

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def participant(self, name: str) -> Optional[ParticipantBinding]:
        for binding in self.participants:
            if binding.name == name:
                return binding
        return None

    def participant_for_account(self, account_id: Optional[str]) -> Optional[ParticipantBinding]:
        for binding in self.participants:
            if binding.contribution_account_id == account_id:
                return binding
        return None


# =============================================================================
# CACHE ENTRIES
# =============================================================================

class LedgerCacheEntry(BaseModel):
    """
    Persistent transaction cache for one ledger.

    ``records`` are cached projections. ``sync_cursor`` only advances
    together with a successful merge into ``records``.
    """

    records: list[dict[str, Any]] = Field(default_factory=list)
    sync_cursor: Optional[int] = None
    since_watermark: Optional[date] = None
    last_fetch: float = Field(
        default=0.0,
        description="Epoch seconds of the last successful fetch or merge"
    )

"""
Abstract Remote Ledger Client Interface

DESIGN DECISION: Every read and write against the hosted ledger service
goes through this interface. This allows us to:
1. Swap the HTTP implementation for an in-memory fake in tests
2. Classify every remote failure into a small set of typed errors
3. Keep reconciliation logic unaware of URLs and payload envelopes

Amounts are integers in milliunits. Bulk transaction listing supports a
since-date and/or a since-cursor and returns the next cursor.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from ledgerlink.models.ledger import (
    Account,
    Category,
    LedgerDetail,
    LedgerSummary,
    MonthDetail,
    Transaction,
    TransactionDraft,
    TransactionPage,
)


class LedgerClientInterface(ABC):
    """
    Abstract interface for the remote ledger service.

    Implementations must raise the LedgerError subclasses below and
    nothing else for remote failures.
    """

    @abstractmethod
    async def list_ledgers(self) -> list[LedgerSummary]:
        """List every ledger visible to the credential."""
        pass

    @abstractmethod
    async def get_ledger(
        self,
        ledger_id: str,
        cursor: Optional[int] = None,
    ) -> LedgerDetail:
        """
        Get a ledger with its accounts and categories.

        Args:
            ledger_id: Ledger to fetch
            cursor: Optional server knowledge for an incremental response

        Raises:
            NotFoundError: If the ledger does not exist
        """
        pass

    @abstractmethod
    async def list_accounts(self, ledger_id: str) -> list[Account]:
        pass

    @abstractmethod
    async def list_categories(self, ledger_id: str) -> list[Category]:
        """List categories of a ledger, flattened across category groups."""
        pass

    @abstractmethod
    async def get_category(self, ledger_id: str, category_id: str) -> Category:
        pass

    @abstractmethod
    async def get_month(self, ledger_id: str, month: str) -> MonthDetail:
        """
        Get one budget month with per-category amounts.

        Args:
            month: First day of the month, ``YYYY-MM-01``
        """
        pass

    @abstractmethod
    async def update_category_budget(
        self,
        ledger_id: str,
        month: str,
        category_id: str,
        budgeted: int,
    ) -> Category:
        """
        Set a category's budgeted amount for a month.

        Args:
            budgeted: New budgeted amount in milliunits (absolute, not a delta)

        Returns:
            The updated category
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        ledger_id: str,
        since_date: Optional[date] = None,
        since_cursor: Optional[int] = None,
    ) -> TransactionPage:
        """
        List transactions in bulk.

        With ``since_cursor`` only records changed since that cursor are
        returned, including deleted ones (``deleted=True``).

        Returns:
            TransactionPage with the records and the new cursor
        """
        pass

    @abstractmethod
    async def get_transaction(self, ledger_id: str, transaction_id: str) -> Transaction:
        pass

    @abstractmethod
    async def create_transaction(
        self,
        ledger_id: str,
        draft: TransactionDraft,
    ) -> Transaction:
        """
        Create a transaction.

        A draft whose ``payee_id`` is an account's transfer payee creates
        a transfer; the service produces the paired entry itself.
        """
        pass

    @abstractmethod
    async def update_transaction(
        self,
        ledger_id: str,
        transaction_id: str,
        draft: TransactionDraft,
    ) -> Transaction:
        """
        Update the fields set on ``draft``; other fields are untouched.

        Raises:
            NotFoundError: If the transaction does not exist
        """
        pass

    @abstractmethod
    async def delete_transaction(self, ledger_id: str, transaction_id: str) -> Transaction:
        """
        Delete a transaction.

        Returns:
            The deleted transaction (``deleted=True``)

        Raises:
            NotFoundError: If the transaction does not exist
        """
        pass


class LedgerError(Exception):
    """Base exception for remote ledger operations."""

    user_message = "Failed to fetch data from the ledger service."

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthError(LedgerError):
    """Credential missing or rejected (401)."""

    user_message = "Authentication failed. Please check your API token."


class NotFoundError(LedgerError):
    """Requested resource does not exist (404)."""

    user_message = "The requested ledger data was not found."


class RateLimitError(LedgerError):
    """Too many requests (429)."""

    user_message = "Too many requests. Please wait a moment and try again."

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code)


class ServiceUnavailable(LedgerError):
    """Server error or unexpected non-success response."""

    user_message = "The ledger service is temporarily unavailable. Please try again later."


class NetworkError(LedgerError):
    """The request never got a response."""

    user_message = "Network error. Please check your internet connection."

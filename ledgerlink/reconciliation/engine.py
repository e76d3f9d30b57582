"""
Reconciliation Engine

User-triggered flows that correlate personal and shared transactions:

1. Link / unlink a personal expense and its shared copy
2. Copy a personal expense into the shared ledger
3. Mark a shared inflow as a monthly contribution
4. Create, resume and delete balancing sets
5. Move budget between a participant's shared and balancing categories
6. Apply monthly allocations

DESIGN DECISION: Every flow runs under one busy flag. A trigger that
arrives while another flow is in progress is dropped (returns None),
never queued. Destructive or multi-step flows ask the confirmation
collaborator first. Remote write errors are shown through the notifier
and then propagate; nothing is rolled back.
"""

import functools
from datetime import date
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from ledgerlink.audit import AuditLogger, create_correlation_id
from ledgerlink.config import ReconciliationSettings
from ledgerlink.models.ledger import (
    BudgetDirection,
    ClearedStatus,
    MEMO_MAX_LENGTH,
    ParticipantBinding,
    Transaction,
    TransactionDraft,
    TransactionFilter,
    from_milliunits,
    month_key,
)
from ledgerlink.models.reconciliation import BalancingPlan, DeletionReport
from ledgerlink.models.tags import TagKind
from ledgerlink.reconciliation.balancing import BalancingCoordinator
from ledgerlink.reconciliation.errors import (
    ConfigurationError,
    InsufficientBudgetError,
    NoteTooLongError,
    PartialFailure,
)
from ledgerlink.reconciliation.matching import READY_TO_ASSIGN, suggest_matches
from ledgerlink.services.remote.interface import LedgerError, NotFoundError
from ledgerlink.services.storage.cache_store import PersistentCacheStore
from ledgerlink.services.ui.interface import (
    ConfirmationInterface,
    DenyConfirmation,
    LoggingNotifier,
    NotificationLevel,
    NotifierInterface,
)
from ledgerlink.store.reactive import ReactiveLedgerStore
from ledgerlink.sync.manager import SyncCacheManager
from ledgerlink.tags import codec


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def exclusive(flow: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[Optional[T]]]:
    """Run ``flow`` under the engine's busy flag; drop it if one is running."""

    @functools.wraps(flow)
    async def wrapper(self: "ReconciliationEngine", *args: Any, **kwargs: Any) -> Optional[T]:
        if self._busy is not None:
            logger.warning("flow_dropped_while_busy", flow=flow.__name__, running=self._busy)
            return None
        self._busy = flow.__name__
        try:
            return await flow(self, *args, **kwargs)
        finally:
            self._busy = None

    return wrapper


def _month_label(year: int, month: int) -> str:
    return date(year, month, 1).strftime("%B %Y")


class ReconciliationEngine:
    """Reconciliation flows over the sync manager and reactive store."""

    def __init__(
        self,
        sync: SyncCacheManager,
        cache_store: PersistentCacheStore,
        notifier: Optional[NotifierInterface] = None,
        confirmer: Optional[ConfirmationInterface] = None,
        audit: Optional[AuditLogger] = None,
        settings: Optional[ReconciliationSettings] = None,
    ):
        self._sync = sync
        self._cache_store = cache_store
        self._notifier = notifier or LoggingNotifier()
        self._confirmer = confirmer or DenyConfirmation()
        self._audit = audit or AuditLogger()
        self._settings = settings or ReconciliationSettings()
        self._balancing = BalancingCoordinator(sync, cache_store, self._audit, self._notifier)
        self._busy: Optional[str] = None
        self._ready_to_assign: dict[str, Optional[str]] = {}

    @property
    def store(self) -> ReactiveLedgerStore:
        return self._sync.store

    @property
    def busy(self) -> bool:
        return self._busy is not None

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _binding(self, participant: str) -> ParticipantBinding:
        config = self.store.config
        if not config.is_configured:
            raise ConfigurationError("Household is not configured")
        binding = config.participant(participant)
        if binding is None:
            raise ConfigurationError(f"Unknown participant: {participant}")
        return binding

    def _shared_ledger_id(self) -> str:
        return self.store.config.shared_ledger_id

    async def _confirm(self, title: str, message: str, danger: bool = False, correlation_id=None) -> bool:
        confirmed = await self._confirmer.confirm(title, message, danger=danger)
        await self._audit.log_user_decision(title, confirmed, correlation_id=correlation_id)
        return confirmed

    async def _fail(self, action: str, error: Exception) -> None:
        message = getattr(error, "user_message", None) or str(error)
        logger.error("reconciliation_flow_failed", action=action, error=str(error))
        if isinstance(error, LedgerError):
            await self._audit.log_external_service_error("ledger_api", str(error))
        else:
            await self._audit.log_error(type(error).__name__, str(error), details={"action": action})
        self._notifier.notify(f"Failed to {action}: {message}", NotificationLevel.ERROR)

    def _missing(self, what: str) -> None:
        self._notifier.notify(f"{what} not found", NotificationLevel.ERROR)

    @staticmethod
    def _candidate(candidates: list[Transaction], txn_id: str) -> Optional[Transaction]:
        return next((t for t in candidates if t.id == txn_id), None)

    def _before_cutoff(self, *txns: Transaction) -> bool:
        """Notify and return True if any of ``txns`` predates the cutoff."""
        if not any(self.store.is_before_cutoff(t) for t in txns):
            return False
        cutoff = self.store.config.reconciliation_cutoff_date
        self._notifier.notify(
            f"Transactions before {cutoff.isoformat()} are not reconciled",
            NotificationLevel.ERROR,
        )
        return True

    async def _tagged_memo(self, action: str, txn: Transaction, tag: str) -> str:
        memo = codec.upsert(txn.memo, tag)
        if len(memo) > MEMO_MAX_LENGTH:
            error = NoteTooLongError(txn.id, len(memo), MEMO_MAX_LENGTH)
            await self._fail(action, error)
            raise error
        return memo

    def suggest_matches(self, participant: str, personal_txn_id: str) -> list[Transaction]:
        """Unlinked shared transactions that look like ``personal_txn_id``."""
        binding = self._binding(participant)
        txn = self.store.find_transaction(binding.personal_ledger_id, personal_txn_id)
        if txn is None:
            return []
        return suggest_matches(txn, self.store.unlinked_shared(participant), self._settings)

    # =========================================================================
    # LINKING
    # =========================================================================

    @exclusive
    async def link(self, participant: str, personal_txn_id: str, shared_txn_id: str) -> Optional[str]:
        """
        Link a personal and a shared transaction under a new Regular tag.

        Two independent updates; if the second fails the first stays.
        Both transactions must be among the participant's unlinked ones.

        Returns:
            The new tag, or None if either transaction is not linkable

        Raises:
            NoteTooLongError: A tagged note would exceed the remote limit
        """
        binding = self._binding(participant)
        shared_ledger_id = self._shared_ledger_id()
        personal = self._candidate(self.store.unlinked_personal(participant), personal_txn_id)
        shared = self._candidate(self.store.unlinked_shared(participant), shared_txn_id)
        if personal is None or shared is None:
            self._missing("Transaction")
            return None
        if self._before_cutoff(personal, shared):
            return None

        correlation_id = create_correlation_id()
        tag = codec.generate()
        personal_memo = await self._tagged_memo("link", personal, tag)
        shared_memo = await self._tagged_memo("link", shared, tag)
        try:
            await self._sync.update_transaction(
                binding.personal_ledger_id, personal.id, TransactionDraft(memo=personal_memo)
            )
            await self._sync.update_transaction(
                shared_ledger_id, shared.id, TransactionDraft(memo=shared_memo)
            )
        except LedgerError as e:
            await self._fail("link", e)
            raise

        await self._audit.log_transactions_linked(tag, personal.id, shared.id, correlation_id)
        self._notifier.notify(f"Linked with ID {codec.format_tag(tag)}", NotificationLevel.SUCCESS)
        return tag

    @exclusive
    async def unlink(self, ledger_id: str, transaction_id: str, tag: str) -> Optional[bool]:
        """Remove ``tag`` from one transaction's note."""
        txn = self.store.find_transaction(ledger_id, transaction_id)
        if txn is None:
            self._missing("Transaction")
            return None
        if self._before_cutoff(txn):
            return None

        correlation_id = create_correlation_id()
        confirmed = await self._confirm(
            "Remove Link",
            f"Remove {codec.format_tag(tag)} from '{txn.payee_name or 'Unknown'}' ({txn.date})?",
            correlation_id=correlation_id,
        )
        if not confirmed:
            return False

        try:
            await self._sync.update_transaction(
                ledger_id, txn.id, TransactionDraft(memo=codec.remove(txn.memo, tag))
            )
        except LedgerError as e:
            await self._fail("unlink", e)
            raise

        await self._audit.log_transaction_unlinked(tag, ledger_id, txn.id, correlation_id)
        self._notifier.notify("Link removed from transaction", NotificationLevel.SUCCESS)
        return True

    @exclusive
    async def mark_as_monthly(
        self,
        participant: str,
        shared_txn_id: str,
        month: int,
        year: int,
    ) -> Optional[str]:
        """Tag a shared inflow as the participant's contribution for a month."""
        self._binding(participant)
        shared_ledger_id = self._shared_ledger_id()
        txn = self.store.find_transaction(shared_ledger_id, shared_txn_id)
        if txn is None:
            self._missing("Transaction")
            return None

        tag = codec.generate_monthly(month, year)
        memo = await self._tagged_memo("mark as monthly", txn, tag)
        try:
            await self._sync.update_transaction(
                shared_ledger_id, txn.id, TransactionDraft(memo=memo)
            )
        except LedgerError as e:
            await self._fail("mark as monthly", e)
            raise

        await self._audit.log_monthly_tag_applied(tag, txn.id)
        self._notifier.notify(
            f"Marked as {_month_label(year, month)} contribution ({codec.format_tag(tag)})",
            NotificationLevel.SUCCESS,
        )
        return tag

    @exclusive
    async def copy_to_shared(self, participant: str, personal_txn_id: str) -> Optional[str]:
        """
        Create the shared copy of a personal expense and link both.

        The shared transaction is created first, then the personal note
        is updated with the same Regular tag.
        """
        binding = self._binding(participant)
        shared_ledger_id = self._shared_ledger_id()
        txn = self._candidate(self.store.unlinked_personal(participant), personal_txn_id)
        if txn is None:
            self._missing("Transaction")
            return None
        if self._before_cutoff(txn):
            return None

        correlation_id = create_correlation_id()
        tag = codec.generate()
        memo = await self._tagged_memo("copy", txn, tag)
        confirmed = await self._confirm(
            "Copy to Shared Ledger",
            f"Create a matching shared transaction for '{txn.payee_name or 'Unknown'}' "
            f"and link both with {codec.format_tag(tag)}?",
            correlation_id=correlation_id,
        )
        if not confirmed:
            return None

        try:
            created = await self._sync.create_transaction(
                shared_ledger_id,
                TransactionDraft(
                    account_id=binding.contribution_account_id,
                    date=txn.date,
                    amount=txn.amount,
                    payee_name=txn.payee_name,
                    memo=memo,
                    cleared=ClearedStatus.CLEARED,
                    approved=True,
                ),
            )
            await self._sync.update_transaction(
                binding.personal_ledger_id, txn.id, TransactionDraft(memo=memo)
            )
        except LedgerError as e:
            await self._fail("copy", e)
            raise

        await self._audit.log_transaction_copied(tag, txn.id, created.id, correlation_id)
        self._notifier.notify("Transaction copied and linked", NotificationLevel.SUCCESS)
        return tag

    # =========================================================================
    # DELETION
    # =========================================================================

    @exclusive
    async def delete_shared_transaction(self, participant: str, transaction_id: str) -> Any:
        """
        Delete a shared transaction.

        A transaction carrying a Balancing tag takes its whole set with it
        (returns the DeletionReport); otherwise returns True once deleted.
        """
        self._binding(participant)
        shared_ledger_id = self._shared_ledger_id()
        txn = self.store.find_transaction(shared_ledger_id, transaction_id)
        if txn is None:
            self._missing("Transaction")
            return None
        if self._before_cutoff(txn):
            return None

        tag = codec.extract(txn.memo)
        if tag and codec.classify(tag) == TagKind.BALANCING:
            return await self._delete_balancing_set(tag)

        correlation_id = create_correlation_id()
        confirmed = await self._confirm(
            "Delete Transaction",
            f"Delete '{txn.payee_name or 'Unknown'}' ({txn.date}) from the shared ledger? "
            "This action cannot be undone.",
            danger=True,
            correlation_id=correlation_id,
        )
        if not confirmed:
            return False

        try:
            await self._sync.delete_transaction(shared_ledger_id, txn.id)
        except LedgerError as e:
            await self._fail("delete", e)
            raise

        self._notifier.notify("Transaction deleted", NotificationLevel.SUCCESS)
        return True

    @exclusive
    async def delete_balancing_set(self, tag: str) -> Optional[DeletionReport]:
        return await self._delete_balancing_set(tag)

    async def _delete_balancing_set(self, tag: str) -> Optional[DeletionReport]:
        group = self.store.find_group(tag)
        if group is None:
            self._notifier.notify("Could not find linked transactions", NotificationLevel.ERROR)
            return None

        targets = self._balancing.collect_targets(group)
        if not targets:
            self._notifier.notify("No linked transactions found", NotificationLevel.ERROR)
            return None

        correlation_id = create_correlation_id()
        lines = "\n".join(
            f"- {t.participant} ({t.side}) {t.transaction.date}: {t.transaction.amount}"
            for t in targets
        )
        confirmed = await self._confirm(
            f"Delete {len(targets)} Balancing Transactions",
            f"Tag {codec.format_tag(tag)}\n{lines}\nThis action cannot be undone.",
            danger=True,
            correlation_id=correlation_id,
        )
        if not confirmed:
            return None

        report = await self._balancing.delete(tag, targets, correlation_id)

        removed = len(report.deleted) + len(report.not_found)
        if report.failed:
            self._notifier.notify(
                f"Deleted {removed} balancing transactions, {len(report.failed)} failed",
                NotificationLevel.WARNING,
            )
        else:
            self._notifier.notify(
                f"Deleted {removed} balancing transactions",
                NotificationLevel.SUCCESS,
            )
        for name, moved in report.budget_adjustments.items():
            if moved > 0:
                text = f"{name}: moved {from_milliunits(moved):.2f} from balancing back to shared expenses"
            else:
                text = f"{name}: moved {from_milliunits(-moved):.2f} from shared expenses to cover balancing deficit"
            self._notifier.notify(text, NotificationLevel.INFO)
        return report

    # =========================================================================
    # BALANCING
    # =========================================================================

    @exclusive
    async def create_balancing_set(
        self,
        payer: str,
        payee: str,
        amount: int,
        txn_date: date,
        memo: str,
        payer_account_id: str,
        payee_account_id: str,
    ) -> Optional[BalancingPlan]:
        """
        Settle ``amount`` (milliunits) from payer to payee.

        Raises:
            InsufficientBudgetError: Payer cannot cover the amount
            PartialFailure: Some legs were created before a failure
        """
        plan = self._balancing.plan(
            payer, payee, amount, txn_date, memo, payer_account_id, payee_account_id
        )
        correlation_id = create_correlation_id()
        confirmed = await self._confirm(
            "Create Settle-Up Transactions",
            f"{payer} pays {payee} {from_milliunits(amount):.2f} on {txn_date.isoformat()}",
            correlation_id=correlation_id,
        )
        if not confirmed:
            return None
        return await self._run_plan(plan, correlation_id, resuming=False)

    @exclusive
    async def resume_balancing_set(self, tag: str) -> Optional[BalancingPlan]:
        """Continue an incomplete, persisted balancing plan."""
        plan = self._cache_store.get_balancing_plan(tag)
        if plan is None:
            self._notifier.notify(f"No balancing plan for {codec.format_tag(tag)}", NotificationLevel.ERROR)
            return None
        if plan.is_finished:
            return plan

        correlation_id = create_correlation_id()
        confirmed = await self._confirm(
            "Resume Settle-Up",
            f"Continue {codec.format_tag(tag)} from step '{plan.step.value}'?",
            correlation_id=correlation_id,
        )
        if not confirmed:
            return None
        return await self._run_plan(plan, correlation_id, resuming=True)

    async def _run_plan(self, plan: BalancingPlan, correlation_id, resuming: bool) -> BalancingPlan:
        try:
            plan = await self._balancing.run(plan, correlation_id, resuming=resuming)
        except InsufficientBudgetError as e:
            self._notifier.notify("Insufficient budget to settle this amount", NotificationLevel.ERROR)
            logger.warning("balancing_insufficient_budget", participant=e.participant, required=e.required)
            raise
        except PartialFailure as e:
            await self._fail("create transactions", e.cause or e)
            raise
        self._notifier.notify("Settle-up transactions created successfully", NotificationLevel.SUCCESS)
        return plan

    def pending_balancing_plans(self) -> list[BalancingPlan]:
        return self._cache_store.list_balancing_plans()

    # =========================================================================
    # BUDGETS AND MONTHLY CONTRIBUTIONS
    # =========================================================================

    @exclusive
    async def transfer_budget(
        self,
        participant: str,
        amount: int,
        direction: BudgetDirection,
        month: Optional[str] = None,
    ) -> Optional[bool]:
        """Move ``amount`` between the participant's shared and balancing categories."""
        binding = self._binding(participant)
        if not binding.balancing_category_id:
            raise ConfigurationError(f"{participant} has no balancing category configured")
        month = month or month_key(date.today())

        if direction == BudgetDirection.TO_BALANCING:
            source, destination = "Shared Expenses", "Balancing"
            delta = -amount
        else:
            source, destination = "Balancing", "Shared Expenses"
            delta = amount

        correlation_id = create_correlation_id()
        confirmed = await self._confirm(
            "Move Budget",
            f"Move {from_milliunits(amount):.2f} from {source} to {destination} for {participant}?",
            correlation_id=correlation_id,
        )
        if not confirmed:
            return False

        ledger_id = binding.personal_ledger_id
        try:
            detail = await self._sync.get_month(ledger_id, month)
            shared = detail.find_category(binding.shared_category_id)
            balancing = detail.find_category(binding.balancing_category_id)
            if shared is None or balancing is None:
                raise ConfigurationError(f"Categories for {participant} not found in {month}")
            await self._sync.update_category_budget(
                ledger_id, month, binding.shared_category_id, shared.budgeted + delta
            )
            await self._sync.update_category_budget(
                ledger_id, month, binding.balancing_category_id, balancing.budgeted - delta
            )
        except LedgerError as e:
            await self._fail("update budget", e)
            raise

        await self._audit.log_budget_moved(participant, amount, direction.value, month, correlation_id)
        self._notifier.notify(f"Moved {from_milliunits(amount):.2f} to {destination}", NotificationLevel.SUCCESS)
        return True

    @exclusive
    async def ensure_monthly_contribution(self, participant: str, month: str, amount: int) -> Optional[Transaction]:
        return await self._ensure_monthly_contribution(participant, month, amount)

    async def _ready_to_assign_id(self, ledger_id: str) -> Optional[str]:
        if ledger_id not in self._ready_to_assign:
            categories = await self._sync.client.list_categories(ledger_id)
            self._ready_to_assign[ledger_id] = next(
                (c.id for c in categories if c.name == READY_TO_ASSIGN), None
            )
        return self._ready_to_assign[ledger_id]

    async def _ensure_monthly_contribution(
        self,
        participant: str,
        month: str,
        amount: int,
    ) -> Transaction:
        """
        Create or update the participant's contribution for ``month`` (YYYY-MM).

        The deterministic Monthly tag finds an existing contribution, so
        running this twice never creates a duplicate.
        """
        binding = self._binding(participant)
        shared_ledger_id = self._shared_ledger_id()
        year, month_num = (int(part) for part in month.split("-")[:2])
        tag = codec.generate_monthly(month_num, year)

        txns = await self._sync.get_transactions(
            shared_ledger_id,
            filters=TransactionFilter(account_id=binding.contribution_account_id, month=month),
        )
        existing = next((t for t in txns if codec.extract(t.memo) == tag), None)

        if existing is not None:
            if existing.amount == amount:
                return existing
            updated = await self._sync.update_transaction(
                shared_ledger_id, existing.id, TransactionDraft(amount=amount)
            )
            await self._audit.log_monthly_contribution(tag, participant, amount, created=False)
            return updated

        created = await self._sync.create_transaction(
            shared_ledger_id,
            TransactionDraft(
                account_id=binding.contribution_account_id,
                date=date(year, month_num, 1),
                amount=amount,
                payee_name=f"Monthly Contribution - {_month_label(year, month_num)}",
                memo=codec.format_tag(tag),
                category_id=await self._ready_to_assign_id(shared_ledger_id),
                cleared=ClearedStatus.CLEARED,
                approved=True,
                flag_color="purple",
            ),
        )
        await self._audit.log_monthly_contribution(tag, participant, amount, created=True)
        return created

    @exclusive
    async def apply_monthly_allocations(self, month: str) -> Optional[dict[str, Transaction]]:
        """
        Apply the configured allocations for ``month`` (YYYY-MM).

        Per participant: shared budget = allocation + balancing activity,
        balancing budget = -balancing activity (so it nets to zero), then
        ensure the monthly contribution in the shared ledger.
        """
        allocations = self.store.config.monthly_allocations.get(month) or {}
        if not allocations:
            self._notifier.notify("Please set allocation amounts first", NotificationLevel.ERROR)
            return None

        correlation_id = create_correlation_id()
        summary = ", ".join(f"{name}: {from_milliunits(value):.2f}" for name, value in allocations.items())
        confirmed = await self._confirm(
            f"Apply Allocations {month}",
            f"Set shared and balancing budgets and create contributions ({summary})?",
            correlation_id=correlation_id,
        )
        if not confirmed:
            return None

        month_date = f"{month}-01"
        contributions = {}
        try:
            for binding in self.store.config.participants:
                allocation = allocations.get(binding.name)
                if not allocation:
                    continue

                balancing_activity = 0
                try:
                    detail = await self._sync.get_month(binding.personal_ledger_id, month_date)
                    balancing = detail.find_category(binding.balancing_category_id)
                    balancing_activity = balancing.activity if balancing else 0
                except NotFoundError:
                    logger.info("month_not_found_using_zero", participant=binding.name, month=month)

                await self._sync.update_category_budget(
                    binding.personal_ledger_id,
                    month_date,
                    binding.shared_category_id,
                    allocation + balancing_activity,
                )
                if binding.balancing_category_id:
                    await self._sync.update_category_budget(
                        binding.personal_ledger_id,
                        month_date,
                        binding.balancing_category_id,
                        -balancing_activity,
                    )
                contributions[binding.name] = await self._ensure_monthly_contribution(
                    binding.name, month, allocation
                )
        except LedgerError as e:
            await self._fail("apply allocations", e)
            raise

        self._notifier.notify("Allocations applied", NotificationLevel.SUCCESS)
        return contributions

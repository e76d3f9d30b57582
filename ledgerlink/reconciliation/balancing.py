"""
Balancing Coordinator

Creates and unwinds balancing (settle-up) sets. A set is four
transactions sharing one Balancing tag:

1. payer personal outflow   (payer's balancing category)
2. payee personal inflow    (payee's balancing category)
3. shared transfer          payer contribution account -> payee's
4. paired transfer leg      produced by the remote service, never created here

DESIGN DECISION: The remote service has no multi-call transaction, so
creation is a state machine persisted under the tag after every step.
A failure leaves the plan at the last completed step; resuming picks up
from there and first checks whether the remote already holds a leg with
the tag before creating it again.
"""

from datetime import date
from typing import Optional
from uuid import UUID

import structlog

from ledgerlink.audit import AuditLogger
from ledgerlink.models.ledger import (
    ClearedStatus,
    ParticipantBinding,
    Transaction,
    TransactionDraft,
    from_milliunits,
    month_key,
)
from ledgerlink.models.reconciliation import (
    BALANCING_SET_SIZE,
    CREATION_ORDER,
    BalancingPlan,
    BalancingStep,
    DeletionReport,
    DeletionTarget,
    LinkedGroup,
)
from ledgerlink.reconciliation.errors import (
    ConfigurationError,
    InsufficientBudgetError,
    PartialFailure,
)
from ledgerlink.services.remote.interface import LedgerError, NotFoundError
from ledgerlink.services.storage.cache_store import PersistentCacheStore
from ledgerlink.services.ui.interface import (
    LoggingNotifier,
    NotificationLevel,
    NotifierInterface,
)
from ledgerlink.sync.manager import SyncCacheManager
from ledgerlink.tags import codec


logger = structlog.get_logger(__name__)

# Leg recorded in created_ids when a step completes
_LEG_FOR_STEP = {
    BalancingStep.PAYER_CREATED: "payer",
    BalancingStep.PAYEE_CREATED: "payee",
    BalancingStep.TRANSFER_CREATED: "transfer",
}


class BalancingCoordinator:
    """Runs the balancing state machine against the sync manager's write API."""

    def __init__(
        self,
        sync: SyncCacheManager,
        cache_store: PersistentCacheStore,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[NotifierInterface] = None,
    ):
        self._sync = sync
        self._cache_store = cache_store
        self._audit = audit or AuditLogger()
        self._notifier = notifier or LoggingNotifier()

    @property
    def _config(self):
        return self._sync.store.config

    def _binding(self, name: str) -> ParticipantBinding:
        binding = self._config.participant(name)
        if binding is None:
            raise ConfigurationError(f"Unknown participant: {name}")
        if not binding.balancing_category_id:
            raise ConfigurationError(f"{name} has no balancing category configured")
        return binding

    def _shared_ledger_id(self) -> str:
        if not self._config.shared_ledger_id:
            raise ConfigurationError("No shared ledger configured")
        return self._config.shared_ledger_id

    def _persist(self, plan: BalancingPlan) -> None:
        if not self._cache_store.save_balancing_plan(plan):
            logger.warning("balancing_plan_not_persisted", tag=plan.tag, step=plan.step.value)

    # =========================================================================
    # CREATION
    # =========================================================================

    def plan(
        self,
        payer: str,
        payee: str,
        amount: int,
        txn_date: date,
        memo: str,
        payer_account_id: str,
        payee_account_id: str,
    ) -> BalancingPlan:
        """Validate the request and build a fresh (unpersisted) plan."""
        if payer == payee:
            raise ConfigurationError("Payer and payee must be different participants")
        self._binding(payer)
        self._binding(payee)
        self._shared_ledger_id()

        tag = codec.generate_balancing()
        return BalancingPlan(
            tag=tag,
            payer=payer,
            payee=payee,
            amount=amount,
            date=txn_date,
            memo=codec.upsert(memo, tag),
            payer_account_id=payer_account_id,
            payee_account_id=payee_account_id,
            month=month_key(txn_date),
        )

    async def run(
        self,
        plan: BalancingPlan,
        correlation_id: Optional[UUID] = None,
        resuming: bool = False,
    ) -> BalancingPlan:
        """
        Drive ``plan`` forward until COMPLETE.

        Raises:
            InsufficientBudgetError: Before anything was written remotely
            PartialFailure: A step failed after the plan was persisted
        """
        self._persist(plan)
        handlers = {
            BalancingStep.PENDING: self._ensure_budget,
            BalancingStep.BUDGET_READY: self._create_payer_leg,
            BalancingStep.PAYER_CREATED: self._create_payee_leg,
            BalancingStep.PAYEE_CREATED: self._create_transfer,
            BalancingStep.TRANSFER_CREATED: self._finish,
        }

        while plan.step in handlers:
            step = plan.step
            try:
                next_step = await handlers[step](plan, resuming)
            except InsufficientBudgetError:
                if plan.step == BalancingStep.PENDING:
                    self._cache_store.delete_balancing_plan(plan.tag)
                raise
            except (LedgerError, ConfigurationError) as e:
                plan.last_error = str(e)
                self._persist(plan)
                await self._audit.log_balancing_step_failed(
                    tag=plan.tag,
                    step=step.value,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
                raise PartialFailure(plan.tag, self.completed_steps(plan), e) from e

            plan.advance(next_step)
            self._persist(plan)
            await self._audit.log_balancing_step(
                tag=plan.tag,
                step=next_step.value,
                correlation_id=correlation_id,
                transaction_id=plan.created_ids.get(_LEG_FOR_STEP.get(next_step, "")),
            )

        await self._audit.log_balancing_set_created(
            tag=plan.tag,
            payer=plan.payer,
            payee=plan.payee,
            amount=plan.amount,
            correlation_id=correlation_id,
        )
        return plan

    @staticmethod
    def completed_steps(plan: BalancingPlan) -> list[str]:
        return [s.value for s in CREATION_ORDER[1:] if plan.reached(s)]

    async def _ensure_budget(self, plan: BalancingPlan, resuming: bool) -> BalancingStep:
        """Move any shortfall from the payer's shared category to balancing."""
        binding = self._binding(plan.payer)
        ledger_id = binding.personal_ledger_id
        self._sync.invalidate_month(ledger_id, plan.month)
        month = await self._sync.get_month(ledger_id, plan.month)

        balancing = month.find_category(binding.balancing_category_id)
        shared = month.find_category(binding.shared_category_id)
        if balancing is None or shared is None:
            raise ConfigurationError(f"Categories for {plan.payer} not found in {plan.month}")

        if balancing.balance >= plan.amount:
            return BalancingStep.BUDGET_READY

        shortfall = plan.amount - balancing.balance
        if shared.balance < shortfall:
            raise InsufficientBudgetError(plan.payer, shortfall, shared.balance)

        await self._sync.update_category_budget(
            ledger_id, plan.month, binding.shared_category_id, shared.budgeted - shortfall
        )
        await self._sync.update_category_budget(
            ledger_id, plan.month, binding.balancing_category_id, balancing.budgeted + shortfall
        )
        plan.budget_moved = shortfall
        self._notifier.notify(
            f"Moved {from_milliunits(shortfall):.2f} from shared expenses to balancing for {plan.payer}",
            NotificationLevel.INFO,
        )
        return BalancingStep.BUDGET_READY

    async def _find_existing_leg(
        self,
        ledger_id: str,
        account_id: str,
        tag: str,
        outflow: bool,
    ) -> Optional[Transaction]:
        self._sync.invalidate_ledger(ledger_id)
        for txn in await self._sync.get_transactions(ledger_id):
            if (
                txn.account_id == account_id
                and codec.extract(txn.memo) == tag
                and (txn.amount < 0) == outflow
            ):
                return txn
        return None

    async def _create_leg(
        self,
        plan: BalancingPlan,
        leg: str,
        ledger_id: str,
        draft: TransactionDraft,
        resuming: bool,
    ) -> None:
        existing = None
        if resuming:
            existing = await self._find_existing_leg(
                ledger_id, draft.account_id, plan.tag, draft.amount < 0
            )
        if existing is not None:
            logger.info("balancing_leg_already_exists", tag=plan.tag, leg=leg, transaction_id=existing.id)
            plan.created_ids[leg] = existing.id
            return

        txn = await self._sync.create_transaction(ledger_id, draft)
        plan.created_ids[leg] = txn.id

    async def _create_payer_leg(self, plan: BalancingPlan, resuming: bool) -> BalancingStep:
        payer = self._binding(plan.payer)
        draft = TransactionDraft(
            account_id=plan.payer_account_id,
            date=plan.date,
            amount=-plan.amount,
            category_id=payer.balancing_category_id,
            payee_name=f"Balancing to {plan.payee}",
            memo=plan.memo,
            cleared=ClearedStatus.CLEARED,
            approved=True,
        )
        await self._create_leg(plan, "payer", payer.personal_ledger_id, draft, resuming)
        return BalancingStep.PAYER_CREATED

    async def _create_payee_leg(self, plan: BalancingPlan, resuming: bool) -> BalancingStep:
        payee = self._binding(plan.payee)
        draft = TransactionDraft(
            account_id=plan.payee_account_id,
            date=plan.date,
            amount=plan.amount,
            category_id=payee.balancing_category_id,
            payee_name=f"Balancing from {plan.payer}",
            memo=plan.memo,
            cleared=ClearedStatus.CLEARED,
            approved=True,
        )
        await self._create_leg(plan, "payee", payee.personal_ledger_id, draft, resuming)
        return BalancingStep.PAYEE_CREATED

    async def _create_transfer(self, plan: BalancingPlan, resuming: bool) -> BalancingStep:
        payer = self._binding(plan.payer)
        payee = self._binding(plan.payee)
        shared_ledger_id = self._shared_ledger_id()

        detail = await self._sync.get_ledger_detail(shared_ledger_id)
        destination = detail.find_account(payee.contribution_account_id)
        if destination is None or not destination.transfer_payee_id:
            raise ConfigurationError(
                f"Could not find transfer payee for {plan.payee}'s contribution account"
            )

        draft = TransactionDraft(
            account_id=payer.contribution_account_id,
            date=plan.date,
            amount=-plan.amount,
            payee_id=destination.transfer_payee_id,
            memo=plan.memo,
            cleared=ClearedStatus.CLEARED,
            approved=True,
        )
        await self._create_leg(plan, "transfer", shared_ledger_id, draft, resuming)
        return BalancingStep.TRANSFER_CREATED

    async def _finish(self, plan: BalancingPlan, resuming: bool) -> BalancingStep:
        """Pull the remotely produced transfer leg into the store."""
        shared_ledger_id = self._shared_ledger_id()
        self._sync.invalidate_ledger(shared_ledger_id)
        try:
            await self._sync.get_transactions(shared_ledger_id)
        except LedgerError as e:
            logger.warning("balancing_refresh_failed", tag=plan.tag, error=str(e))
        return BalancingStep.COMPLETE

    # =========================================================================
    # DELETION
    # =========================================================================

    def collect_targets(self, group: LinkedGroup) -> list[DeletionTarget]:
        """Every personal and shared transaction in ``group``."""
        targets = []
        for name, txns in group.personal.items():
            binding = self._config.participant(name)
            if binding is None:
                continue
            for txn in txns:
                targets.append(DeletionTarget(
                    ledger_id=binding.personal_ledger_id,
                    transaction=txn,
                    participant=name,
                    side="personal",
                ))
        shared_ledger_id = self._shared_ledger_id()
        for entry in group.shared:
            targets.append(DeletionTarget(
                ledger_id=shared_ledger_id,
                transaction=entry.transaction,
                participant=entry.participant,
                side="shared",
            ))
        return targets

    async def delete(
        self,
        tag: str,
        targets: list[DeletionTarget],
        correlation_id: Optional[UUID] = None,
    ) -> DeletionReport:
        """
        Delete every target independently, then rebalance budgets.

        A failed deletion is recorded and does not stop the others. A
        remote not-found counts as already deleted.
        """
        plan = self._cache_store.get_balancing_plan(tag)
        if plan is not None:
            plan.advance(BalancingStep.DELETING)
            self._persist(plan)

        report = DeletionReport(
            tag=tag,
            expected_count=plan.expected_count if plan else BALANCING_SET_SIZE,
        )

        for target in targets:
            txn_id = target.transaction.id
            try:
                await self._sync.delete_transaction(target.ledger_id, txn_id)
                report.deleted.append(txn_id)
            except NotFoundError:
                logger.info("balancing_leg_already_gone", tag=tag, transaction_id=txn_id)
                self._sync.store.remove_transaction(target.ledger_id, txn_id)
                self._sync.invalidate_ledger(target.ledger_id)
                report.not_found.append(txn_id)
            except LedgerError as e:
                logger.error("balancing_leg_delete_failed", tag=tag, transaction_id=txn_id, error=str(e))
                report.failed.append(txn_id)
                await self._audit.log_delete_failed(
                    ledger_id=target.ledger_id,
                    transaction_id=txn_id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )

        personal_months: dict[str, str] = {}
        for target in targets:
            if target.side == "personal":
                month = plan.month if plan else month_key(target.transaction.date)
                personal_months.setdefault(target.participant, month)

        for name, month in personal_months.items():
            moved = await self._rebalance(name, month, correlation_id)
            if moved:
                report.budget_adjustments[name] = moved

        if plan is not None:
            if report.succeeded:
                plan.advance(BalancingStep.DELETED)
            else:
                plan.last_error = f"{len(report.failed)} deletion(s) failed"
            self._persist(plan)

        await self._audit.log_balancing_set_deleted(
            tag=tag,
            deleted=len(report.deleted) + len(report.not_found),
            failed=len(report.failed),
            missing=report.missing,
            correlation_id=correlation_id,
        )
        return report

    async def _rebalance(
        self,
        participant: str,
        month: str,
        correlation_id: Optional[UUID] = None,
    ) -> int:
        """
        Return leftover balancing budget to shared expenses, or cover a
        balancing deficit from shared expenses when it can afford it.

        Best effort: failures warn and return 0.
        """
        binding = self._config.participant(participant)
        if binding is None or not binding.balancing_category_id:
            return 0

        ledger_id = binding.personal_ledger_id
        try:
            self._sync.invalidate_month(ledger_id, month)
            detail = await self._sync.get_month(ledger_id, month)
            balancing = detail.find_category(binding.balancing_category_id)
            shared = detail.find_category(binding.shared_category_id)
            if balancing is None or shared is None:
                return 0

            if balancing.balance > 0:
                moved = balancing.balance
            elif balancing.balance < 0 and shared.balance >= -balancing.balance:
                moved = balancing.balance
            else:
                return 0

            await self._sync.update_category_budget(
                ledger_id, month, binding.balancing_category_id, balancing.budgeted - moved
            )
            await self._sync.update_category_budget(
                ledger_id, month, binding.shared_category_id, shared.budgeted + moved
            )
        except LedgerError as e:
            logger.warning("balancing_rebalance_failed", participant=participant, error=str(e))
            self._notifier.notify(
                f"Could not adjust budgets for {participant}: {e}",
                NotificationLevel.WARNING,
            )
            await self._audit.log_budget_adjustment_failed(
                participant=participant,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return 0

        direction = "to_shared" if moved > 0 else "to_balancing"
        await self._audit.log_budget_moved(
            participant=participant,
            amount=abs(moved),
            direction=direction,
            month=month,
            correlation_id=correlation_id,
        )
        return moved


"""
Audit Logger

DESIGN DECISION: Every remote mutation and every cache degradation is
logged. Multi-step balancing flows are not atomic, so this log (together
with the tag embedded in each note) is how a half-finished flow is traced:
1. Which steps of a balancing set completed before a failure
2. Which deletions failed during an unwind
3. When the persistent cache fell back to memory-only

The audit logger:
- Is async so it can persist without blocking callers' flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace all calls of one user action
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledgerlink.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from ledgerlink.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at ``level``."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper()))


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit storage backend, when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("ledgerlink.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transactions_linked(
        self,
        tag: str,
        personal_id: str,
        shared_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transactions_linked(
            tag=tag,
            personal_id=personal_id,
            shared_id=shared_id,
            correlation_id=correlation_id,
        ))

    async def log_transaction_unlinked(
        self,
        tag: str,
        ledger_id: str,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_unlinked(
            tag=tag,
            ledger_id=ledger_id,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        ))

    async def log_transaction_copied(
        self,
        tag: str,
        personal_id: str,
        shared_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_copied(
            tag=tag,
            personal_id=personal_id,
            shared_id=shared_id,
            correlation_id=correlation_id,
        ))

    async def log_monthly_tag_applied(
        self,
        tag: str,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.monthly_tag_applied(
            tag=tag,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        ))

    async def log_balancing_step(
        self,
        tag: str,
        step: str,
        correlation_id: Optional[UUID] = None,
        transaction_id: Optional[str] = None,
    ) -> None:
        """Log one completed step of a balancing set."""
        await self.log(AuditEventBuilder.balancing_step(
            tag=tag,
            step=step,
            correlation_id=correlation_id,
            transaction_id=transaction_id,
        ))

    async def log_balancing_step_failed(
        self,
        tag: str,
        step: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.balancing_step_failed(
            tag=tag,
            step=step,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_balancing_set_created(
        self,
        tag: str,
        payer: str,
        payee: str,
        amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.balancing_set_created(
            tag=tag,
            payer=payer,
            payee=payee,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_balancing_set_deleted(
        self,
        tag: str,
        deleted: int,
        failed: int,
        missing: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.balancing_set_deleted(
            tag=tag,
            deleted=deleted,
            failed=failed,
            missing=missing,
            correlation_id=correlation_id,
        ))

    async def log_delete_failed(
        self,
        ledger_id: str,
        transaction_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_delete_failed(
            ledger_id=ledger_id,
            transaction_id=transaction_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_budget_moved(
        self,
        participant: str,
        amount: int,
        direction: str,
        month: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_moved(
            participant=participant,
            amount=amount,
            direction=direction,
            month=month,
            correlation_id=correlation_id,
        ))

    async def log_budget_adjustment_failed(
        self,
        participant: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_adjustment_failed(
            participant=participant,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_monthly_contribution(
        self,
        tag: str,
        participant: str,
        amount: int,
        created: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.monthly_contribution(
            tag=tag,
            participant=participant,
            amount=amount,
            created=created,
            correlation_id=correlation_id,
        ))

    async def log_user_decision(
        self,
        title: str,
        confirmed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.user_decision(
            title=title,
            confirmed=confirmed,
            correlation_id=correlation_id,
        ))

    async def log_cache_degraded(self, ledger_id: str, reason: str) -> None:
        await self.log(AuditEventBuilder.cache_degraded(ledger_id=ledger_id, reason=reason))

    async def log_sync_fallback(self, ledger_id: str, tier: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.sync_fallback(
            ledger_id=ledger_id,
            tier=tier,
            error_message=error_message,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., creating a
    balancing set). Pass it through all subsequent remote calls.
    """
    return uuid4()

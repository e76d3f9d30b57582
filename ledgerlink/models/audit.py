"""
Audit Models for ledgerlink

Every remote mutation and every cache degradation is recorded as an
audit event. Together with the tags embedded in transaction notes this
is what makes a half-finished multi-step operation traceable.

DESIGN DECISION: Audit events are append-only and carry a correlation id
that ties together every remote call issued by one user-triggered flow.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Linking
    TRANSACTIONS_LINKED = "transactions_linked"
    TRANSACTION_UNLINKED = "transaction_unlinked"
    TRANSACTION_COPIED = "transaction_copied"
    MONTHLY_TAG_APPLIED = "monthly_tag_applied"

    # Balancing protocol
    BALANCING_STEP_COMPLETED = "balancing_step_completed"
    BALANCING_STEP_FAILED = "balancing_step_failed"
    BALANCING_SET_CREATED = "balancing_set_created"
    BALANCING_SET_DELETED = "balancing_set_deleted"
    TRANSACTION_DELETE_FAILED = "transaction_delete_failed"

    # Budgets
    BUDGET_MOVED = "budget_moved"
    BUDGET_ADJUSTMENT_FAILED = "budget_adjustment_failed"
    MONTHLY_CONTRIBUTION_CREATED = "monthly_contribution_created"
    MONTHLY_CONTRIBUTION_UPDATED = "monthly_contribution_updated"

    # Human confirmation
    USER_CONFIRMED = "user_confirmed"
    USER_DECLINED = "user_declined"

    # Cache and sync
    CACHE_DEGRADED = "cache_degraded"
    SYNC_FALLBACK = "sync_fallback"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.
    """

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'tag', 'ledger')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Remote id or tag value of the entity"
    )

    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate the remote calls of one flow"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transactions_linked(tag, personal_id, shared_id, cid)
        event = AuditEventBuilder.balancing_step(tag, "payer_created", cid)
    """

    @staticmethod
    def transactions_linked(
        tag: str,
        personal_id: str,
        shared_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_LINKED,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Linked transactions with #{tag}#",
            details={
                "personal_transaction_id": personal_id,
                "shared_transaction_id": shared_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_unlinked(
        tag: str,
        ledger_id: str,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UNLINKED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Removed #{tag}# from transaction",
            details={"tag": tag, "ledger_id": ledger_id},
            is_user_action=True,
        )

    @staticmethod
    def transaction_copied(
        tag: str,
        personal_id: str,
        shared_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_COPIED,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Copied personal transaction to shared ledger as #{tag}#",
            details={
                "personal_transaction_id": personal_id,
                "shared_transaction_id": shared_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def monthly_tag_applied(
        tag: str,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTHLY_TAG_APPLIED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Marked transaction as monthly contribution #{tag}#",
            details={"tag": tag},
            is_user_action=True,
        )

    @staticmethod
    def balancing_step(
        tag: str,
        step: str,
        correlation_id: Optional[UUID] = None,
        transaction_id: Optional[str] = None,
    ) -> AuditEvent:
        details = {"step": step}
        if transaction_id:
            details["transaction_id"] = transaction_id
        return AuditEvent(
            event_type=AuditEventType.BALANCING_STEP_COMPLETED,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Balancing set #{tag}# reached {step}",
            details=details,
        )

    @staticmethod
    def balancing_step_failed(
        tag: str,
        step: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCING_STEP_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Balancing set #{tag}# stopped after {step}",
            error_message=error_message,
            details={"step": step},
        )

    @staticmethod
    def balancing_set_created(
        tag: str,
        payer: str,
        payee: str,
        amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCING_SET_CREATED,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Balancing set #{tag}# created: {payer} pays {payee}",
            details={"payer": payer, "payee": payee, "amount": amount},
            is_user_action=True,
        )

    @staticmethod
    def balancing_set_deleted(
        tag: str,
        deleted: int,
        failed: int,
        missing: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        severity = AuditSeverity.WARNING if failed else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.BALANCING_SET_DELETED,
            severity=severity,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Balancing set #{tag}# deleted ({deleted} removed, {failed} failed)",
            details={"deleted": deleted, "failed": failed, "missing": missing},
            is_user_action=True,
        )

    @staticmethod
    def transaction_delete_failed(
        ledger_id: str,
        transaction_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Failed to delete transaction",
            error_message=error_message,
            details={"ledger_id": ledger_id},
        )

    @staticmethod
    def budget_moved(
        participant: str,
        amount: int,
        direction: str,
        month: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_MOVED,
            entity_type="participant",
            entity_id=participant,
            correlation_id=correlation_id,
            description=f"Moved budget for {participant} ({direction})",
            details={"amount": amount, "direction": direction, "month": month},
        )

    @staticmethod
    def budget_adjustment_failed(
        participant: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_ADJUSTMENT_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="participant",
            entity_id=participant,
            correlation_id=correlation_id,
            description=f"Budget adjustment failed for {participant}",
            error_message=error_message,
        )

    @staticmethod
    def monthly_contribution(
        tag: str,
        participant: str,
        amount: int,
        created: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.MONTHLY_CONTRIBUTION_CREATED
            if created
            else AuditEventType.MONTHLY_CONTRIBUTION_UPDATED
        )
        verb = "created" if created else "updated"
        return AuditEvent(
            event_type=event_type,
            entity_type="tag",
            entity_id=tag,
            correlation_id=correlation_id,
            description=f"Monthly contribution #{tag}# {verb} for {participant}",
            details={"participant": participant, "amount": amount},
        )

    @staticmethod
    def user_decision(
        title: str,
        confirmed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.USER_CONFIRMED if confirmed else AuditEventType.USER_DECLINED
            ),
            correlation_id=correlation_id,
            description=f"User {'confirmed' if confirmed else 'declined'}: {title}",
            is_user_action=True,
        )

    @staticmethod
    def cache_degraded(
        ledger_id: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CACHE_DEGRADED,
            severity=AuditSeverity.WARNING,
            entity_type="ledger",
            entity_id=ledger_id,
            description="Persistent cache unavailable, using in-process cache only",
            details={"reason": reason},
        )

    @staticmethod
    def sync_fallback(
        ledger_id: str,
        tier: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FALLBACK,
            severity=AuditSeverity.WARNING,
            entity_type="ledger",
            entity_id=ledger_id,
            description=f"Remote fetch failed, served {tier} cache",
            error_message=error_message,
            details={"tier": tier},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )

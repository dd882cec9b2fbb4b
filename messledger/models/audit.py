"""
Audit Models for Mess Ledger

Every write that moves money is logged for audit purposes.
This provides:
1. A trail for every auto-deposit and its reversal
2. Who closed or reopened which month, and when
3. Debugging information when a batch partially fails
4. Ability to reconstruct how a carry-forward was derived

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
Money values in `details` are stored as strings so they survive JSON.
"""

import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from messledger.models.ledger import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Settlement
    SETTLEMENT_COMPUTED = "settlement_computed"

    # Expenses and purchases
    EXPENSE_RECORDED = "expense_recorded"
    EXPENSE_REVERSED = "expense_reversed"
    PURCHASE_RECORDED = "purchase_recorded"
    PURCHASE_REVERSED = "purchase_reversed"
    AUTO_DEPOSIT_APPLIED = "auto_deposit_applied"
    DEPOSIT_ADDED = "deposit_added"
    FUND_TRANSFER_RECORDED = "fund_transfer_recorded"

    # Month lifecycle
    MONTH_CLOSED = "month_closed"
    MONTH_REOPENED = "month_reopened"
    CARRY_FORWARD_WRITTEN = "carry_forward_written"

    # Batches
    BATCH_COMPLETED = "batch_completed"

    # Rejections and failures
    WRITE_REJECTED = "write_rejected"
    SYSTEM_ERROR = "system_error"


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

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'common_expense', 'month', 'deposit')"
    )
    entity_id: Optional[UUID] = None

    # Correlation - for tracking related events of one operation
    correlation_id: Optional[UUID] = None

    # Who did it (member id), if known
    actor_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, actor_id, description, details_json, error_code,
         error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            str(self.actor_id) if self.actor_id else "",
            self.description,
            json.dumps(self.details) if self.details else "",
            self.error_code or "",
            self.error_message or "",
        ]


def _month_str(month: date) -> str:
    return month.isoformat()


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.month_closed(month, actor_id, members, correlation_id)
    """

    @staticmethod
    def settlement_computed(
        month: date,
        scope_kind: str,
        meal_rate: str,
        member_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_COMPUTED,
            severity=AuditSeverity.DEBUG,
            entity_type="month",
            correlation_id=correlation_id,
            description=f"Settlement computed for {_month_str(month)} ({scope_kind})",
            details={
                "month": _month_str(month),
                "scope": scope_kind,
                "meal_rate": meal_rate,
                "member_count": member_count,
            },
        )

    @staticmethod
    def expense_recorded(
        expense_id: UUID,
        name: str,
        total: str,
        per_member_share: str,
        month: date,
        payer_id: Optional[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_RECORDED,
            entity_type="common_expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            actor_id=payer_id,
            description=f"Common expense recorded: {name} - {total}",
            details={
                "name": name,
                "total": total,
                "per_member_share": per_member_share,
                "month": _month_str(month),
            },
        )

    @staticmethod
    def purchase_recorded(
        purchase_id: UUID,
        buyer_id: UUID,
        amount: str,
        purchase_date: date,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PURCHASE_RECORDED,
            entity_type="purchase",
            entity_id=purchase_id,
            correlation_id=correlation_id,
            actor_id=buyer_id,
            description=f"Purchase recorded: {amount} on {purchase_date.isoformat()}",
            details={
                "amount": amount,
                "purchase_date": purchase_date.isoformat(),
            },
        )

    @staticmethod
    def auto_deposit_applied(
        member_id: UUID,
        month: date,
        amount: str,
        slot: Optional[int],
        source_id: UUID,
        correlation_id: UUID,
    ) -> AuditEvent:
        if slot is None:
            return AuditEvent(
                event_type=AuditEventType.AUTO_DEPOSIT_APPLIED,
                severity=AuditSeverity.WARNING,
                entity_type="deposit",
                entity_id=source_id,
                correlation_id=correlation_id,
                actor_id=member_id,
                description="Auto-deposit skipped: all deposit slots occupied",
                details={
                    "month": _month_str(month),
                    "excess": amount,
                    "slots_full": True,
                },
            )
        return AuditEvent(
            event_type=AuditEventType.AUTO_DEPOSIT_APPLIED,
            entity_type="deposit",
            entity_id=source_id,
            correlation_id=correlation_id,
            actor_id=member_id,
            description=f"Auto-deposit of {amount} into slot d{slot + 1}",
            details={
                "month": _month_str(month),
                "amount": amount,
                "slot": slot,
            },
        )

    @staticmethod
    def entry_reversed(
        entity_type: str,
        entity_id: UUID,
        member_id: Optional[UUID],
        cleared_slot: Optional[int],
        correlation_id: UUID,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.EXPENSE_REVERSED
            if entity_type == "common_expense"
            else AuditEventType.PURCHASE_REVERSED
        )
        description = f"{entity_type.replace('_', ' ').capitalize()} deleted"
        if cleared_slot is not None:
            description += f", slot d{cleared_slot + 1} cleared"
        return AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            actor_id=member_id,
            description=description,
            details={"cleared_slot": cleared_slot},
        )

    @staticmethod
    def deposit_added(
        member_id: UUID,
        month: date,
        amount: str,
        slot: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEPOSIT_ADDED,
            entity_type="deposit",
            correlation_id=correlation_id,
            actor_id=member_id,
            description=f"Deposit of {amount} into slot d{slot + 1}",
            details={
                "month": _month_str(month),
                "amount": amount,
                "slot": slot,
            },
        )

    @staticmethod
    def fund_transfer_recorded(
        transfer_id: UUID,
        buyer_id: UUID,
        amount: str,
        transfer_date: date,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FUND_TRANSFER_RECORDED,
            entity_type="fund_transfer",
            entity_id=transfer_id,
            correlation_id=correlation_id,
            actor_id=buyer_id,
            description=f"Fund transfer of {amount} on {transfer_date.isoformat()}",
            details={
                "amount": amount,
                "transfer_date": transfer_date.isoformat(),
            },
        )

    @staticmethod
    def month_closed(
        month: date,
        actor_id: UUID,
        carry_forwards: dict[str, str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_CLOSED,
            entity_type="month",
            correlation_id=correlation_id,
            actor_id=actor_id,
            description=f"Month {_month_str(month)} closed",
            details={
                "month": _month_str(month),
                "carry_forwards": carry_forwards,
            },
        )

    @staticmethod
    def month_reopened(
        month: date,
        actor_id: UUID,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_REOPENED,
            severity=AuditSeverity.WARNING,
            entity_type="month",
            correlation_id=correlation_id,
            actor_id=actor_id,
            description=(
                f"Month {_month_str(month)} reopened; next month's "
                "carry-forward is kept until the month is closed again"
            ),
            details={"month": _month_str(month)},
        )

    @staticmethod
    def carry_forward_written(
        member_id: UUID,
        month: date,
        value: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CARRY_FORWARD_WRITTEN,
            severity=AuditSeverity.DEBUG,
            entity_type="deposit",
            correlation_id=correlation_id,
            actor_id=member_id,
            description=f"Carry-forward {value} written for {_month_str(month)}",
            details={"month": _month_str(month), "carry_forward": value},
        )

    @staticmethod
    def batch_completed(
        batch_type: str,
        succeeded: int,
        failed: int,
        failures: list[dict],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BATCH_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            entity_type="batch",
            correlation_id=correlation_id,
            description=f"{batch_type} batch: {succeeded} succeeded, {failed} failed",
            details={
                "batch_type": batch_type,
                "succeeded": succeeded,
                "failed": failed,
                "failures": failures,
            },
        )

    @staticmethod
    def write_rejected(
        operation: str,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WRITE_REJECTED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Write rejected: {operation}",
            details={"operation": operation},
            error_code=error_code,
            error_message=error_message,
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

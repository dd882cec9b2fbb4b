"""
Audit Logger

DESIGN DECISION: Every write that moves money is logged.
This provides:
1. Complete traceability of auto-deposits and their reversals
2. Debugging capability for partially failed batches
3. A record of who closed or reopened each month

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't break a ledger write if logging fails)
- Supports correlation IDs to trace related events
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from messledger.models.audit import AuditEvent, AuditEventBuilder
from messledger.services.storage import AuditStorageInterface


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


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage, when configured (Google Sheets or in-memory)
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
        self._logger = structlog.get_logger()

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        elif event.severity.value == "debug":
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_settlement_computed(
        self,
        month: date,
        scope_kind: str,
        meal_rate: Decimal,
        member_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a settlement computation (debug level)."""
        event = AuditEventBuilder.settlement_computed(
            month=month,
            scope_kind=scope_kind,
            meal_rate=str(meal_rate),
            member_count=member_count,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_expense_recorded(
        self,
        expense_id: UUID,
        name: str,
        total: Decimal,
        per_member_share: Decimal,
        month: date,
        payer_id: Optional[UUID],
        correlation_id: UUID,
    ) -> None:
        """Log a new common expense."""
        event = AuditEventBuilder.expense_recorded(
            expense_id=expense_id,
            name=name,
            total=str(total),
            per_member_share=str(per_member_share),
            month=month,
            payer_id=payer_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_purchase_recorded(
        self,
        purchase_id: UUID,
        buyer_id: UUID,
        amount: Decimal,
        purchase_date: date,
        correlation_id: UUID,
    ) -> None:
        """Log a new shopping purchase."""
        event = AuditEventBuilder.purchase_recorded(
            purchase_id=purchase_id,
            buyer_id=buyer_id,
            amount=str(amount),
            purchase_date=purchase_date,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_auto_deposit(
        self,
        member_id: UUID,
        month: date,
        amount: Decimal,
        slot: Optional[int],
        source_id: UUID,
        correlation_id: UUID,
    ) -> None:
        """Log an auto-deposit (or a skipped one when all slots are full)."""
        event = AuditEventBuilder.auto_deposit_applied(
            member_id=member_id,
            month=month,
            amount=str(amount),
            slot=slot,
            source_id=source_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_entry_reversed(
        self,
        entity_type: str,
        entity_id: UUID,
        member_id: Optional[UUID],
        cleared_slot: Optional[int],
        correlation_id: UUID,
    ) -> None:
        """Log deletion of an expense or purchase and its slot reversal."""
        event = AuditEventBuilder.entry_reversed(
            entity_type=entity_type,
            entity_id=entity_id,
            member_id=member_id,
            cleared_slot=cleared_slot,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_deposit_added(
        self,
        member_id: UUID,
        month: date,
        amount: Decimal,
        slot: int,
        correlation_id: UUID,
    ) -> None:
        """Log a manual deposit."""
        event = AuditEventBuilder.deposit_added(
            member_id=member_id,
            month=month,
            amount=str(amount),
            slot=slot,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_fund_transfer_recorded(
        self,
        transfer_id: UUID,
        buyer_id: UUID,
        amount: Decimal,
        transfer_date: date,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.fund_transfer_recorded(
            transfer_id=transfer_id,
            buyer_id=buyer_id,
            amount=str(amount),
            transfer_date=transfer_date,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_month_closed(
        self,
        month: date,
        actor_id: UUID,
        carry_forwards: dict[UUID, Decimal],
        correlation_id: UUID,
    ) -> None:
        """Log a month close with every carry-forward written."""
        event = AuditEventBuilder.month_closed(
            month=month,
            actor_id=actor_id,
            carry_forwards={str(k): str(v) for k, v in carry_forwards.items()},
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_month_reopened(
        self,
        month: date,
        actor_id: UUID,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.month_reopened(
            month=month,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_carry_forward_written(
        self,
        member_id: UUID,
        month: date,
        value: Decimal,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.carry_forward_written(
            member_id=member_id,
            month=month,
            value=str(value),
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_batch_completed(
        self,
        batch_type: str,
        succeeded: int,
        failed: int,
        failures: list[dict],
        correlation_id: UUID,
    ) -> None:
        """Log the outcome of a batch of independent upserts."""
        event = AuditEventBuilder.batch_completed(
            batch_type=batch_type,
            succeeded=succeeded,
            failed=failed,
            failures=failures,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_write_rejected(
        self,
        operation: str,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a write refused before mutation (closed month, bad input)."""
        event = AuditEventBuilder.write_rejected(
            operation=operation,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new ledger write (e.g., recording an expense).
    Pass it through all subsequent operations.
    """
    return uuid4()

"""
Month-Close Procedure

Closing a month:
1. Loads the month's snapshot (members, meals and purchases by date
   range; common expenses and deposits by month key)
2. Runs the settlement calculator over it
3. Writes each member's final balance as next month's carry_forward
4. Marks the month closed with timestamp and actor

CRITICAL: Step 3 is a CarryForwardUpdate, a targeted field upsert.
Deposits already entered for next month are never touched.

Closing is idempotent: closing again recomputes and overwrites the same
carry_forward values. Reopening clears the closed flag only; the
carry-forward written at close stays until the month is closed again.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from messledger.audit import AuditLogger
from messledger.config import LedgerSettings, get_settings
from messledger.errors import ConflictError
from messledger.ledger.locks import RowLockRegistry
from messledger.models.ledger import (
    CarryForwardUpdate,
    MonthStatus,
    next_month,
    normalize_month,
    utcnow,
)
from messledger.models.settlement import SettlementResult, SettlementScope
from messledger.queries import ScopeLoader
from messledger.services.storage import LedgerStorageInterface
from messledger.settlement import compute_settlement
from messledger.validation import LedgerValidator


class MonthCloseProcedure:
    """
    Closes and reopens months.

    Only members with the SUPER_ADMIN role may do either.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        locks: RowLockRegistry,
        validator: LedgerValidator,
        settings: Optional[LedgerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._locks = locks
        self._validator = validator
        self._settings = settings or get_settings().ledger
        self._audit_logger = audit_logger
        self._loader = ScopeLoader(storage)

    async def close_month(
        self,
        month: date,
        actor_id: UUID,
        correlation_id: UUID,
    ) -> SettlementResult:
        """
        Close `month` and carry every member's balance into next month.

        Returns the settlement the carry-forwards were taken from.

        Raises:
            ValidationError: unknown or non-super-admin actor, no members
            ConflictError: next month is already closed
        """
        month = normalize_month(month)
        following = next_month(month)
        await self._validator.ensure_super_admin(actor_id)

        members = await self._storage.list_members()
        self._validator.ensure_members_present(members)

        async with self._locks.hold([(m.id, following) for m in members]):
            async with self._storage.transaction():
                # Carry-forwards are writes into next month
                await self._validator.ensure_month_open(following)

                snapshot = await self._loader.load(SettlementScope.for_month(month))
                settlement = compute_settlement(
                    snapshot.members,
                    snapshot.meal_records,
                    snapshot.purchases,
                    snapshot.common_expenses,
                    snapshot.deposits,
                )

                carry_forwards: dict[UUID, Decimal] = {}
                for entry in settlement.per_member:
                    await self._storage.apply_deposit_update(
                        entry.member_id,
                        following,
                        CarryForwardUpdate(value=entry.balance),
                    )
                    carry_forwards[entry.member_id] = entry.balance

                status = await self._storage.get_month_status(month) or MonthStatus(month=month)
                await self._storage.save_month_status(status.model_copy(update={
                    "is_closed": True,
                    "closed_at": utcnow(),
                    "closed_by": actor_id,
                }))

        if self._audit_logger:
            for member_id, value in carry_forwards.items():
                await self._audit_logger.log_carry_forward_written(
                    member_id=member_id,
                    month=following,
                    value=value,
                    correlation_id=correlation_id,
                )
            await self._audit_logger.log_month_closed(
                month=month,
                actor_id=actor_id,
                carry_forwards=carry_forwards,
                correlation_id=correlation_id,
            )
        return settlement

    async def open_month(
        self,
        month: date,
        actor_id: UUID,
        correlation_id: UUID,
    ) -> MonthStatus:
        """
        Clear the closed flag of `month`.

        Reopening a month whose successor is closed would let edits change
        a balance that has already been carried into a frozen month, so it
        is refused unless allow_reopen_with_closed_successor is set.
        """
        month = normalize_month(month)
        await self._validator.ensure_super_admin(actor_id)

        async with self._storage.transaction():
            status = await self._storage.get_month_status(month)
            if status is None or not status.is_closed:
                return status or MonthStatus(month=month)

            successor = await self._storage.get_month_status(next_month(month))
            if (
                successor is not None
                and successor.is_closed
                and not self._settings.allow_reopen_with_closed_successor
            ):
                raise ConflictError(
                    f"Cannot reopen {month.isoformat()}: "
                    f"{next_month(month).isoformat()} is already closed",
                    month=month,
                )

            status = await self._storage.save_month_status(status.model_copy(update={
                "is_closed": False,
                "reopened_at": utcnow(),
                "reopened_by": actor_id,
            }))

        if self._audit_logger:
            await self._audit_logger.log_month_reopened(
                month=month,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )
        return status

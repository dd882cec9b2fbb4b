"""
Excess-Payment Resolver

When a member pays for something out of pocket beyond the cash float
they hold, the shortfall ("excess") is either:

- DEPOSIT: credited into the first free slot of the payer's deposit
  record for that month, or
- PAYBACK: recorded on the row as an amount the manager owes the payer.

DESIGN DECISION: The decision itself (resolve_excess) is PURE. The
resolver class only loads the inputs, applies the decision and stores
where the deposit landed on the expense/purchase row, so deleting the
row can reverse it exactly.

CRITICAL: Reversal overwrites the stored slot with zero. It never
subtracts, because the slot may have been edited by hand since.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from messledger.audit import AuditLogger
from messledger.ledger.locks import RowLockRegistry
from messledger.models.ledger import (
    ZERO,
    CommonExpense,
    DepositRecord,
    FrozenShare,
    PaymentPreference,
    ShoppingPurchase,
    SlotUpdate,
    month_of,
    month_range,
    normalize_month,
    split_share,
)
from messledger.models.settlement import ExcessResolution, ShopperFloat
from messledger.services.storage import LedgerStorageInterface, NotFoundError
from messledger.settlement import compute_shopper_float
from messledger.validation import LedgerValidator


def resolve_excess(
    expense_amount: Decimal,
    current_float: Decimal,
    preference: Optional[PaymentPreference],
    deposit_record: Optional[DepositRecord],
) -> ExcessResolution:
    """
    Decide what happens to the part of a payment the float does not cover.

    excess = expense_amount - current_float

    - excess <= 0 or no preference: nothing happens
    - PAYBACK: payback_amount = excess
    - DEPOSIT: excess goes into the first zero slot (slot 0 when the
      member has no record yet); with all slots occupied nothing is
      deposited and slots_full is set
    """
    excess = expense_amount - current_float
    resolution = ExcessResolution(
        expense_amount=expense_amount,
        current_float=current_float,
        excess=excess,
        preference=preference,
    )
    if excess <= 0 or preference is None:
        return resolution

    if preference == PaymentPreference.PAYBACK:
        resolution.payback_amount = excess
        return resolution

    slot = 0 if deposit_record is None else deposit_record.first_empty_slot()
    if slot is None:
        resolution.slots_full = True
        return resolution

    resolution.auto_deposit_amount = excess
    resolution.auto_deposit_slot = slot
    return resolution


class ExcessPaymentResolver:
    """
    Records expenses and purchases with excess handling, and reverses them.

    Each write runs under the payer's (member, month) row lock inside a
    single storage transaction: the expense/purchase row and the deposit
    slot are written together or not at all.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        locks: RowLockRegistry,
        validator: LedgerValidator,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._locks = locks
        self._validator = validator
        self._audit_logger = audit_logger

    async def current_float(self, member_id: UUID, month: date) -> ShopperFloat:
        """The payer's shopper float for the month, before any new write."""
        month = normalize_month(month)
        start, end = month_range(month)
        members = await self._storage.list_members()
        return compute_shopper_float(
            member_id,
            await self._storage.list_fund_transfers(start, end, buyer_id=member_id),
            await self._storage.list_purchases(start, end, buyer_id=member_id),
            await self._storage.list_common_expenses(month, payer_id=member_id),
            len(members),
        )

    async def _resolve(
        self,
        member_id: UUID,
        month: date,
        amount: Decimal,
        preference: Optional[PaymentPreference],
    ) -> ExcessResolution:
        shopper_float = await self.current_float(member_id, month)
        record = await self._storage.get_deposit_record(member_id, month)
        return resolve_excess(amount, shopper_float.amount, preference, record)

    async def _apply(self, member_id: UUID, month: date, resolution: ExcessResolution) -> None:
        if resolution.deposited:
            await self._storage.apply_deposit_update(
                member_id,
                month,
                SlotUpdate(
                    index=resolution.auto_deposit_slot,
                    value=resolution.auto_deposit_amount,
                ),
            )

    async def _log_resolution(
        self,
        member_id: UUID,
        month: date,
        resolution: Optional[ExcessResolution],
        source_id: UUID,
        correlation_id: UUID,
    ) -> None:
        if not self._audit_logger or resolution is None:
            return
        if resolution.deposited or resolution.slots_full:
            await self._audit_logger.log_auto_deposit(
                member_id=member_id,
                month=month,
                amount=resolution.auto_deposit_amount if resolution.deposited else resolution.excess,
                slot=resolution.auto_deposit_slot,
                source_id=source_id,
                correlation_id=correlation_id,
            )

    # ------------------------------------------------------------------
    # Common expenses
    # ------------------------------------------------------------------

    async def record_expense(
        self,
        expense: CommonExpense,
        correlation_id: UUID,
    ) -> tuple[CommonExpense, Optional[ExcessResolution]]:
        """
        Save a common expense, resolving the payer's excess if any.

        An expense without a FrozenShare gets one here, from the current
        member count.
        """
        self._validator.check_amount(expense.total, "total")
        if expense.payer_id is not None:
            await self._validator.ensure_member(expense.payer_id)

        lock_keys = [(expense.payer_id, expense.month)] if expense.payer_id else []
        resolution = None
        async with self._locks.hold(lock_keys):
            async with self._storage.transaction():
                await self._validator.ensure_month_open(expense.month)

                if not isinstance(expense.share, FrozenShare):
                    member_count = len(await self._storage.list_members())
                    expense = expense.model_copy(update={"share": FrozenShare(
                        per_member=split_share(expense.total, member_count),
                        member_count=member_count,
                    )})

                if expense.payer_id is not None and expense.preference is not None:
                    resolution = await self._resolve(
                        expense.payer_id, expense.month, expense.total, expense.preference
                    )
                    expense = expense.model_copy(update={
                        "auto_deposit_amount": resolution.auto_deposit_amount,
                        "auto_deposit_slot": resolution.auto_deposit_slot,
                        "payback_amount": resolution.payback_amount,
                    })

                saved = await self._storage.save_common_expense(expense)
                if resolution is not None:
                    await self._apply(expense.payer_id, expense.month, resolution)

        if self._audit_logger:
            await self._audit_logger.log_expense_recorded(
                expense_id=saved.id,
                name=saved.name,
                total=saved.total,
                per_member_share=saved.share.per_member,
                month=saved.month,
                payer_id=saved.payer_id,
                correlation_id=correlation_id,
            )
        await self._log_resolution(
            saved.payer_id, saved.month, resolution, saved.id, correlation_id
        )
        return saved, resolution

    async def reverse_expense(
        self,
        expense_id: UUID,
        correlation_id: UUID,
    ) -> CommonExpense:
        """Delete a common expense and zero the slot its auto-deposit used."""
        expense = await self._storage.get_common_expense(expense_id)
        if expense is None:
            raise NotFoundError(f"Common expense not found: {expense_id}")

        lock_keys = [(expense.payer_id, expense.month)] if expense.payer_id else []
        async with self._locks.hold(lock_keys):
            async with self._storage.transaction():
                await self._validator.ensure_month_open(expense.month)
                # Re-read under the lock
                expense = await self._storage.get_common_expense(expense_id)
                if expense is None:
                    raise NotFoundError(f"Common expense not found: {expense_id}")
                await self._storage.delete_common_expense(expense_id)
                cleared = await self._clear_slot(
                    expense.payer_id, expense.month, expense.auto_deposit_slot
                )

        if self._audit_logger:
            await self._audit_logger.log_entry_reversed(
                entity_type="common_expense",
                entity_id=expense.id,
                member_id=expense.payer_id,
                cleared_slot=cleared,
                correlation_id=correlation_id,
            )
        return expense

    # ------------------------------------------------------------------
    # Shopping purchases
    # ------------------------------------------------------------------

    async def record_purchase(
        self,
        purchase: ShoppingPurchase,
        correlation_id: UUID,
    ) -> tuple[ShoppingPurchase, Optional[ExcessResolution]]:
        """Save a purchase, resolving the buyer's excess against their float."""
        self._validator.check_amount(purchase.amount)
        await self._validator.ensure_member(purchase.buyer_id)
        month = month_of(purchase.purchase_date)

        resolution = None
        async with self._locks.hold([(purchase.buyer_id, month)]):
            async with self._storage.transaction():
                await self._validator.ensure_month_open(month)

                if purchase.preference is not None:
                    resolution = await self._resolve(
                        purchase.buyer_id, month, purchase.amount, purchase.preference
                    )
                    purchase = purchase.model_copy(update={
                        "auto_deposit_amount": resolution.auto_deposit_amount,
                        "auto_deposit_slot": resolution.auto_deposit_slot,
                        "payback_amount": resolution.payback_amount,
                    })

                saved = await self._storage.save_purchase(purchase)
                if resolution is not None:
                    await self._apply(purchase.buyer_id, month, resolution)

        if self._audit_logger:
            await self._audit_logger.log_purchase_recorded(
                purchase_id=saved.id,
                buyer_id=saved.buyer_id,
                amount=saved.amount,
                purchase_date=saved.purchase_date,
                correlation_id=correlation_id,
            )
        await self._log_resolution(
            saved.buyer_id, month, resolution, saved.id, correlation_id
        )
        return saved, resolution

    async def reverse_purchase(
        self,
        purchase_id: UUID,
        correlation_id: UUID,
    ) -> ShoppingPurchase:
        """Delete a purchase and zero the slot its auto-deposit used."""
        purchase = await self._storage.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError(f"Purchase not found: {purchase_id}")
        month = month_of(purchase.purchase_date)

        async with self._locks.hold([(purchase.buyer_id, month)]):
            async with self._storage.transaction():
                await self._validator.ensure_month_open(month)
                purchase = await self._storage.get_purchase(purchase_id)
                if purchase is None:
                    raise NotFoundError(f"Purchase not found: {purchase_id}")
                await self._storage.delete_purchase(purchase_id)
                cleared = await self._clear_slot(
                    purchase.buyer_id, month, purchase.auto_deposit_slot
                )

        if self._audit_logger:
            await self._audit_logger.log_entry_reversed(
                entity_type="purchase",
                entity_id=purchase.id,
                member_id=purchase.buyer_id,
                cleared_slot=cleared,
                correlation_id=correlation_id,
            )
        return purchase

    async def _clear_slot(
        self,
        member_id: Optional[UUID],
        month: date,
        slot: Optional[int],
    ) -> Optional[int]:
        if member_id is None or slot is None:
            return None
        await self._storage.apply_deposit_update(
            member_id, month, SlotUpdate(index=slot, value=ZERO)
        )
        return slot

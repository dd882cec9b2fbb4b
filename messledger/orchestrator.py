"""
Main Orchestrator for Mess Ledger

This module ties together all the components and exposes the ledger's
operations to the surrounding web and report layers:
1. Settlement (read-only, any scope, any number of times)
2. Expense/purchase recording with excess handling, and reversal
3. Month close / reopen
4. Deposits, fund transfers and bulk meal/utility edits
5. Utility, manager and monthly report views

DESIGN DECISION: The orchestrator enforces the boundaries:
- Write preconditions are checked before any mutation
- Write failures come back as OperationResult, never as uncaught exceptions
- Every write is audited

Read operations return their result types directly and let storage
errors propagate.
"""

from collections.abc import Awaitable, Callable, Sequence
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError

from messledger.audit import AuditLogger, create_correlation_id
from messledger.config import LedgerSettings, get_settings
from messledger.errors import LedgerError, ValidationError
from messledger.ledger import ExcessPaymentResolver, MonthCloseProcedure, RowLockRegistry
from messledger.models.ledger import (
    CommonExpense,
    FundTransfer,
    MealRecord,
    MonthStatus,
    PaymentPreference,
    ShoppingPurchase,
    SlotUpdate,
    UtilityBill,
    UtilityContribution,
    month_of,
    normalize_month,
)
from messledger.models.settlement import (
    AutoDepositInfo,
    BatchItemOutcome,
    BatchResult,
    ExcessResolution,
    ManagerBalance,
    ManagerPayable,
    MealWeightUpdate,
    MonthlyReportData,
    OperationResult,
    SettlementResult,
    SettlementScope,
    ShopperFloat,
    UtilitySummary,
    UtilityUpdate,
)
from messledger.queries import LedgerSnapshot, ScopeLoader
from messledger.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)
from messledger.settlement import (
    build_monthly_report,
    collect_manager_payables,
    compute_manager_balance,
    compute_settlement,
    compute_shopper_floats,
    compute_utility_summary,
)
from messledger.validation import LedgerValidator


logger = structlog.get_logger(__name__)


def _auto_deposit_info(
    member_id: Optional[UUID],
    month: date,
    resolution: Optional[ExcessResolution],
) -> Optional[AutoDepositInfo]:
    if member_id is None or resolution is None:
        return None
    if not (resolution.deposited or resolution.slots_full):
        return None
    return AutoDepositInfo(
        member_id=member_id,
        month=month,
        amount=resolution.auto_deposit_amount,
        slot=resolution.auto_deposit_slot,
        slots_full=resolution.slots_full,
    )


def _resolution_details(resolution: Optional[ExcessResolution]) -> dict:
    if resolution is None:
        return {}
    return {
        "current_float": str(resolution.current_float),
        "excess": str(resolution.excess),
        "payback_amount": str(resolution.payback_amount),
    }


class LedgerService:
    """
    The ledger's public boundary.

    Usage:
        service, _ = create_app_components()
        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas cylinder", total=Decimal("300"),
                          month="2024-03", payer_id=alice.id),
            preference=PaymentPreference.DEPOSIT,
        )
        if not result.success:
            show(result.error_message)
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        locks: Optional[RowLockRegistry] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger
        self._locks = locks or RowLockRegistry()
        self._validator = LedgerValidator(storage, self._settings)
        self._loader = ScopeLoader(storage)
        self._excess = ExcessPaymentResolver(
            storage, self._locks, self._validator, audit_logger
        )
        self._month_close = MonthCloseProcedure(
            storage, self._locks, self._validator, self._settings, audit_logger
        )

    # =========================================================================
    # ERROR BOUNDARY
    # =========================================================================

    async def _guarded(
        self,
        operation: str,
        correlation_id: UUID,
        action: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        """Run a write; turn expected failures into a failed OperationResult."""
        try:
            return await action()
        except LedgerError as e:
            return await self._rejected(operation, e.error_code, str(e), correlation_id)
        except PydanticValidationError as e:
            return await self._rejected(operation, "validation", str(e), correlation_id)
        except NotFoundError as e:
            return await self._rejected(operation, "not_found", str(e), correlation_id)
        except StorageError as e:
            if self._audit_logger:
                await self._audit_logger.log_error(
                    error_type="storage",
                    error_message=str(e),
                    details={"operation": operation},
                    correlation_id=correlation_id,
                )
            return OperationResult.failed("storage", str(e))

    async def _rejected(
        self,
        operation: str,
        error_code: str,
        message: str,
        correlation_id: UUID,
    ) -> OperationResult:
        if self._audit_logger:
            await self._audit_logger.log_write_rejected(
                operation=operation,
                error_code=error_code,
                error_message=message,
                correlation_id=correlation_id,
            )
        return OperationResult.failed(error_code, message)

    @staticmethod
    def _error_code(error: Exception) -> str:
        if isinstance(error, LedgerError):
            return error.error_code
        if isinstance(error, PydanticValidationError):
            return "validation"
        if isinstance(error, NotFoundError):
            return "not_found"
        return "storage"

    # =========================================================================
    # SETTLEMENT (read-only)
    # =========================================================================

    async def _snapshot(self, month: date) -> LedgerSnapshot:
        return await self._loader.load(SettlementScope.for_month(month))

    async def compute_settlement(
        self,
        scope: SettlementScope,
        correlation_id: Optional[UUID] = None,
    ) -> SettlementResult:
        """Meal rate and every member's meal/deposit balance for the scope."""
        snapshot = await self._loader.load(scope)
        result = compute_settlement(
            snapshot.members,
            snapshot.meal_records,
            snapshot.purchases,
            snapshot.common_expenses,
            snapshot.deposits,
        )
        if self._audit_logger:
            await self._audit_logger.log_settlement_computed(
                month=scope.month,
                scope_kind=scope.kind,
                meal_rate=result.meal_rate,
                member_count=len(snapshot.members),
                correlation_id=correlation_id,
            )
        return result

    async def shopper_floats(self, month: date) -> dict[UUID, ShopperFloat]:
        """Cash float each member holds for the month."""
        snapshot = await self._snapshot(month)
        return compute_shopper_floats(
            snapshot.members,
            snapshot.fund_transfers,
            snapshot.purchases,
            snapshot.common_expenses,
        )

    async def month_status(self, month: date) -> MonthStatus:
        month = normalize_month(month)
        return await self._storage.get_month_status(month) or MonthStatus(month=month)

    # =========================================================================
    # EXPENSES & PURCHASES
    # =========================================================================

    async def record_expense_with_excess_handling(
        self,
        expense: CommonExpense,
        preference: Optional[PaymentPreference] = None,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """
        Record a common expense; credit or owe the payer's excess.

        The expense row and the deposit slot are written atomically.
        """
        correlation_id = correlation_id or create_correlation_id()
        if preference is not None:
            expense = expense.model_copy(update={"preference": preference})

        async def action() -> OperationResult:
            saved, resolution = await self._excess.record_expense(expense, correlation_id)
            details = _resolution_details(resolution)
            details["per_member_share"] = str(saved.share.per_member)
            return OperationResult.ok(
                saved.id,
                auto_deposit=_auto_deposit_info(saved.payer_id, saved.month, resolution),
                details=details,
            )

        return await self._guarded("record_expense", correlation_id, action)

    async def record_purchase_with_excess_handling(
        self,
        purchase: ShoppingPurchase,
        preference: Optional[PaymentPreference] = None,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Record a shopping purchase, resolving the buyer's excess over their float."""
        correlation_id = correlation_id or create_correlation_id()
        if preference is not None:
            purchase = purchase.model_copy(update={"preference": preference})

        async def action() -> OperationResult:
            saved, resolution = await self._excess.record_purchase(purchase, correlation_id)
            return OperationResult.ok(
                saved.id,
                auto_deposit=_auto_deposit_info(
                    saved.buyer_id, month_of(saved.purchase_date), resolution
                ),
                details=_resolution_details(resolution),
            )

        return await self._guarded("record_purchase", correlation_id, action)

    async def reverse_expense(
        self,
        expense_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Delete a common expense and zero its auto-deposit slot."""
        correlation_id = correlation_id or create_correlation_id()

        async def action() -> OperationResult:
            expense = await self._excess.reverse_expense(expense_id, correlation_id)
            cleared = expense.auto_deposit_slot if expense.payer_id else None
            return OperationResult.ok(expense.id, details={"cleared_slot": cleared})

        return await self._guarded("reverse_expense", correlation_id, action)

    async def reverse_purchase(
        self,
        purchase_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Delete a purchase and zero its auto-deposit slot."""
        correlation_id = correlation_id or create_correlation_id()

        async def action() -> OperationResult:
            purchase = await self._excess.reverse_purchase(purchase_id, correlation_id)
            return OperationResult.ok(
                purchase.id, details={"cleared_slot": purchase.auto_deposit_slot}
            )

        return await self._guarded("reverse_purchase", correlation_id, action)

    # =========================================================================
    # MONTH LIFECYCLE
    # =========================================================================

    async def close_month(
        self,
        month: date,
        actor_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Close a month and carry every balance into the next one."""
        correlation_id = correlation_id or create_correlation_id()

        async def action() -> OperationResult:
            settlement = await self._month_close.close_month(month, actor_id, correlation_id)
            return OperationResult.ok(details={
                "month": normalize_month(month).isoformat(),
                "meal_rate": str(settlement.meal_rate),
                "carry_forwards": {
                    str(entry.member_id): str(entry.balance)
                    for entry in settlement.per_member
                },
            })

        return await self._guarded("close_month", correlation_id, action)

    async def open_month(
        self,
        month: date,
        actor_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Clear a month's closed flag. The carry-forward is kept."""
        correlation_id = correlation_id or create_correlation_id()

        async def action() -> OperationResult:
            status = await self._month_close.open_month(month, actor_id, correlation_id)
            return OperationResult.ok(details={
                "month": status.month.isoformat(),
                "is_closed": status.is_closed,
            })

        return await self._guarded("open_month", correlation_id, action)

    # =========================================================================
    # DEPOSITS & TRANSFERS
    # =========================================================================

    async def add_deposit(
        self,
        member_id: UUID,
        month: date,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Put a deposit into the member's first free slot for the month."""
        correlation_id = correlation_id or create_correlation_id()

        async def action() -> OperationResult:
            key_month = normalize_month(month)
            value = self._validator.check_amount(amount)
            if value == 0:
                raise ValidationError("Deposit amount must be greater than zero")
            await self._validator.ensure_member(member_id)

            async with self._locks.hold([(member_id, key_month)]):
                async with self._storage.transaction():
                    await self._validator.ensure_month_open(key_month)
                    record = await self._storage.get_deposit_record(member_id, key_month)
                    slot = 0 if record is None else record.first_empty_slot()
                    if slot is None:
                        raise ValidationError(
                            f"All deposit slots for {key_month.isoformat()} are occupied"
                        )
                    saved = await self._storage.apply_deposit_update(
                        member_id, key_month, SlotUpdate(index=slot, value=value)
                    )

            if self._audit_logger:
                await self._audit_logger.log_deposit_added(
                    member_id=member_id,
                    month=key_month,
                    amount=value,
                    slot=slot,
                    correlation_id=correlation_id,
                )
            return OperationResult.ok(saved.id, details={"slot": slot})

        return await self._guarded("add_deposit", correlation_id, action)

    async def record_fund_transfer(
        self,
        buyer_id: UUID,
        amount: Decimal,
        transfer_date: date,
        correlation_id: Optional[UUID] = None,
    ) -> OperationResult:
        """Hand cash to (positive) or reclaim it from (negative) a buyer."""
        correlation_id = correlation_id or create_correlation_id()

        async def action() -> OperationResult:
            value = self._validator.check_amount(amount, allow_negative=True)
            await self._validator.ensure_member(buyer_id)
            key_month = month_of(transfer_date)

            async with self._locks.hold([(buyer_id, key_month)]):
                async with self._storage.transaction():
                    await self._validator.ensure_month_open(key_month)
                    saved = await self._storage.save_fund_transfer(FundTransfer(
                        buyer_id=buyer_id,
                        amount=value,
                        transfer_date=transfer_date,
                    ))

            if self._audit_logger:
                await self._audit_logger.log_fund_transfer_recorded(
                    transfer_id=saved.id,
                    buyer_id=buyer_id,
                    amount=value,
                    transfer_date=transfer_date,
                    correlation_id=correlation_id,
                )
            return OperationResult.ok(saved.id)

        return await self._guarded("record_fund_transfer", correlation_id, action)

    # =========================================================================
    # BATCHES
    # =========================================================================

    async def _finish_batch(
        self,
        batch_type: str,
        outcomes: list[BatchItemOutcome],
        correlation_id: UUID,
    ) -> BatchResult:
        result = BatchResult(outcomes=outcomes)
        if self._audit_logger:
            await self._audit_logger.log_batch_completed(
                batch_type=batch_type,
                succeeded=result.succeeded,
                failed=result.failed,
                failures=[
                    o.model_dump(include={"index", "key", "error_code", "error_message"})
                    for o in outcomes
                    if not o.success
                ],
                correlation_id=correlation_id,
            )
        return result

    async def batch_update_meal_weights(
        self,
        updates: Sequence[MealWeightUpdate],
        correlation_id: Optional[UUID] = None,
    ) -> BatchResult:
        """
        Apply meal-weight edits as independent upserts.

        Weight 0 deletes the record. Failed items are reported, succeeded
        ones stay written. Call raise_for_failures() on the result to
        turn failures into PartialBatchFailure.
        """
        correlation_id = correlation_id or create_correlation_id()
        outcomes = []

        for index, update in enumerate(updates):
            key = f"{update.member_id}/{update.meal_date.isoformat()}/{update.slot.value}"
            try:
                self._validator.check_amount(update.weight, "weight")
                await self._validator.ensure_member(update.member_id)
                async with self._storage.transaction():
                    await self._validator.ensure_month_open(month_of(update.meal_date))
                    if update.weight == 0:
                        await self._storage.delete_meal_record(
                            update.member_id, update.meal_date, update.slot
                        )
                    else:
                        await self._storage.upsert_meal_record(MealRecord(
                            member_id=update.member_id,
                            meal_date=update.meal_date,
                            slot=update.slot,
                            weight=update.weight,
                        ))
                outcomes.append(BatchItemOutcome(index=index, key=key, success=True))
            except (LedgerError, StorageError, PydanticValidationError) as e:
                outcomes.append(BatchItemOutcome(
                    index=index,
                    key=key,
                    success=False,
                    error_code=self._error_code(e),
                    error_message=str(e),
                ))

        return await self._finish_batch("meal_weights", outcomes, correlation_id)

    async def batch_update_utilities(
        self,
        updates: Sequence[UtilityUpdate],
        correlation_id: Optional[UUID] = None,
    ) -> BatchResult:
        """Apply utility bill / contribution edits as independent upserts."""
        correlation_id = correlation_id or create_correlation_id()
        outcomes = []

        for index, update in enumerate(updates):
            key = f"{update.kind}/{update.category}/{update.month.isoformat()}"
            if update.member_id is not None:
                key += f"/{update.member_id}"
            try:
                self._validator.check_amount(update.amount)
                async with self._storage.transaction():
                    await self._validator.ensure_month_open(update.month)
                    if update.kind == "contribution":
                        await self._validator.ensure_member(update.member_id)
                        await self._storage.upsert_utility_contribution(UtilityContribution(
                            member_id=update.member_id,
                            category=update.category,
                            amount=update.amount,
                            month=update.month,
                        ))
                    else:
                        await self._storage.upsert_utility_bill(UtilityBill(
                            category=update.category,
                            amount=update.amount,
                            month=update.month,
                        ))
                outcomes.append(BatchItemOutcome(index=index, key=key, success=True))
            except (LedgerError, StorageError, PydanticValidationError) as e:
                outcomes.append(BatchItemOutcome(
                    index=index,
                    key=key,
                    success=False,
                    error_code=self._error_code(e),
                    error_message=str(e),
                ))

        return await self._finish_batch("utilities", outcomes, correlation_id)

    # =========================================================================
    # UTILITY, MANAGER & REPORT VIEWS (read-only)
    # =========================================================================

    async def utility_summary(self, month: date) -> UtilitySummary:
        snapshot = await self._snapshot(month)
        return compute_utility_summary(
            snapshot.members,
            snapshot.utility_bills,
            snapshot.utility_contributions,
            self._settings.utility_categories_list,
        )

    async def manager_balance(self, month: date) -> ManagerBalance:
        """Cash the manager should be holding for the month."""
        snapshot = await self._snapshot(month)
        utilities = compute_utility_summary(
            snapshot.members,
            snapshot.utility_bills,
            snapshot.utility_contributions,
            self._settings.utility_categories_list,
        )
        floats = compute_shopper_floats(
            snapshot.members,
            snapshot.fund_transfers,
            snapshot.purchases,
            snapshot.common_expenses,
        )
        return compute_manager_balance(
            snapshot.deposits, utilities, snapshot.purchases, floats.values()
        )

    async def manager_payables(self, month: date) -> list[ManagerPayable]:
        """What the manager owes payers who chose payback."""
        snapshot = await self._snapshot(month)
        return collect_manager_payables(
            snapshot.common_expenses, snapshot.purchases, snapshot.scope.month
        )

    async def monthly_report(self, month: date) -> MonthlyReportData:
        snapshot = await self._snapshot(month)
        return build_monthly_report(
            snapshot.scope.month,
            snapshot.members,
            snapshot.meal_records,
            snapshot.purchases,
            snapshot.common_expenses,
            snapshot.deposits,
            snapshot.utility_bills,
            snapshot.utility_contributions,
            self._settings.utility_categories_list,
        )


def create_app_components(
    backend: Optional[str] = None,
) -> tuple[LedgerService, Optional[GoogleSheetsClient]]:
    """
    Factory function to create the ledger service.

    Args:
        backend: "memory" or "google_sheets". Defaults to the
                 configured storage_backend.

    Returns:
        (ledger_service, sheets_client)
    """
    settings = get_settings().ledger
    backend = backend or settings.storage_backend
    sheets_client = None

    if backend == "google_sheets":
        try:
            sheets_client = GoogleSheetsClient()
            storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Sheets not configured - continue in memory
            logger.warning("storage_not_configured", backend=backend, error=str(e))
            sheets_client = None
            storage = InMemoryLedgerStorage()
            audit_logger = AuditLogger()  # Local-only logging
    else:
        storage = InMemoryLedgerStorage()
        audit_logger = AuditLogger()  # Local-only logging

    service = LedgerService(storage, audit_logger=audit_logger, settings=settings)
    return service, sheets_client

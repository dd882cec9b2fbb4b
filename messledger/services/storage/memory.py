"""
In-Memory Storage Implementation

Used by the test suite and by callers that embed the engine with their
own persistence. Behaves like a small relational store:
- composite-key upserts keep the existing row id
- rows are copied on the way in and out, so callers cannot mutate state
- transactions snapshot every table and restore it on failure

Transactions are serialized with an asyncio.Lock; a task already inside
a transaction joins it instead of deadlocking on the lock.
"""

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date
from typing import Optional, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel

from messledger.models.audit import AuditEvent
from messledger.models.ledger import (
    CarryForwardUpdate,
    CommonExpense,
    DepositRecord,
    FundTransfer,
    MealRecord,
    MealSlot,
    Member,
    MonthStatus,
    ShoppingPurchase,
    SlotUpdate,
    UtilityBill,
    UtilityContribution,
    normalize_month,
)
from messledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
)


ModelT = TypeVar("ModelT", bound=BaseModel)

TABLES = (
    "members",
    "meal_records",
    "purchases",
    "fund_transfers",
    "common_expenses",
    "utility_bills",
    "utility_contributions",
    "deposits",
    "month_status",
)


def _copy(row: ModelT) -> ModelT:
    return row.model_copy(deep=True)


def _in_range(day: date, date_from: Optional[date], date_to: Optional[date]) -> bool:
    if date_from and day < date_from:
        return False
    if date_to and day >= date_to:
        return False
    return True


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dict-backed ledger storage with snapshot/rollback transactions."""

    def __init__(self):
        self._tables: dict[str, dict] = {name: {} for name in TABLES}
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"memory_ledger_txn_{id(self)}", default=False
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = {name: dict(rows) for name, rows in self._tables.items()}
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise
            finally:
                self._in_transaction.reset(token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert(self, table: str, key, row: ModelT) -> ModelT:
        rows = self._tables[table]
        if key in rows:
            raise DuplicateError(f"{table} row already exists: {key}")
        rows[key] = _copy(row)
        return _copy(row)

    def _replace(self, table: str, key, row: ModelT) -> ModelT:
        self._tables[table][key] = _copy(row)
        return _copy(row)

    def _delete(self, table: str, key) -> bool:
        return self._tables[table].pop(key, None) is not None

    def _get(self, table: str, key):
        row = self._tables[table].get(key)
        return _copy(row) if row is not None else None

    def _rows(self, table: str) -> list:
        return [_copy(row) for row in self._tables[table].values()]

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def list_members(self) -> list[Member]:
        return self._rows("members")

    async def get_member(self, member_id: UUID) -> Optional[Member]:
        return self._get("members", member_id)

    async def save_member(self, member: Member) -> Member:
        return self._replace("members", member.id, member)

    # ------------------------------------------------------------------
    # Meals
    # ------------------------------------------------------------------

    async def list_meal_records(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        member_id: Optional[UUID] = None,
    ) -> list[MealRecord]:
        return [
            r for r in self._rows("meal_records")
            if _in_range(r.meal_date, date_from, date_to)
            and (member_id is None or r.member_id == member_id)
        ]

    async def upsert_meal_record(self, record: MealRecord) -> MealRecord:
        existing = self._tables["meal_records"].get(record.key)
        if existing is not None:
            record = record.model_copy(update={"id": existing.id})
        return self._replace("meal_records", record.key, record)

    async def delete_meal_record(
        self,
        member_id: UUID,
        meal_date: date,
        slot: MealSlot,
    ) -> bool:
        return self._delete("meal_records", (member_id, meal_date, slot))

    # ------------------------------------------------------------------
    # Shopping and fund transfers
    # ------------------------------------------------------------------

    async def list_purchases(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        buyer_id: Optional[UUID] = None,
    ) -> list[ShoppingPurchase]:
        return [
            p for p in self._rows("purchases")
            if _in_range(p.purchase_date, date_from, date_to)
            and (buyer_id is None or p.buyer_id == buyer_id)
        ]

    async def get_purchase(self, purchase_id: UUID) -> Optional[ShoppingPurchase]:
        return self._get("purchases", purchase_id)

    async def save_purchase(self, purchase: ShoppingPurchase) -> ShoppingPurchase:
        return self._insert("purchases", purchase.id, purchase)

    async def delete_purchase(self, purchase_id: UUID) -> bool:
        return self._delete("purchases", purchase_id)

    async def list_fund_transfers(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        buyer_id: Optional[UUID] = None,
    ) -> list[FundTransfer]:
        return [
            t for t in self._rows("fund_transfers")
            if _in_range(t.transfer_date, date_from, date_to)
            and (buyer_id is None or t.buyer_id == buyer_id)
        ]

    async def save_fund_transfer(self, transfer: FundTransfer) -> FundTransfer:
        return self._insert("fund_transfers", transfer.id, transfer)

    # ------------------------------------------------------------------
    # Common expenses
    # ------------------------------------------------------------------

    async def list_common_expenses(
        self,
        month: date,
        payer_id: Optional[UUID] = None,
    ) -> list[CommonExpense]:
        month = normalize_month(month)
        return [
            e for e in self._rows("common_expenses")
            if e.month == month and (payer_id is None or e.payer_id == payer_id)
        ]

    async def get_common_expense(self, expense_id: UUID) -> Optional[CommonExpense]:
        return self._get("common_expenses", expense_id)

    async def save_common_expense(self, expense: CommonExpense) -> CommonExpense:
        return self._insert("common_expenses", expense.id, expense)

    async def delete_common_expense(self, expense_id: UUID) -> bool:
        return self._delete("common_expenses", expense_id)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def list_utility_bills(self, month: date) -> list[UtilityBill]:
        month = normalize_month(month)
        return [b for b in self._rows("utility_bills") if b.month == month]

    async def upsert_utility_bill(self, bill: UtilityBill) -> UtilityBill:
        key = (bill.category, bill.month)
        existing = self._tables["utility_bills"].get(key)
        if existing is not None:
            bill = bill.model_copy(update={"id": existing.id})
        return self._replace("utility_bills", key, bill)

    async def list_utility_contributions(self, month: date) -> list[UtilityContribution]:
        month = normalize_month(month)
        return [c for c in self._rows("utility_contributions") if c.month == month]

    async def upsert_utility_contribution(
        self,
        contribution: UtilityContribution,
    ) -> UtilityContribution:
        key = (contribution.member_id, contribution.category, contribution.month)
        existing = self._tables["utility_contributions"].get(key)
        if existing is not None:
            contribution = contribution.model_copy(update={"id": existing.id})
        return self._replace("utility_contributions", key, contribution)

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def list_deposit_records(self, month: date) -> list[DepositRecord]:
        month = normalize_month(month)
        return [d for d in self._rows("deposits") if d.month == month]

    async def get_deposit_record(
        self,
        member_id: UUID,
        month: date,
    ) -> Optional[DepositRecord]:
        return self._get("deposits", (member_id, normalize_month(month)))

    async def apply_deposit_update(
        self,
        member_id: UUID,
        month: date,
        update: Union[SlotUpdate, CarryForwardUpdate],
    ) -> DepositRecord:
        key = (member_id, normalize_month(month))
        record = self._tables["deposits"].get(key) or DepositRecord.empty(member_id, key[1])
        return self._replace("deposits", key, record.apply(update))

    # ------------------------------------------------------------------
    # Month status
    # ------------------------------------------------------------------

    async def get_month_status(self, month: date) -> Optional[MonthStatus]:
        return self._get("month_status", normalize_month(month))

    async def save_month_status(self, status: MonthStatus) -> MonthStatus:
        return self._replace("month_status", status.month, status)


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit list, for tests and local runs."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]

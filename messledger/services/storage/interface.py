"""
Abstract Storage Interface

DESIGN DECISION: The settlement engine never talks to a database
directly. It consumes this row-store interface, which allows us to:
1. Run the whole engine against in-memory storage in tests
2. Back the ledger with Google Sheets (or a real database later)
3. Keep business logic decoupled from storage implementation

The interface covers exactly what the engine needs:
- filtered range reads over ledger rows
- single-row upserts keyed by a unique composite key
- delete by id
- returning the row just written
- an all-or-nothing transaction boundary

Date ranges are half-open: date_from inclusive, date_to exclusive.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import date
from typing import Optional, Union
from uuid import UUID

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
)


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation (Google Sheets, PostgreSQL, in-memory)
    must implement these methods.
    """

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """
        All-or-nothing boundary for a group of writes.

        Usage:
            async with storage.transaction():
                await storage.save_common_expense(expense)
                await storage.apply_deposit_update(member_id, month, update)

        If the block raises, every write made inside it is undone and
        the exception propagates. Nested use joins the outer transaction.
        """

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_members(self) -> list[Member]:
        """Return all members."""

    @abstractmethod
    async def get_member(self, member_id: UUID) -> Optional[Member]:
        """Return a member by id, or None."""

    @abstractmethod
    async def save_member(self, member: Member) -> Member:
        """Insert or replace a member by id."""

    # ------------------------------------------------------------------
    # Meals
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_meal_records(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        member_id: Optional[UUID] = None,
    ) -> list[MealRecord]:
        """List meal records in [date_from, date_to)."""

    @abstractmethod
    async def upsert_meal_record(self, record: MealRecord) -> MealRecord:
        """
        Insert or update keyed by (member_id, meal_date, slot).

        Returns the stored row (keeps the existing id on update).
        """

    @abstractmethod
    async def delete_meal_record(
        self,
        member_id: UUID,
        meal_date: date,
        slot: MealSlot,
    ) -> bool:
        """Delete by composite key. Returns True if a row was removed."""

    # ------------------------------------------------------------------
    # Shopping and fund transfers
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_purchases(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        buyer_id: Optional[UUID] = None,
    ) -> list[ShoppingPurchase]:
        """List purchases in [date_from, date_to)."""

    @abstractmethod
    async def get_purchase(self, purchase_id: UUID) -> Optional[ShoppingPurchase]:
        """Return a purchase by id, or None."""

    @abstractmethod
    async def save_purchase(self, purchase: ShoppingPurchase) -> ShoppingPurchase:
        """Insert a purchase and return it."""

    @abstractmethod
    async def delete_purchase(self, purchase_id: UUID) -> bool:
        """Delete by id. Returns True if a row was removed."""

    @abstractmethod
    async def list_fund_transfers(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        buyer_id: Optional[UUID] = None,
    ) -> list[FundTransfer]:
        """List fund transfers in [date_from, date_to)."""

    @abstractmethod
    async def save_fund_transfer(self, transfer: FundTransfer) -> FundTransfer:
        """Insert a fund transfer and return it."""

    # ------------------------------------------------------------------
    # Common expenses
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_common_expenses(
        self,
        month: date,
        payer_id: Optional[UUID] = None,
    ) -> list[CommonExpense]:
        """List common expenses keyed to `month`."""

    @abstractmethod
    async def get_common_expense(self, expense_id: UUID) -> Optional[CommonExpense]:
        """Return a common expense by id, or None."""

    @abstractmethod
    async def save_common_expense(self, expense: CommonExpense) -> CommonExpense:
        """Insert a common expense and return it."""

    @abstractmethod
    async def delete_common_expense(self, expense_id: UUID) -> bool:
        """Delete by id. Returns True if a row was removed."""

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_utility_bills(self, month: date) -> list[UtilityBill]:
        """List utility bills for `month`."""

    @abstractmethod
    async def upsert_utility_bill(self, bill: UtilityBill) -> UtilityBill:
        """Insert or update keyed by (category, month)."""

    @abstractmethod
    async def list_utility_contributions(self, month: date) -> list[UtilityContribution]:
        """List utility contributions for `month`."""

    @abstractmethod
    async def upsert_utility_contribution(
        self,
        contribution: UtilityContribution,
    ) -> UtilityContribution:
        """Insert or update keyed by (member_id, category, month)."""

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_deposit_records(self, month: date) -> list[DepositRecord]:
        """List deposit records for `month`."""

    @abstractmethod
    async def get_deposit_record(
        self,
        member_id: UUID,
        month: date,
    ) -> Optional[DepositRecord]:
        """Return the deposit record for (member_id, month), or None."""

    @abstractmethod
    async def apply_deposit_update(
        self,
        member_id: UUID,
        month: date,
        update: Union[SlotUpdate, CarryForwardUpdate],
    ) -> DepositRecord:
        """
        Targeted field upsert on the (member_id, month) deposit record.

        CRITICAL: Only the field named by `update` changes. If no record
        exists one is created with every other field zero.
        """

    # ------------------------------------------------------------------
    # Month status
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_month_status(self, month: date) -> Optional[MonthStatus]:
        """Return the status row for `month`, or None if never closed."""

    @abstractmethod
    async def save_month_status(self, status: MonthStatus) -> MonthStatus:
        """Insert or replace keyed by month."""


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events of one logical operation, in chronological order."""

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass

"""
Scope Loader

DESIGN DECISION: All date filtering lives HERE.
The settlement calculator is pure and never looks at dates; this
loader turns a SettlementScope into exactly the rows it covers:

- meal records and purchases by date range [month_start, end)
- common expenses and deposit records by month key
- fund transfers by date range, for shopper floats

For a "to date" scope the range ends the day after as_of, so as_of
itself is included. Common expenses and deposits are keyed by month
and are always taken whole.
"""

from datetime import date, timedelta

from pydantic import BaseModel, Field

from messledger.models.ledger import (
    CommonExpense,
    DepositRecord,
    FundTransfer,
    MealRecord,
    Member,
    ShoppingPurchase,
    UtilityBill,
    UtilityContribution,
    month_range,
)
from messledger.models.settlement import SettlementScope
from messledger.services.storage import LedgerStorageInterface


class LedgerSnapshot(BaseModel):
    """Every row a settlement scope covers, already filtered."""

    scope: SettlementScope
    members: list[Member] = Field(default_factory=list)
    meal_records: list[MealRecord] = Field(default_factory=list)
    purchases: list[ShoppingPurchase] = Field(default_factory=list)
    fund_transfers: list[FundTransfer] = Field(default_factory=list)
    common_expenses: list[CommonExpense] = Field(default_factory=list)
    deposits: list[DepositRecord] = Field(default_factory=list)
    utility_bills: list[UtilityBill] = Field(default_factory=list)
    utility_contributions: list[UtilityContribution] = Field(default_factory=list)


class ScopeLoader:
    """
    Reads the rows of one settlement scope from ledger storage.

    GUARANTEES:
    - Only returns rows inside the scope
    - Never mutates storage
    """

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    @staticmethod
    def date_range(scope: SettlementScope) -> tuple[date, date]:
        """Half-open date range for the scope's dated rows."""
        start, end = month_range(scope.month)
        if scope.kind == "to_date":
            end = scope.as_of + timedelta(days=1)
        return start, end

    async def load(self, scope: SettlementScope) -> LedgerSnapshot:
        """Load a full snapshot for the scope."""
        date_from, date_to = self.date_range(scope)
        storage = self._storage

        return LedgerSnapshot(
            scope=scope,
            members=await storage.list_members(),
            meal_records=await storage.list_meal_records(date_from, date_to),
            purchases=await storage.list_purchases(date_from, date_to),
            fund_transfers=await storage.list_fund_transfers(date_from, date_to),
            common_expenses=await storage.list_common_expenses(scope.month),
            deposits=await storage.list_deposit_records(scope.month),
            utility_bills=await storage.list_utility_bills(scope.month),
            utility_contributions=await storage.list_utility_contributions(scope.month),
        )

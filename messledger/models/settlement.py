"""
Derived Models for Mess Ledger

Everything in this module is computed from ledger rows and never
persisted, except the excess-resolution fields copied onto the
expense/purchase row.

DESIGN DECISION: The meal/deposit balance (MemberSettlement.balance)
and the shopper cash float (ShopperFloat.amount) are different
quantities and live in different types. Neither is called "balance"
on its own.
"""

from datetime import date
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, model_validator

from messledger.errors import PartialBatchFailure
from messledger.models.ledger import (
    ZERO,
    DepositRecord,
    MealSlot,
    MonthKey,
    PaymentPreference,
    month_range,
)


# =============================================================================
# SETTLEMENT (meal/deposit balance)
# =============================================================================

class MemberSettlement(BaseModel):
    """One member's position for a settlement scope."""

    member_id: UUID
    name: str
    meal_count: int = Field(default=0, ge=0)
    total_weight: Decimal = ZERO
    meal_cost: Decimal = ZERO
    raw_deposit: Decimal = ZERO
    common_share: Decimal = ZERO
    net_deposit: Decimal = ZERO
    balance: Decimal = ZERO


class SettlementTotals(BaseModel):
    """Footer sums over all members."""

    total_purchase: Decimal = ZERO
    total_weight: Decimal = ZERO
    total_meal_cost: Decimal = ZERO
    total_raw_deposit: Decimal = ZERO
    total_common_share: Decimal = ZERO
    total_net_deposit: Decimal = ZERO
    total_balance: Decimal = ZERO


class SettlementResult(BaseModel):
    """
    Output of the settlement calculator.

    per_member is sorted by display name, ascending.
    """

    meal_rate: Decimal = ZERO
    per_member: list[MemberSettlement] = Field(default_factory=list)
    totals: SettlementTotals = Field(default_factory=SettlementTotals)

    def for_member(self, member_id: UUID) -> Optional[MemberSettlement]:
        for entry in self.per_member:
            if entry.member_id == member_id:
                return entry
        return None


class SettlementScope(BaseModel):
    """
    Which rows a settlement covers.

    MONTH: the whole calendar month.
    TO_DATE: meals and purchases from the month start through as_of
    (inclusive); common expenses and deposits are still keyed by month.
    """

    kind: Literal["month", "to_date"] = "month"
    month: MonthKey
    as_of: Optional[date] = None

    @model_validator(mode='after')
    def validate_as_of(self) -> 'SettlementScope':
        if self.kind == "to_date":
            if self.as_of is None:
                raise ValueError("to_date scope requires as_of")
            start, end = month_range(self.month)
            if not (start <= self.as_of < end):
                raise ValueError("as_of must fall inside the scope month")
        return self

    @classmethod
    def for_month(cls, month) -> "SettlementScope":
        return cls(kind="month", month=month)

    @classmethod
    def to_date(cls, month, as_of: date) -> "SettlementScope":
        return cls(kind="to_date", month=month, as_of=as_of)


# =============================================================================
# SHOPPER FLOAT (cash held by a buyer)
# =============================================================================

class ShopperFloat(BaseModel):
    """
    Cash a buying member currently holds for a month.

    transfers received - shopping spent - common-expense shares paid.
    """

    member_id: UUID
    transfers_received: Decimal = ZERO
    shopping_spent: Decimal = ZERO
    common_paid: Decimal = ZERO

    @computed_field
    @property
    def amount(self) -> Decimal:
        return self.transfers_received - self.shopping_spent - self.common_paid


# =============================================================================
# EXCESS RESOLUTION
# =============================================================================

class ExcessResolution(BaseModel):
    """
    What the excess-payment resolver decided for one expense.

    auto_deposit_slot is None both when nothing was deposited and when
    all slots were full; slots_full tells the two apart.
    """

    expense_amount: Decimal
    current_float: Decimal
    excess: Decimal
    preference: Optional[PaymentPreference] = None
    auto_deposit_amount: Decimal = ZERO
    auto_deposit_slot: Optional[int] = None
    payback_amount: Decimal = ZERO
    slots_full: bool = False

    @property
    def deposited(self) -> bool:
        return self.auto_deposit_slot is not None


class AutoDepositInfo(BaseModel):
    """Where an auto-deposit landed."""

    member_id: UUID
    month: MonthKey
    amount: Decimal
    slot: Optional[int] = None
    slots_full: bool = False


class ManagerPayable(BaseModel):
    """Amount the manager owes a payer who chose the payback preference."""

    source: Literal["common_expense", "purchase"]
    source_id: UUID
    member_id: UUID
    month: MonthKey
    amount: Decimal
    description: str = ""


class ManagerBalance(BaseModel):
    """
    Cash the manager should be holding for a month.

    (utility remaining + total deposits) - (total shopping + total shopper float)
    """

    utility_remaining: Decimal = ZERO
    total_deposits: Decimal = ZERO
    total_shopping: Decimal = ZERO
    total_shopper_float: Decimal = ZERO

    @computed_field
    @property
    def balance(self) -> Decimal:
        return (self.utility_remaining + self.total_deposits) - (
            self.total_shopping + self.total_shopper_float
        )


# =============================================================================
# UTILITIES
# =============================================================================

class UtilityCategorySummary(BaseModel):
    category: str
    collected: Decimal = ZERO
    billed: Decimal = ZERO

    @computed_field
    @property
    def remaining(self) -> Decimal:
        return self.collected - self.billed


class UtilitySummary(BaseModel):
    """Per-category and per-member utility position for a month."""

    categories: list[UtilityCategorySummary] = Field(default_factory=list)
    per_member: dict[UUID, Decimal] = Field(default_factory=dict)
    matrix: dict[UUID, dict[str, Decimal]] = Field(default_factory=dict)

    @property
    def total_collected(self) -> Decimal:
        return sum((c.collected for c in self.categories), ZERO)

    @property
    def total_billed(self) -> Decimal:
        return sum((c.billed for c in self.categories), ZERO)

    @property
    def total_remaining(self) -> Decimal:
        return self.total_collected - self.total_billed


# =============================================================================
# REPORT DATA
# =============================================================================

class AttendanceCell(BaseModel):
    lunch: Decimal = ZERO
    dinner: Decimal = ZERO

    def set(self, slot: MealSlot, weight: Decimal) -> None:
        if slot == MealSlot.LUNCH:
            self.lunch = weight
        else:
            self.dinner = weight


class MonthlyReportData(BaseModel):
    """
    Data behind the printable monthly report.

    Layout is the presentation layer's job.
    """

    month: MonthKey
    settlement: SettlementResult
    meal_dates: list[date] = Field(default_factory=list)
    attendance: dict[date, dict[UUID, AttendanceCell]] = Field(default_factory=dict)
    deposits: dict[UUID, DepositRecord] = Field(default_factory=dict)
    utilities: UtilitySummary = Field(default_factory=UtilitySummary)
    total_common_expense: Decimal = ZERO


# =============================================================================
# WRITE RESULTS
# =============================================================================

class OperationResult(BaseModel):
    """
    Structured outcome of a write operation.

    The calling layer shows error_message to the user instead of
    crashing the request.
    """

    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    entity_id: Optional[UUID] = None
    auto_deposit: Optional[AutoDepositInfo] = None
    details: dict = Field(default_factory=dict)

    @classmethod
    def ok(cls, entity_id: Optional[UUID] = None, **kwargs) -> "OperationResult":
        return cls(success=True, entity_id=entity_id, **kwargs)

    @classmethod
    def failed(cls, error_code: str, error_message: str) -> "OperationResult":
        return cls(success=False, error_code=error_code, error_message=error_message)


class MealWeightUpdate(BaseModel):
    """One cell of a bulk meal-weight edit. Weight 0 deletes the record."""

    member_id: UUID
    meal_date: date
    slot: MealSlot
    weight: Decimal = Field(..., ge=0)


class UtilityUpdate(BaseModel):
    """One cell of a bulk utility edit: a member contribution or a category bill."""

    kind: Literal["contribution", "bill"]
    category: str = Field(..., min_length=1, max_length=50)
    month: MonthKey
    amount: Decimal = Field(..., ge=0)
    member_id: Optional[UUID] = None

    @model_validator(mode='after')
    def validate_member(self) -> 'UtilityUpdate':
        if self.kind == "contribution" and self.member_id is None:
            raise ValueError("Contribution updates require member_id")
        return self


class BatchItemOutcome(BaseModel):
    index: int = Field(..., ge=0)
    key: str
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class BatchResult(BaseModel):
    """Per-item outcomes of a batch of independent upserts."""

    outcomes: list[BatchItemOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0

    @property
    def partial_failure(self) -> bool:
        return self.failed > 0 and self.succeeded > 0

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any item failed."""
        if self.failed:
            raise PartialBatchFailure(self)

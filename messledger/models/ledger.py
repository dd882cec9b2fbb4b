"""
Core Ledger Models for Mess Ledger

These models define the strict schemas for every ledger row the
settlement engine reads. They are designed to:
1. Keep money in Decimal end to end (never binary floats)
2. Normalize month keys to first-of-month dates at the boundary
3. Be serializable for storage and audit logging
4. Make every mutation target explicit (tagged deposit updates)

DESIGN DECISION: Deposit slots are an ordered list, not eight named
fields. "First empty slot" is a single loop over indices, and writes
go through SlotUpdate / CarryForwardUpdate instead of a field name
computed at runtime.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    model_validator,
)

from messledger.errors import ValidationError


DEPOSIT_SLOT_COUNT = 8
ZERO = Decimal("0")

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})(?:-01)?$")


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp for created_at/closed_at fields."""
    return datetime.now(timezone.utc)


# =============================================================================
# MONTH KEYS
# =============================================================================

def normalize_month(value) -> date:
    """
    Normalize a month key to its first-of-month date.

    Accepts a date that is already the 1st, "YYYY-MM-01" or "YYYY-MM".
    Free-form date strings are rejected; callers own date parsing.
    """
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        if value.day != 1:
            raise ValidationError(
                f"Month key must be the first of the month, got {value.isoformat()}"
            )
        return value
    if isinstance(value, str):
        match = _MONTH_KEY_RE.match(value.strip())
        if match:
            year, month = int(match.group(1)), int(match.group(2))
            if 1 <= month <= 12:
                return date(year, month, 1)
    raise ValidationError(f"Invalid month key: {value!r} (expected YYYY-MM-01)")


def next_month(month: date) -> date:
    """First day of the month after `month`."""
    month = normalize_month(month)
    if month.month == 12:
        return date(month.year + 1, 1, 1)
    return date(month.year, month.month + 1, 1)


def month_range(month: date) -> tuple[date, date]:
    """Half-open date range [month_start, next_month_start)."""
    start = normalize_month(month)
    return start, next_month(start)


def month_of(day: date) -> date:
    """Month key a calendar date belongs to."""
    return date(day.year, day.month, 1)


MonthKey = Annotated[date, BeforeValidator(normalize_month)]


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class MemberRole(str, Enum):
    """
    Member roles.

    Only SUPER_ADMIN may close or reopen a month.
    """
    ADMIN = "admin"
    VIEWER = "viewer"
    SUPER_ADMIN = "super_admin"


class MealSlot(str, Enum):
    """Meal slots tracked per day."""
    LUNCH = "Lunch"
    DINNER = "Dinner"


class PaymentPreference(str, Enum):
    """
    What to do when a payer's float does not cover an expense.

    DEPOSIT: credit the shortfall into the payer's deposit ledger.
    PAYBACK: the manager owes the payer the shortfall.
    """
    DEPOSIT = "deposit"
    PAYBACK = "payback"


# =============================================================================
# MEMBERS & DAILY ROWS
# =============================================================================

class Member(BaseModel):
    """A flatmate using the ledger."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name (used for report ordering)"
    )
    email: Optional[str] = Field(default=None, max_length=200)
    role: MemberRole = MemberRole.VIEWER
    created_at: datetime = Field(default_factory=utcnow)


class MealRecord(BaseModel):
    """
    One member's attendance at one meal slot.

    Unique per (member_id, meal_date, slot). Weight 0 means absent and
    is stored as a deleted row.
    """

    id: UUID = Field(default_factory=uuid4)
    member_id: UUID
    meal_date: date
    slot: MealSlot
    weight: Decimal = Field(
        ...,
        ge=0,
        description="Meal weight (1 = normal, >1 = with guest, fractional allowed)"
    )
    # Legacy per-row cost, superseded by the derived meal rate
    cost: Decimal = Field(default=ZERO, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[UUID, date, MealSlot]:
        return (self.member_id, self.meal_date, self.slot)


class ShoppingPurchase(BaseModel):
    """
    Money a member spent buying food.

    The auto-deposit fields record what the excess resolver wrote when
    this purchase was recorded, so deletion can reverse it exactly.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    buyer_id: UUID
    item_name: str = Field(default="", max_length=200)
    amount: Decimal = Field(..., ge=0)
    purchase_date: date
    preference: Optional[PaymentPreference] = None

    auto_deposit_amount: Decimal = Field(default=ZERO, ge=0)
    auto_deposit_slot: Optional[int] = Field(
        default=None, ge=0, lt=DEPOSIT_SLOT_COUNT
    )
    payback_amount: Decimal = Field(default=ZERO, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class FundTransfer(BaseModel):
    """
    Money the manager hands to (positive) or reclaims from (negative) a buyer.
    """

    id: UUID = Field(default_factory=uuid4)
    buyer_id: UUID
    amount: Decimal
    transfer_date: date
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# COMMON EXPENSES
# =============================================================================

def split_share(total: Decimal, member_count: int) -> Decimal:
    """Per-member share of a total; with no members the whole total."""
    if member_count > 0:
        return total / Decimal(member_count)
    return total


class FrozenShare(BaseModel):
    """Per-member share computed once at insert time and never recomputed."""
    kind: Literal["frozen"] = "frozen"
    per_member: Decimal
    member_count: int = Field(..., ge=0)


class ComputedShare(BaseModel):
    """Legacy rows without a stored share: resolved against current membership."""
    kind: Literal["computed"] = "computed"


ExpenseShare = Annotated[
    Union[FrozenShare, ComputedShare],
    Field(discriminator="kind"),
]


class CommonExpense(BaseModel):
    """
    A shared non-food cost paid by one member on behalf of everyone.

    CRITICAL: New expenses always carry a FrozenShare so historical
    settlements stay stable when membership changes later.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=200)
    total: Decimal = Field(..., ge=0)
    month: MonthKey
    payer_id: Optional[UUID] = None
    share: ExpenseShare = Field(default_factory=ComputedShare)
    preference: Optional[PaymentPreference] = None

    auto_deposit_amount: Decimal = Field(default=ZERO, ge=0)
    auto_deposit_slot: Optional[int] = Field(
        default=None, ge=0, lt=DEPOSIT_SLOT_COUNT
    )
    payback_amount: Decimal = Field(default=ZERO, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        name: str,
        total: Decimal,
        month,
        member_count: int,
        payer_id: Optional[UUID] = None,
        preference: Optional[PaymentPreference] = None,
    ) -> "CommonExpense":
        """Build a new expense with its per-member share frozen."""
        return cls(
            name=name,
            total=total,
            month=month,
            payer_id=payer_id,
            preference=preference,
            share=FrozenShare(
                per_member=split_share(Decimal(total), member_count),
                member_count=member_count,
            ),
        )

    def per_member_share(self, current_member_count: int) -> Decimal:
        """Share each member bears for this expense."""
        if isinstance(self.share, FrozenShare):
            return self.share.per_member
        return split_share(self.total, current_member_count)


# =============================================================================
# UTILITIES
# =============================================================================

class UtilityBill(BaseModel):
    """Total monthly bill for one utility category. One row per (category, month)."""

    id: UUID = Field(default_factory=uuid4)
    category: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., ge=0)
    month: MonthKey


class UtilityContribution(BaseModel):
    """A member's paid-in amount toward one utility category for one month."""

    id: UUID = Field(default_factory=uuid4)
    member_id: UUID
    category: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., ge=0)
    month: MonthKey


# =============================================================================
# DEPOSITS
# =============================================================================

class SlotUpdate(BaseModel):
    """Overwrite one numbered deposit slot (0-based index)."""
    kind: Literal["slot"] = "slot"
    index: int = Field(..., ge=0, lt=DEPOSIT_SLOT_COUNT)
    value: Decimal


class CarryForwardUpdate(BaseModel):
    """Overwrite only the carry_forward field."""
    kind: Literal["carry_forward"] = "carry_forward"
    value: Decimal


DepositUpdate = Annotated[
    Union[SlotUpdate, CarryForwardUpdate],
    Field(discriminator="kind"),
]


def _empty_slots() -> list[Decimal]:
    return [ZERO] * DEPOSIT_SLOT_COUNT


class DepositRecord(BaseModel):
    """
    A member's deposit ledger for one month.

    Unique per (member_id, month). Slots fill left to right; the first
    empty slot is the first one holding zero.
    """

    id: UUID = Field(default_factory=uuid4)
    member_id: UUID
    month: MonthKey
    slots: list[Decimal] = Field(
        default_factory=_empty_slots,
        min_length=DEPOSIT_SLOT_COUNT,
        max_length=DEPOSIT_SLOT_COUNT,
    )
    carry_forward: Decimal = ZERO
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def empty(cls, member_id: UUID, month) -> "DepositRecord":
        return cls(member_id=member_id, month=month)

    @property
    def total(self) -> Decimal:
        """All slots plus carry-forward."""
        return sum(self.slots, ZERO) + self.carry_forward

    def first_empty_slot(self) -> Optional[int]:
        """Index of the first zero slot, or None when all are occupied."""
        for index, value in enumerate(self.slots):
            if value == ZERO:
                return index
        return None

    def apply(self, update: Union[SlotUpdate, CarryForwardUpdate]) -> "DepositRecord":
        """Return a copy with only the targeted field changed."""
        if isinstance(update, SlotUpdate):
            slots = list(self.slots)
            slots[update.index] = update.value
            return self.model_copy(update={"slots": slots})
        return self.model_copy(update={"carry_forward": update.value})


# =============================================================================
# MONTH STATUS
# =============================================================================

class MonthStatus(BaseModel):
    """
    Whether a month's ledger is frozen.

    Reopening clears is_closed but keeps closed_at/closed_by of the
    last close for the record.
    """

    month: MonthKey
    is_closed: bool = False
    closed_at: Optional[datetime] = None
    closed_by: Optional[UUID] = None
    reopened_at: Optional[datetime] = None
    reopened_by: Optional[UUID] = None

    @model_validator(mode='after')
    def validate_close_fields(self) -> 'MonthStatus':
        """A closed month must say when it was closed."""
        if self.is_closed and self.closed_at is None:
            raise ValueError("Closed month requires closed_at")
        return self

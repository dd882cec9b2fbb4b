"""
Settlement Calculator

DESIGN DECISION: Every function here is PURE.
Callers select the rows for a scope (a month, "to date", the month
being closed); no date filtering happens in this module. The same
function therefore backs live dashboards, monthly pages, reports and
month-close without duplicating date arithmetic.

NUMERIC POLICY:
- Decimal accumulation at full precision
- Rounding happens only in format_money(), at display time
- Zero total meal weight gives a zero meal rate, never an exception
"""

from collections.abc import Iterable, Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from messledger.models.ledger import (
    ZERO,
    CommonExpense,
    DepositRecord,
    FundTransfer,
    MealRecord,
    Member,
    ShoppingPurchase,
    UtilityBill,
    UtilityContribution,
)
from messledger.models.settlement import (
    AttendanceCell,
    ManagerBalance,
    ManagerPayable,
    MemberSettlement,
    MonthlyReportData,
    SettlementResult,
    SettlementTotals,
    ShopperFloat,
    UtilityCategorySummary,
    UtilitySummary,
)


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def _deposits_by_member(deposits: Iterable[DepositRecord]) -> dict[UUID, DepositRecord]:
    # First record wins if a caller passes duplicates for one member
    by_member: dict[UUID, DepositRecord] = {}
    for record in deposits:
        by_member.setdefault(record.member_id, record)
    return by_member


def compute_settlement(
    members: Sequence[Member],
    meal_records: Sequence[MealRecord],
    purchases: Sequence[ShoppingPurchase],
    common_expenses: Sequence[CommonExpense],
    deposits: Sequence[DepositRecord],
) -> SettlementResult:
    """
    Compute the meal rate and every member's meal/deposit balance.

    For each member:
        meal_cost   = meal_rate * member_weight
        net_deposit = (slots + carry_forward) - sum(per-member common shares)
        balance     = net_deposit - meal_cost

    Every member bears every common expense's per-member share,
    regardless of who paid it. A member with no deposit record has a
    raw deposit of zero.
    """
    total_purchase = _sum(p.amount for p in purchases)
    total_weight = _sum(m.weight for m in meal_records)
    meal_rate = total_purchase / total_weight if total_weight > 0 else ZERO

    weights: dict[UUID, Decimal] = {}
    counts: dict[UUID, int] = {}
    for record in meal_records:
        weights[record.member_id] = weights.get(record.member_id, ZERO) + record.weight
        counts[record.member_id] = counts.get(record.member_id, 0) + 1

    deposit_records = _deposits_by_member(deposits)
    member_count = len(members)
    common_share = _sum(e.per_member_share(member_count) for e in common_expenses)

    per_member = []
    for member in sorted(members, key=lambda m: m.name):
        member_weight = weights.get(member.id, ZERO)
        meal_cost = meal_rate * member_weight
        record = deposit_records.get(member.id)
        raw_deposit = record.total if record else ZERO
        net_deposit = raw_deposit - common_share
        per_member.append(MemberSettlement(
            member_id=member.id,
            name=member.name,
            meal_count=counts.get(member.id, 0),
            total_weight=member_weight,
            meal_cost=meal_cost,
            raw_deposit=raw_deposit,
            common_share=common_share,
            net_deposit=net_deposit,
            balance=net_deposit - meal_cost,
        ))

    totals = SettlementTotals(
        total_purchase=total_purchase,
        total_weight=total_weight,
        total_meal_cost=_sum(m.meal_cost for m in per_member),
        total_raw_deposit=_sum(m.raw_deposit for m in per_member),
        total_common_share=_sum(m.common_share for m in per_member),
        total_net_deposit=_sum(m.net_deposit for m in per_member),
        total_balance=_sum(m.balance for m in per_member),
    )

    return SettlementResult(meal_rate=meal_rate, per_member=per_member, totals=totals)


def compute_shopper_float(
    member_id: UUID,
    transfers: Iterable[FundTransfer],
    purchases: Iterable[ShoppingPurchase],
    common_expenses: Iterable[CommonExpense],
    member_count: int,
) -> ShopperFloat:
    """
    Cash float one buyer holds: transfers - shopping - common shares paid.

    Independent of the meal/deposit balance.
    """
    return ShopperFloat(
        member_id=member_id,
        transfers_received=_sum(t.amount for t in transfers if t.buyer_id == member_id),
        shopping_spent=_sum(p.amount for p in purchases if p.buyer_id == member_id),
        common_paid=_sum(
            e.per_member_share(member_count)
            for e in common_expenses
            if e.payer_id == member_id
        ),
    )


def compute_shopper_floats(
    members: Sequence[Member],
    transfers: Sequence[FundTransfer],
    purchases: Sequence[ShoppingPurchase],
    common_expenses: Sequence[CommonExpense],
) -> dict[UUID, ShopperFloat]:
    """Shopper float for every member; rows for unknown members are ignored."""
    return {
        member.id: compute_shopper_float(
            member.id, transfers, purchases, common_expenses, len(members)
        )
        for member in members
    }


def compute_utility_summary(
    members: Sequence[Member],
    bills: Sequence[UtilityBill],
    contributions: Sequence[UtilityContribution],
    categories: Sequence[str],
) -> UtilitySummary:
    """
    Collected vs billed per utility category, plus per-member totals.

    Categories are reported in configured order; categories that only
    appear in the rows are appended alphabetically.
    """
    member_ids = {m.id for m in members}
    ordered = list(categories)
    extra = {b.category for b in bills} | {c.category for c in contributions}
    ordered += sorted(extra - set(ordered))

    matrix: dict[UUID, dict[str, Decimal]] = {m.id: {} for m in members}
    collected: dict[str, Decimal] = {}
    for contribution in contributions:
        if contribution.member_id not in member_ids:
            continue
        row = matrix[contribution.member_id]
        row[contribution.category] = row.get(contribution.category, ZERO) + contribution.amount
        collected[contribution.category] = (
            collected.get(contribution.category, ZERO) + contribution.amount
        )

    billed: dict[str, Decimal] = {}
    for bill in bills:
        billed[bill.category] = billed.get(bill.category, ZERO) + bill.amount

    return UtilitySummary(
        categories=[
            UtilityCategorySummary(
                category=category,
                collected=collected.get(category, ZERO),
                billed=billed.get(category, ZERO),
            )
            for category in ordered
        ],
        per_member={member_id: _sum(row.values()) for member_id, row in matrix.items()},
        matrix=matrix,
    )


def compute_manager_balance(
    deposits: Iterable[DepositRecord],
    utilities: UtilitySummary,
    purchases: Iterable[ShoppingPurchase],
    shopper_floats: Iterable[ShopperFloat],
) -> ManagerBalance:
    """
    Cash the manager should hold for the month.

    The shopper float counted here is transfers minus shopping only;
    common-expense shares are settled through deposits, not the float.
    """
    return ManagerBalance(
        utility_remaining=utilities.total_remaining,
        total_deposits=_sum(d.total for d in deposits),
        total_shopping=_sum(p.amount for p in purchases),
        total_shopper_float=_sum(
            f.transfers_received - f.shopping_spent for f in shopper_floats
        ),
    )


def collect_manager_payables(
    common_expenses: Iterable[CommonExpense],
    purchases: Iterable[ShoppingPurchase],
    month: date,
) -> list[ManagerPayable]:
    """Payback obligations recorded on expenses and purchases."""
    payables = []
    for expense in common_expenses:
        if expense.payback_amount > 0 and expense.payer_id is not None:
            payables.append(ManagerPayable(
                source="common_expense",
                source_id=expense.id,
                member_id=expense.payer_id,
                month=month,
                amount=expense.payback_amount,
                description=expense.name,
            ))
    for purchase in purchases:
        if purchase.payback_amount > 0:
            payables.append(ManagerPayable(
                source="purchase",
                source_id=purchase.id,
                member_id=purchase.buyer_id,
                month=month,
                amount=purchase.payback_amount,
                description=purchase.item_name,
            ))
    return payables


def build_monthly_report(
    month: date,
    members: Sequence[Member],
    meal_records: Sequence[MealRecord],
    purchases: Sequence[ShoppingPurchase],
    common_expenses: Sequence[CommonExpense],
    deposits: Sequence[DepositRecord],
    bills: Sequence[UtilityBill],
    contributions: Sequence[UtilityContribution],
    categories: Sequence[str],
) -> MonthlyReportData:
    """Assemble the data behind the printable monthly report."""
    attendance: dict[date, dict[UUID, AttendanceCell]] = {}
    for record in meal_records:
        day = attendance.setdefault(record.meal_date, {})
        day.setdefault(record.member_id, AttendanceCell()).set(record.slot, record.weight)

    return MonthlyReportData(
        month=month,
        settlement=compute_settlement(
            members, meal_records, purchases, common_expenses, deposits
        ),
        meal_dates=sorted(attendance),
        attendance=attendance,
        deposits=_deposits_by_member(deposits),
        utilities=compute_utility_summary(members, bills, contributions, categories),
        total_common_expense=_sum(e.total for e in common_expenses),
    )


def format_money(
    value: Decimal,
    places: int = 2,
    symbol: Optional[str] = None,
) -> str:
    """
    Round half-up for display only.

    format_money(Decimal("1234.565"), 2, "৳") -> "৳1,234.57"
    """
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    text = f"{rounded:,.{places}f}"
    if symbol:
        if text.startswith("-"):
            return f"-{symbol}{text[1:]}"
        return f"{symbol}{text}"
    return text

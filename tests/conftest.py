"""
Shared fixtures.

Every test runs against in-memory storage; no network, no Sheets.
"""

from datetime import date
from decimal import Decimal

import pytest

from messledger.audit import AuditLogger
from messledger.config import LedgerSettings
from messledger.models import (
    DepositRecord,
    MealRecord,
    MealSlot,
    Member,
    MemberRole,
    ShoppingPurchase,
    SlotUpdate,
)
from messledger.orchestrator import LedgerService
from messledger.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage


MARCH = date(2024, 3, 1)
APRIL = date(2024, 4, 1)


@pytest.fixture
def settings():
    return LedgerSettings(storage_backend="memory")


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def service(storage, audit_storage, settings):
    return LedgerService(
        storage,
        audit_logger=AuditLogger(audit_storage),
        settings=settings,
    )


@pytest.fixture
def member_a():
    return Member(name="A", role=MemberRole.SUPER_ADMIN)


@pytest.fixture
def member_b():
    return Member(name="B", role=MemberRole.ADMIN)


@pytest.fixture
def member_c():
    return Member(name="C")


@pytest.fixture
async def members(storage, member_a, member_b, member_c):
    for member in (member_a, member_b, member_c):
        await storage.save_member(member)
    return member_a, member_b, member_c


@pytest.fixture
async def example_month(storage, members):
    """
    Three members, ৳3000 of shopping, weights A=20 B=15 C=15.

    A has deposited 1000 twice; nobody else has deposited.
    """
    a, b, c = members
    meals = [
        (a, date(2024, 3, 1), MealSlot.LUNCH, "10"),
        (a, date(2024, 3, 1), MealSlot.DINNER, "10"),
        (b, date(2024, 3, 2), MealSlot.LUNCH, "15"),
        (c, date(2024, 3, 2), MealSlot.DINNER, "15"),
    ]
    for member, day, slot, weight in meals:
        await storage.upsert_meal_record(MealRecord(
            member_id=member.id, meal_date=day, slot=slot, weight=Decimal(weight)
        ))

    await storage.save_purchase(ShoppingPurchase(
        buyer_id=b.id, item_name="Rice", amount=Decimal("2000"),
        purchase_date=date(2024, 3, 5),
    ))
    await storage.save_purchase(ShoppingPurchase(
        buyer_id=c.id, item_name="Fish", amount=Decimal("1000"),
        purchase_date=date(2024, 3, 10),
    ))

    await storage.apply_deposit_update(a.id, MARCH, SlotUpdate(index=0, value=Decimal("1000")))
    await storage.apply_deposit_update(a.id, MARCH, SlotUpdate(index=1, value=Decimal("1000")))
    return members


def deposit(member_id, month, *slots, carry_forward="0") -> DepositRecord:
    """Build a deposit record from leading slot values."""
    values = [Decimal(s) for s in slots] + [Decimal("0")] * (8 - len(slots))
    return DepositRecord(
        member_id=member_id, month=month, slots=values,
        carry_forward=Decimal(carry_forward),
    )

"""
Tests for the LedgerService boundary: scopes, deposits, batches and
failure reporting.
"""

import asyncio

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from messledger.audit import AuditLogger
from messledger.config import LedgerSettings
from messledger.errors import ConflictError, PartialBatchFailure, ValidationError
from messledger.models import (
    CommonExpense,
    MealSlot,
    MealWeightUpdate,
    MonthStatus,
    PaymentPreference,
    SettlementScope,
    ShoppingPurchase,
    SlotUpdate,
    UtilityUpdate,
)
from messledger.models.audit import AuditEventType
from messledger.models.ledger import utcnow
from messledger.orchestrator import LedgerService, create_app_components
from messledger.services.storage import InMemoryLedgerStorage, StorageError
from messledger.validation import LedgerValidator
from tests.conftest import APRIL, MARCH


class TestSettlementScopes:
    """Tests for month and to-date settlement scopes."""

    async def test_to_date_excludes_later_rows(self, service, example_month):
        """Only meals and purchases up to as_of are counted."""
        result = await service.compute_settlement(
            SettlementScope.to_date(MARCH, date(2024, 3, 5))
        )
        # Rice (2000, Mar 5) counts; Fish (1000, Mar 10) does not
        assert result.totals.total_purchase == Decimal("2000")
        assert result.meal_rate == Decimal("40")

    async def test_to_date_includes_as_of_day(self, service, example_month):
        """Test that rows dated as_of are counted."""
        result = await service.compute_settlement(
            SettlementScope.to_date(MARCH, date(2024, 3, 1))
        )
        assert result.totals.total_weight == Decimal("20")
        assert result.meal_rate == Decimal("0")

    async def test_other_months_are_ignored(self, service, storage, example_month):
        """Test that other months' deposits are not counted."""
        a, _, _ = example_month
        await storage.apply_deposit_update(a.id, APRIL, SlotUpdate(index=0, value=Decimal("5000")))

        result = await service.compute_settlement(SettlementScope.for_month(MARCH))

        assert result.for_member(a.id).raw_deposit == Decimal("2000")

    async def test_settlement_is_audited_at_debug(self, service, audit_storage, example_month):
        """Test settlement audit event."""
        await service.compute_settlement(SettlementScope.for_month(MARCH))
        event = audit_storage.events[-1]
        assert event.event_type == AuditEventType.SETTLEMENT_COMPUTED
        assert event.details["meal_rate"] == "60"


class TestDeposits:
    """Tests for manual deposits and fund transfers."""

    async def test_add_deposit_fills_slots_in_order(self, service, storage, members):
        """Test that manual deposits fill slots left to right."""
        a, _, _ = members
        first = await service.add_deposit(a.id, MARCH, Decimal("1000"))
        second = await service.add_deposit(a.id, "2024-03", Decimal("250.50"))

        assert first.details["slot"] == 0
        assert second.details["slot"] == 1
        record = await storage.get_deposit_record(a.id, MARCH)
        assert record.total == Decimal("1250.50")

    async def test_add_deposit_when_full(self, service, storage, members):
        """Test a manual deposit when every slot is occupied."""
        a, _, _ = members
        for index in range(8):
            await storage.apply_deposit_update(a.id, MARCH, SlotUpdate(index=index, value=Decimal("1")))

        result = await service.add_deposit(a.id, MARCH, Decimal("100"))

        assert result.success is False
        assert result.error_code == "validation"
        assert "occupied" in result.error_message

    async def test_add_deposit_rejects_bad_input(self, service, members):
        """Test that bad amounts, months and members are rejected."""
        a, _, _ = members
        assert (await service.add_deposit(a.id, MARCH, Decimal("0"))).error_code == "validation"
        assert (await service.add_deposit(a.id, MARCH, Decimal("-5"))).error_code == "validation"
        assert (await service.add_deposit(a.id, MARCH, Decimal("5000000"))).error_code == "validation"
        assert (await service.add_deposit(a.id, date(2024, 3, 9), Decimal("5"))).error_code == "validation"
        assert (await service.add_deposit(uuid4(), MARCH, Decimal("5"))).error_code == "validation"

    async def test_add_deposit_rejects_non_numeric_amount(self, service, storage, members):
        """A non-numeric amount comes back as a validation result."""
        a, _, _ = members

        result = await service.add_deposit(a.id, MARCH, "abc")

        assert result.success is False
        assert result.error_code == "validation"
        assert await storage.get_deposit_record(a.id, MARCH) is None

    async def test_negative_fund_transfer_allowed(self, service, members):
        """Test that the manager can reclaim cash with a negative transfer."""
        _, b, _ = members
        await service.record_fund_transfer(b.id, Decimal("1000"), date(2024, 3, 1))
        result = await service.record_fund_transfer(b.id, Decimal("-400"), date(2024, 3, 20))

        assert result.success is True
        floats = await service.shopper_floats(MARCH)
        assert floats[b.id].transfers_received == Decimal("600")


class TestBatches:
    """Tests for bulk edits as independent upserts."""

    async def test_meal_batch_partial_failure(self, service, storage, audit_storage, members):
        """Test that a failed meal row does not undo the others."""
        a, b, _ = members
        updates = [
            MealWeightUpdate(member_id=a.id, meal_date=date(2024, 3, 1), slot=MealSlot.LUNCH, weight=Decimal("1")),
            MealWeightUpdate(member_id=uuid4(), meal_date=date(2024, 3, 1), slot=MealSlot.LUNCH, weight=Decimal("1")),
            MealWeightUpdate(member_id=b.id, meal_date=date(2024, 3, 1), slot=MealSlot.DINNER, weight=Decimal("2")),
        ]

        result = await service.batch_update_meal_weights(updates)

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.outcomes[1].error_code == "validation"
        assert len(await storage.list_meal_records(MARCH, APRIL)) == 2
        with pytest.raises(PartialBatchFailure):
            result.raise_for_failures()
        assert audit_storage.events[-1].event_type == AuditEventType.BATCH_COMPLETED
        assert audit_storage.events[-1].details["failed"] == 1

    async def test_meal_upsert_keeps_id_and_zero_deletes(self, service, storage, members):
        """Test meal upsert identity and zero-weight delete."""
        a, _, _ = members
        day = date(2024, 3, 7)
        cell = dict(member_id=a.id, meal_date=day, slot=MealSlot.LUNCH)

        await service.batch_update_meal_weights([MealWeightUpdate(weight=Decimal("1"), **cell)])
        first = await storage.list_meal_records(member_id=a.id)
        await service.batch_update_meal_weights([MealWeightUpdate(weight=Decimal("1.5"), **cell)])
        second = await storage.list_meal_records(member_id=a.id)

        assert len(second) == 1
        assert second[0].id == first[0].id
        assert second[0].weight == Decimal("1.5")

        result = await service.batch_update_meal_weights([MealWeightUpdate(weight=Decimal("0"), **cell)])
        assert result.all_succeeded
        assert await storage.list_meal_records(member_id=a.id) == []

    async def test_utility_batch(self, service, members):
        """Test bill and contribution upserts."""
        a, b, _ = members
        result = await service.batch_update_utilities([
            UtilityUpdate(kind="bill", category="WiFi Bill", month=MARCH, amount=Decimal("1200")),
            UtilityUpdate(kind="contribution", category="WiFi Bill", month=MARCH,
                          amount=Decimal("400"), member_id=a.id),
            UtilityUpdate(kind="contribution", category="WiFi Bill", month=MARCH,
                          amount=Decimal("500"), member_id=b.id),
            UtilityUpdate(kind="contribution", category="WiFi Bill", month=MARCH,
                          amount=Decimal("400"), member_id=b.id),
            UtilityUpdate(kind="contribution", category="Guard", month=MARCH,
                          amount=Decimal("100"), member_id=uuid4()),
        ])

        assert result.succeeded == 4
        assert result.outcomes[4].success is False

        summary = await service.utility_summary(MARCH)
        wifi = next(c for c in summary.categories if c.category == "WiFi Bill")
        assert wifi.collected == Decimal("800")  # b's second write replaced the first
        assert wifi.remaining == Decimal("-400")
        assert summary.categories[0].category == "House Rent"


    async def test_utility_batch_reports_invalid_rows(self, service, storage, members):
        """A row rejected by the model layer is reported, not raised."""
        result = await service.batch_update_utilities([
            UtilityUpdate(kind="bill", category="WiFi Bill", month=MARCH, amount=Decimal("1200")),
            # Skips field validation, as a caller building rows by hand might
            UtilityUpdate.model_construct(
                kind="bill", category="X" * 60, month=MARCH, amount=Decimal("10"), member_id=None
            ),
        ])

        assert result.succeeded == 1
        assert result.outcomes[1].success is False
        assert result.outcomes[1].error_code == "validation"
        assert [b.category for b in await storage.list_utility_bills(MARCH)] == ["WiFi Bill"]

    def test_utility_update_rejects_long_category(self):
        """Categories longer than a bill row allows are rejected up front."""
        with pytest.raises(PydanticValidationError):
            UtilityUpdate(kind="bill", category="X" * 60, month=MARCH, amount=Decimal("10"))


class TestConcurrentWrites:
    """Tests that writes to the same (member, month) rows never interleave."""

    async def test_concurrent_excess_deposits_take_distinct_slots(self, service, storage, members):
        """Two shortfalls for one payer land in d1 and d2, not both in d1."""
        a, _, _ = members

        def gas():
            return CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=a.id)

        first, second = await asyncio.gather(
            service.record_expense_with_excess_handling(gas(), preference=PaymentPreference.DEPOSIT),
            service.record_expense_with_excess_handling(gas(), preference=PaymentPreference.DEPOSIT),
        )

        assert first.success and second.success
        assert sorted([first.auto_deposit.slot, second.auto_deposit.slot]) == [0, 1]
        record = await storage.get_deposit_record(a.id, MARCH)
        assert record.slots[:3] == [Decimal("300"), Decimal("300"), Decimal("0")]

    async def test_close_races_deposit_into_next_month(self, service, storage, example_month):
        """Carry-forward and a concurrent next-month deposit both survive."""
        a, _, _ = example_month

        closed, deposited = await asyncio.gather(
            service.close_month(MARCH, a.id),
            service.add_deposit(a.id, APRIL, Decimal("500")),
        )

        assert closed.success and deposited.success
        record = await storage.get_deposit_record(a.id, APRIL)
        assert record.slots[0] == Decimal("500")
        assert record.carry_forward == Decimal("800")
        assert (await service.month_status(MARCH)).is_closed is True


class TestReports:
    """Tests for manager and report views."""

    async def test_manager_balance(self, service, storage, members):
        """Test the manager's cash balance."""
        a, b, _ = members
        await service.add_deposit(a.id, MARCH, Decimal("2000"))
        await service.record_fund_transfer(b.id, Decimal("1000"), date(2024, 3, 1))
        await service.batch_update_utilities([
            UtilityUpdate(kind="contribution", category="Guard", month=MARCH,
                          amount=Decimal("500"), member_id=a.id),
            UtilityUpdate(kind="bill", category="Guard", month=MARCH, amount=Decimal("300")),
        ])
        await service.record_purchase_with_excess_handling(
            ShoppingPurchase(buyer_id=b.id, amount=Decimal("700"), purchase_date=date(2024, 3, 2))
        )

        balance = await service.manager_balance(MARCH)

        # (200 + 2000) - (700 + 300)
        assert balance.balance == Decimal("1200")

    async def test_monthly_report(self, service, example_month):
        """Test monthly report data."""
        a, _, _ = example_month
        report = await service.monthly_report(MARCH)
        assert report.month == MARCH
        assert report.settlement.for_member(a.id).balance == Decimal("800")
        assert len(report.utilities.categories) == 8


class FailingStorage(InMemoryLedgerStorage):
    """Storage whose expense writes always fail."""

    async def save_common_expense(self, expense):
        raise StorageError("sheet unavailable")


class FailingDepositStorage(InMemoryLedgerStorage):
    """Storage whose deposit writes always fail."""

    async def apply_deposit_update(self, member_id, month, update):
        raise StorageError("sheet unavailable")


class TestFailureReporting:
    """Tests that write failures come back as results."""

    async def test_storage_error_becomes_result(self, audit_storage, settings, member_a):
        """Test that storage errors come back as a result and are audited."""
        storage = FailingStorage()
        await storage.save_member(member_a)
        service = LedgerService(storage, audit_logger=AuditLogger(audit_storage), settings=settings)

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=member_a.id)
        )

        assert result.success is False
        assert result.error_code == "storage"
        assert audit_storage.events[-1].event_type == AuditEventType.SYSTEM_ERROR

    async def test_failed_write_rolls_back(self, settings, member_a):
        """The expense row is not left behind when the deposit write fails."""
        storage = FailingDepositStorage()
        await storage.save_member(member_a)
        service = LedgerService(storage, settings=settings)

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=member_a.id),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.success is False
        assert await storage.list_common_expenses(MARCH) == []


class TestValidator:
    """Tests for write preconditions."""

    async def test_checks(self, storage, members):
        """Test amount, member and role checks."""
        a, b, _ = members
        validator = LedgerValidator(storage, LedgerSettings(max_amount=Decimal("100")))

        assert validator.check_amount(Decimal("100")) == Decimal("100")
        with pytest.raises(ValidationError, match="maximum"):
            validator.check_amount(Decimal("100.01"))
        with pytest.raises(ValidationError, match="negative"):
            validator.check_amount(Decimal("-1"))
        assert validator.check_amount(Decimal("-1"), allow_negative=True) == Decimal("-1")
        with pytest.raises(ValidationError, match="must be a number"):
            validator.check_amount("abc")
        with pytest.raises(ValidationError):
            validator.ensure_members_present([])
        assert (await validator.ensure_super_admin(a.id)).id == a.id
        with pytest.raises(ValidationError, match="super admin"):
            await validator.ensure_super_admin(b.id)

    async def test_month_open(self, storage, members):
        """Test the closed-month check."""
        a, _, _ = members
        validator = LedgerValidator(storage, LedgerSettings())
        await validator.ensure_month_open(MARCH)
        await storage.save_month_status(
            MonthStatus(month=MARCH, is_closed=True, closed_at=utcnow(), closed_by=a.id)
        )
        with pytest.raises(ConflictError) as exc_info:
            await validator.ensure_month_open(MARCH)
        assert exc_info.value.month == MARCH


class TestAppComponents:
    """Tests for the component factory."""

    def test_memory_backend(self):
        """Test the memory backend factory."""
        service, sheets_client = create_app_components(backend="memory")
        assert isinstance(service, LedgerService)
        assert sheets_client is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

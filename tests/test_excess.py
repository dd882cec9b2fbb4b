"""
Tests for excess-payment resolution.

Pure decision first, then the resolver through the service against
in-memory storage.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from messledger.ledger import resolve_excess
from messledger.models import (
    CommonExpense,
    MonthStatus,
    PaymentPreference,
    SettlementScope,
    ShoppingPurchase,
    SlotUpdate,
)
from messledger.models.audit import AuditEventType
from messledger.models.ledger import utcnow
from tests.conftest import MARCH, deposit


class TestResolveExcess:
    """Tests for the pure excess decision."""

    def test_no_excess_when_float_covers(self):
        """Test that nothing happens when the float covers the expense."""
        resolution = resolve_excess(
            Decimal("300"), Decimal("500"), PaymentPreference.DEPOSIT, None
        )
        assert resolution.excess == Decimal("-200")
        assert resolution.deposited is False
        assert resolution.slots_full is False
        assert resolution.auto_deposit_amount == Decimal("0")

    def test_new_record_lands_in_first_slot(self):
        """Test that a member without a deposit record gets slot d1."""
        resolution = resolve_excess(
            Decimal("300"), Decimal("0"), PaymentPreference.DEPOSIT, None
        )
        assert resolution.auto_deposit_slot == 0
        assert resolution.auto_deposit_amount == Decimal("300")

    def test_lands_in_first_empty_slot(self):
        """With d1 and d2 occupied the excess goes to d3."""
        record = deposit(uuid4(), MARCH, "1000", "1000")
        resolution = resolve_excess(
            Decimal("300"), Decimal("0"), PaymentPreference.DEPOSIT, record
        )
        assert resolution.auto_deposit_slot == 2

    def test_reuses_a_zeroed_gap(self):
        """Test that a zeroed slot before occupied ones is reused first."""
        record = deposit(uuid4(), MARCH, "1000", "0", "500")
        resolution = resolve_excess(
            Decimal("300"), Decimal("0"), PaymentPreference.DEPOSIT, record
        )
        assert resolution.auto_deposit_slot == 1

    def test_full_slots_differs_from_no_excess(self):
        """Test that full slots are reported separately from no excess."""
        record = deposit(uuid4(), MARCH, *["100"] * 8)
        full = resolve_excess(Decimal("300"), Decimal("0"), PaymentPreference.DEPOSIT, record)
        covered = resolve_excess(Decimal("300"), Decimal("300"), PaymentPreference.DEPOSIT, record)

        assert full.auto_deposit_slot is None
        assert full.slots_full is True
        assert full.excess == Decimal("300")
        assert full.auto_deposit_amount == Decimal("0")

        assert covered.auto_deposit_slot is None
        assert covered.slots_full is False

    def test_partial_excess(self):
        """Test that only the uncovered part of the expense is deposited."""
        resolution = resolve_excess(
            Decimal("300"), Decimal("120"), PaymentPreference.DEPOSIT, None
        )
        assert resolution.auto_deposit_amount == Decimal("180")

    def test_payback_records_obligation(self):
        """Test that payback records the excess as owed by the manager."""
        resolution = resolve_excess(
            Decimal("300"), Decimal("100"), PaymentPreference.PAYBACK, None
        )
        assert resolution.payback_amount == Decimal("200")
        assert resolution.deposited is False

    def test_no_preference_does_nothing(self):
        """Test that an expense without a preference resolves nothing."""
        resolution = resolve_excess(Decimal("300"), Decimal("0"), None, None)
        assert resolution.deposited is False
        assert resolution.payback_amount == Decimal("0")


class TestExpenseExcessFlow:
    """Tests for recording and reversing common expenses."""

    async def test_example_scenario(self, service, storage, example_month):
        """Test the worked example: excess lands in d3 after d1 and d2."""
        a, _, _ = example_month
        settlement = await service.compute_settlement(SettlementScope.for_month(MARCH))
        assert settlement.meal_rate == Decimal("60")
        assert settlement.for_member(a.id).balance == Decimal("800")

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas cylinder", total=Decimal("300"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.success is True
        assert result.auto_deposit.slot == 2
        assert result.auto_deposit.amount == Decimal("300")
        record = await storage.get_deposit_record(a.id, MARCH)
        assert record.slots[:3] == [Decimal("1000"), Decimal("1000"), Decimal("300")]

        reversed_result = await service.reverse_expense(result.entity_id)

        assert reversed_result.success is True
        assert reversed_result.details["cleared_slot"] == 2
        record = await storage.get_deposit_record(a.id, MARCH)
        assert record.slots[2] == Decimal("0")
        assert await storage.get_common_expense(result.entity_id) is None

    async def test_reversal_restores_prior_state(self, service, storage, members):
        """Test that deleting the expense restores the deposit record exactly."""
        a, _, _ = members
        await storage.apply_deposit_update(a.id, MARCH, SlotUpdate(index=0, value=Decimal("700")))
        before = await storage.get_deposit_record(a.id, MARCH)

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Bua", total=Decimal("450"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
        )
        await service.reverse_expense(result.entity_id)

        after = await storage.get_deposit_record(a.id, MARCH)
        assert after.slots == before.slots
        assert after.carry_forward == before.carry_forward

    async def test_reversal_overwrites_edited_slot(self, service, storage, members):
        """A slot edited by hand after the auto-deposit is still zeroed."""
        a, _, _ = members
        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Bua", total=Decimal("450"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
        )
        await storage.apply_deposit_update(a.id, MARCH, SlotUpdate(index=0, value=Decimal("999")))

        await service.reverse_expense(result.entity_id)

        record = await storage.get_deposit_record(a.id, MARCH)
        assert record.slots[0] == Decimal("0")

    async def test_share_is_frozen_at_insert(self, service, storage, members):
        """Test that the per-member share is frozen when the expense is recorded."""
        a, _, _ = members
        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Guard tip", total=Decimal("300"), month=MARCH)
        )
        saved = await storage.get_common_expense(result.entity_id)
        assert saved.share.per_member == Decimal("100")
        assert saved.share.member_count == 3
        assert result.auto_deposit is None

    async def test_payback_is_stored_and_listed(self, service, storage, members):
        """Test that payback amounts are stored and listed as manager payables."""
        a, _, _ = members
        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.PAYBACK,
        )
        assert result.success is True
        assert result.auto_deposit is None
        assert await storage.get_deposit_record(a.id, MARCH) is None

        payables = await service.manager_payables(MARCH)
        assert len(payables) == 1
        assert payables[0].member_id == a.id
        assert payables[0].amount == Decimal("300")

    async def test_float_reduces_excess(self, service, storage, members):
        """Test that the payer's float is subtracted before depositing."""
        a, _, _ = members
        await service.record_fund_transfer(a.id, Decimal("250"), date(2024, 3, 2))

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.auto_deposit.amount == Decimal("50")
        assert result.details["current_float"] == "250"

    async def test_slots_full_is_reported(self, service, storage, members):
        """Test that a full deposit record is reported on the result."""
        a, _, _ = members
        for index in range(8):
            await storage.apply_deposit_update(
                a.id, MARCH, SlotUpdate(index=index, value=Decimal("10"))
            )

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.success is True
        assert result.auto_deposit.slot is None
        assert result.auto_deposit.slots_full is True
        saved = await storage.get_common_expense(result.entity_id)
        assert saved.auto_deposit_slot is None

    async def test_closed_month_rejects_expense(self, service, storage, audit_storage, members):
        """Test that expenses into a closed month are rejected unwritten."""
        a, _, _ = members
        await storage.save_month_status(
            MonthStatus(month=MARCH, is_closed=True, closed_at=utcnow(), closed_by=a.id)
        )

        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.success is False
        assert result.error_code == "conflict"
        assert await storage.list_common_expenses(MARCH) == []
        assert await storage.get_deposit_record(a.id, MARCH) is None
        assert audit_storage.events[-1].event_type == AuditEventType.WRITE_REJECTED

    async def test_unknown_payer_rejected(self, service, members):
        """Test that an unknown payer is a validation failure."""
        result = await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=uuid4()),
            preference=PaymentPreference.DEPOSIT,
        )
        assert result.success is False
        assert result.error_code == "validation"

    async def test_reverse_unknown_expense(self, service, members):
        """Test reversing an expense that does not exist."""
        result = await service.reverse_expense(uuid4())
        assert result.success is False
        assert result.error_code == "not_found"

    async def test_audit_trail_shares_correlation_id(self, service, audit_storage, members):
        """Test that all events of one write share its correlation id."""
        a, _, _ = members
        correlation_id = uuid4()
        await service.record_expense_with_excess_handling(
            CommonExpense(name="Gas", total=Decimal("300"), month=MARCH, payer_id=a.id),
            preference=PaymentPreference.DEPOSIT,
            correlation_id=correlation_id,
        )

        events = await audit_storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in events] == [
            AuditEventType.EXPENSE_RECORDED,
            AuditEventType.AUTO_DEPOSIT_APPLIED,
        ]


class TestPurchaseExcessFlow:
    """Tests for purchases paid beyond the buyer's float."""

    async def test_purchase_excess_deposited_and_reversed(self, service, storage, members):
        """Test purchase excess deposit and its reversal."""
        _, b, _ = members
        await service.record_fund_transfer(b.id, Decimal("1000"), date(2024, 3, 1))

        result = await service.record_purchase_with_excess_handling(
            ShoppingPurchase(
                buyer_id=b.id, item_name="Beef", amount=Decimal("1400"),
                purchase_date=date(2024, 3, 3),
            ),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.success is True
        assert result.auto_deposit.amount == Decimal("400")
        assert result.auto_deposit.slot == 0

        await service.reverse_purchase(result.entity_id)
        record = await storage.get_deposit_record(b.id, MARCH)
        assert record.slots[0] == Decimal("0")
        assert await storage.get_purchase(result.entity_id) is None

    async def test_purchase_within_float(self, service, storage, members):
        """Test that a purchase covered by the float deposits nothing."""
        _, b, _ = members
        await service.record_fund_transfer(b.id, Decimal("1000"), date(2024, 3, 1))

        result = await service.record_purchase_with_excess_handling(
            ShoppingPurchase(buyer_id=b.id, amount=Decimal("600"), purchase_date=date(2024, 3, 3)),
            preference=PaymentPreference.DEPOSIT,
        )

        assert result.auto_deposit is None
        floats = await service.shopper_floats(MARCH)
        assert floats[b.id].amount == Decimal("400")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Data Models Package

This package contains all Pydantic models used in the Mess Ledger system.
All ledger rows and derived results must conform to these schemas.
"""

from messledger.models.ledger import (
    DEPOSIT_SLOT_COUNT,
    ZERO,
    CarryForwardUpdate,
    CommonExpense,
    ComputedShare,
    DepositRecord,
    DepositUpdate,
    FrozenShare,
    FundTransfer,
    MealRecord,
    MealSlot,
    Member,
    MemberRole,
    MonthStatus,
    PaymentPreference,
    ShoppingPurchase,
    SlotUpdate,
    UtilityBill,
    UtilityContribution,
    month_of,
    month_range,
    next_month,
    normalize_month,
    split_share,
)
from messledger.models.settlement import (
    AttendanceCell,
    AutoDepositInfo,
    BatchItemOutcome,
    BatchResult,
    ExcessResolution,
    ManagerBalance,
    ManagerPayable,
    MealWeightUpdate,
    MemberSettlement,
    MonthlyReportData,
    OperationResult,
    SettlementResult,
    SettlementScope,
    SettlementTotals,
    ShopperFloat,
    UtilityCategorySummary,
    UtilitySummary,
    UtilityUpdate,
)
from messledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger rows
    "DEPOSIT_SLOT_COUNT",
    "ZERO",
    "CarryForwardUpdate",
    "CommonExpense",
    "ComputedShare",
    "DepositRecord",
    "DepositUpdate",
    "FrozenShare",
    "FundTransfer",
    "MealRecord",
    "MealSlot",
    "Member",
    "MemberRole",
    "MonthStatus",
    "PaymentPreference",
    "ShoppingPurchase",
    "SlotUpdate",
    "UtilityBill",
    "UtilityContribution",
    "month_of",
    "month_range",
    "next_month",
    "normalize_month",
    "split_share",
    # Derived models
    "AttendanceCell",
    "AutoDepositInfo",
    "BatchItemOutcome",
    "BatchResult",
    "ExcessResolution",
    "ManagerBalance",
    "ManagerPayable",
    "MealWeightUpdate",
    "MemberSettlement",
    "MonthlyReportData",
    "OperationResult",
    "SettlementResult",
    "SettlementScope",
    "SettlementTotals",
    "ShopperFloat",
    "UtilityCategorySummary",
    "UtilitySummary",
    "UtilityUpdate",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

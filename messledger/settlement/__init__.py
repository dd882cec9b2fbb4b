"""Settlement calculation package (pure functions over ledger rows)."""

from messledger.settlement.calculator import (
    build_monthly_report,
    collect_manager_payables,
    compute_manager_balance,
    compute_settlement,
    compute_shopper_float,
    compute_shopper_floats,
    compute_utility_summary,
    format_money,
)

__all__ = [
    "build_monthly_report",
    "collect_manager_payables",
    "compute_manager_balance",
    "compute_settlement",
    "compute_shopper_float",
    "compute_shopper_floats",
    "compute_utility_summary",
    "format_money",
]

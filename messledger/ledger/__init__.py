"""Ledger write procedures: excess handling and month close."""

from messledger.ledger.excess import ExcessPaymentResolver, resolve_excess
from messledger.ledger.locks import RowLockRegistry
from messledger.ledger.month_close import MonthCloseProcedure

__all__ = [
    "ExcessPaymentResolver",
    "MonthCloseProcedure",
    "RowLockRegistry",
    "resolve_excess",
]

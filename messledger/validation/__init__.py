"""Write precondition checks."""

from messledger.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]

"""
Ledger Error Taxonomy

Write paths raise these before any mutation happens; the service
boundary turns them into structured OperationResults.

Degenerate arithmetic (zero meal weight, full deposit slots) is NOT an
error and never raises.
"""


class LedgerError(Exception):
    """Base exception for ledger operations."""

    error_code = "ledger"


class ValidationError(LedgerError, ValueError):
    """
    Malformed or missing inputs (bad month key, unknown member, wrong role).

    Subclasses ValueError so it can be raised from pydantic validators.
    """

    error_code = "validation"


class ConflictError(LedgerError):
    """Attempted write to a month that is closed."""

    error_code = "conflict"

    def __init__(self, message: str, month=None):
        self.month = month
        super().__init__(message)


class PartialBatchFailure(LedgerError):
    """
    Some items of a batch of independent upserts failed.

    Succeeded items are NOT rolled back. The full per-item outcome list
    is available on `result`.
    """

    error_code = "partial_batch_failure"

    def __init__(self, result):
        self.result = result
        failed = [o for o in result.outcomes if not o.success]
        super().__init__(
            f"{len(failed)} of {len(result.outcomes)} batch items failed"
        )

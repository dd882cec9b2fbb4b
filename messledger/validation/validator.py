"""
Write Precondition Validation

DESIGN DECISION: Every write path checks its preconditions BEFORE any
mutation:

STRUCTURAL CHECKS (no storage needed):
- Amounts are non-negative and below the configured sanity bound
- A member list is present when a close needs one

LEDGER CHECKS (need storage):
- The target month is not closed
- Referenced members exist
- The actor closing or reopening a month is a super admin

IMPORTANT: Validation NEVER silently fixes issues.
It raises ValidationError or ConflictError and nothing is written.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence
from uuid import UUID

from messledger.config import LedgerSettings, get_settings
from messledger.errors import ConflictError, ValidationError
from messledger.models.ledger import Member, MemberRole, normalize_month
from messledger.services.storage import LedgerStorageInterface


class LedgerValidator:
    """
    Checks write preconditions against ledger storage.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger

    def check_amount(
        self,
        value: Decimal,
        field: str = "amount",
        allow_negative: bool = False,
    ) -> Decimal:
        """Reject negative (unless allowed) and absurd amounts."""
        try:
            value = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"{field} must be a number, got {value!r}")
        if not value.is_finite():
            raise ValidationError(f"{field} must be a finite number")
        if value < 0 and not allow_negative:
            raise ValidationError(f"{field} must not be negative, got {value}")
        if abs(value) > self._settings.max_amount:
            raise ValidationError(
                f"{field} {value} exceeds the maximum of {self._settings.max_amount}"
            )
        return value

    def ensure_members_present(self, members: Sequence[Member]) -> None:
        if not members:
            raise ValidationError("No members found; nothing to settle")

    async def ensure_month_open(self, month: date) -> None:
        """Raise ConflictError if the month is closed."""
        month = normalize_month(month)
        status = await self._storage.get_month_status(month)
        if status is not None and status.is_closed:
            raise ConflictError(
                f"Month {month.isoformat()} is closed; reopen it before editing",
                month=month,
            )

    async def ensure_member(self, member_id: UUID) -> Member:
        member = await self._storage.get_member(member_id)
        if member is None:
            raise ValidationError(f"Unknown member: {member_id}")
        return member

    async def ensure_super_admin(self, actor_id: UUID) -> Member:
        """Only super admins may close or reopen a month."""
        member = await self._storage.get_member(actor_id)
        if member is None:
            raise ValidationError(f"Unknown actor: {actor_id}")
        if member.role != MemberRole.SUPER_ADMIN:
            raise ValidationError(
                f"{member.name} is not a super admin and cannot close or reopen months"
            )
        return member

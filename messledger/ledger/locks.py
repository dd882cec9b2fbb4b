"""
Row Locks

Settlement-affecting writes are read-then-write sequences (read the
shopper float, then write a deposit slot; compute a balance, then write
a carry-forward). Each runs under an asyncio.Lock scoped to one
(member_id, month) deposit row.

CRITICAL: Multi-row holders acquire locks in sorted key order, and
always BEFORE entering a storage transaction, so two writers can never
wait on each other.
"""

import asyncio
from collections.abc import Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date
from uuid import UUID

from messledger.models.ledger import normalize_month


RowKey = tuple[UUID, date]


class RowLockRegistry:
    """One lock per (member_id, month), created on first use."""

    def __init__(self):
        self._locks: dict[RowKey, asyncio.Lock] = {}

    def lock_for(self, member_id: UUID, month: date) -> asyncio.Lock:
        key = (member_id, normalize_month(month))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, keys: Iterable[RowKey]):
        """Hold every lock in `keys`, acquired in sorted order."""
        ordered = sorted(
            {(member_id, normalize_month(month)) for member_id, month in keys},
            key=lambda k: (k[1], str(k[0])),
        )
        async with AsyncExitStack() as stack:
            for member_id, month in ordered:
                await stack.enter_async_context(self.lock_for(member_id, month))
            yield

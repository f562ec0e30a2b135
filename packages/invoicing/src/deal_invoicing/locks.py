"""In-process serialization of work on the same deal."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class DealLocks:
    """One :class:`asyncio.Lock` per deal id.

    A poll and a webhook that touch the same deal run one after the other;
    different deals are not blocked by each other. Locks are dropped once
    nobody holds or waits for them.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, deal_id: int) -> bool:
        lock = self._locks.get(deal_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, deal_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(deal_id, asyncio.Lock())
        self._users[deal_id] = self._users.get(deal_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[deal_id] -= 1
            if not self._users[deal_id]:
                del self._users[deal_id]
                del self._locks[deal_id]

"""Per-subscription critical sections.

Two layers guard a subscription: an in-process ``asyncio.Lock`` keyed by
subscription id (so concurrent tasks in one worker queue up instead of
fighting over the row) and ``SELECT ... FOR UPDATE`` on the subscription
row inside the transaction (so separate workers serialize too). Locks for
different subscriptions are independent.
"""

import asyncio
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class SubscriptionLocks:
    """Registry of one ``asyncio.Lock`` per subscription id.

    Locks are held weakly: once no task holds or waits on a lock it is
    dropped, so the registry does not grow with the number of tenants.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, subscription_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(subscription_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscription_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, subscription_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the exclusive section for one subscription."""
        lock = self._lock_for(subscription_id)
        async with lock:
            yield

    def is_locked(self, subscription_id: uuid.UUID) -> bool:
        lock = self._locks.get(subscription_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

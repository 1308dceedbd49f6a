"""Tests for the per-subscription lock registry."""

import asyncio
import gc
import uuid

from reconciler.billing.locks import SubscriptionLocks


class TestSubscriptionLocks:
    async def test_same_subscription_serialized(self):
        locks = SubscriptionLocks()
        sub_id = uuid.uuid4()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold(sub_id):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_different_subscriptions_independent(self):
        locks = SubscriptionLocks()
        first, second = uuid.uuid4(), uuid.uuid4()
        inside_second = asyncio.Event()

        async with locks.hold(first):
            assert locks.is_locked(first)
            assert not locks.is_locked(second)

            async def other() -> None:
                async with locks.hold(second):
                    inside_second.set()

            await asyncio.wait_for(other(), timeout=1)
        assert inside_second.is_set()

    async def test_released_locks_are_dropped(self):
        locks = SubscriptionLocks()
        for _ in range(10):
            async with locks.hold(uuid.uuid4()):
                pass
        gc.collect()
        assert len(locks) == 0

"""Tests for the recovery sweep: backoff, retry convergence, quarantine and purge."""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from factories import count_events, load_event, load_subscription
from reconciler.billing.recovery import RecoverySweeper
from reconciler.billing.timestamps import utcnow
from reconciler.models import EventOutcome, ProcessingStatus, RemoteEvent
from stripe_payloads import T0, checkout_completed, deliver, envelope, store_event, subscription_updated


def _locked():
    return OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))


async def _set(session_factory, event_id, **values) -> None:
    async with session_factory() as session:
        await session.execute(update(RemoteEvent).where(RemoteEvent.id == event_id).values(**values))
        await session.commit()


class TestBackoff:
    def test_due_after_attempts_times_unit(self, billing):
        now = utcnow()
        row = RemoteEvent(attempts=2, received_at=now - timedelta(hours=1), last_attempted_at=now - timedelta(seconds=119))
        assert not billing.sweeper.is_due(row, now)
        row.last_attempted_at = now - timedelta(seconds=120)
        assert billing.sweeper.is_due(row, now)

    def test_untouched_event_due_immediately(self, billing):
        now = utcnow()
        row = RemoteEvent(attempts=0, received_at=now, last_attempted_at=None)
        assert billing.sweeper.is_due(row, now)

    async def test_recent_failure_deferred(self, billing, session_factory):
        await deliver(billing, subscription_updated("active", T0, sub_ref="sub_none", customer="cus_none"))

        report = await billing.sweeper.sweep(now=utcnow() + timedelta(seconds=10))
        assert report.deferred == 1
        assert report.attempted == 0


class TestRetryConvergence:
    async def test_transient_failures_then_success(self, billing, session_factory, subscription, owner):
        real_apply = billing.core.apply_remote_event
        calls = 0

        async def flaky(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls <= 2:
                raise _locked()
            return await real_apply(*args, **kwargs)

        with patch.object(billing.core, "apply_remote_event", new=flaky):
            result = await deliver(billing, checkout_completed(owner.id, T0))
            assert result.processing_status == ProcessingStatus.FAILED

            first = await billing.sweeper.sweep(now=utcnow() + timedelta(hours=1))
            assert first.failed == 1

            second = await billing.sweeper.sweep(now=utcnow() + timedelta(hours=2))
            assert second.processed == 1

        row = await load_event(session_factory, result.event_id)
        assert row.processing_status == ProcessingStatus.PROCESSED
        assert row.outcome == EventOutcome.APPLIED
        assert row.attempts == 3

        sub = await load_subscription(session_factory, owner.id)
        assert sub.status == "active"
        assert sub.version == 2

    async def test_sweep_processes_in_event_time_order(self, billing, session_factory, subscription, owner):
        # Stored out of order, never dispatched
        late = await store_event(session_factory, subscription_updated("past_due", T0 + 100))
        early = await store_event(session_factory, checkout_completed(owner.id, T0))

        report = await billing.sweeper.sweep()
        assert report.processed == 2

        assert (await load_event(session_factory, early)).outcome == EventOutcome.APPLIED
        assert (await load_event(session_factory, late)).outcome == EventOutcome.APPLIED
        sub = await load_subscription(session_factory, owner.id)
        assert sub.status == "past_due"

    async def test_overlapping_sweeps_process_once(self, billing, session_factory, subscription, owner):
        event_id = await store_event(session_factory, checkout_completed(owner.id, T0))

        await asyncio.gather(billing.sweeper.sweep(), billing.sweeper.sweep())

        row = await load_event(session_factory, event_id)
        assert row.processing_status == ProcessingStatus.PROCESSED
        assert row.attempts == 1
        sub = await load_subscription(session_factory, owner.id)
        assert sub.version == 2

    async def test_batch_size_caps_a_sweep(self, billing, session_factory):
        sweeper = RecoverySweeper(session_factory, billing.dispatcher, batch_size=2)
        for i in range(3):
            await store_event(session_factory, envelope("customer.created", {"id": f"cus_{i}"}, T0 + i))

        report = await sweeper.sweep()
        assert report.attempted == 2
        report = await sweeper.sweep()
        assert report.attempted == 1


class TestQuarantine:
    async def test_permanent_failure_stops_at_budget(self, billing, session_factory, subscription, owner):
        broken = AsyncMock(side_effect=_locked())
        with patch.object(billing.core, "apply_remote_event", new=broken):
            result = await deliver(billing, checkout_completed(owner.id, T0))
            for hour in range(1, 6):
                await billing.sweeper.sweep(now=utcnow() + timedelta(hours=hour))

            assert broken.await_count == 5
            row = await load_event(session_factory, result.event_id)
            assert row.processing_status == ProcessingStatus.QUARANTINED
            assert row.attempts == 5
            assert row.last_error.startswith("exhausted_retries")

            # No further attempts once quarantined
            await billing.sweeper.sweep(now=utcnow() + timedelta(days=1))
            assert broken.await_count == 5

    async def test_rows_at_budget_quarantined_without_dispatch(self, billing, session_factory):
        event_id = await store_event(session_factory, envelope("customer.created", {"id": "cus_1"}, T0))
        await _set(session_factory, event_id, processing_status=ProcessingStatus.FAILED, attempts=5, last_error="x")

        with patch.object(billing.dispatcher, "dispatch", AsyncMock()) as dispatch:
            report = await billing.sweeper.sweep()

        dispatch.assert_not_awaited()
        assert report.quarantined == 1
        row = await load_event(session_factory, event_id)
        assert row.processing_status == ProcessingStatus.QUARANTINED
        assert "exhausted_retries" in row.last_error

    async def test_list_and_requeue(self, billing, session_factory):
        event_id = await store_event(session_factory, envelope("", {}, T0))
        await billing.dispatcher.dispatch(event_id)

        quarantined = await billing.sweeper.list_quarantined()
        assert [e.id for e in quarantined] == [event_id]

        row = await billing.sweeper.requeue_event(event_id)
        assert row.processing_status == ProcessingStatus.PENDING
        assert row.attempts == 0
        assert await billing.sweeper.list_quarantined() == []

    async def test_requeue_requires_quarantined(self, billing, session_factory):
        event_id = await store_event(session_factory, envelope("customer.created", {}, T0))
        with pytest.raises(ValueError):
            await billing.sweeper.requeue_event(event_id)

    async def test_requeue_unknown_event(self, billing):
        with pytest.raises(LookupError):
            await billing.sweeper.requeue_event(uuid.uuid4())


class TestPurge:
    async def test_old_processed_events_purged(self, billing, session_factory):
        old = await store_event(session_factory, envelope("customer.created", {}, T0))
        recent = await store_event(session_factory, envelope("customer.created", {}, T0 + 1))
        kept_failed = await store_event(session_factory, envelope("", {}, T0 + 2))
        for event_id in (old, recent, kept_failed):
            await billing.dispatcher.dispatch(event_id)
        await _set(session_factory, old, received_at=utcnow() - timedelta(days=31))
        await _set(session_factory, kept_failed, received_at=utcnow() - timedelta(days=31))

        report = await billing.sweeper.sweep()

        assert report.purged == 1
        assert await count_events(session_factory) == 2
        assert (await load_event(session_factory, kept_failed)).processing_status == ProcessingStatus.QUARANTINED

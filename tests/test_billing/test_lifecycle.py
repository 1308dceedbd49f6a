"""End-to-end subscription lifecycle: trial, dunning, recovery, gift, cancellation."""

from datetime import timedelta

from factories import audit_trail, load_event, load_subscription
from reconciler.billing.timestamps import ts_to_naive
from reconciler.models import EventOutcome
from stripe_payloads import (
    DAY,
    T0,
    checkout_completed,
    deliver,
    invoice,
    subscription_deleted,
    subscription_updated,
)


async def test_full_lifecycle(billing, session_factory, subscription, owner, admin_user):
    trial_end = T0 + 30 * DAY

    # Checkout with a trial
    await deliver(billing, checkout_completed(owner.id, T0 + 1, trial_end=trial_end))
    sub = await load_subscription(session_factory, owner.id)
    assert (sub.status, sub.plan_id, sub.version) == ("trialing", "pro", 2)
    assert sub.current_period_end == ts_to_naive(trial_end)

    # First charge fails
    await deliver(billing, invoice("invoice.payment_failed", T0 + 2, invoice_id="in_1"))
    sub = await load_subscription(session_factory, owner.id)
    assert (sub.status, sub.version) == ("past_due", 3)

    # Retry succeeds and opens a paid period
    period_end = T0 + 3 + 30 * DAY
    await deliver(
        billing, invoice("invoice.paid", T0 + 3, invoice_id="in_1", period_start=T0 + 3, period_end=period_end)
    )
    sub = await load_subscription(session_factory, owner.id)
    assert (sub.status, sub.version) == ("active", 4)
    assert sub.current_period_end == ts_to_naive(period_end)

    # Admin gifts a month
    result = await billing.admin.gift_days(owner.id, 30, "Compensation for the outage", True, admin_user.id)
    assert result.version == 5
    sub = await load_subscription(session_factory, owner.id)
    assert sub.status == "active"
    assert sub.current_period_end == ts_to_naive(period_end) + timedelta(days=30)

    # Provider cancels
    await deliver(billing, subscription_deleted(T0 + 4))
    sub = await load_subscription(session_factory, owner.id)
    assert (sub.status, sub.version) == ("canceled", 6)
    assert sub.canceled_at == ts_to_naive(T0 + 4)

    # A later update cannot reopen it
    late = await deliver(billing, subscription_updated("active", T0 + 5))
    sub = await load_subscription(session_factory, owner.id)
    assert (sub.status, sub.version) == ("canceled", 6)
    assert (await load_event(session_factory, late.event_id)).outcome == EventOutcome.REJECTED

    trail = await audit_trail(session_factory, subscription.id)
    assert sorted(e.version for e in trail) == [1, 2, 3, 4, 5, 6]
    movements = [e.mrr_movement for e in sorted(trail, key=lambda e: e.version)]
    # Trials earn nothing; past_due already counts toward MRR
    assert movements == [None, None, "new", None, None, "churn"]

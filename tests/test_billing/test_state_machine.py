"""Unit tests for the pure subscription state machine."""

from datetime import datetime, timedelta

import pytest

from reconciler.billing.events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PriceItem,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
)
from reconciler.billing.state_machine import (
    DecisionKind,
    SubscriptionState,
    admin_transition,
    classify_mrr_movement,
    revenue_of,
    transition,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _state(status: str = "active", plan: str = "pro", **kwargs) -> SubscriptionState:
    kwargs.setdefault("external_subscription_ref", "sub_1")
    return SubscriptionState(status=status, plan_id=plan, **kwargs)


def _updated(status: str, at: datetime = NOW, items: tuple[PriceItem, ...] = (), **kwargs) -> SubscriptionUpdated:
    defaults = dict(
        external_event_id="evt_upd",
        occurred_at=at,
        subscription_ref="sub_1",
        customer_ref="cus_1",
        status=status,
        period_start=None,
        period_end=None,
        trial_end=None,
        cancel_at_period_end=False,
        pause_until=None,
        items=items,
    )
    defaults.update(kwargs)
    return SubscriptionUpdated(**defaults)


def _checkout(at: datetime = NOW, sub_ref: str | None = "sub_1", trial_end: datetime | None = None, plan="pro"):
    return CheckoutCompleted(
        external_event_id="evt_co",
        occurred_at=at,
        customer_ref="cus_1",
        subscription_ref=sub_ref,
        owner_id=None,
        plan_slug=plan,
        billing_cycle="monthly",
        trial_end=trial_end,
    )


def _invoice(cls, at: datetime = NOW, **kwargs):
    defaults = dict(
        external_event_id="evt_inv",
        occurred_at=at,
        invoice_ref="in_1",
        subscription_ref="sub_1",
        customer_ref="cus_1",
        amount_cents=6900,
        currency="eur",
        period_start=None,
        period_end=None,
        invoice_pdf_url=None,
    )
    defaults.update(kwargs)
    return cls(**defaults)


class TestStaleness:
    """Last-event-time-wins."""

    def test_older_event_is_stale(self):
        state = _state(last_event_timestamp=NOW)
        decision = transition(state, _updated("past_due", at=NOW - timedelta(seconds=1)))
        assert decision.kind == DecisionKind.STALE
        assert not decision.applies

    def test_equal_timestamp_is_applied(self):
        state = _state(last_event_timestamp=NOW)
        decision = transition(state, _updated("past_due", at=NOW))
        assert decision.applies
        assert decision.changes["status"] == "past_due"

    def test_first_event_is_never_stale(self):
        decision = transition(_state("incomplete", last_event_timestamp=None), _checkout())
        assert decision.applies


class TestTerminalGuard:
    """Canceled is absorbing for everything except a new checkout."""

    def test_update_after_cancel_rejected(self):
        decision = transition(_state("canceled"), _updated("active"))
        assert decision.kind == DecisionKind.TERMINAL

    def test_invoice_after_cancel_rejected(self):
        decision = transition(_state("canceled"), _invoice(InvoicePaid))
        assert decision.kind == DecisionKind.TERMINAL

    def test_checkout_with_same_subscription_rejected(self):
        decision = transition(_state("canceled"), _checkout(sub_ref="sub_1"))
        assert decision.kind == DecisionKind.TERMINAL

    def test_checkout_with_new_subscription_resubscribes(self):
        decision = transition(_state("canceled"), _checkout(sub_ref="sub_2"))
        assert decision.applies
        assert decision.event_type == "resubscribed"
        assert decision.changes["status"] == "active"
        assert decision.changes["external_subscription_ref"] == "sub_2"
        assert decision.changes["canceled_at"] is None


class TestCheckout:
    def test_trial_when_trial_end_in_future(self):
        trial_end = NOW + timedelta(days=30)
        decision = transition(_state("incomplete", external_subscription_ref=None), _checkout(trial_end=trial_end))
        assert decision.event_type == "trial_started"
        assert decision.changes["status"] == "trialing"
        assert decision.changes["trial_end"] == trial_end
        assert decision.changes["current_period_end"] == trial_end

    def test_active_without_trial(self):
        decision = transition(_state("incomplete", external_subscription_ref=None), _checkout())
        assert decision.event_type == "activated"
        assert decision.changes["status"] == "active"

    def test_past_trial_end_means_active(self):
        decision = transition(
            _state("incomplete", external_subscription_ref=None),
            _checkout(trial_end=NOW - timedelta(days=1)),
        )
        assert decision.changes["status"] == "active"
        assert decision.changes["trial_end"] is None

    def test_status_kept_when_already_live(self):
        decision = transition(_state("past_due"), _checkout())
        assert decision.event_type == "checkout_completed"
        assert "status" not in decision.changes

    def test_unknown_plan_is_invalid(self):
        decision = transition(_state("incomplete"), _checkout(plan="platinum"))
        assert decision.kind == DecisionKind.INVALID
        assert decision.error is not None
        assert not decision.error.retryable

    def test_one_time_payment_ignored(self):
        decision = transition(_state("incomplete"), _checkout(sub_ref=None))
        assert decision.kind == DecisionKind.IGNORE


class TestSubscriptionUpdated:
    @pytest.mark.parametrize(
        ("provider_status", "expected"),
        [
            ("active", "active"),
            ("trialing", "trialing"),
            ("past_due", "past_due"),
            ("unpaid", "past_due"),
            ("paused", "paused"),
            ("canceled", "canceled"),
            ("incomplete_expired", "canceled"),
        ],
    )
    def test_status_mapping(self, provider_status, expected):
        decision = transition(_state("trialing"), _updated(provider_status))
        assert decision.changes["status"] == expected

    def test_unknown_status_is_invalid(self):
        decision = transition(_state(), _updated("exploded"))
        assert decision.kind == DecisionKind.INVALID

    def test_plan_change_from_items(self):
        items = (PriceItem("price_x", "enterprise_s", "month"),)
        decision = transition(_state(), _updated("active", items=items))
        assert decision.event_type == "plan_changed"
        assert decision.changes["plan_id"] == "enterprise_s"
        assert decision.changes["billing_cycle"] == "monthly"

    def test_yearly_interval(self):
        items = (PriceItem("price_y", "pro", "year"),)
        decision = transition(_state(), _updated("active", items=items))
        assert decision.changes["billing_cycle"] == "yearly"

    def test_unmatched_prices_are_invalid(self):
        items = (PriceItem("price_mystery", None, "month"),)
        decision = transition(_state(), _updated("active", items=items))
        assert decision.kind == DecisionKind.INVALID
        assert "price_mystery" in decision.message

    def test_addons_resolved(self):
        items = (
            PriceItem("price_p", "pro", "month"),
            PriceItem("price_a", "export_comptable", "month"),
            PriceItem("price_b", "pack_relances", "month"),
        )
        decision = transition(_state(), _updated("active", items=items))
        assert decision.addons == ("export_comptable", "pack_relances")

    def test_no_items_leaves_addons_alone(self):
        decision = transition(_state(), _updated("active"))
        assert decision.addons is None

    def test_cancel_drops_addons(self):
        decision = transition(_state(), _updated("canceled"))
        assert decision.addons == ()
        assert decision.changes["canceled_at"] == NOW

    def test_resume_from_pause(self):
        decision = transition(_state("paused"), _updated("active"))
        assert decision.event_type == "resumed"


class TestInvoices:
    def test_paid_clears_past_due(self):
        decision = transition(_state("past_due"), _invoice(InvoicePaid))
        assert decision.event_type == "payment_recovered"
        assert decision.changes["status"] == "active"

    def test_paid_keeps_trialing(self):
        decision = transition(_state("trialing"), _invoice(InvoicePaid))
        assert "status" not in decision.changes

    def test_paid_updates_period(self):
        start, end = NOW, NOW + timedelta(days=30)
        decision = transition(_state(), _invoice(InvoicePaid, period_start=start, period_end=end))
        assert decision.changes["current_period_start"] == start
        assert decision.changes["current_period_end"] == end

    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_failure_moves_to_past_due(self, status):
        decision = transition(_state(status), _invoice(InvoicePaymentFailed))
        assert decision.changes["status"] == "past_due"

    def test_failure_while_paused_keeps_status(self):
        decision = transition(_state("paused"), _invoice(InvoicePaymentFailed))
        assert decision.applies
        assert "status" not in decision.changes


class TestDeletedAndUnknown:
    def test_deleted_cancels(self):
        event = SubscriptionDeleted("evt_del", NOW, "sub_1", "cus_1", canceled_at=None)
        decision = transition(_state(), event)
        assert decision.changes["status"] == "canceled"
        assert decision.changes["canceled_at"] == NOW

    def test_unknown_event_ignored(self):
        event = UnknownEvent("evt_x", NOW, "customer.created", {})
        assert transition(_state(), event).kind == DecisionKind.IGNORE


class TestAdminTransition:
    def test_gift_days_extends_period_end(self):
        state = _state(current_period_end=NOW)
        decision = admin_transition(state, "gift_days", {"days": 30}, NOW)
        assert decision.changes == {"current_period_end": NOW + timedelta(days=30)}

    def test_gift_days_during_trial_moves_trial_end(self):
        trial_end = NOW + timedelta(days=5)
        state = _state("trialing", current_period_end=trial_end, trial_end=trial_end)
        decision = admin_transition(state, "gift_days", {"days": 10}, NOW)
        assert decision.changes["trial_end"] == trial_end + timedelta(days=10)

    def test_gift_days_without_period_starts_now(self):
        decision = admin_transition(_state("incomplete"), "gift_days", {"days": 7}, NOW)
        assert decision.changes["current_period_end"] == NOW + timedelta(days=7)

    def test_gift_days_on_canceled_rejected(self):
        decision = admin_transition(_state("canceled"), "gift_days", {"days": 7}, NOW)
        assert decision.kind == DecisionKind.REJECTED

    def test_override_plan_never_touches_status(self):
        decision = admin_transition(_state("past_due"), "override_plan", {"plan": "starter"}, NOW)
        assert decision.changes == {"plan_id": "starter"}

    def test_override_to_same_plan_rejected(self):
        decision = admin_transition(_state(plan="pro"), "override_plan", {"plan": "pro"}, NOW)
        assert decision.kind == DecisionKind.REJECTED

    def test_suspend_and_unsuspend(self):
        assert admin_transition(_state(), "suspend", {}, NOW).changes == {"suspended": True}
        assert admin_transition(_state(suspended=True), "suspend", {}, NOW).kind == DecisionKind.REJECTED
        assert admin_transition(_state(suspended=True), "unsuspend", {}, NOW).changes == {"suspended": False}
        assert admin_transition(_state(), "unsuspend", {}, NOW).kind == DecisionKind.REJECTED

    def test_accept_price_change_once(self):
        assert admin_transition(_state(), "accept_price_change", {}, NOW).applies
        repeat = admin_transition(_state(price_change_accepted=True), "accept_price_change", {}, NOW)
        assert repeat.kind == DecisionKind.REJECTED

    def test_unknown_action_raises(self):
        with pytest.raises(ValueError):
            admin_transition(_state(), "delete_everything", {}, NOW)


class TestMrrMovements:
    def test_revenue_only_for_paying_statuses(self):
        assert revenue_of("active", "pro") == 6900
        assert revenue_of("past_due", "pro") == 6900
        assert revenue_of("trialing", "pro") == 0
        assert revenue_of("canceled", "pro") == 0

    def test_yearly_is_spread_over_months(self):
        assert revenue_of("active", "pro", "yearly") == round(66200 / 12)

    def test_quoted_plan_contributes_nothing(self):
        assert revenue_of("active", "enterprise") == 0

    @pytest.mark.parametrize(
        ("from_status", "before", "after", "expected"),
        [
            ("trialing", 0, 6900, "new"),
            ("incomplete", 0, 900, "new"),
            ("canceled", 0, 6900, "reactivation"),
            ("paused", 0, 6900, "reactivation"),
            ("active", 6900, 0, "churn"),
            ("active", 900, 6900, "expansion"),
            ("active", 6900, 900, "contraction"),
            ("active", 6900, 6900, None),
        ],
    )
    def test_classification(self, from_status, before, after, expected):
        assert classify_mrr_movement(from_status, before, after) == expected

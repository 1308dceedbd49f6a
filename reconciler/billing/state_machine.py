"""Subscription state machine.

Pure functions only: given a snapshot of the current subscription and an
incoming event (or admin action), compute what should change. Persisting
the result is :mod:`reconciler.billing.reconciliation`'s job.

States::

    incomplete -> trialing -> active <-> past_due -> canceled
    active/trialing -> paused -> active
    any -> canceled (absorbing)

Remote events obey last-event-time-wins: an event older than the last one
applied is recorded but changes nothing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from reconciler.billing.errors import BillingError
from reconciler.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PriceItem,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
)
from reconciler.billing.plans import get_addon_by_price, get_plan, get_plan_by_price, monthly_value_cents
from reconciler.models.subscription import SubscriptionStatus as S

# Stripe statuses outside our vocabulary collapse onto the nearest state
PROVIDER_STATUS_MAP: dict[str, str] = {
    "incomplete": S.INCOMPLETE,
    "trialing": S.TRIALING,
    "active": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "unpaid": S.PAST_DUE,
    "paused": S.PAUSED,
    "canceled": S.CANCELED,
    "incomplete_expired": S.CANCELED,
}

# Statuses whose plan counts toward MRR
REVENUE_STATUSES = frozenset({S.ACTIVE, S.PAST_DUE})


class DecisionKind(str, Enum):
    APPLY = "apply"
    STALE = "stale"
    TERMINAL = "terminal"
    IGNORE = "ignore"
    INVALID = "invalid"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SubscriptionState:
    """The fields of a subscription the state machine reads."""

    status: str
    plan_id: str
    billing_cycle: str = "monthly"
    last_event_timestamp: datetime | None = None
    external_subscription_ref: str | None = None
    external_customer_ref: str | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    suspended: bool = False
    price_change_accepted: bool = False

    @classmethod
    def from_model(cls, subscription: Any) -> "SubscriptionState":
        return cls(
            status=subscription.status,
            plan_id=subscription.plan_id,
            billing_cycle=subscription.billing_cycle,
            last_event_timestamp=subscription.last_event_timestamp,
            external_subscription_ref=subscription.external_subscription_ref,
            external_customer_ref=subscription.external_customer_ref,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            suspended=subscription.suspended,
            price_change_accepted=subscription.price_change_accepted,
        )


@dataclass(frozen=True)
class Decision:
    """What to do with a subscription in response to one event or action."""

    kind: DecisionKind
    event_type: str = ""
    message: str = ""
    changes: dict[str, Any] = field(default_factory=dict)
    # Add-on slugs the provider says are attached; None leaves add-ons alone
    addons: tuple[str, ...] | None = None
    error: BillingError | None = None

    @property
    def applies(self) -> bool:
        return self.kind == DecisionKind.APPLY


def _stale(state: SubscriptionState, event: BillingEvent) -> Decision:
    return Decision(
        kind=DecisionKind.STALE,
        message=(
            f"Event {event.external_event_id} at {event.occurred_at.isoformat()} is older than "
            f"last applied event at {state.last_event_timestamp.isoformat()}"  # type: ignore[union-attr]
        ),
    )


def _invalid(message: str) -> Decision:
    return Decision(kind=DecisionKind.INVALID, message=message, error=BillingError.business_rule(message))


def _resolve_items(items: tuple[PriceItem, ...]) -> tuple[str | None, str | None, tuple[str, ...], list[PriceItem]]:
    """Split provider items into (plan slug, billing cycle, add-on slugs, unmatched)."""
    plan_slug = None
    cycle = None
    addons: list[str] = []
    unmatched: list[PriceItem] = []
    for item in items:
        plan = get_plan_by_price(item.price_id, item.lookup_key)
        if plan is not None and plan_slug is None:
            plan_slug = plan.slug
            cycle = "yearly" if item.interval == "year" else "monthly"
            continue
        addon = get_addon_by_price(item.price_id, item.lookup_key)
        if addon is not None:
            addons.append(addon.slug)
            continue
        unmatched.append(item)
    return plan_slug, cycle, tuple(sorted(set(addons))), unmatched


def _checkout(state: SubscriptionState, event: CheckoutCompleted) -> Decision:
    if not event.subscription_ref:
        return Decision(kind=DecisionKind.IGNORE, message="Checkout has no subscription (one-time payment)")

    plan_slug = event.plan_slug or state.plan_id
    if get_plan(plan_slug) is None:
        return _invalid(f"Unknown plan {plan_slug!r} in checkout {event.external_event_id}")

    changes: dict[str, Any] = {
        "external_subscription_ref": event.subscription_ref,
        "plan_id": plan_slug,
        "billing_cycle": event.billing_cycle if event.billing_cycle in ("monthly", "yearly") else "monthly",
    }
    if event.customer_ref:
        changes["external_customer_ref"] = event.customer_ref

    resubscribe = state.status == S.CANCELED
    if state.status == S.INCOMPLETE or resubscribe:
        trialing = event.trial_end is not None and event.trial_end > event.occurred_at
        changes["status"] = S.TRIALING if trialing else S.ACTIVE
        changes["trial_end"] = event.trial_end if trialing else None
        changes["current_period_start"] = event.occurred_at
        changes["cancel_at_period_end"] = False
        changes["canceled_at"] = None
        changes["pause_until"] = None
        if trialing:
            changes["current_period_end"] = event.trial_end
        if resubscribe:
            event_type = "resubscribed"
        else:
            event_type = "trial_started" if trialing else "activated"
        message = f"Checkout completed on plan {plan_slug}, subscription {changes['status']}"
    else:
        event_type = "checkout_completed"
        message = f"Checkout completed on plan {plan_slug} (status {state.status} kept)"

    return Decision(kind=DecisionKind.APPLY, event_type=event_type, message=message, changes=changes)


def _subscription_updated(state: SubscriptionState, event: SubscriptionUpdated) -> Decision:
    status = PROVIDER_STATUS_MAP.get(event.status)
    if status is None:
        return _invalid(f"Unknown provider status {event.status!r} for {event.subscription_ref}")

    plan_slug, cycle, addons, unmatched = _resolve_items(event.items)
    if event.items and plan_slug is None:
        prices = ", ".join(str(i.price_id or i.lookup_key) for i in unmatched) or "none"
        return _invalid(f"No known plan among prices [{prices}] for {event.subscription_ref}")

    changes: dict[str, Any] = {
        "status": status,
        "cancel_at_period_end": event.cancel_at_period_end,
        "pause_until": event.pause_until if status == S.PAUSED else None,
        "trial_end": event.trial_end,
    }
    if plan_slug is not None:
        changes["plan_id"] = plan_slug
        changes["billing_cycle"] = cycle
    if event.period_start is not None:
        changes["current_period_start"] = event.period_start
    if event.period_end is not None:
        changes["current_period_end"] = event.period_end
    if event.customer_ref:
        changes["external_customer_ref"] = event.customer_ref
    if status == S.CANCELED:
        changes["canceled_at"] = event.occurred_at
        addons = ()

    if status != state.status:
        event_type = {
            S.CANCELED: "canceled",
            S.PAUSED: "paused",
            S.PAST_DUE: "payment_failed",
        }.get(status, "resumed" if state.status == S.PAUSED else "status_changed")
    elif plan_slug is not None and plan_slug != state.plan_id:
        event_type = "plan_changed"
    else:
        event_type = "updated"

    message = f"Provider reported status {event.status}"
    if plan_slug is not None and plan_slug != state.plan_id:
        message += f", plan {state.plan_id} -> {plan_slug}"
    return Decision(
        kind=DecisionKind.APPLY,
        event_type=event_type,
        message=message,
        changes=changes,
        addons=addons if event.items or status == S.CANCELED else None,
    )


def _subscription_deleted(state: SubscriptionState, event: SubscriptionDeleted) -> Decision:
    return Decision(
        kind=DecisionKind.APPLY,
        event_type="canceled",
        message=f"Provider deleted subscription {event.subscription_ref}",
        changes={
            "status": S.CANCELED,
            "canceled_at": event.canceled_at or event.occurred_at,
            "cancel_at_period_end": False,
            "pause_until": None,
        },
        addons=(),
    )


def _invoice_paid(state: SubscriptionState, event: InvoicePaid) -> Decision:
    changes: dict[str, Any] = {}
    if event.period_start is not None and event.period_end is not None:
        changes["current_period_start"] = event.period_start
        changes["current_period_end"] = event.period_end
    if state.status == S.PAST_DUE:
        changes["status"] = S.ACTIVE
        return Decision(
            kind=DecisionKind.APPLY,
            event_type="payment_recovered",
            message=f"Invoice {event.invoice_ref} paid, past due cleared",
            changes=changes,
        )
    return Decision(
        kind=DecisionKind.APPLY,
        event_type="invoice_paid",
        message=f"Invoice {event.invoice_ref} paid",
        changes=changes,
    )


def _invoice_payment_failed(state: SubscriptionState, event: InvoicePaymentFailed) -> Decision:
    changes: dict[str, Any] = {}
    if state.status in (S.ACTIVE, S.TRIALING):
        changes["status"] = S.PAST_DUE
    return Decision(
        kind=DecisionKind.APPLY,
        event_type="payment_failed",
        message=f"Payment failed for invoice {event.invoice_ref}",
        changes=changes,
    )


def transition(state: SubscriptionState, event: BillingEvent) -> Decision:
    """Compute the next state for a remote event.

    Order of checks: staleness, then the terminal guard (a canceled
    subscription only comes back through a checkout with a *new* provider
    subscription), then the per-type mapping.
    """
    if isinstance(event, UnknownEvent):
        return Decision(kind=DecisionKind.IGNORE, message=f"No handler for event type {event.type}")

    if state.last_event_timestamp is not None and event.occurred_at < state.last_event_timestamp:
        return _stale(state, event)

    if state.status == S.CANCELED:
        reopening = (
            isinstance(event, CheckoutCompleted)
            and event.subscription_ref is not None
            and event.subscription_ref != state.external_subscription_ref
        )
        if not reopening:
            return Decision(
                kind=DecisionKind.TERMINAL,
                message=f"Subscription is canceled; {type(event).__name__} {event.external_event_id} cannot reopen it",
            )

    if isinstance(event, CheckoutCompleted):
        return _checkout(state, event)
    if isinstance(event, SubscriptionUpdated):
        return _subscription_updated(state, event)
    if isinstance(event, SubscriptionDeleted):
        return _subscription_deleted(state, event)
    if isinstance(event, InvoicePaid):
        return _invoice_paid(state, event)
    if isinstance(event, InvoicePaymentFailed):
        return _invoice_payment_failed(state, event)
    raise TypeError(f"Unhandled event variant {type(event).__name__}")


# ---------------------------------------------------------------------------
# Admin actions
# ---------------------------------------------------------------------------

GIFT_DAYS = "gift_days"
OVERRIDE_PLAN = "override_plan"
SUSPEND = "suspend"
UNSUSPEND = "unsuspend"
ACCEPT_PRICE_CHANGE = "accept_price_change"

ADMIN_ACTION_TYPES = frozenset({GIFT_DAYS, OVERRIDE_PLAN, SUSPEND, UNSUSPEND, ACCEPT_PRICE_CHANGE})


def _rejected(message: str) -> Decision:
    return Decision(kind=DecisionKind.REJECTED, message=message)


def admin_transition(state: SubscriptionState, action_type: str, params: dict[str, Any], now: datetime) -> Decision:
    """Compute the change for an admin action.

    Admin actions skip the staleness rule; the caller guards them with the
    subscription version instead. ``status`` is never touched here.
    """
    if action_type == GIFT_DAYS:
        if state.status == S.CANCELED:
            return _rejected("Cannot gift days to a canceled subscription")
        days = int(params["days"])
        base = state.current_period_end or state.trial_end or now
        new_end = base + timedelta(days=days)
        changes: dict[str, Any] = {"current_period_end": new_end}
        if state.status == S.TRIALING:
            changes["trial_end"] = new_end
        return Decision(
            kind=DecisionKind.APPLY,
            event_type="admin_gift_days",
            message=f"{days} day(s) gifted, period now ends {new_end.date().isoformat()}",
            changes=changes,
        )

    if action_type == OVERRIDE_PLAN:
        plan_slug = params["plan"]
        if state.status == S.CANCELED:
            return _rejected("Cannot change the plan of a canceled subscription")
        if plan_slug == state.plan_id:
            return _rejected(f"Subscription is already on plan {plan_slug}")
        return Decision(
            kind=DecisionKind.APPLY,
            event_type="admin_plan_override",
            message=f"Plan overridden {state.plan_id} -> {plan_slug}",
            changes={"plan_id": plan_slug},
        )

    if action_type == SUSPEND:
        if state.suspended:
            return _rejected("Account is already suspended")
        return Decision(
            kind=DecisionKind.APPLY,
            event_type="admin_suspended",
            message="Account suspended",
            changes={"suspended": True},
        )

    if action_type == UNSUSPEND:
        if not state.suspended:
            return _rejected("Account is not suspended")
        return Decision(
            kind=DecisionKind.APPLY,
            event_type="admin_unsuspended",
            message=f"Account unsuspended, provider status {state.status} restored",
            changes={"suspended": False},
        )

    if action_type == ACCEPT_PRICE_CHANGE:
        if state.price_change_accepted:
            return _rejected("Price change already accepted")
        return Decision(
            kind=DecisionKind.APPLY,
            event_type="price_change_accepted",
            message="Price change accepted",
            changes={"price_change_accepted": True},
        )

    raise ValueError(f"Unknown admin action type {action_type!r}")


# ---------------------------------------------------------------------------
# MRR movements
# ---------------------------------------------------------------------------


def revenue_of(status: str, plan_id: str | None, billing_cycle: str = "monthly") -> int:
    """Monthly revenue (cents) a subscription in this state contributes."""
    if status not in REVENUE_STATUSES:
        return 0
    return monthly_value_cents(plan_id, billing_cycle)


def classify_mrr_movement(from_status: str, before_cents: int, after_cents: int) -> str | None:
    """Name the MRR movement between two revenue figures."""
    if before_cents == after_cents:
        return None
    if before_cents == 0:
        return "new" if from_status in (S.INCOMPLETE, S.TRIALING) else "reactivation"
    if after_cents == 0:
        return "churn"
    return "expansion" if after_cents > before_cents else "contraction"

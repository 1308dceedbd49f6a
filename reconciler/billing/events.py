"""Typed views of Stripe webhook events.

Each handled event type gets its own frozen dataclass carrying only the
fields its handler needs. Anything else becomes :class:`UnknownEvent`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from reconciler.billing.timestamps import ts_to_naive

CHECKOUT_COMPLETED = "checkout.completed"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Stripe's type names -> the names used internally
PROVIDER_TYPE_ALIASES: dict[str, str] = {
    "checkout.session.completed": CHECKOUT_COMPLETED,
    "customer.subscription.updated": SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SUBSCRIPTION_DELETED,
}


def normalize_event_type(event_type: str) -> str:
    return PROVIDER_TYPE_ALIASES.get(event_type, event_type)


@dataclass(frozen=True)
class PriceItem:
    """One line of a Stripe subscription's ``items``."""

    price_id: str | None
    lookup_key: str | None
    interval: str | None = None


@dataclass(frozen=True)
class CheckoutCompleted:
    external_event_id: str
    occurred_at: datetime
    customer_ref: str | None
    subscription_ref: str | None
    owner_id: str | None
    plan_slug: str | None
    billing_cycle: str
    trial_end: datetime | None


@dataclass(frozen=True)
class SubscriptionUpdated:
    external_event_id: str
    occurred_at: datetime
    subscription_ref: str
    customer_ref: str | None
    status: str
    period_start: datetime | None
    period_end: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    pause_until: datetime | None
    items: tuple[PriceItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SubscriptionDeleted:
    external_event_id: str
    occurred_at: datetime
    subscription_ref: str
    customer_ref: str | None
    canceled_at: datetime | None


@dataclass(frozen=True)
class InvoiceEvent:
    external_event_id: str
    occurred_at: datetime
    invoice_ref: str
    subscription_ref: str | None
    customer_ref: str | None
    amount_cents: int
    currency: str
    period_start: datetime | None
    period_end: datetime | None
    invoice_pdf_url: str | None


@dataclass(frozen=True)
class InvoicePaid(InvoiceEvent):
    pass


@dataclass(frozen=True)
class InvoicePaymentFailed(InvoiceEvent):
    pass


@dataclass(frozen=True)
class UnknownEvent:
    external_event_id: str
    occurred_at: datetime
    type: str
    raw: dict[str, Any]


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    UnknownEvent,
]


def _ref(value: Any) -> str | None:
    """Stripe sends either an id string or an expanded object with ``id``."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _ts(payload: dict[str, Any], key: str) -> datetime | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, (int, float)):
        raise ValueError(f"Field {key!r} must be a Unix timestamp, got {value!r}")
    return ts_to_naive(value)


def _items(payload: dict[str, Any]) -> list[dict[str, Any]]:
    items = payload.get("items") or {}
    if isinstance(items, dict):
        return list(items.get("data") or [])
    return list(items)


def _period(payload: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Current period bounds.

    Stripe API 2025-08-27 (basil) moved ``current_period_start/end`` from the
    subscription onto its items; older versions keep them at the top level.
    """
    items = _items(payload)
    if items and items[0].get("current_period_start") is not None:
        return _ts(items[0], "current_period_start"), _ts(items[0], "current_period_end")
    return _ts(payload, "current_period_start"), _ts(payload, "current_period_end")


def _price_items(payload: dict[str, Any]) -> tuple[PriceItem, ...]:
    result = []
    for item in _items(payload):
        price = item.get("price") or {}
        recurring = price.get("recurring") or {}
        result.append(
            PriceItem(
                price_id=price.get("id"),
                lookup_key=price.get("lookup_key"),
                interval=recurring.get("interval"),
            )
        )
    return tuple(result)


def _invoice_subscription_ref(payload: dict[str, Any]) -> str | None:
    """Invoice -> subscription id, before and after the basil API change."""
    ref = _ref(payload.get("subscription"))
    if ref:
        return ref
    parent = payload.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref(details.get("subscription"))


def _invoice_kwargs(external_event_id: str, occurred_at: datetime, payload: dict[str, Any], amount_key: str) -> dict:
    invoice_ref = payload.get("id")
    if not invoice_ref:
        raise ValueError("Invoice payload has no id")
    return {
        "external_event_id": external_event_id,
        "occurred_at": occurred_at,
        "invoice_ref": invoice_ref,
        "subscription_ref": _invoice_subscription_ref(payload),
        "customer_ref": _ref(payload.get("customer")),
        "amount_cents": int(payload.get(amount_key) or 0),
        "currency": (payload.get("currency") or "eur").lower(),
        "period_start": _ts(payload, "period_start"),
        "period_end": _ts(payload, "period_end"),
        "invoice_pdf_url": payload.get("invoice_pdf"),
    }


def parse_event(
    external_event_id: str,
    event_type: str,
    payload: dict[str, Any],
    occurred_at: datetime,
) -> BillingEvent:
    """Build the typed event for a stored envelope.

    Raises:
        ValueError: If a handled event type is missing fields its handler needs.
    """
    kind = normalize_event_type(event_type)

    if kind == CHECKOUT_COMPLETED:
        metadata = payload.get("metadata") or {}
        trial_end = metadata.get("trial_end")
        return CheckoutCompleted(
            external_event_id=external_event_id,
            occurred_at=occurred_at,
            customer_ref=_ref(payload.get("customer")),
            subscription_ref=_ref(payload.get("subscription")),
            owner_id=metadata.get("owner_id"),
            plan_slug=metadata.get("plan"),
            billing_cycle=metadata.get("billing_cycle") or "monthly",
            trial_end=ts_to_naive(int(trial_end)) if trial_end else None,
        )

    if kind == SUBSCRIPTION_UPDATED:
        subscription_ref = payload.get("id")
        status = payload.get("status")
        if not subscription_ref or not status:
            raise ValueError("Subscription payload needs both id and status")
        period_start, period_end = _period(payload)
        pause = payload.get("pause_collection") or {}
        return SubscriptionUpdated(
            external_event_id=external_event_id,
            occurred_at=occurred_at,
            subscription_ref=subscription_ref,
            customer_ref=_ref(payload.get("customer")),
            status=status,
            period_start=period_start,
            period_end=period_end,
            trial_end=_ts(payload, "trial_end"),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
            pause_until=_ts(pause, "resumes_at"),
            items=_price_items(payload),
        )

    if kind == SUBSCRIPTION_DELETED:
        subscription_ref = payload.get("id")
        if not subscription_ref:
            raise ValueError("Subscription payload has no id")
        return SubscriptionDeleted(
            external_event_id=external_event_id,
            occurred_at=occurred_at,
            subscription_ref=subscription_ref,
            customer_ref=_ref(payload.get("customer")),
            canceled_at=_ts(payload, "canceled_at") or _ts(payload, "ended_at"),
        )

    if kind == INVOICE_PAID:
        return InvoicePaid(**_invoice_kwargs(external_event_id, occurred_at, payload, "amount_paid"))

    if kind == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(**_invoice_kwargs(external_event_id, occurred_at, payload, "amount_due"))

    return UnknownEvent(
        external_event_id=external_event_id,
        occurred_at=occurred_at,
        type=event_type,
        raw=payload,
    )

"""Subscription read interface — what the rest of the application may ask."""

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.billing import analytics
from reconciler.billing.plans import DEFAULT_PLAN, LIMITED_RESOURCES, PLANS, Plan, get_plan
from reconciler.billing.reconciliation import ReconciliationCore
from reconciler.models import Subscription, SubscriptionEvent, SubscriptionInvoice, SubscriptionStatus

logger = logging.getLogger(__name__)

FEATURE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
# past_due keeps the paid limits during the dunning grace period
PAID_ACCESS_STATUSES = FEATURE_STATUSES | {SubscriptionStatus.PAST_DUE}


async def get_current_subscription(db: AsyncSession, owner_id: uuid.UUID) -> Subscription | None:
    """Return the owner's reconciled subscription, or None if never provisioned."""
    result = await db.execute(select(Subscription).where(Subscription.owner_id == owner_id))
    return result.scalar_one_or_none()


async def list_events(db: AsyncSession, owner_id: uuid.UUID, limit: int = 50) -> list[SubscriptionEvent]:
    """Most recent subscription history entries for an owner, newest first."""
    result = await db.execute(
        select(SubscriptionEvent)
        .where(SubscriptionEvent.owner_id == owner_id)
        .order_by(SubscriptionEvent.created_at.desc(), SubscriptionEvent.version.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_invoices(db: AsyncSession, owner_id: uuid.UUID, limit: int = 24) -> list[SubscriptionInvoice]:
    result = await db.execute(
        select(SubscriptionInvoice)
        .join(Subscription, Subscription.id == SubscriptionInvoice.subscription_id)
        .where(Subscription.owner_id == owner_id)
        .order_by(SubscriptionInvoice.event_timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def load_snapshots(db: AsyncSession) -> list[analytics.SubscriptionSnapshot]:
    result = await db.execute(select(Subscription))
    return [analytics.SubscriptionSnapshot.from_model(sub) for sub in result.scalars().all()]


async def get_stats(db: AsyncSession) -> dict:
    return analytics.compute_stats(await load_snapshots(db))


async def get_plan_distribution(db: AsyncSession) -> list[dict]:
    return analytics.plan_distribution(await load_snapshots(db))


async def get_or_create_subscription(core: ReconciliationCore, owner_id: uuid.UUID) -> Subscription:
    """Get the owner's subscription, provisioning the ``incomplete`` free one on first use."""
    return await core.provision(owner_id)


async def list_subscriptions(
    db: AsyncSession,
    status: str | None = None,
    plan: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Subscription], int]:
    """Admin listing, newest first, with the total matching the filters."""
    query = select(Subscription)
    if status:
        query = query.where(Subscription.status == status)
    if plan:
        query = query.where(Subscription.plan_id == plan)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(query.order_by(Subscription.created_at.desc()).limit(limit).offset(offset))
    return list(result.scalars().all()), total


# --- Entitlements ---


def effective_plan(subscription: Subscription) -> Plan:
    """Plan whose limits apply now; lapsed or unpaid subscriptions fall back to the free tier."""
    if subscription.status in PAID_ACCESS_STATUSES:
        plan = get_plan(subscription.plan_id)
        if plan is not None:
            return plan
    return PLANS[DEFAULT_PLAN]


def has_feature(subscription: Subscription, feature: str) -> bool:
    """Features need a live subscription: active or trialing, and not suspended."""
    if subscription.suspended or subscription.status not in FEATURE_STATUSES:
        return False
    return feature in effective_plan(subscription).features


def within_limit(subscription: Subscription, resource: str, used: int) -> bool:
    """True while one more ``resource`` fits in the plan; suspended accounts get nothing."""
    if subscription.suspended:
        return False
    limit = effective_plan(subscription).limit_for(resource)
    return limit is None or used < limit


def usage_summary(subscription: Subscription, used: Mapping[str, int]) -> dict[str, dict[str, Any]]:
    """Per-resource usage against the plan caps (``limit`` None = unlimited)."""
    plan = effective_plan(subscription)
    summary = {}
    for resource in LIMITED_RESOURCES:
        count = used.get(resource, 0)
        limit = plan.limit_for(resource)
        if limit is None:
            remaining, percentage = None, 0
        else:
            remaining = max(0, limit - count)
            percentage = min(100, round(count / limit * 100)) if limit else 100
        summary[resource] = {"used": count, "limit": limit, "remaining": remaining, "percentage": percentage}
    return summary

"""Analytics service — loads projections and feeds the pure analytics functions.

Read-only. A failure here never affects reconciliation.
"""

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.billing import analytics
from reconciler.billing.timestamps import utcnow
from reconciler.models import SubscriptionEvent, SubscriptionInvoice
from reconciler.services.subscription_service import get_current_subscription, load_snapshots


async def _movements(db: AsyncSession, since: datetime | None = None) -> list[analytics.MovementSnapshot]:
    query = select(SubscriptionEvent).where(SubscriptionEvent.mrr_movement.is_not(None))
    if since is not None:
        query = query.where(SubscriptionEvent.created_at >= since)
    result = await db.execute(query.order_by(SubscriptionEvent.created_at))
    return [analytics.MovementSnapshot.from_model(event) for event in result.scalars().all()]


def _month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = datetime(now.year, now.month, 1)
    end = datetime(now.year + 1, 1, 1) if now.month == 12 else datetime(now.year, now.month + 1, 1)
    return start, end


async def get_revenue_metrics(
    db: AsyncSession,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> dict:
    """Revenue metrics for a period (default: the current calendar month)."""
    default_start, default_end = _month_bounds(utcnow())
    start = period_start or default_start
    end = period_end or default_end
    return analytics.revenue_metrics(await load_snapshots(db), await _movements(db, start), start, end)


async def get_mrr_waterfall(db: AsyncSession, months: int = 6) -> list[dict]:
    return analytics.mrr_waterfall(await load_snapshots(db), await _movements(db), utcnow(), months)


async def get_cohorts(db: AsyncSession, months: int = 12) -> list[dict]:
    return analytics.cohort_retention(await load_snapshots(db), utcnow(), months)


async def get_forecast(db: AsyncSession, months: int = 12) -> dict:
    now = utcnow()
    snapshots = await load_snapshots(db)
    movements = await _movements(db)
    metrics = analytics.revenue_metrics(snapshots, movements, *_month_bounds(now))
    history = [row["ending_mrr_cents"] for row in analytics.mrr_waterfall(snapshots, movements, now, 6)]
    return analytics.revenue_forecast(
        metrics["mrr_cents"],
        history,
        metrics["churn_rate"],
        metrics["arppu_cents"],
        now,
        months,
    )


async def get_churn_risk(db: AsyncSession, owner_id: uuid.UUID) -> dict:
    subscription = await get_current_subscription(db, owner_id)
    invoices: list[analytics.InvoiceSnapshot] = []
    if subscription is not None:
        result = await db.execute(
            select(SubscriptionInvoice)
            .where(SubscriptionInvoice.subscription_id == subscription.id)
            .order_by(SubscriptionInvoice.event_timestamp.desc())
            .limit(12)
        )
        invoices = [analytics.InvoiceSnapshot.from_model(inv) for inv in result.scalars().all()]
    snapshot = analytics.SubscriptionSnapshot.from_model(subscription) if subscription else None
    return analytics.churn_risk(snapshot, invoices, utcnow())



async def get_high_risk_accounts(db: AsyncSession, min_level: str = "high", limit: int = 50) -> list[dict]:
    """Score every live subscription and keep the ones needing intervention."""
    result = await db.execute(select(SubscriptionInvoice))
    invoices = [analytics.InvoiceSnapshot.from_model(inv) for inv in result.scalars().all()]
    return analytics.high_risk_accounts(await load_snapshots(db), invoices, utcnow(), min_level, limit)

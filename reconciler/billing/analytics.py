"""Billing analytics — pure projections over subscription snapshots.

Nothing here touches the database or mutates state; the service layer loads
snapshots and hands them in. Every function tolerates gaps in the history
(unknown plans, cancellations without a reason, missing invoices) and
returns zeros rather than raising. Money is in cents.
"""

import math
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from reconciler.billing.plans import get_plan, monthly_value_cents
from reconciler.billing.state_machine import revenue_of
from reconciler.models.subscription import SubscriptionStatus as S

MOVEMENT_KINDS = ("new", "expansion", "contraction", "churn", "reactivation")

FORECAST_DEFAULT_GROWTH = 0.02
FORECAST_VOLATILITY = 0.15


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: uuid.UUID
    owner_id: uuid.UUID
    plan_id: str | None
    status: str
    billing_cycle: str = "monthly"
    created_at: datetime | None = None
    canceled_at: datetime | None = None
    trial_end: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    suspended: bool = False

    @classmethod
    def from_model(cls, subscription: Any) -> "SubscriptionSnapshot":
        return cls(
            id=subscription.id,
            owner_id=subscription.owner_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle or "monthly",
            created_at=subscription.created_at,
            canceled_at=subscription.canceled_at,
            trial_end=subscription.trial_end,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
            suspended=bool(subscription.suspended),
        )

    @property
    def mrr_cents(self) -> int:
        return revenue_of(self.status, self.plan_id, self.billing_cycle)


@dataclass(frozen=True)
class MovementSnapshot:
    subscription_id: uuid.UUID
    mrr_movement: str | None
    amount_cents: int | None
    created_at: datetime
    event_type: str = ""
    reason: str | None = None

    @classmethod
    def from_model(cls, event: Any) -> "MovementSnapshot":
        return cls(
            subscription_id=event.subscription_id,
            mrr_movement=event.mrr_movement,
            amount_cents=event.amount_cents,
            created_at=event.created_at,
            event_type=event.event_type,
            reason=event.reason,
        )


@dataclass(frozen=True)
class InvoiceSnapshot:
    subscription_id: uuid.UUID
    status: str
    amount_cents: int
    event_timestamp: datetime

    @classmethod
    def from_model(cls, invoice: Any) -> "InvoiceSnapshot":
        return cls(
            subscription_id=invoice.subscription_id,
            status=invoice.status,
            amount_cents=invoice.amount_cents or 0,
            event_timestamp=invoice.event_timestamp,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def _add_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1)


def _months_between(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + end.month - start.month


def _pct(numerator: float, denominator: float, default: float = 0.0) -> float:
    if denominator <= 0:
        return default
    return round(numerator / denominator * 100, 1)


def current_mrr(subscriptions: Iterable[SubscriptionSnapshot]) -> int:
    return sum(sub.mrr_cents for sub in subscriptions)


def _movement_totals(movements: Iterable[MovementSnapshot]) -> dict[str, int]:
    totals = dict.fromkeys(MOVEMENT_KINDS, 0)
    for movement in movements:
        if movement.mrr_movement in totals:
            totals[movement.mrr_movement] += abs(movement.amount_cents or 0)
    return totals


def _net(totals: dict[str, int]) -> int:
    return totals["new"] + totals["expansion"] + totals["reactivation"] - totals["contraction"] - totals["churn"]


# ---------------------------------------------------------------------------
# Counts
# ---------------------------------------------------------------------------


def compute_stats(subscriptions: Sequence[SubscriptionSnapshot]) -> dict[str, Any]:
    """Headline counts for the admin dashboard."""
    by_status = Counter(sub.status for sub in subscriptions)
    mrr = current_mrr(subscriptions)
    return {
        "total": len(subscriptions),
        "by_status": {status: by_status.get(status, 0) for status in sorted(S.ALL)},
        "active": by_status.get(S.ACTIVE, 0),
        "trialing": by_status.get(S.TRIALING, 0),
        "past_due": by_status.get(S.PAST_DUE, 0),
        "canceled": by_status.get(S.CANCELED, 0),
        "suspended": sum(1 for sub in subscriptions if sub.suspended),
        "paying": sum(1 for sub in subscriptions if sub.mrr_cents > 0),
        "mrr_cents": mrr,
        "arr_cents": mrr * 12,
    }


def plan_distribution(subscriptions: Sequence[SubscriptionSnapshot]) -> list[dict[str, Any]]:
    """Subscriptions per plan, excluding canceled ones."""
    live = [sub for sub in subscriptions if sub.status != S.CANCELED]
    counts = Counter(sub.plan_id or "unknown" for sub in live)
    revenue: dict[str, int] = defaultdict(int)
    for sub in live:
        revenue[sub.plan_id or "unknown"] += sub.mrr_cents

    distribution = []
    for slug, count in counts.most_common():
        plan = get_plan(slug)
        distribution.append(
            {
                "plan": slug,
                "display_name": plan.display_name if plan else slug,
                "count": count,
                "share": _pct(count, len(live)),
                "mrr_cents": revenue[slug],
            }
        )
    return distribution


# ---------------------------------------------------------------------------
# Revenue
# ---------------------------------------------------------------------------


def revenue_metrics(
    subscriptions: Sequence[SubscriptionSnapshot],
    movements: Sequence[MovementSnapshot],
    period_start: datetime,
    period_end: datetime,
) -> dict[str, Any]:
    """MRR, retention and unit economics for one period.

    NRR and GRR are measured against the MRR at the start of the period,
    reconstructed from the current MRR minus the period's net movement.
    """
    mrr = current_mrr(subscriptions)
    in_period = [m for m in movements if period_start <= m.created_at < period_end]
    totals = _movement_totals(in_period)
    starting_mrr = max(mrr - _net(totals), 0)

    customers_at_start = sum(
        1
        for sub in subscriptions
        if sub.created_at is not None
        and sub.created_at < period_start
        and (sub.canceled_at is None or sub.canceled_at >= period_start)
    )
    churned_customers = sum(1 for m in in_period if m.mrr_movement == "churn")
    churn_rate = _pct(churned_customers, customers_at_start)

    gains = totals["new"] + totals["expansion"] + totals["reactivation"]
    losses = totals["contraction"] + totals["churn"]
    paying = sum(1 for sub in subscriptions if sub.mrr_cents > 0)
    arppu = mrr / paying if paying else 0.0

    monthly_churn = churn_rate / 100
    ltv = arppu / monthly_churn if monthly_churn > 0 else arppu * 24

    return {
        "period_start": period_start,
        "period_end": period_end,
        "mrr_cents": mrr,
        "arr_cents": mrr * 12,
        "starting_mrr_cents": starting_mrr,
        "movements": totals,
        "net_new_mrr_cents": _net(totals),
        "churn_rate": churn_rate,
        "revenue_churn_rate": _pct(totals["churn"], starting_mrr),
        "nrr": _pct(starting_mrr + totals["expansion"] - losses, starting_mrr, default=100.0),
        "grr": _pct(starting_mrr - losses, starting_mrr, default=100.0),
        "quick_ratio": round(gains / losses, 2) if losses else None,
        "arpu_cents": round(mrr / len(subscriptions)) if subscriptions else 0,
        "arppu_cents": round(arppu),
        "ltv_cents": round(ltv),
        "customers": len(subscriptions),
        "paying_customers": paying,
    }


def mrr_waterfall(
    subscriptions: Sequence[SubscriptionSnapshot],
    movements: Sequence[MovementSnapshot],
    now: datetime,
    months: int = 6,
) -> list[dict[str, Any]]:
    """Month-by-month MRR bridge ending with the current month."""
    first = _add_months(_month_start(now), -(months - 1))
    window = [m for m in movements if m.created_at >= first]
    starting = current_mrr(subscriptions) - _net(_movement_totals(window))

    waterfall = []
    for offset in range(months):
        month_start = _add_months(first, offset)
        month_end = _add_months(month_start, 1)
        totals = _movement_totals(m for m in window if month_start <= m.created_at < month_end)
        net = _net(totals)
        waterfall.append(
            {
                "month": month_start.strftime("%Y-%m"),
                "starting_mrr_cents": starting,
                "new_mrr_cents": totals["new"],
                "expansion_mrr_cents": totals["expansion"],
                "contraction_mrr_cents": totals["contraction"],
                "churned_mrr_cents": totals["churn"],
                "reactivation_mrr_cents": totals["reactivation"],
                "net_change_cents": net,
                "ending_mrr_cents": starting + net,
            }
        )
        starting += net
    return waterfall


def cohort_retention(
    subscriptions: Sequence[SubscriptionSnapshot],
    now: datetime,
    months: int = 12,
) -> list[dict[str, Any]]:
    """Customer and revenue retention per signup month, newest cohort first."""
    cohorts: dict[datetime, list[SubscriptionSnapshot]] = defaultdict(list)
    for sub in subscriptions:
        if sub.created_at is not None:
            cohorts[_month_start(sub.created_at)].append(sub)

    result = []
    for cohort_start in sorted(cohorts, reverse=True):
        elapsed = _months_between(cohort_start, now)
        if elapsed < 0 or elapsed > months:
            continue
        members = cohorts[cohort_start]
        rows = []
        initial_revenue = 0
        for month_number in range(elapsed + 1):
            check = _add_months(cohort_start, month_number)
            check_end = _add_months(check, 1)
            alive = [
                sub
                for sub in members
                if sub.created_at < check_end and (sub.canceled_at is None or sub.canceled_at > check)
            ]
            revenue = sum(monthly_value_cents(sub.plan_id, sub.billing_cycle) for sub in alive)
            if month_number == 0:
                initial_revenue = revenue
            rows.append(
                {
                    "month_number": month_number,
                    "active_customers": len(alive),
                    "retention_rate": _pct(len(alive), len(members)),
                    "revenue_cents": revenue,
                    "revenue_retention": _pct(revenue, initial_revenue),
                }
            )
        result.append(
            {
                "cohort_month": cohort_start.strftime("%Y-%m"),
                "total_customers": len(members),
                "months": rows,
            }
        )
    return result[:months]


def revenue_forecast(
    current_mrr_cents: int,
    history_cents: Sequence[int],
    churn_rate: float,
    arppu_cents: int,
    now: datetime,
    months: int = 12,
) -> dict[str, Any]:
    """Compound-growth MRR projection with a widening 80% band.

    ``history_cents`` is month-end MRR, oldest first. With fewer than two
    usable months a default growth rate net of churn is assumed.
    """
    growth_rates = [
        (current - previous) / previous
        for previous, current in zip(history_cents, history_cents[1:])
        if previous > 0
    ]
    if growth_rates:
        growth = sum(growth_rates) / len(growth_rates)
        model = "historical"
    else:
        growth = FORECAST_DEFAULT_GROWTH - churn_rate / 100
        model = "default"

    forecast = []
    for month_number in range(1, months + 1):
        predicted = current_mrr_cents * (1 + growth) ** month_number
        width = predicted * FORECAST_VOLATILITY * math.sqrt(month_number)
        forecast.append(
            {
                "month": _add_months(_month_start(now), month_number).strftime("%Y-%m"),
                "predicted_mrr_cents": round(predicted),
                "lower_bound_cents": max(round(predicted - width), 0),
                "upper_bound_cents": round(predicted + width),
                "predicted_customers": round(predicted / arppu_cents) if arppu_cents > 0 else 0,
            }
        )

    return {
        "model": model,
        "monthly_growth": round(growth * 100, 2),
        "churn_rate": churn_rate,
        "confidence_interval": 0.8,
        "months": forecast,
    }


# ---------------------------------------------------------------------------
# Churn risk
# ---------------------------------------------------------------------------


RISK_LEVELS = ("low", "medium", "high", "critical")


def _level(score: int) -> str:
    if score >= 70:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 25:
        return "medium"
    return "low"


def churn_risk(
    subscription: SubscriptionSnapshot | None,
    invoices: Sequence[InvoiceSnapshot],
    now: datetime,
) -> dict[str, Any]:
    """Score 0-100 of how likely an owner is to leave, with contributing factors."""
    factors: list[dict[str, Any]] = []
    actions: list[str] = []

    def add(factor: str, weight: int, description: str) -> None:
        factors.append({"factor": factor, "weight": weight, "description": description})

    recent = sorted(invoices, key=lambda inv: inv.event_timestamp, reverse=True)[:12]
    failed = sum(1 for inv in recent if inv.status == "failed")
    if failed:
        add("payment_failures", min(failed * 15, 40), f"{failed} failed payment(s) recently")
        actions.append("Send a payment method update reminder")

    if subscription is not None:
        if subscription.status == S.PAST_DUE:
            add("past_due", 20, "Subscription is past due")
        if subscription.status == S.TRIALING and subscription.trial_end is not None:
            days_left = (subscription.trial_end - now).days
            if 0 <= days_left <= 3:
                add("trial_ending", 15, f"Trial ends in {days_left} day(s)")
        if subscription.cancel_at_period_end:
            add("cancel_scheduled", 50, "Cancellation scheduled at period end")
            actions.append("Offer a retention discount")
        if subscription.created_at is not None:
            tenure = (now - subscription.created_at) // timedelta(days=30)
            if tenure > 12:
                add("tenure", -15, f"Customer for {tenure} months")

    score = max(0, min(100, sum(f["weight"] for f in factors)))
    level = _level(score)
    if level == "critical":
        actions.append("Escalate to an account manager")

    return {
        "subscription_id": subscription.id if subscription else None,
        "owner_id": subscription.owner_id if subscription else None,
        "risk_score": score,
        "risk_level": level,
        "factors": sorted(factors, key=lambda f: f["weight"], reverse=True),
        "recommended_actions": actions,
        "predicted_churn_date": subscription.current_period_end if subscription else None,
        "confidence": 0.8 if len(factors) > 2 else 0.6,
        "calculated_at": now,
    }


def high_risk_accounts(
    subscriptions: Iterable[SubscriptionSnapshot],
    invoices: Iterable[InvoiceSnapshot],
    now: datetime,
    min_level: str = "high",
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Live subscriptions scoring at or above ``min_level``, riskiest first."""
    threshold = RISK_LEVELS.index(min_level)
    by_subscription: dict[uuid.UUID, list[InvoiceSnapshot]] = defaultdict(list)
    for inv in invoices:
        by_subscription[inv.subscription_id].append(inv)

    rows = []
    for sub in subscriptions:
        if sub.status == S.CANCELED:
            continue
        risk = churn_risk(sub, by_subscription[sub.id], now)
        if RISK_LEVELS.index(risk["risk_level"]) < threshold:
            continue
        rows.append(
            {
                "owner_id": sub.owner_id,
                "subscription_id": sub.id,
                "plan": sub.plan_id,
                "status": sub.status,
                "risk_score": risk["risk_score"],
                "risk_level": risk["risk_level"],
                "factors": [f["factor"] for f in risk["factors"]],
                "mrr_cents": sub.mrr_cents,
            }
        )
    rows.sort(key=lambda r: r["risk_score"], reverse=True)
    return rows[:limit]

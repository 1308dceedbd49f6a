"""Admin billing endpoints — overrides, revenue analytics and the event quarantine."""

import logging
import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.api.deps import get_billing, get_db, require_admin
from reconciler.billing.admin import AdminActionResult
from reconciler.billing.container import BillingContainer
from reconciler.billing.errors import (
    AdminActionError,
    AdminValidationError,
    ConcurrentModification,
    RemoteCommandFailure,
    SubscriptionNotFound,
)
from reconciler.billing.plans import VALID_PLAN_SLUGS
from reconciler.models import SubscriptionStatus
from reconciler.models.user import User
from reconciler.schemas.analytics import (
    HighRiskAccountResponse,
    PlanDistributionResponse,
    PlanShareResponse,
    StatsResponse,
)
from reconciler.schemas.billing import (
    AdminActionResponse,
    AdminRequest,
    GiftDaysRequest,
    OverridePlanRequest,
    RemoteEventResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
)
from reconciler.services import analytics_service
from reconciler.services.subscription_service import get_plan_distribution, get_stats, list_subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/billing", tags=["admin"])


def admin_error_to_http(exc: AdminActionError) -> HTTPException:
    """Translate an admin-path failure into the response the caller sees."""
    if isinstance(exc, AdminValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, SubscriptionNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, RemoteCommandFailure):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        # ConcurrentModification and AdminActionRejected: re-read and resubmit
        code = status.HTTP_409_CONFLICT

    detail: dict[str, Any] = {"error": exc.kind.value, "message": str(exc)}
    if isinstance(exc, ConcurrentModification):
        detail["current_version"] = exc.actual_version
    return HTTPException(status_code=code, detail=detail)


def _response(result: AdminActionResult) -> AdminActionResponse:
    return AdminActionResponse(
        action_type=result.action_type,
        owner_id=result.owner_id,
        subscription_id=result.subscription_id,
        version=result.version,
        message=result.message,
        notify_user=result.notify_user,
    )


# --- Overrides ---


@router.post("/owners/{owner_id}/gift-days", response_model=AdminActionResponse)
async def gift_days(
    owner_id: uuid.UUID,
    body: GiftDaysRequest,
    billing: BillingContainer = Depends(get_billing),
    admin: User = Depends(require_admin),
) -> AdminActionResponse:
    """Extend the owner's current period by N days."""
    try:
        result = await billing.admin.gift_days(
            owner_id, body.days, body.reason, body.notify_user, admin.id, body.expected_version
        )
    except AdminActionError as exc:
        raise admin_error_to_http(exc) from exc
    return _response(result)


@router.post("/owners/{owner_id}/override-plan", response_model=AdminActionResponse)
async def override_plan(
    owner_id: uuid.UUID,
    body: OverridePlanRequest,
    billing: BillingContainer = Depends(get_billing),
    admin: User = Depends(require_admin),
) -> AdminActionResponse:
    """Move the owner to another plan, on Stripe first, then locally."""
    try:
        result = await billing.admin.override_plan(
            owner_id, body.plan, body.reason, body.notify_user, admin.id, body.expected_version
        )
    except AdminActionError as exc:
        raise admin_error_to_http(exc) from exc
    return _response(result)


@router.post("/owners/{owner_id}/suspend", response_model=AdminActionResponse)
async def suspend(
    owner_id: uuid.UUID,
    body: AdminRequest,
    billing: BillingContainer = Depends(get_billing),
    admin: User = Depends(require_admin),
) -> AdminActionResponse:
    try:
        result = await billing.admin.suspend(owner_id, body.reason, body.notify_user, admin.id, body.expected_version)
    except AdminActionError as exc:
        raise admin_error_to_http(exc) from exc
    return _response(result)


@router.post("/owners/{owner_id}/unsuspend", response_model=AdminActionResponse)
async def unsuspend(
    owner_id: uuid.UUID,
    body: AdminRequest,
    billing: BillingContainer = Depends(get_billing),
    admin: User = Depends(require_admin),
) -> AdminActionResponse:
    try:
        result = await billing.admin.unsuspend(
            owner_id, body.reason, body.notify_user, admin.id, body.expected_version
        )
    except AdminActionError as exc:
        raise admin_error_to_http(exc) from exc
    return _response(result)


# --- Analytics ---


@router.get("/stats", response_model=StatsResponse)
async def stats(
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> StatsResponse:
    return StatsResponse(**await get_stats(db))


@router.get("/plan-distribution", response_model=PlanDistributionResponse)
async def plan_distribution(
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> PlanDistributionResponse:
    rows = await get_plan_distribution(db)
    return PlanDistributionResponse(plans=[PlanShareResponse(**row) for row in rows])


@router.get("/revenue")
async def revenue(
    period_start: datetime | None = Query(None, description="Defaults to the start of the current month"),
    period_end: datetime | None = Query(None, description="Defaults to the start of next month"),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> dict[str, Any]:
    """MRR, ARR, retention and unit economics for a period."""
    if period_start and period_end and period_end <= period_start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="period_end must be after period_start",
        )
    return await analytics_service.get_revenue_metrics(db, period_start, period_end)


@router.get("/mrr-waterfall")
async def mrr_waterfall(
    months: int = Query(6, ge=1, le=24),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> list[dict[str, Any]]:
    return await analytics_service.get_mrr_waterfall(db, months)


@router.get("/cohorts")
async def cohorts(
    months: int = Query(12, ge=1, le=36),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> list[dict[str, Any]]:
    return await analytics_service.get_cohorts(db, months)


@router.get("/forecast")
async def forecast(
    months: int = Query(12, ge=1, le=24),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> dict[str, Any]:
    return await analytics_service.get_forecast(db, months)


@router.get("/churn-risk", response_model=list[HighRiskAccountResponse])
async def high_risk_accounts(
    min_level: str = Query("high", pattern="^(low|medium|high|critical)$"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> list[HighRiskAccountResponse]:
    """Accounts worth a proactive retention contact, riskiest first."""
    rows = await analytics_service.get_high_risk_accounts(db, min_level, limit)
    return [HighRiskAccountResponse(**row) for row in rows]


@router.get("/owners/{owner_id}/churn-risk")
async def churn_risk(
    owner_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> dict[str, Any]:
    return await analytics_service.get_churn_risk(db, owner_id)


# --- Subscriptions ---


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_all_subscriptions(
    status_filter: str | None = Query(None, alias="status"),
    plan: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> SubscriptionListResponse:
    """Every owner's subscription, newest first, optionally filtered by status and plan."""
    if status_filter is not None and status_filter not in SubscriptionStatus.ALL:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status: {status_filter}")
    if plan is not None and plan not in VALID_PLAN_SLUGS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown plan: {plan}")

    subscriptions, total = await list_subscriptions(db, status_filter, plan, limit, offset)
    return SubscriptionListResponse(
        total=total,
        limit=limit,
        offset=offset,
        subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions],
    )


# --- Event quarantine ---


@router.get("/events/quarantined", response_model=list[RemoteEventResponse])
async def quarantined_events(
    limit: int = Query(100, ge=1, le=500),
    billing: BillingContainer = Depends(get_billing),
    _admin: User = Depends(require_admin),
) -> list[RemoteEventResponse]:
    """Events that need a human: exhausted retries or data the handlers cannot use."""
    events = await billing.sweeper.list_quarantined(limit)
    return [RemoteEventResponse.model_validate(e) for e in events]


@router.post("/events/{event_id}/requeue", response_model=RemoteEventResponse)
async def requeue_event(
    event_id: uuid.UUID,
    billing: BillingContainer = Depends(get_billing),
    admin: User = Depends(require_admin),
) -> RemoteEventResponse:
    """Give a quarantined event a fresh retry budget after fixing its cause."""
    try:
        event = await billing.sweeper.requeue_event(event_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    logger.info("Admin %s requeued event %s", admin.id, event.external_event_id)
    return RemoteEventResponse.model_validate(event)

"""Billing API endpoints — the owner's view of their subscription."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.api.deps import get_billing, get_current_active_user, get_db
from reconciler.api.v1.admin import admin_error_to_http
from reconciler.billing.container import BillingContainer
from reconciler.billing.dependencies import get_owner_subscription
from reconciler.billing.errors import AdminActionError
from reconciler.billing.plans import LIMITED_RESOURCES, PLANS
from reconciler.models import Subscription
from reconciler.models.user import User
from reconciler.schemas.billing import (
    AdminActionResponse,
    EntitlementsResponse,
    InvoiceResponse,
    PlanResponse,
    PlansListResponse,
    SubscriptionEventResponse,
    SubscriptionResponse,
)
from reconciler.services.subscription_service import (
    effective_plan,
    has_feature,
    list_events,
    list_invoices,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                slug=p.slug,
                display_name=p.display_name,
                price_monthly_cents=p.price_monthly_cents,
                price_yearly_cents=p.price_yearly_cents,
                max_properties=p.max_properties,
                max_leases=p.max_leases,
                max_tenants=p.max_tenants,
                trial_days=p.trial_days,
                features=sorted(p.features),
            )
            for p in PLANS.values()
        ]
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(subscription: Subscription = Depends(get_owner_subscription)) -> SubscriptionResponse:
    """Current reconciled subscription of the authenticated owner (free tier on first visit)."""
    return SubscriptionResponse.model_validate(subscription)


@router.get("/entitlements", response_model=EntitlementsResponse)
async def get_entitlements(subscription: Subscription = Depends(get_owner_subscription)) -> EntitlementsResponse:
    """Features and caps the owner's plan unlocks right now."""
    plan = effective_plan(subscription)
    features = [f for f in sorted(plan.features) if has_feature(subscription, f)]
    return EntitlementsResponse(
        plan=plan.slug,
        status=subscription.status,
        suspended=subscription.suspended,
        features=features,
        limits={resource: plan.limit_for(resource) for resource in LIMITED_RESOURCES},
    )


@router.get("/events", response_model=list[SubscriptionEventResponse])
async def get_events(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> list[SubscriptionEventResponse]:
    """Subscription history, newest first."""
    events = await list_events(db, current_user.id, limit)
    return [SubscriptionEventResponse.model_validate(e) for e in events]


@router.get("/invoices", response_model=list[InvoiceResponse])
async def get_invoices(
    limit: int = Query(24, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> list[InvoiceResponse]:
    invoices = await list_invoices(db, current_user.id, limit)
    return [InvoiceResponse.model_validate(i) for i in invoices]


@router.post("/price-change/accept", response_model=AdminActionResponse)
async def accept_price_change(
    billing: BillingContainer = Depends(get_billing),
    current_user: User = Depends(get_current_active_user),
) -> AdminActionResponse:
    """Record that the owner accepted the announced price change."""
    try:
        result = await billing.admin.accept_price_change(current_user.id)
    except AdminActionError as exc:
        raise admin_error_to_http(exc) from exc
    return AdminActionResponse(**asdict(result))

"""Plan gating dependencies — enforce feature access and usage limits from the reconciled plan.

Other parts of the application guard their routes with these::

    @router.post("/properties", dependencies=[Depends(check_limit("properties", count_properties))])

A counter is an async callable ``(db, owner_id) -> int`` owned by the domain
that stores the resource; billing only knows the caps.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.api.deps import get_billing, get_current_active_user, get_db
from reconciler.billing.container import BillingContainer
from reconciler.billing.plans import LIMITED_RESOURCES, Plan
from reconciler.models import Subscription
from reconciler.models.user import User
from reconciler.services.subscription_service import (
    effective_plan,
    get_or_create_subscription,
    has_feature,
    within_limit,
)

logger = logging.getLogger(__name__)

UsageCounter = Callable[[AsyncSession, uuid.UUID], Awaitable[int]]

UPGRADE_URL = "/api/v1/billing/plans"


def _ensure_not_suspended(subscription: Subscription) -> None:
    if subscription.suspended:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "This account is suspended. Contact support to restore access.",
                "plan": subscription.plan_id,
                "suspended": True,
            },
        )


async def get_owner_subscription(
    billing: BillingContainer = Depends(get_billing),
    user: User = Depends(get_current_active_user),
) -> Subscription:
    """The authenticated owner's subscription, provisioned on first use."""
    return await get_or_create_subscription(billing.core, user.id)


async def get_plan_limits(subscription: Subscription = Depends(get_owner_subscription)) -> Plan:
    """The plan whose caps currently apply to the owner."""
    return effective_plan(subscription)


def require_feature(feature: str) -> Callable[..., Awaitable[None]]:
    """Dependency raising 402 unless the owner's plan includes ``feature``."""

    async def dependency(subscription: Subscription = Depends(get_owner_subscription)) -> None:
        _ensure_not_suspended(subscription)
        if not has_feature(subscription, feature):
            plan = effective_plan(subscription)
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "message": f"'{feature}' is not included in the {plan.display_name} plan.",
                    "feature": feature,
                    "plan": plan.slug,
                    "status": subscription.status,
                    "upgrade_url": UPGRADE_URL,
                },
            )

    return dependency


def check_limit(resource: str, counter: UsageCounter) -> Callable[..., Awaitable[None]]:
    """Dependency raising 402 once the owner has used up the plan's ``resource`` cap."""
    if resource not in LIMITED_RESOURCES:
        raise ValueError(f"Unknown resource: {resource}")

    async def dependency(
        db: AsyncSession = Depends(get_db),
        subscription: Subscription = Depends(get_owner_subscription),
    ) -> None:
        _ensure_not_suspended(subscription)
        plan = effective_plan(subscription)
        limit = plan.limit_for(resource)
        if limit is None:
            return  # Unlimited

        current = await counter(db, subscription.owner_id)
        if not within_limit(subscription, resource, current):
            logger.info("Owner %s hit the %s limit (%d/%d)", subscription.owner_id, resource, current, limit)
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "message": f"{resource.capitalize()} limit reached ({current}/{limit}). "
                    "Upgrade your plan for more.",
                    "resource": resource,
                    "limit": limit,
                    "current": current,
                    "plan": plan.slug,
                    "upgrade_url": UPGRADE_URL,
                },
            )

    return dependency

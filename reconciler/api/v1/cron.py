"""Scheduler-triggered endpoints."""

import logging

from fastapi import APIRouter, Depends

from reconciler.api.deps import get_billing, verify_cron_secret
from reconciler.billing.container import BillingContainer
from reconciler.schemas.billing import SweepResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/billing-recovery", response_model=SweepResponse)
async def billing_recovery(
    billing: BillingContainer = Depends(get_billing),
) -> SweepResponse:
    """Redrive pending and failed billing events; safe to call concurrently."""
    report = await billing.sweeper.sweep()
    return SweepResponse(**report.as_dict())

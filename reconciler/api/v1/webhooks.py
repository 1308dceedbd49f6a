"""Billing webhook endpoint — receives Stripe events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from reconciler.api.deps import get_billing
from reconciler.billing.container import BillingContainer
from reconciler.billing.ingestor import IngestStatus
from reconciler.schemas.billing import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/billing", response_model=WebhookResponse)
async def billing_webhook(
    request: Request,
    billing: BillingContainer = Depends(get_billing),
) -> WebhookResponse:
    """Receive a Stripe webhook event.

    Answers 200 once the event is stored, whatever its handler made of it:
    handler failures are retried by the recovery sweep, not by Stripe.
    """
    # Raw bytes: the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = await billing.ingestor.ingest(payload, sig_header)

    if result.status == IngestStatus.INVALID_SIGNATURE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    if result.status == IngestStatus.INVALID_PAYLOAD:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    return WebhookResponse(status=result.status.value, event_id=result.external_event_id)

"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class AdminRequest(BaseModel):
    """Fields shared by every admin command."""

    reason: str = Field(..., min_length=1, max_length=2000)
    notify_user: bool = False
    expected_version: int | None = Field(
        None, ge=1, description="Version the admin last read; omitted means 'whatever is current'"
    )


class GiftDaysRequest(AdminRequest):
    days: int = Field(..., ge=1)


class OverridePlanRequest(AdminRequest):
    plan: str


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    slug: str
    display_name: str
    price_monthly_cents: int | None
    price_yearly_cents: int | None
    max_properties: int | None
    max_leases: int | None = None
    max_tenants: int | None = None
    trial_days: int
    features: list[str] = []


class AddonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    addon_id: str
    status: str
    activated_at: datetime | None
    canceled_at: datetime | None


class SubscriptionResponse(BaseModel):
    """Reconciled subscription state as the owner sees it."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: uuid.UUID
    plan_id: str
    billing_cycle: str
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    pause_until: datetime | None
    canceled_at: datetime | None
    price_change_accepted: bool
    suspended: bool
    version: int
    addons: list[AddonResponse] = []


class EntitlementsResponse(BaseModel):
    """What the owner's plan currently unlocks."""

    plan: str
    status: str
    suspended: bool
    features: list[str]
    limits: dict[str, int | None]  # None = unlimited


class SubscriptionListResponse(BaseModel):
    """A page of subscriptions for the admin console."""

    total: int
    limit: int
    offset: int
    subscriptions: list[SubscriptionResponse]


class SubscriptionEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    source: str
    from_status: str | None
    to_status: str | None
    from_plan: str | None
    to_plan: str | None
    mrr_movement: str | None
    amount_cents: int | None
    reason: str | None
    message: str | None
    version: int | None
    created_at: datetime


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    external_invoice_id: str
    amount_cents: int
    currency: str
    status: str
    period_start: datetime | None
    period_end: datetime | None
    invoice_pdf_url: str | None
    event_timestamp: datetime


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class AdminActionResponse(BaseModel):
    """Result of an admin command that was applied."""

    action_type: str
    owner_id: uuid.UUID
    subscription_id: uuid.UUID
    version: int
    message: str
    notify_user: bool


class RemoteEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    external_event_id: str
    type: str
    event_timestamp: datetime
    received_at: datetime
    processing_status: str
    attempts: int
    last_error: str | None
    last_attempted_at: datetime | None
    subscription_id: uuid.UUID | None


class WebhookResponse(BaseModel):
    status: str
    event_id: str | None = None


class SweepResponse(BaseModel):
    attempted: int
    processed: int
    failed: int
    quarantined: int
    skipped: int
    deferred: int
    purged: int

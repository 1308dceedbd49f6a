"""Pydantic v2 schemas for billing analytics endpoints."""

import uuid

from pydantic import BaseModel


class StatsResponse(BaseModel):
    """Headline subscription counts."""

    total: int
    by_status: dict[str, int]
    active: int
    trialing: int
    past_due: int
    canceled: int
    suspended: int
    paying: int
    mrr_cents: int
    arr_cents: int


class PlanShareResponse(BaseModel):
    plan: str
    display_name: str
    count: int
    share: float  # percentage 0.0–100.0
    mrr_cents: int


class PlanDistributionResponse(BaseModel):
    plans: list[PlanShareResponse]


class HighRiskAccountResponse(BaseModel):
    owner_id: uuid.UUID
    subscription_id: uuid.UUID
    plan: str | None
    status: str
    risk_score: int
    risk_level: str
    factors: list[str]
    mrr_cents: int

"""Schemas for subscription checkout."""
from __future__ import annotations

from pydantic import Field

from app.models.subscription import BillingCycle

from .payment import IDEMPOTENCY_KEY_PATTERN, CamelModel


class SubscriptionCheckoutIn(CamelModel):
    plan_id: int = Field(gt=0)
    billing_cycle: BillingCycle
    idempotency_key: str | None = Field(default=None, max_length=64, pattern=IDEMPOTENCY_KEY_PATTERN)

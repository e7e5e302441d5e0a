"""Subscription plan checkout."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Response
from sqlalchemy.orm import Session

from app.config import Settings
from app.db import get_db
from app.dependencies import get_app_settings, get_gateway, get_rate_limiter, require_commerce_enabled
from app.schemas.payment import IDEMPOTENCY_KEY_PATTERN
from app.schemas.subscription import SubscriptionCheckoutIn
from app.security import RequestContext, require_context
from app.services import checkout as checkout_service
from app.services.chapa import ChapaClient
from app.services.rate_limit import RATE_LIMITS, RateLimiter

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/checkout", dependencies=[Depends(require_commerce_enabled)])
def subscription_checkout(
    payload: SubscriptionCheckoutIn,
    response: Response,
    idempotency_key: str | None = Header(
        default=None, alias="Idempotency-Key", max_length=64, pattern=IDEMPOTENCY_KEY_PATTERN
    ),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    limit = limiter.hit(f"subscription_checkout:{ctx.identity}", RATE_LIMITS["subscription_checkout"])
    response.headers.update(limit.headers())
    return checkout_service.subscription_checkout(
        db, gateway, ctx, settings, payload, idempotency_key=idempotency_key
    )

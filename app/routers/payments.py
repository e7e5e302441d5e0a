"""Hosted checkout, verification and gateway webhook endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from sqlalchemy.orm import Session

from app.config import Settings
from app.db import get_db
from app.dependencies import get_app_settings, get_gateway, get_rate_limiter, require_commerce_enabled
from app.schemas.payment import IDEMPOTENCY_KEY_PATTERN, TX_REF_PATTERN, PaymentInitializeIn, VerifyPaymentIn
from app.security import RequestContext, optional_context, require_context, webhook_context
from app.services import checkout as checkout_service
from app.services import reconciliation
from app.services.chapa import ChapaClient
from app.services.rate_limit import RATE_LIMITS, RateLimiter
from app.utils.errors import ValidationError

router = APIRouter(prefix="/payments", tags=["payments"])


async def read_raw_body(request: Request) -> bytes:
    """Raw request bytes; signatures are computed over the body as sent."""

    return await request.body()


def _verify_rate_key(ctx: RequestContext, tx_ref: str) -> str:
    if ctx.identity:
        return f"payment_verify:{ctx.identity}"
    return f"payment_verify:{ctx.client_ip or 'unknown'}:{tx_ref}"


@router.post(
    "/initialize",
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_commerce_enabled)],
)
def initialize_payment(
    payload: PaymentInitializeIn,
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
    """Open a hosted checkout for the caller, reusing an idempotent attempt when possible."""

    limit = limiter.hit(f"payment_init:{ctx.identity}", RATE_LIMITS["payment_init"])
    response.headers.update(limit.headers())
    result = checkout_service.initialize_payment(
        db, gateway, ctx, settings, payload, idempotency_key=idempotency_key
    )
    return result.to_response()


def _verify(
    tx_ref: str,
    response: Response,
    db: Session,
    ctx: RequestContext,
    gateway: ChapaClient,
    limiter: RateLimiter,
) -> dict[str, Any]:
    limit = limiter.hit(_verify_rate_key(ctx, tx_ref), RATE_LIMITS["payment_verify"])
    response.headers.update(limit.headers())
    return reconciliation.verify_payment(db, gateway, tx_ref, ctx).to_response()


@router.get("/verify", dependencies=[Depends(require_commerce_enabled)])
def verify_payment_get(
    response: Response,
    tx_ref: str = Query(max_length=100, pattern=TX_REF_PATTERN),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(optional_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return _verify(tx_ref, response, db, ctx, gateway, limiter)


@router.post("/verify", dependencies=[Depends(require_commerce_enabled)])
def verify_payment_post(
    payload: VerifyPaymentIn,
    response: Response,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(optional_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return _verify(payload.tx_ref, response, db, ctx, gateway, limiter)


@router.post("/webhook")
def payment_webhook(
    request: Request,
    response: Response,
    raw_body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(webhook_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Signed server-to-server notification from the gateway."""

    limit = limiter.hit(f"webhook:{ctx.client_ip or 'unknown'}", RATE_LIMITS["webhook"])
    response.headers.update(limit.headers())
    return reconciliation.process_webhook(
        db, gateway, settings, ctx, raw_body=raw_body, headers=request.headers
    )


@router.get("/webhook")
def payment_callback(
    response: Response,
    tx_ref: str | None = Query(default=None, max_length=100),
    trx_ref: str | None = Query(default=None, max_length=100),
    callback_status: str | None = Query(default=None, alias="status", max_length=32),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(webhook_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    """Browser redirect after checkout; lower trust than the signed POST."""

    reference = tx_ref or trx_ref
    if not reference:
        raise ValidationError("Missing transaction reference.", code="MISSING_TX_REF")
    limit = limiter.hit(f"webhook_get:{reference}", RATE_LIMITS["webhook_get"])
    response.headers.update(limit.headers())
    return reconciliation.process_callback(
        db, gateway, ctx, tx_ref=reference, query_status=callback_status
    )

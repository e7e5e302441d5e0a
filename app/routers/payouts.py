"""Seller payout endpoints and transfer callbacks."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from app.config import Settings
from app.db import get_db
from app.dependencies import get_app_settings, get_gateway, get_rate_limiter, require_commerce_enabled
from app.models.api_key import ApiRole
from app.routers.payments import read_raw_body
from app.schemas.payout import PayoutRead, TransferIn
from app.security import RequestContext, require_context, require_role, webhook_context
from app.services import payouts as payouts_service
from app.services.chapa import ChapaClient
from app.services.rate_limit import RATE_LIMITS, RateLimiter

router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.post("/transfer", dependencies=[Depends(require_commerce_enabled)])
def request_transfer(
    payload: TransferIn,
    response: Response,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_role(ApiRole.seller)),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    limit = limiter.hit(f"payout_transfer:{ctx.identity}", RATE_LIMITS["payout_transfer"])
    response.headers.update(limit.headers())
    payout, submitted = payouts_service.request_transfer(db, gateway, ctx, settings, payload)
    body: dict[str, Any] = {
        "success": True,
        "payout": PayoutRead.model_validate(payout).model_dump(mode="json", by_alias=True),
    }
    if not submitted:
        body["cached"] = True
    return body


@router.get("/banks", dependencies=[Depends(require_commerce_enabled)])
def list_banks(
    _ctx: RequestContext = Depends(require_context),
    gateway: ChapaClient = Depends(get_gateway),
) -> dict[str, Any]:
    return {"success": True, "data": payouts_service.list_banks(gateway)}


@router.post("/approval")
def transfer_approval(
    request: Request,
    raw_body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(webhook_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    limiter.hit(f"webhook:{ctx.client_ip or 'unknown'}", RATE_LIMITS["webhook"])
    return payouts_service.apply_approval(
        db, gateway, settings, ctx, raw_body=raw_body, headers=request.headers
    )


@router.post("/webhook")
def transfer_webhook(
    request: Request,
    raw_body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(webhook_context),
    gateway: ChapaClient = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    limiter.hit(f"webhook:{ctx.client_ip or 'unknown'}", RATE_LIMITS["webhook"])
    return payouts_service.apply_webhook(
        db, gateway, settings, ctx, raw_body=raw_body, headers=request.headers
    )

"""Administrative payment operations."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import get_gateway
from app.schemas.refund import RefundIn
from app.security import RequestContext, require_admin
from app.services import refunds as refunds_service
from app.services.chapa import ChapaClient

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/refunds")
def refund_payment(
    payload: RefundIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
    gateway: ChapaClient = Depends(get_gateway),
) -> dict[str, Any]:
    """Refund a settled subscription payment and cancel the subscription it paid for."""

    return refunds_service.refund_payment(db, gateway, ctx, payload).to_response()

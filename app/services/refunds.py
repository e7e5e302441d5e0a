"""Administrative refunds of subscription payments."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.payment import Payment
from app.schemas.refund import RefundIn
from app.security import RequestContext
from app.services import payments as payments_service
from app.services import subscriptions as subscriptions_service
from app.services.chapa import ChapaClient, RefundResult
from app.utils.audit import actor_from_context, record_audit_event
from app.utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Admin initiated refund"


def build_refund_reference(payment: Payment) -> str:
    """Stable per-payment reference so a resubmitted refund is deduplicated by the gateway."""

    digest = hashlib.sha256(payment.tx_ref.encode("utf-8")).hexdigest()[:10].upper()
    return f"REF-{payment.id}-{digest}"


@dataclass(frozen=True)
class RefundOutcome:
    payment: Payment
    reference: str
    amount: Decimal
    currency: str
    provider: RefundResult
    reconciliation_required: bool = False

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "message": "Refund processed successfully",
            "refund": {
                "reference": self.reference,
                "amount": str(self.amount),
                "currency": self.currency,
                "providerStatus": self.provider.status,
                "paymentId": self.payment.id,
                "txRef": self.payment.tx_ref,
            },
        }
        if self.reconciliation_required:
            body["reconciliationRequired"] = True
        return body


def refund_payment(
    db: Session,
    gateway: ChapaClient,
    ctx: RequestContext,
    payload: RefundIn,
) -> RefundOutcome:
    payment = payments_service.get_payment(db, payload.payment_id)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")
    payments_service.ensure_refundable(payment)

    amount = payload.amount if payload.amount is not None else payment.amount
    if amount > payment.amount:
        raise ValidationError(
            "Refund amount exceeds the payment amount.",
            code="REFUND_EXCEEDS_PAYMENT",
            details={"max_amount": str(payment.amount)},
        )
    reason = payload.reason or DEFAULT_REFUND_REASON
    reference = build_refund_reference(payment)
    currency = payment.currency.value
    tx_ref = payment.tx_ref
    metadata = dict(payment.metadata_json or {})

    result = gateway.process_refund(
        payment.chapa_trx_ref,
        reference=reference,
        reason=reason,
        amount=amount,
        meta={"payment_id": str(payment.id), "tx_ref": tx_ref, "refunded_by": ctx.identity or ""},
    )

    try:
        payment = payments_service.record_refund(
            db,
            payment.id,
            amount=amount,
            reason=reason,
            reference=reference,
            refunded_by=ctx.identity or "admin",
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Refund accepted by gateway but not recorded; manual reconciliation required",
            extra={
                "tx_ref": tx_ref,
                "refund_reference": reference,
                "provider_payload": result.raw,
                "error": str(exc),
                "trace_id": ctx.trace_id,
            },
        )
        return RefundOutcome(payment, reference, amount, currency, result, reconciliation_required=True)

    business_id = metadata.get("businessId")
    if business_id:
        try:
            subscriptions_service.cancel_for_business(db, business_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Subscription cancellation after refund failed",
                extra={"tx_ref": tx_ref, "business_id": business_id},
            )

    record_audit_event(
        db,
        actor=actor_from_context(ctx),
        action="payment.refunded",
        entity="Payment",
        entity_id=payment.id,
        status="refunded",
        tx_ref=tx_ref,
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
        data={"refund_reference": reference, "amount": str(amount), "reason": reason},
    )
    return RefundOutcome(payment, reference, amount, currency, result)


__all__ = ["DEFAULT_REFUND_REASON", "RefundOutcome", "build_refund_reference", "refund_payment"]

"""Reconcile local payment records with the gateway's view.

Three entry points converge on :func:`app.services.payments.update_status`:
direct verification, the signed webhook POST and the unsigned redirect GET.
Whatever arrives first and reaches a terminal status wins; later callers
observe a no-op.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.payment import Payment, PaymentStatus, PaymentType
from app.models.webhook_event import WebhookEvent
from app.schemas.payment import ChapaWebhookPayload
from app.security import RequestContext
from app.services import subscriptions as subscriptions_service
from app.services.chapa import ChapaClient, TransactionVerification
from app.services.payments import StatusChange, get_by_tx_ref, update_status
from app.services.signatures import (
    payment_webhook_secret,
    secret_fingerprint,
    signature_from_headers,
    verify_signature,
)
from app.utils.audit import actor_from_context, record_audit_event
from app.utils.errors import (
    AuthError,
    GatewayError,
    NotFoundError,
    ServiceError,
    SignatureError,
    ValidationError,
)
from app.utils.time import epoch_millis, utcnow

logger = logging.getLogger(__name__)

PROVIDER = "chapa"
TIMESTAMP_HEADER = "x-chapa-timestamp"


def map_provider_status(raw: str | None) -> PaymentStatus:
    """Translate gateway vocabulary into a local payment status.

    ``pending`` means the customer has not finished paying yet and never
    finalizes a record. ``cancelled`` is kept apart from ``failed`` so an
    abandoned checkout is recorded as such; every other value is ``failed``.
    """

    value = (raw or "").strip().lower()
    if value in {"success", "successful"}:
        return PaymentStatus.SUCCESS
    if value == "pending":
        return PaymentStatus.PENDING
    if value == "cancelled":
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


@dataclass(frozen=True)
class ReconciliationOutcome:
    payment: Payment
    status: PaymentStatus
    applied: bool
    reconciliation_required: bool = False
    verification: TransactionVerification | None = None
    storage_failed: bool = False

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "status": self.status.value,
            "data": transaction_summary(self.payment, self.verification),
        }
        if self.reconciliation_required:
            body["reconciliationRequired"] = True
        return body


def transaction_summary(payment: Payment, verification: TransactionVerification | None) -> dict[str, Any]:
    """Client-facing transaction details, preferring the provider's view."""

    if verification is None:
        return {
            "amount": str(payment.amount),
            "currency": payment.currency.value,
            "reference": payment.chapa_trx_ref,
            "tx_ref": payment.tx_ref,
            "payment_method": payment.payment_method,
            "created_at": payment.created_at.isoformat() if payment.created_at else None,
        }
    return {
        "amount": str(verification.amount if verification.amount is not None else payment.amount),
        "currency": verification.currency or payment.currency.value,
        "reference": verification.reference,
        "tx_ref": verification.tx_ref,
        "payment_method": verification.method,
        "created_at": verification.created_at,
    }


def _after_transition(db: Session, change: StatusChange, ctx: RequestContext, source: str) -> None:
    payment = change.payment
    record_audit_event(
        db,
        actor=actor_from_context(ctx, fallback=PROVIDER),
        action=f"payment.{payment.status.value}",
        entity="Payment",
        entity_id=payment.id,
        status=payment.status.value,
        tx_ref=payment.tx_ref,
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
        data={"source": source, "previous_status": change.previous_status.value},
    )
    if payment.payment_type == PaymentType.SUBSCRIPTION and payment.status == PaymentStatus.SUCCESS:
        try:
            subscriptions_service.activate_from_payment(db, payment)
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Subscription activation failed after successful payment",
                extra={"tx_ref": payment.tx_ref, "reconciliation_required": True},
            )


def apply_status(
    db: Session,
    payment: Payment,
    status: PaymentStatus,
    ctx: RequestContext,
    *,
    source: str,
    verification: TransactionVerification | None = None,
) -> ReconciliationOutcome:
    """Persist ``status`` through the guarded update, reporting divergence.

    A storage failure after the gateway confirmed the outcome is not raised:
    it is logged with the provider payload and returned with
    ``reconciliation_required`` so an operator can replay it.
    """

    tx_ref = payment.tx_ref
    try:
        change = update_status(
            db,
            tx_ref,
            status,
            provider_ref=verification.reference if verification else None,
            payment_method=verification.method if verification else None,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Provider status could not be persisted; manual reconciliation required",
            extra={
                "tx_ref": tx_ref,
                "provider_status": status.value,
                "provider_payload": verification.raw if verification else None,
                "error": str(exc),
                "source": source,
                "trace_id": ctx.trace_id,
            },
        )
        return ReconciliationOutcome(
            payment=payment,
            status=status,
            applied=False,
            reconciliation_required=True,
            verification=verification,
            storage_failed=True,
        )

    if change.applied:
        _after_transition(db, change, ctx, source)

    divergent = change.rejected and status == PaymentStatus.SUCCESS
    if divergent:
        logger.error(
            "Gateway reports success for a payment already finalized locally",
            extra={"tx_ref": tx_ref, "local_status": change.payment.status.value, "source": source},
        )
    return ReconciliationOutcome(
        payment=change.payment,
        status=change.payment.status,
        applied=change.applied,
        reconciliation_required=divergent,
        verification=verification,
    )


def verify_payment(db: Session, gateway: ChapaClient, tx_ref: str, ctx: RequestContext) -> ReconciliationOutcome:
    """Ask the gateway for the transaction's status and apply it locally."""

    payment = get_by_tx_ref(db, tx_ref)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")

    verification = gateway.verify_transaction(tx_ref)
    status = map_provider_status(verification.status)
    logger.info(
        "Payment verified with gateway",
        extra={"tx_ref": tx_ref, "provider_status": verification.status, "trace_id": ctx.trace_id},
    )
    return apply_status(db, payment, status, ctx, source="verify", verification=verification)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------
def _check_ip_allowlist(db: Session, settings: Settings, ctx: RequestContext) -> None:
    allowlist = settings.webhook_ip_allowlist
    if not allowlist or ctx.client_ip in allowlist:
        return
    record_audit_event(
        db,
        actor=PROVIDER,
        action="webhook.ip_blocked",
        entity="WebhookEvent",
        status="rejected",
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
    )
    logger.warning("Webhook from address outside allowlist", extra={"client_ip": ctx.client_ip})
    raise AuthError.forbidden("Source address not allowed.")


def _check_signature(
    db: Session, raw_body: bytes, headers: Mapping[str, str], secret: str, ctx: RequestContext
) -> str:
    signature = signature_from_headers(headers)
    if verify_signature(raw_body, signature, secret):
        return signature or ""

    record_audit_event(
        db,
        actor=PROVIDER,
        action="webhook.signature_invalid",
        entity="WebhookEvent",
        status="rejected",
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
        data={"signature_present": bool(signature)},
    )
    logger.warning(
        "Webhook signature rejected",
        extra={
            "signature_present": bool(signature),
            "secret_fingerprint": secret_fingerprint(secret),
            "client_ip": ctx.client_ip,
        },
    )
    if not signature:
        raise SignatureError("Missing signature.", code="SIGNATURE_MISSING")
    raise SignatureError("Invalid signature.", code="SIGNATURE_INVALID")


def _check_timestamp(headers: Mapping[str, str], settings: Settings) -> None:
    raw = headers.get(TIMESTAMP_HEADER)
    if not raw:
        return
    try:
        sent_ms = int(raw)
    except ValueError:
        raise ValidationError("Invalid webhook timestamp.", code="WEBHOOK_TIMESTAMP_INVALID") from None
    age_ms = epoch_millis() - sent_ms
    if age_ms > settings.WEBHOOK_MAX_AGE_SECONDS * 1000:
        logger.warning("Stale webhook rejected", extra={"age_seconds": age_ms // 1000})
        raise ValidationError(
            "Webhook timestamp too old.",
            code="WEBHOOK_EXPIRED",
            details={"max_age_seconds": settings.WEBHOOK_MAX_AGE_SECONDS},
        )


def parse_webhook_payload(raw_body: bytes) -> ChapaWebhookPayload:
    try:
        data = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON.", code="INVALID_JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be a JSON object.", code="INVALID_PAYLOAD")
    try:
        return ChapaWebhookPayload.model_validate(data)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ValidationError(
            "Invalid webhook payload.", code="INVALID_PAYLOAD", details={"fields": fields}
        ) from None


def register_webhook_event(db: Session, tx_ref: str, event_type: str, signature: str | None) -> WebhookEvent:
    """Return the delivery record for ``(tx_ref, event_type)``, creating it once."""

    stmt = select(WebhookEvent).where(
        WebhookEvent.provider == PROVIDER,
        WebhookEvent.tx_ref == tx_ref,
        WebhookEvent.event_type == event_type,
    )
    existing = db.scalars(stmt.execution_options(populate_existing=True)).first()
    if existing is not None:
        return existing

    event = WebhookEvent(
        provider=PROVIDER,
        tx_ref=tx_ref,
        event_type=event_type,
        signature_prefix=(signature or "")[:16] or None,
        received_at=utcnow(),
    )
    try:
        db.add(event)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.scalars(stmt).first()
        if existing is None:
            raise
        return existing
    db.refresh(event)
    return event


def _mark_processed(db: Session, event: WebhookEvent) -> None:
    event.processed_at = utcnow()
    db.commit()


def process_webhook(
    db: Session,
    gateway: ChapaClient,
    settings: Settings,
    ctx: RequestContext,
    *,
    raw_body: bytes,
    headers: Mapping[str, str],
) -> dict[str, Any]:
    """Handle a signed gateway POST.

    The body's declared status is never applied on its own: the transaction is
    re-verified with the gateway first. When that is impossible the event is
    left unprocessed and a 502 asks the gateway to redeliver.
    """

    _check_ip_allowlist(db, settings, ctx)
    secret = payment_webhook_secret(settings)
    signature = _check_signature(db, raw_body, headers, secret, ctx)
    _check_timestamp(headers, settings)
    payload = parse_webhook_payload(raw_body)

    event = register_webhook_event(db, payload.tx_ref, payload.event_type, signature)
    if event.processed_at is not None:
        logger.info(
            "Duplicate webhook ignored",
            extra={"tx_ref": payload.tx_ref, "event_type": payload.event_type},
        )
        return {"success": True, "message": "Already processed"}

    payment = get_by_tx_ref(db, payload.tx_ref)
    if payment is None:
        logger.warning("Webhook for unknown transaction", extra={"tx_ref": payload.tx_ref})
        _mark_processed(db, event)
        return {"success": True, "message": "Ignored: unknown transaction"}

    try:
        verification = gateway.verify_transaction(payload.tx_ref)
    except GatewayError as exc:
        logger.warning(
            "Webhook re-verification failed; awaiting redelivery",
            extra={"tx_ref": payload.tx_ref, "gateway_status": exc.status_code, "declared_status": payload.status},
        )
        raise ServiceError(
            "Could not verify the transaction with the payment provider.",
            code="VERIFICATION_UNAVAILABLE",
            status_code=502,
        ) from exc

    status = map_provider_status(verification.status)
    if status != map_provider_status(payload.status):
        logger.info(
            "Webhook status differs from verified status",
            extra={"tx_ref": payload.tx_ref, "declared": payload.status, "verified": verification.status},
        )

    outcome = apply_status(db, payment, status, ctx, source="webhook", verification=verification)
    if outcome.storage_failed:
        raise ServiceError(
            "Payment state could not be recorded; retry later.",
            code="RECONCILIATION_PENDING",
            status_code=503,
        )

    if outcome.status == PaymentStatus.PENDING:
        # Left unprocessed so a redelivery after settlement is re-verified.
        logger.info("Webhook for unsettled transaction", extra={"tx_ref": payload.tx_ref})
        return {"success": True, "message": "Awaiting settlement", "status": outcome.status.value}

    _mark_processed(db, event)
    return {"success": True, "message": "Webhook processed", "status": outcome.status.value}


def process_callback(
    db: Session,
    gateway: ChapaClient,
    ctx: RequestContext,
    *,
    tx_ref: str,
    query_status: str | None,
) -> dict[str, Any]:
    """Handle the unsigned redirect GET.

    The query string is lower trust. It is consulted only when the gateway
    cannot be reached, and even then only to close a payment as failed or
    cancelled, never to mark it paid.
    """

    payment = get_by_tx_ref(db, tx_ref)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")

    try:
        verification: TransactionVerification | None = gateway.verify_transaction(tx_ref)
        status = map_provider_status(verification.status)
        source = "callback"
    except GatewayError as exc:
        verification = None
        fallback = map_provider_status(query_status) if query_status else None
        logger.warning(
            "Callback re-verification failed",
            extra={"tx_ref": tx_ref, "gateway_status": exc.status_code, "query_status": query_status},
        )
        if fallback not in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return {
                "success": False,
                "status": payment.status.value,
                "message": "Verification pending",
            }
        status = fallback
        source = "callback_unverified"

    outcome = apply_status(db, payment, status, ctx, source=source, verification=verification)
    body: dict[str, Any] = {
        "success": True,
        "status": outcome.status.value,
        "message": "Payment status updated" if outcome.applied else "No change",
    }
    if outcome.reconciliation_required:
        body["reconciliationRequired"] = True
    return body


__all__ = [
    "ReconciliationOutcome",
    "apply_status",
    "map_provider_status",
    "parse_webhook_payload",
    "process_callback",
    "process_webhook",
    "register_webhook_event",
    "transaction_summary",
    "verify_payment",
]

"""Seller payouts: transfer submission, gateway callbacks and bounded retries."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.payment import PaymentStatus
from app.models.payout import TERMINAL_PAYOUT_STATUSES, Payout, PayoutStatus
from app.schemas.payout import TransferIn
from app.security import RequestContext
from app.services import payments as payments_service
from app.services.chapa import ChapaClient
from app.services.payments import _random_suffix
from app.services.signatures import (
    payout_approval_secret,
    payout_webhook_secret,
    secret_fingerprint,
    signature_from_headers,
    verify_signature,
)
from app.utils.audit import actor_from_context, record_audit_event
from app.utils.errors import (
    ConfigurationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ServiceError,
    SignatureError,
    ValidationError,
)
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

RETRY_BACKOFFS = (
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=6),
    timedelta(hours=24),
)
AMOUNT_TOLERANCE = Decimal("0.01")
RETRYABLE_STATUSES = (PayoutStatus.PENDING, PayoutStatus.FAILED)
IN_FLIGHT_STATUSES = (PayoutStatus.QUEUED, PayoutStatus.APPROVED, PayoutStatus.SUCCESS)


def map_transfer_status(raw: str | None) -> PayoutStatus:
    value = (raw or "").strip().lower()
    if value in {"success", "successful"}:
        return PayoutStatus.SUCCESS
    if value == "approved":
        return PayoutStatus.APPROVED
    if value in {"pending", "queued"}:
        return PayoutStatus.QUEUED
    if value in {"reverted", "reversed"}:
        return PayoutStatus.REVERTED
    return PayoutStatus.FAILED


def compute_fees(amount_gross: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """Return ``(platform_fee, amount_net)`` rounded to cents."""

    fee = (amount_gross * Decimal(rate)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    net = (amount_gross - fee).quantize(Decimal("0.01"))
    return fee, net


def build_reference(order_ref: str, attempt: int) -> str:
    compact = re.sub(r"[^A-Za-z0-9]", "", order_ref).upper()[:40] or "ORDER"
    return f"PO-{compact}-{attempt}-{_random_suffix()}"


@dataclass(frozen=True)
class PayoutStatusChange:
    payout: Payout
    previous_status: PayoutStatus
    applied: bool
    rejected: bool = False


def get_by_reference(db: Session, reference: str) -> Payout | None:
    stmt = select(Payout).where(Payout.reference == reference).execution_options(populate_existing=True)
    return db.scalars(stmt).first()


def _latest_for_order(db: Session, seller_id: str, order_ref: str) -> Payout | None:
    stmt = (
        select(Payout)
        .where(Payout.seller_id == seller_id, Payout.order_ref == order_ref)
        .order_by(Payout.created_at.desc(), Payout.id.desc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def set_payout_status(
    db: Session,
    payout_id: int,
    new_status: PayoutStatus,
    *,
    chapa_reference: str | None = None,
    bank_reference: str | None = None,
    last_error: str | None = None,
) -> PayoutStatusChange:
    """Update a payout unless it already reached ``success`` or ``reverted``.

    An approved payout is never moved back to ``pending`` or ``queued``.
    """

    current = db.get(Payout, payout_id, populate_existing=True)
    if current is None:
        raise NotFoundError("Payout not found.", code="PAYOUT_NOT_FOUND")
    previous = current.status

    values: dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
    if chapa_reference:
        values["chapa_reference"] = func.coalesce(Payout.chapa_reference, chapa_reference)
    if bank_reference:
        values["bank_reference"] = func.coalesce(Payout.bank_reference, bank_reference)
    if last_error is not None:
        values["last_error"] = last_error[:500] or None
    blocked = set(TERMINAL_PAYOUT_STATUSES)
    if new_status in (PayoutStatus.PENDING, PayoutStatus.QUEUED):
        blocked.add(PayoutStatus.APPROVED)
    result = db.execute(
        update(Payout)
        .where(Payout.id == payout_id, Payout.status.notin_(blocked))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    payout = db.get(Payout, payout_id, populate_existing=True)
    assert payout is not None

    if result.rowcount == 1:
        if previous != new_status:
            logger.info(
                "Payout status updated",
                extra={"reference": payout.reference, "from": previous.value, "to": new_status.value},
            )
        return PayoutStatusChange(payout, previous, applied=previous != new_status)

    if payout.status == new_status:
        return PayoutStatusChange(payout, payout.status, applied=False)
    if payout.status == PayoutStatus.APPROVED and not new_status.is_terminal:
        logger.info(
            "Ignored stale status for approved payout",
            extra={"reference": payout.reference, "requested": new_status.value},
        )
        return PayoutStatusChange(payout, payout.status, applied=False)
    logger.warning(
        "Rejected status change on finalized payout",
        extra={"reference": payout.reference, "current": payout.status.value, "requested": new_status.value},
    )
    return PayoutStatusChange(payout, payout.status, applied=False, rejected=True)


def _start_attempt(db: Session, payout: Payout) -> bool:
    """Claim the next attempt with a fresh reference; False if another worker got there first."""

    attempt = payout.attempts + 1
    result = db.execute(
        update(Payout)
        .where(
            Payout.id == payout.id,
            Payout.attempts == payout.attempts,
            Payout.status.in_(RETRYABLE_STATUSES),
        )
        .values(
            attempts=attempt,
            reference=build_reference(payout.order_ref, attempt),
            status=PayoutStatus.PENDING,
            last_attempt_at=utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(payout)
    return result.rowcount == 1


def _submit(db: Session, gateway: ChapaClient, payout: Payout) -> Payout:
    """Send the current attempt to the gateway and record the result."""

    try:
        result = gateway.create_transfer(
            reference=payout.reference,
            amount=payout.amount_net,
            currency=payout.currency.value,
            account_name=payout.account_name,
            account_number=payout.account_number,
            bank_code=payout.bank_code,
        )
    except GatewayError as exc:
        change = set_payout_status(db, payout.id, PayoutStatus.FAILED, last_error=exc.message)
        logger.warning(
            "Payout transfer failed",
            extra={
                "reference": payout.reference,
                "attempts": change.payout.attempts,
                "gateway_status": exc.status_code,
            },
        )
        raise

    change = set_payout_status(
        db,
        payout.id,
        PayoutStatus.QUEUED,
        chapa_reference=result.chapa_reference,
        bank_reference=result.bank_reference,
        last_error="",
    )
    logger.info("Payout transfer queued", extra={"reference": payout.reference, "attempts": change.payout.attempts})
    return change.payout


def request_transfer(
    db: Session,
    gateway: ChapaClient,
    ctx: RequestContext,
    settings: Settings,
    payload: TransferIn,
) -> tuple[Payout, bool]:
    """Start (or reuse) the payout for one of the seller's orders.

    Returns ``(payout, submitted)``; ``submitted`` is False when an existing
    payout already covers the order.
    """

    if not ctx.identity:
        raise ValidationError("An authenticated identity is required.")
    if payload.payment_id is not None:
        payment = payments_service.get_payment(db, payload.payment_id)
        if payment is None:
            raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")
        if payment.status != PaymentStatus.SUCCESS:
            raise ValidationError("The order payment has not settled.", code="PAYMENT_NOT_SETTLED")

    fee, net = compute_fees(payload.amount_gross, settings.PLATFORM_FEE_RATE)
    if net <= 0:
        raise ValidationError("Net payout amount must be positive.", code="PAYOUT_AMOUNT_INVALID")

    existing = _latest_for_order(db, ctx.identity, payload.order_ref)
    if existing is not None and existing.status in IN_FLIGHT_STATUSES:
        return existing, False
    if existing is not None and existing.status == PayoutStatus.PENDING:
        if existing.amount_gross != payload.amount_gross or existing.currency != payload.currency:
            raise ConflictError(
                "A payout with different amounts is already in progress for this order.",
                code="PAYOUT_IN_PROGRESS",
            )
        return existing, False

    if existing is not None and existing.status == PayoutStatus.FAILED:
        if existing.attempts >= settings.PAYOUT_MAX_ATTEMPTS:
            raise ConflictError(
                "Payout retries exhausted for this order.",
                code="PAYOUT_ATTEMPTS_EXHAUSTED",
                details={"attempts": existing.attempts},
            )
        existing.account_name = payload.account_name
        existing.account_number = payload.account_number
        existing.bank_code = payload.bank_code
        db.commit()
        if not _start_attempt(db, existing):
            return existing, False
        payout = existing
    else:
        payout = Payout(
            reference=build_reference(payload.order_ref, 1),
            order_ref=payload.order_ref,
            seller_id=ctx.identity,
            payment_id=payload.payment_id,
            amount_gross=payload.amount_gross,
            platform_fee=fee,
            amount_net=net,
            currency=payload.currency,
            status=PayoutStatus.PENDING,
            attempts=1,
            last_attempt_at=utcnow(),
            account_name=payload.account_name,
            account_number=payload.account_number,
            bank_code=payload.bank_code,
        )
        db.add(payout)
        db.commit()
        db.refresh(payout)

    record_audit_event(
        db,
        actor=actor_from_context(ctx),
        action="payout.requested",
        entity="Payout",
        entity_id=payout.id,
        status=payout.status.value,
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
        data={
            "reference": payout.reference,
            "order_ref": payout.order_ref,
            "amount_net": str(payout.amount_net),
            "account_number": payout.account_number,
        },
    )
    return _submit(db, gateway, payout), True


# ---------------------------------------------------------------------------
# Gateway callbacks
# ---------------------------------------------------------------------------
def _extract_reference(payload: Mapping[str, Any]) -> str | None:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for candidate in (payload.get("reference"), data.get("reference"), payload.get("transfer_reference")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _declared_amount(payload: Mapping[str, Any]) -> Decimal | None:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    raw = payload.get("amount", data.get("amount"))
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise ValidationError("Invalid amount in callback.", code="INVALID_AMOUNT") from None


def handle_transfer_callback(
    db: Session,
    gateway: ChapaClient,
    settings: Settings,
    ctx: RequestContext,
    *,
    kind: str,
    raw_body: bytes,
    headers: Mapping[str, str],
) -> dict[str, Any]:
    """Process a signed transfer approval (``kind="approval"``) or status webhook."""

    secret = payout_approval_secret(settings) if kind == "approval" else payout_webhook_secret(settings)
    signature = signature_from_headers(headers)
    if not verify_signature(raw_body, signature, secret):
        record_audit_event(
            db,
            actor="chapa",
            action=f"payout.{kind}.signature_invalid",
            entity="Payout",
            status="rejected",
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
        )
        logger.warning(
            "Payout callback signature rejected",
            extra={"kind": kind, "secret_fingerprint": secret_fingerprint(secret)},
        )
        raise SignatureError("Invalid signature.", code="SIGNATURE_INVALID")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Callback body is not valid JSON.", code="INVALID_JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object.", code="INVALID_PAYLOAD")

    reference = _extract_reference(payload)
    if not reference:
        raise ValidationError("Missing transfer reference.", code="MISSING_REFERENCE")

    payout = get_by_reference(db, reference)
    if payout is None:
        raise NotFoundError("Payout not found.", code="PAYOUT_NOT_FOUND")

    if kind == "approval" and payout.status == PayoutStatus.SUCCESS:
        return {"success": True, "status": PayoutStatus.APPROVED.value, "reference": reference}

    declared = _declared_amount(payload)
    if declared is not None and abs(declared - payout.amount_net) > AMOUNT_TOLERANCE:
        record_audit_event(
            db,
            actor="chapa",
            action=f"payout.{kind}.amount_mismatch",
            entity="Payout",
            entity_id=payout.id,
            status="rejected",
            ip_address=ctx.client_ip,
            data={"reference": reference, "declared": str(declared), "expected": str(payout.amount_net)},
        )
        logger.warning(
            "Payout callback amount mismatch",
            extra={"reference": reference, "declared": str(declared), "expected": str(payout.amount_net)},
        )
        raise ValidationError("Amount mismatch.", code="AMOUNT_MISMATCH")

    try:
        verification = gateway.verify_transfer(reference)
    except GatewayError as exc:
        logger.warning(
            "Payout callback re-verification failed",
            extra={"reference": reference, "kind": kind, "gateway_status": exc.status_code},
        )
        raise ServiceError(
            "Could not verify the transfer with the payment provider.",
            code="VERIFICATION_UNAVAILABLE",
            status_code=502,
        ) from exc

    status = map_transfer_status(verification.status)
    if kind == "approval" and status == PayoutStatus.QUEUED:
        status = PayoutStatus.APPROVED

    change = set_payout_status(
        db,
        payout.id,
        status,
        chapa_reference=verification.chapa_reference,
        bank_reference=verification.bank_reference,
    )
    if change.applied:
        record_audit_event(
            db,
            actor="chapa",
            action=f"payout.{change.payout.status.value}",
            entity="Payout",
            entity_id=payout.id,
            status=change.payout.status.value,
            ip_address=ctx.client_ip,
            data={"reference": reference, "source": kind, "previous_status": change.previous_status.value},
        )
    return {"success": True, "status": change.payout.status.value, "reference": reference}


def apply_approval(db: Session, gateway: ChapaClient, settings: Settings, ctx: RequestContext, **kwargs) -> dict[str, Any]:
    return handle_transfer_callback(db, gateway, settings, ctx, kind="approval", **kwargs)


def apply_webhook(db: Session, gateway: ChapaClient, settings: Settings, ctx: RequestContext, **kwargs) -> dict[str, Any]:
    return handle_transfer_callback(db, gateway, settings, ctx, kind="webhook", **kwargs)


def list_banks(gateway: ChapaClient) -> list[dict[str, Any]]:
    return gateway.list_banks()


# ---------------------------------------------------------------------------
# Retry job
# ---------------------------------------------------------------------------
def backoff_for(attempts: int) -> timedelta:
    index = min(max(attempts, 1), len(RETRY_BACKOFFS)) - 1
    return RETRY_BACKOFFS[index]


def list_retryable(db: Session, settings: Settings, now: datetime | None = None) -> list[Payout]:
    """Payouts whose backoff elapsed, still under the attempt and age limits."""

    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.PAYOUT_RETRY_MAX_AGE_HOURS)
    stmt = (
        select(Payout)
        .where(
            Payout.status.in_(RETRYABLE_STATUSES),
            Payout.attempts < settings.PAYOUT_MAX_ATTEMPTS,
            Payout.created_at >= cutoff,
        )
        .order_by(Payout.updated_at.asc())
        .limit(settings.PAYOUT_RETRY_BATCH_SIZE * 4)
    )
    due: list[Payout] = []
    for payout in db.scalars(stmt):
        last = ensure_utc(payout.last_attempt_at or payout.updated_at) or now
        if last + backoff_for(payout.attempts) <= now:
            due.append(payout)
        if len(due) >= settings.PAYOUT_RETRY_BATCH_SIZE:
            break
    return due


def _adopt_provider_state(db: Session, gateway: ChapaClient, payout: Payout) -> bool:
    """Return True when the gateway already knows the previous attempt.

    A transfer that timed out locally may still have been accepted; resubmitting
    it under a new reference would pay the seller twice.
    """

    try:
        verification = gateway.verify_transfer(payout.reference)
    except GatewayError as exc:
        if exc.status_code in (400, 404):
            return False
        raise
    status = map_transfer_status(verification.status)
    if status == PayoutStatus.FAILED:
        return False
    set_payout_status(
        db,
        payout.id,
        status,
        chapa_reference=verification.chapa_reference,
        bank_reference=verification.bank_reference,
    )
    logger.info(
        "Payout attempt already known to gateway; not resubmitting",
        extra={"reference": payout.reference, "status": status.value},
    )
    return True


def retry_failed_payouts(
    db: Session, gateway: ChapaClient, settings: Settings, now: datetime | None = None
) -> dict[str, int]:
    stats = {"considered": 0, "adopted": 0, "retried": 0, "queued": 0, "failed": 0, "skipped": 0}
    for payout in list_retryable(db, settings, now):
        stats["considered"] += 1
        try:
            if _adopt_provider_state(db, gateway, payout):
                stats["adopted"] += 1
                continue
        except GatewayError:
            stats["skipped"] += 1
            continue

        if not _start_attempt(db, payout):
            stats["skipped"] += 1
            continue
        stats["retried"] += 1
        try:
            _submit(db, gateway, payout)
            stats["queued"] += 1
        except GatewayError:
            stats["failed"] += 1
            if payout.attempts >= settings.PAYOUT_MAX_ATTEMPTS:
                logger.error(
                    "Payout retries exhausted",
                    extra={"reference": payout.reference, "order_ref": payout.order_ref},
                )
        except ConfigurationError:
            logger.exception("Payout retry aborted: gateway is not configured")
            break
    if stats["considered"]:
        logger.info("Payout retry run finished", extra=stats)
    return stats


__all__ = [
    "RETRY_BACKOFFS",
    "PayoutStatusChange",
    "apply_approval",
    "apply_webhook",
    "backoff_for",
    "build_reference",
    "compute_fees",
    "get_by_reference",
    "handle_transfer_callback",
    "list_banks",
    "list_retryable",
    "map_transfer_status",
    "request_transfer",
    "retry_failed_payouts",
    "set_payout_status",
]

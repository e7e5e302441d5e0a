"""Payment record management: creation and guarded status transitions."""
from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payment import Currency, Payment, PaymentStatus, PaymentType
from app.services.idempotency import get_existing_by_key
from app.utils.errors import NotFoundError, ValidationError
from app.utils.time import epoch_millis, utcnow

logger = logging.getLogger(__name__)

TX_REF_PATTERN = re.compile(r"^AC(-[A-Z0-9]+)+$")
TX_REF_MAX_LENGTH = 100
ORDER_TX_PREFIX = "AC"
SUBSCRIPTION_TX_PREFIX = "AC-SUB"
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def generate_tx_ref(prefix: str = ORDER_TX_PREFIX) -> str:
    """Return ``<prefix>-<epoch ms>-<6 upper alnum>``."""

    return f"{prefix}-{epoch_millis()}-{_random_suffix()}"


def is_valid_tx_ref(value: str | None) -> bool:
    return bool(value) and len(value) <= TX_REF_MAX_LENGTH and bool(TX_REF_PATTERN.match(value))


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value.quantize(Decimal("0.01"))
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class StatusChange:
    """Outcome of :func:`update_status`.

    ``applied`` is true only for the request that moved the record out of
    ``pending``; ``rejected`` marks an attempt to overwrite a different
    terminal status.
    """

    payment: Payment
    previous_status: PaymentStatus
    applied: bool
    rejected: bool = False


def get_payment(db: Session, payment_id: int) -> Payment | None:
    return db.get(Payment, payment_id, populate_existing=True)


def get_by_tx_ref(db: Session, tx_ref: str) -> Payment | None:
    stmt = select(Payment).where(Payment.tx_ref == tx_ref).execution_options(populate_existing=True)
    return db.scalars(stmt).first()


def create_payment(
    db: Session,
    *,
    owner_id: str,
    amount: Decimal,
    currency: Currency,
    payment_type: PaymentType = PaymentType.ORDER,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    tx_ref_prefix: str = ORDER_TX_PREFIX,
) -> tuple[Payment, bool]:
    """Insert a pending payment; returns ``(payment, created)``.

    When another request claimed the same ``(owner_id, idempotency_key)``
    first, the unique constraint rejects this insert and the winner's record
    is returned with ``created=False``.
    """

    payment = Payment(
        owner_id=owner_id,
        tx_ref=generate_tx_ref(tx_ref_prefix),
        amount=_to_decimal(amount),
        currency=currency,
        payment_type=payment_type,
        status=PaymentStatus.PENDING,
        metadata_json=metadata or {},
        idempotency_key=idempotency_key,
    )
    try:
        db.add(payment)
        db.commit()
        db.refresh(payment)
    except IntegrityError:
        db.rollback()
        existing = get_existing_by_key(db, owner_id, idempotency_key)
        if existing is None:
            raise
        logger.info(
            "Concurrent payment creation resolved to existing record",
            extra={"payment_id": existing.id, "tx_ref": existing.tx_ref},
        )
        return existing, False

    logger.info(
        "Payment created",
        extra={
            "payment_id": payment.id,
            "tx_ref": payment.tx_ref,
            "amount": str(payment.amount),
            "currency": payment.currency.value,
            "payment_type": payment.payment_type.value,
        },
    )
    return payment, True


def update_checkout_url(db: Session, payment_id: int, checkout_url: str) -> bool:
    """Cache the hosted checkout URL; a URL already stored is never replaced."""

    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.checkout_url.is_(None))
        .values(checkout_url=checkout_url, updated_at=utcnow())
    )
    db.commit()
    return result.rowcount == 1


def _fill_provider_details(
    db: Session, tx_ref: str, provider_ref: str | None, payment_method: str | None
) -> None:
    values: dict[str, Any] = {}
    if provider_ref:
        values["chapa_trx_ref"] = func.coalesce(Payment.chapa_trx_ref, provider_ref)
    if payment_method:
        values["payment_method"] = func.coalesce(Payment.payment_method, payment_method)
    if not values:
        return
    db.execute(
        update(Payment)
        .where(Payment.tx_ref == tx_ref)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def update_status(
    db: Session,
    tx_ref: str,
    new_status: PaymentStatus,
    *,
    provider_ref: str | None = None,
    payment_method: str | None = None,
) -> StatusChange:
    """Move a payment out of ``pending``; terminal statuses are never overwritten.

    The transition is a single conditional ``UPDATE ... WHERE status =
    'pending'`` so concurrent webhook, redirect and verify calls cannot both
    win. Provider references are only filled when still empty.
    """

    applied = False
    if new_status != PaymentStatus.PENDING:
        values: dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
        if provider_ref:
            values["chapa_trx_ref"] = func.coalesce(Payment.chapa_trx_ref, provider_ref)
        if payment_method:
            values["payment_method"] = func.coalesce(Payment.payment_method, payment_method)
        result = db.execute(
            update(Payment)
            .where(Payment.tx_ref == tx_ref, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        applied = result.rowcount == 1

    if not applied:
        _fill_provider_details(db, tx_ref, provider_ref, payment_method)

    payment = get_by_tx_ref(db, tx_ref)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")

    if applied:
        logger.info(
            "Payment status updated",
            extra={"tx_ref": tx_ref, "from": PaymentStatus.PENDING.value, "to": new_status.value},
        )
        return StatusChange(payment, PaymentStatus.PENDING, applied=True)

    if payment.status == new_status:
        return StatusChange(payment, payment.status, applied=False)

    if new_status == PaymentStatus.PENDING:
        return StatusChange(payment, payment.status, applied=False)

    logger.warning(
        "Rejected status change on finalized payment",
        extra={"tx_ref": tx_ref, "current": payment.status.value, "requested": new_status.value},
    )
    return StatusChange(payment, payment.status, applied=False, rejected=True)


def ensure_refundable(payment: Payment) -> None:
    """Raise :class:`ValidationError` naming the first unmet refund precondition."""

    if payment.payment_type != PaymentType.SUBSCRIPTION:
        raise ValidationError("Only subscription payments can be refunded.", code="REFUND_NOT_SUPPORTED")
    if payment.status != PaymentStatus.SUCCESS:
        raise ValidationError("Only successful payments can be refunded.", code="PAYMENT_NOT_SUCCESSFUL")
    if payment.refunded_at is not None:
        raise ValidationError("Payment has already been refunded.", code="ALREADY_REFUNDED")
    if not payment.chapa_trx_ref:
        raise ValidationError("Payment has no provider reference to refund.", code="MISSING_PROVIDER_REFERENCE")


def record_refund(
    db: Session,
    payment_id: int,
    *,
    amount: Decimal,
    reason: str,
    reference: str,
    refunded_by: str,
) -> Payment:
    """Stamp refund details once; a second call for the same payment is rejected."""

    result = db.execute(
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.refunded_at.is_(None),
            Payment.status == PaymentStatus.SUCCESS,
            Payment.payment_type == PaymentType.SUBSCRIPTION,
        )
        .values(
            refunded_at=utcnow(),
            refund_amount=_to_decimal(amount),
            refund_reason=reason,
            refund_reference=reference,
            refunded_by=refunded_by,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    payment = get_payment(db, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")
    if result.rowcount != 1:
        ensure_refundable(payment)
        raise ValidationError("Payment cannot be refunded.", code="REFUND_NOT_ALLOWED")
    logger.info(
        "Refund recorded",
        extra={"payment_id": payment_id, "tx_ref": payment.tx_ref, "refund_reference": reference},
    )
    return payment


__all__ = [
    "ORDER_TX_PREFIX",
    "SUBSCRIPTION_TX_PREFIX",
    "TX_REF_MAX_LENGTH",
    "TX_REF_PATTERN",
    "StatusChange",
    "create_payment",
    "ensure_refundable",
    "generate_tx_ref",
    "get_by_tx_ref",
    "get_payment",
    "is_valid_tx_ref",
    "record_refund",
    "update_checkout_url",
    "update_status",
]

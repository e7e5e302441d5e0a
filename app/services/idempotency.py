"""Idempotency helpers for payment initialization."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.payment import Payment, PaymentStatus
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PENDING_TTL = timedelta(minutes=30)
COMPLETED_TTL = timedelta(hours=24)


class IdempotencyState(str, enum.Enum):
    FRESH = "fresh"
    REUSABLE = "reusable"
    EXPIRED = "expired"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class IdempotencyDecision:
    state: IdempotencyState
    payment: Payment | None = None


def ttl_for(status: PaymentStatus) -> timedelta:
    return PENDING_TTL if status == PaymentStatus.PENDING else COMPLETED_TTL


def classify(payment: Payment | None, now: datetime | None = None) -> IdempotencyDecision:
    """Decide whether a previous attempt can answer a retried request."""

    if payment is None:
        return IdempotencyDecision(IdempotencyState.FRESH)

    now = now or utcnow()
    created_at = ensure_utc(payment.created_at) or now
    if now - created_at > ttl_for(payment.status):
        return IdempotencyDecision(IdempotencyState.EXPIRED, payment)

    if payment.status == PaymentStatus.SUCCESS:
        return IdempotencyDecision(IdempotencyState.REUSABLE, payment)
    if payment.status == PaymentStatus.PENDING:
        if payment.checkout_url:
            return IdempotencyDecision(IdempotencyState.REUSABLE, payment)
        return IdempotencyDecision(IdempotencyState.IN_PROGRESS, payment)
    # failed / cancelled: the caller may try again with the same key
    return IdempotencyDecision(IdempotencyState.EXPIRED, payment)


def get_existing_by_key(db: Session, owner_id: str, key_value: str | None) -> Payment | None:
    """Return the payment holding ``key_value`` for ``owner_id`` if present."""

    if not key_value:
        return None
    stmt = (
        select(Payment)
        .where(Payment.owner_id == owner_id, Payment.idempotency_key == key_value)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def lookup(db: Session, owner_id: str, key_value: str | None, now: datetime | None = None) -> IdempotencyDecision:
    return classify(get_existing_by_key(db, owner_id, key_value), now)


def release_key(db: Session, payment: Payment) -> bool:
    """Detach an expired key from its old payment so a new attempt can claim it.

    Only the key column changes; the guard on the current key value makes a
    concurrent release by another request a harmless no-op.
    """

    if not payment.idempotency_key:
        return False
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.idempotency_key == payment.idempotency_key)
        .values(idempotency_key=None)
    )
    db.commit()
    released = result.rowcount == 1
    if released:
        logger.info(
            "Released idempotency key from previous attempt",
            extra={"payment_id": payment.id, "tx_ref": payment.tx_ref, "status": payment.status.value},
        )
    db.refresh(payment)
    return released


__all__ = [
    "COMPLETED_TTL",
    "PENDING_TTL",
    "IdempotencyDecision",
    "IdempotencyState",
    "classify",
    "get_existing_by_key",
    "lookup",
    "release_key",
    "ttl_for",
]

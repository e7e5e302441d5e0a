"""Subscription plans, pricing and activation after payment."""
from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.payment import Currency, Payment, PaymentStatus, PaymentType
from app.models.subscription import BillingCycle, Subscription, SubscriptionPlan, SubscriptionStatus
from app.utils.errors import ValidationError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

ENTERPRISE_PLAN_SLUG = "enterprise"
LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
BILLING_PERIODS = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.ANNUAL: timedelta(days=365),
}


def get_plan(db: Session, plan_id: int) -> SubscriptionPlan | None:
    return db.get(SubscriptionPlan, plan_id)


def get_live_subscription(db: Session, business_id: str) -> Subscription | None:
    stmt = select(Subscription).where(
        Subscription.business_id == business_id,
        Subscription.status.in_(LIVE_STATUSES),
    )
    return db.scalars(stmt).first()


def plan_charge(plan: SubscriptionPlan, billing_cycle: BillingCycle, settings: Settings) -> tuple[Decimal, Currency]:
    """Return the amount to charge and its currency.

    Plan prices are stored in subunits. Checkout is always settled in ETB, so
    USD-priced plans are converted with ``USD_TO_ETB_RATE``.
    """

    subunits = plan.price_annual if billing_cycle == BillingCycle.ANNUAL else plan.price_monthly
    if not subunits or subunits <= 0:
        raise ValidationError("Plan pricing is not properly configured.", code="PLAN_PRICING_INVALID")

    amount = (Decimal(subunits) / Decimal(100)).quantize(Decimal("0.01"))
    if plan.currency == Currency.USD:
        amount = (amount * Decimal(settings.USD_TO_ETB_RATE)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return amount, Currency.ETB


def activate_from_payment(db: Session, payment: Payment) -> Subscription | None:
    """Create or extend the business subscription paid for by ``payment``."""

    if payment.payment_type != PaymentType.SUBSCRIPTION or payment.status != PaymentStatus.SUCCESS:
        return None

    meta = payment.metadata_json or {}
    business_id = meta.get("businessId")
    plan_id = meta.get("planId")
    cycle_value = meta.get("billingCycle")
    if not business_id or not plan_id or not cycle_value:
        logger.error(
            "Subscription payment is missing activation metadata",
            extra={"tx_ref": payment.tx_ref, "metadata_keys": sorted(meta)},
        )
        return None

    billing_cycle = BillingCycle(cycle_value)
    now = utcnow()
    subscription = db.scalars(select(Subscription).where(Subscription.business_id == business_id)).first()
    if subscription is not None and subscription.last_payment_tx_ref == payment.tx_ref:
        return subscription

    if subscription is None:
        subscription = Subscription(business_id=business_id, plan_id=int(plan_id), billing_cycle=billing_cycle)
        db.add(subscription)
    subscription.plan_id = int(plan_id)
    subscription.billing_cycle = billing_cycle
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.current_period_end = now + BILLING_PERIODS[billing_cycle]
    subscription.last_payment_tx_ref = payment.tx_ref
    subscription.cancelled_at = None
    db.commit()
    db.refresh(subscription)
    logger.info(
        "Subscription activated",
        extra={"business_id": business_id, "plan_id": plan_id, "tx_ref": payment.tx_ref},
    )
    return subscription


def cancel_for_business(db: Session, business_id: str) -> bool:
    result = db.execute(
        update(Subscription)
        .where(Subscription.business_id == business_id, Subscription.status.in_(LIVE_STATUSES))
        .values(status=SubscriptionStatus.CANCELLED, cancelled_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    cancelled = result.rowcount > 0
    if cancelled:
        logger.info("Subscription cancelled", extra={"business_id": business_id})
    return cancelled


__all__ = [
    "BILLING_PERIODS",
    "ENTERPRISE_PLAN_SLUG",
    "activate_from_payment",
    "cancel_for_business",
    "get_live_subscription",
    "get_plan",
    "plan_charge",
]

"""Hosted checkout initialization for orders and subscriptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from app.config import Settings
from app.models.payment import Currency, Payment, PaymentStatus, PaymentType
from app.schemas.payment import PaymentInitializeIn
from app.schemas.subscription import SubscriptionCheckoutIn
from app.security import RequestContext
from app.services import idempotency
from app.services import payments as payments_service
from app.services import subscriptions as subscriptions_service
from app.services.chapa import ChapaClient
from app.services.idempotency import IdempotencyState
from app.utils.audit import actor_from_context, record_audit_event
from app.utils.errors import (
    ConfigurationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEV_APP_URL = "http://localhost:3000"


@dataclass(frozen=True)
class CheckoutResult:
    payment: Payment
    checkout_url: str | None
    cached: bool = False

    def to_response(self) -> dict[str, Any]:
        payment = self.payment
        if self.cached and payment.status == PaymentStatus.SUCCESS:
            return {
                "success": True,
                "message": "Payment already completed",
                "txRef": payment.tx_ref,
                "paymentId": payment.id,
                "status": payment.status.value,
                "cached": True,
            }
        body: dict[str, Any] = {
            "success": True,
            "checkoutUrl": self.checkout_url,
            "txRef": payment.tx_ref,
            "paymentId": payment.id,
        }
        if self.cached:
            body["cached"] = True
        return body


def payment_urls(settings: Settings, tx_ref: str) -> tuple[str, str]:
    """Return ``(callback_url, return_url)`` for a checkout session."""

    base = settings.APP_URL
    if not base:
        if settings.is_production:
            raise ConfigurationError("APP_URL must be configured to build checkout callback URLs.")
        base = DEV_APP_URL
    base = base.rstrip("/")
    return f"{base}/api/payments/webhook", f"{base}/payment/complete?tx_ref={tx_ref}"


def _customer_names(ctx: RequestContext, first_name: str | None, last_name: str | None) -> tuple[str, str]:
    if first_name and last_name:
        return first_name, last_name
    parts = (ctx.display_name or "").split()
    default_first = parts[0] if parts else "AfriConnect"
    default_last = " ".join(parts[1:]) if len(parts) > 1 else "Customer"
    return first_name or default_first, last_name or default_last


def _reuse_or_reject(decision: idempotency.IdempotencyDecision) -> CheckoutResult | None:
    if decision.state == IdempotencyState.REUSABLE:
        assert decision.payment is not None
        logger.info(
            "Returning cached checkout for idempotent request",
            extra={"payment_id": decision.payment.id, "tx_ref": decision.payment.tx_ref},
        )
        return CheckoutResult(decision.payment, decision.payment.checkout_url, cached=True)
    if decision.state == IdempotencyState.IN_PROGRESS:
        raise ConflictError(
            "A checkout for this idempotency key is still being created; retry shortly.",
            code="IDEMPOTENT_REQUEST_IN_PROGRESS",
        )
    return None


def start_checkout(
    db: Session,
    gateway: ChapaClient,
    ctx: RequestContext,
    settings: Settings,
    *,
    amount: Decimal,
    currency: Currency,
    payment_type: PaymentType,
    metadata: dict[str, Any] | None,
    idempotency_key: str | None,
    first_name: str | None = None,
    last_name: str | None = None,
    tx_ref_prefix: str = payments_service.ORDER_TX_PREFIX,
    title: str = "AfriConnect",
) -> CheckoutResult:
    """Create (or reuse) a payment record and open a hosted checkout for it."""

    if not ctx.identity:
        raise ValidationError("An authenticated identity is required.")
    if not ctx.email:
        raise ValidationError("An email address is required for checkout.", code="EMAIL_REQUIRED")

    if idempotency_key:
        decision = idempotency.lookup(db, ctx.identity, idempotency_key)
        cached = _reuse_or_reject(decision)
        if cached is not None:
            return cached
        if decision.state == IdempotencyState.EXPIRED and decision.payment is not None:
            idempotency.release_key(db, decision.payment)

    payment, created = payments_service.create_payment(
        db,
        owner_id=ctx.identity,
        amount=amount,
        currency=currency,
        payment_type=payment_type,
        metadata=metadata,
        idempotency_key=idempotency_key,
        tx_ref_prefix=tx_ref_prefix,
    )
    if not created:
        cached = _reuse_or_reject(idempotency.classify(payment))
        if cached is not None:
            return cached
        raise ConflictError(
            "A concurrent request already used this idempotency key.",
            code="IDEMPOTENT_REQUEST_IN_PROGRESS",
        )

    first, last = _customer_names(ctx, first_name, last_name)
    try:
        callback_url, return_url = payment_urls(settings, payment.tx_ref)
        session = gateway.initialize_checkout(
            tx_ref=payment.tx_ref,
            amount=payment.amount,
            currency=payment.currency.value,
            email=ctx.email,
            first_name=first,
            last_name=last,
            callback_url=callback_url,
            return_url=return_url,
            title=title,
            meta={"payment_id": str(payment.id), "payment_type": payment.payment_type.value},
        )
    except (GatewayError, ConfigurationError) as exc:
        # The record stays pending for late callbacks, but the key is freed for a retry.
        idempotency.release_key(db, payment)
        record_audit_event(
            db,
            actor=actor_from_context(ctx),
            action="payment.initialize_failed",
            entity="Payment",
            entity_id=payment.id,
            status="error",
            tx_ref=payment.tx_ref,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
            error_message=getattr(exc, "message", str(exc)),
        )
        logger.warning(
            "Checkout initialization failed",
            extra={"tx_ref": payment.tx_ref, "error": type(exc).__name__, "trace_id": ctx.trace_id},
        )
        raise

    payments_service.update_checkout_url(db, payment.id, session.checkout_url)
    db.refresh(payment)
    record_audit_event(
        db,
        actor=actor_from_context(ctx),
        action="payment.initialized",
        entity="Payment",
        entity_id=payment.id,
        status=payment.status.value,
        tx_ref=payment.tx_ref,
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
        data={"amount": str(payment.amount), "currency": payment.currency.value, "email": ctx.email},
    )
    return CheckoutResult(payment, payment.checkout_url or session.checkout_url)


def initialize_payment(
    db: Session,
    gateway: ChapaClient,
    ctx: RequestContext,
    settings: Settings,
    payload: PaymentInitializeIn,
    *,
    idempotency_key: str | None = None,
) -> CheckoutResult:
    return start_checkout(
        db,
        gateway,
        ctx,
        settings,
        amount=payload.amount,
        currency=payload.currency,
        payment_type=payload.payment_type,
        metadata=payload.metadata,
        idempotency_key=payload.idempotency_key or idempotency_key,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )


def subscription_checkout(
    db: Session,
    gateway: ChapaClient,
    ctx: RequestContext,
    settings: Settings,
    payload: SubscriptionCheckoutIn,
    *,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """Open a checkout for a plan on behalf of the caller's business."""

    if not ctx.business_id:
        raise ValidationError("A registered business is required to subscribe.", code="BUSINESS_REQUIRED")

    if subscriptions_service.get_live_subscription(db, ctx.business_id) is not None:
        raise ValidationError("Business already has an active subscription.", code="SUBSCRIPTION_EXISTS")

    plan = subscriptions_service.get_plan(db, payload.plan_id)
    if plan is None:
        raise NotFoundError("Plan not found.", code="PLAN_NOT_FOUND")
    if not plan.is_active:
        raise ValidationError("Plan is not available.", code="PLAN_INACTIVE")
    if plan.slug == subscriptions_service.ENTERPRISE_PLAN_SLUG:
        raise ValidationError(
            "Enterprise plans require contacting sales.",
            code="CONTACT_SALES",
            details={"contactSales": True},
        )

    amount, currency = subscriptions_service.plan_charge(plan, payload.billing_cycle, settings)
    metadata = {
        "planId": str(plan.id),
        "planSlug": plan.slug,
        "planName": plan.name,
        "billingCycle": payload.billing_cycle.value,
        "businessId": ctx.business_id,
    }
    result = start_checkout(
        db,
        gateway,
        ctx,
        settings,
        amount=amount,
        currency=currency,
        payment_type=PaymentType.SUBSCRIPTION,
        metadata=metadata,
        idempotency_key=payload.idempotency_key or idempotency_key,
        tx_ref_prefix=payments_service.SUBSCRIPTION_TX_PREFIX,
        title="AfriConnect Plan",
    )
    body = result.to_response()
    body["plan"] = {
        "id": plan.id,
        "name": plan.name,
        "slug": plan.slug,
        "billingCycle": payload.billing_cycle.value,
        "amount": str(amount),
        "currency": currency.value,
    }
    return body


__all__ = [
    "CheckoutResult",
    "initialize_payment",
    "payment_urls",
    "start_checkout",
    "subscription_checkout",
]

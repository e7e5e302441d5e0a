"""Subscription plans and per-business subscriptions."""
import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values
from .payment import Currency


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionPlan(Base):
    """Plan catalogue entry; prices are stored in currency subunits (cents)."""

    __tablename__ = "subscription_plans"

    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        SqlEnum(Currency, name="plan_currency", values_callable=enum_values), nullable=False
    )
    price_monthly: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_annual: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    business_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    plan_id: Mapped[int] = mapped_column(ForeignKey("subscription_plans.id"), nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SqlEnum(BillingCycle, name="billing_cycle", values_callable=enum_values), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SqlEnum(SubscriptionStatus, name="subscription_status", values_callable=enum_values),
        nullable=False,
        default=SubscriptionStatus.PENDING,
    )
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_tx_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    plan = relationship("SubscriptionPlan")


__all__ = ["BillingCycle", "Subscription", "SubscriptionPlan", "SubscriptionStatus"]

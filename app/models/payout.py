"""Seller payout (bank transfer) model."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, enum_values
from .payment import Currency


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    APPROVED = "approved"
    SUCCESS = "success"
    FAILED = "failed"
    REVERTED = "reverted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PAYOUT_STATUSES


TERMINAL_PAYOUT_STATUSES = frozenset({PayoutStatus.SUCCESS, PayoutStatus.REVERTED})


class Payout(Base):
    """A transfer of a seller's net proceeds for one order."""

    __tablename__ = "payouts"
    __table_args__ = (
        CheckConstraint("amount_gross > 0", name="ck_payout_positive_gross"),
        CheckConstraint("amount_net > 0", name="ck_payout_positive_net"),
        Index("ix_payouts_seller_order", "seller_id", "order_ref"),
        Index("ix_payouts_status_updated", "status", "updated_at"),
    )

    reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    order_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True, index=True)

    amount_gross: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    amount_net: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        SqlEnum(Currency, name="payout_currency", values_callable=enum_values), nullable=False
    )
    status: Mapped[PayoutStatus] = mapped_column(
        SqlEnum(PayoutStatus, name="payout_status", values_callable=enum_values),
        nullable=False,
        default=PayoutStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)

    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    bank_code: Mapped[str] = mapped_column(String(32), nullable=False)
    chapa_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    bank_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)


__all__ = ["Payout", "PayoutStatus", "TERMINAL_PAYOUT_STATUSES"]

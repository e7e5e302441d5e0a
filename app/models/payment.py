"""Payment model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, enum_values


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentType(str, enum.Enum):
    ORDER = "order"
    SUBSCRIPTION = "subscription"


class Currency(str, enum.Enum):
    ETB = "ETB"
    USD = "USD"


class Payment(Base):
    """A hosted-checkout payment tracked from initialization to a terminal status."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        UniqueConstraint("owner_id", "idempotency_key", name="uq_payments_owner_idempotency_key"),
        Index("ix_payments_created_at", "created_at"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_owner_status", "owner_id", "status"),
    )

    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    tx_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        SqlEnum(Currency, name="payment_currency", values_callable=enum_values), nullable=False
    )
    payment_type: Mapped[PaymentType] = mapped_column(
        SqlEnum(PaymentType, name="payment_type", values_callable=enum_values),
        nullable=False,
        default=PaymentType.ORDER,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus, name="payment_status", values_callable=enum_values),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    checkout_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    chapa_trx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    refunded_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


__all__ = ["Payment", "PaymentStatus", "PaymentType", "Currency"]

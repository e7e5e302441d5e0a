"""Schemas for payment initialization, verification and gateway callbacks."""
from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models.payment import Currency, PaymentType

AMOUNT_LIMITS: dict[Currency, tuple[Decimal, Decimal]] = {
    Currency.ETB: (Decimal("1"), Decimal("10000000")),
    Currency.USD: (Decimal("1"), Decimal("100000")),
}

IDEMPOTENCY_KEY_PATTERN = r"^[a-zA-Z0-9_-]+$"
TX_REF_PATTERN = r"^AC(-[A-Z0-9]+)+$"


def validate_amount(amount: Decimal, currency: Currency) -> Decimal:
    """Return ``amount`` if it is inside the currency's bounds with at most two decimals."""

    if not amount.is_finite():
        raise ValueError("Amount must be a finite number")
    if amount != amount.quantize(Decimal("0.01")):
        raise ValueError("Amount cannot have more than two decimal places")
    minimum, maximum = AMOUNT_LIMITS[currency]
    if amount < minimum:
        raise ValueError(f"Minimum amount is {minimum} {currency.value}")
    if amount > maximum:
        raise ValueError(f"Maximum amount is {maximum:,} {currency.value}")
    return amount


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentInitializeIn(CamelModel):
    amount: Decimal
    currency: Currency = Currency.ETB
    payment_type: PaymentType = PaymentType.ORDER
    metadata: dict[str, str] | None = None
    idempotency_key: str | None = Field(default=None, max_length=64, pattern=IDEMPOTENCY_KEY_PATTERN)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def check_amount(self) -> "PaymentInitializeIn":
        validate_amount(self.amount, self.currency)
        return self


class VerifyPaymentIn(BaseModel):
    tx_ref: str = Field(max_length=100, pattern=TX_REF_PATTERN)


class ChapaWebhookPayload(BaseModel):
    """Body posted by the gateway; unknown fields are kept but ignored."""

    model_config = ConfigDict(extra="allow")

    tx_ref: str = Field(min_length=1, max_length=100)
    status: str = Field(min_length=1, max_length=32)
    trx_ref: str | None = None
    reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    created_at: str | None = None
    event: str | None = None

    @field_validator("status")
    @classmethod
    def _lower_status(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def event_type(self) -> str:
        return self.event or f"charge.{self.status}"

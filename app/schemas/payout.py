"""Schemas for seller payouts."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from app.models.payment import Currency
from app.models.payout import PayoutStatus

from .payment import CamelModel, validate_amount


class TransferIn(CamelModel):
    order_ref: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    amount_gross: Decimal
    currency: Currency = Currency.ETB
    account_name: str = Field(min_length=2, max_length=200)
    account_number: str = Field(min_length=4, max_length=64, pattern=r"^[0-9A-Za-z]+$")
    bank_code: str = Field(min_length=1, max_length=32)
    payment_id: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_amount(self) -> "TransferIn":
        validate_amount(self.amount_gross, self.currency)
        return self


class PayoutRead(CamelModel):
    id: int
    reference: str
    order_ref: str
    status: PayoutStatus
    amount_gross: Decimal
    platform_fee: Decimal
    amount_net: Decimal
    currency: Currency
    attempts: int
    last_error: str | None
    chapa_reference: str | None
    bank_reference: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

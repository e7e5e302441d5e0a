"""Schemas for administrative refunds."""
from __future__ import annotations

from decimal import Decimal

from pydantic import Field

from .payment import CamelModel


class RefundIn(CamelModel):
    payment_id: int = Field(gt=0)
    reason: str | None = Field(default=None, max_length=500)
    amount: Decimal | None = Field(default=None, gt=0, max_digits=18, decimal_places=2)

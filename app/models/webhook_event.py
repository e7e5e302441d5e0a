"""Gateway webhook deliveries recorded for idempotent processing."""
from datetime import datetime

from sqlalchemy import DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WebhookEvent(Base):
    """One (tx_ref, event_type) delivery; ``processed_at`` is set once it has been applied."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "tx_ref",
            "event_type",
            name="uq_webhook_events_provider_tx_ref_event_type",
        ),
        Index("ix_webhook_events_received", "received_at"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="chapa")
    tx_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_prefix: Mapped[str | None] = mapped_column(String(16), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


__all__ = ["WebhookEvent"]

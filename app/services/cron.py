"""Background cron jobs for payout retries and housekeeping."""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.db import session_scope
from app.models.webhook_event import WebhookEvent
from app.services import payouts as payouts_service
from app.services.chapa import ChapaClient
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_RETENTION = timedelta(days=30)


def retry_failed_payouts_once(gateway: ChapaClient) -> dict[str, int]:
    """Resubmit failed payouts whose backoff has elapsed."""

    if not gateway.is_configured:
        logger.warning("Skipping payout retries: Chapa secret key is not configured")
        return {}
    with session_scope() as db:
        try:
            return payouts_service.retry_failed_payouts(db, gateway, get_settings())
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Payout retry run failed")
            return {}


def purge_webhook_events_once() -> int:
    """Drop processed webhook dedupe rows older than the retention window."""

    cutoff = utcnow() - WEBHOOK_EVENT_RETENTION
    with session_scope() as db:
        result = db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.processed_at.is_not(None),
                WebhookEvent.received_at < cutoff,
            )
        )
        db.commit()
    if result.rowcount:
        logger.info("Purged processed webhook events", extra={"count": result.rowcount})
    return result.rowcount or 0

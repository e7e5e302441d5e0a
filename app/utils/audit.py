"""Audit logging helper utilities."""
from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit import AuditLog
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {
    "account_number",
    "account_name",
    "authorization",
    "card_number",
    "email",
    "phone",
    "phone_number",
    "secret",
    "signature",
    "token",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in {"account_number", "card_number", "phone", "phone_number"}:
        stripped = str(value).replace(" ", "")
        if len(stripped) <= 4:
            return f"***{stripped}"
        return f"***{stripped[-4:]}"

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "signature":
        return f"{str(value)[:8]}***"

    return "***"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, (list, tuple)):
        return [sanitize_payload_for_audit(item) for item in data]

    if isinstance(data, (str, int, float, bool)) or data is None:
        return data
    return str(data)


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None = None,
    status: str | None = None,
    tx_ref: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    error_message: str | None = None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry on ``db``; the caller owns the commit."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id,
            status=status,
            tx_ref=tx_ref,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            error_message=(error_message or "")[:500] or None,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


def record_audit_event(db: Session, **kwargs: Any) -> None:
    """Persist an audit entry immediately, outside of any business transaction.

    Used for rejected requests (bad signatures, blocked IPs) and for trail
    entries written after the business change was already committed. A
    storage failure is logged and does not change the response.
    """

    try:
        log_audit(db, **kwargs)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Failed to persist audit entry",
            extra={"action": kwargs.get("action"), "tx_ref": kwargs.get("tx_ref")},
        )


def actor_from_context(ctx: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for a request context."""

    identity = getattr(ctx, "identity", None)
    if identity:
        return f"user:{identity}"
    return fallback


__all__ = [
    "SENSITIVE_KEYS",
    "sanitize_payload_for_audit",
    "log_audit",
    "record_audit_event",
    "actor_from_context",
]

"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from sqlalchemy import text

from app.config import Settings, get_settings
from app.core.runtime_state import is_scheduler_active
from app.db import get_engine
from app.services.scheduler_lock import describe_scheduler_lock
from app.services.signatures import secret_fingerprint

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_status(primary: str | None, fallback: str | None) -> str:
    if primary:
        return "ok"
    if fallback:
        return "fallback"
    return "missing"


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        config = Config("alembic.ini")
        script = ScriptDirectory.from_config(config)
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        if expected_head is None:
            return False, "unknown"
        if current == expected_head:
            return True, "up_to_date"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _chapa_status(settings: Settings) -> dict[str, object]:
    fallback = settings.CHAPA_ENCRYPTION_KEY
    return {
        "secret_key_configured": bool(settings.chapa_secret),
        "mode": "live" if settings.is_production or not settings.CHAPA_TEST_SECRET_KEY else "test",
        "webhook_secret_status": _secret_status(settings.CHAPA_WEBHOOK_SECRET, fallback),
        "transfer_approval_secret_status": _secret_status(settings.CHAPA_TRANSFER_APPROVAL_SECRET, fallback),
        "transfer_webhook_secret_status": _secret_status(settings.CHAPA_TRANSFER_WEBHOOK_SECRET, fallback),
        "secret_fingerprints": {
            "webhook": secret_fingerprint(settings.CHAPA_WEBHOOK_SECRET),
            "encryption_key": secret_fingerprint(fallback),
        },
        "webhook_ip_allowlist": bool(settings.webhook_ip_allowlist),
    }


@router.get("", summary="Health check")
def healthcheck(request: Request) -> dict[str, object]:
    """Return database, migration, scheduler and gateway configuration status."""

    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    log_queue = getattr(request.app.state, "log_queue", None)
    return {
        "status": "ok" if db_ok and migration_ok else "degraded",
        "env": settings.app_env,
        "commerce_enabled": bool(settings.COMMERCE_ENABLED),
        "chapa": _chapa_status(settings),
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_lock": describe_scheduler_lock() if db_ok else {"status": "unknown", "owner": None},
        "log_shipping": {
            "enabled": log_queue is not None,
            "queued": len(log_queue) if log_queue is not None else 0,
            "dropped": log_queue.dropped if log_queue is not None else 0,
        },
    }

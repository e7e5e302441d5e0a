from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import db
from app.config import AppInfo, Settings, get_settings
from app.core.logging import attach_log_shipping, detach_log_shipping, get_logger, setup_logging
from app.core.runtime_state import set_scheduler_active
import app.models  # noqa: F401  registers the tables
from app.routers import get_api_router
from app.services.chapa import ChapaClient
from app.services.cron import purge_webhook_events_once, retry_failed_payouts_once
from app.services.rate_limit import RateLimiter
from app.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from app.utils.errors import GatewayError, ServiceError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}
RELAXED_SECRET_ENV = {"dev", "local", "test"}

SECURITY_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _current_settings() -> Settings:
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-API-Key"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="africonnect_payments", group_paths=True)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(
            dsn=runtime_settings.SENTRY_DSN,
            environment=runtime_settings.app_env,
            traces_sample_rate=0.2,
            send_default_pii=False,
        )


def _assert_gateway_secrets(settings: Settings) -> None:
    """Fail fast when no gateway credential is configured outside dev/test."""

    configured = bool(
        settings.chapa_secret or settings.CHAPA_WEBHOOK_SECRET or settings.CHAPA_ENCRYPTION_KEY
    )
    env_lower = settings.app_env.lower()
    if configured:
        return
    if env_lower not in RELAXED_SECRET_ENV:
        logger.error(
            "Chapa secrets are missing; configure CHAPA_SECRET_KEY and CHAPA_WEBHOOK_SECRET before startup.",
            extra={"env": settings.app_env},
        )
        raise RuntimeError("Missing Chapa secrets in non-dev environment.")
    logger.warning("Chapa secrets are not configured; allowed in dev only.", extra={"env": settings.app_env})


def _start_scheduler(fastapi_app: FastAPI, settings: Settings) -> bool:
    """Start periodic jobs; returns whether this instance holds the scheduler lock."""

    global scheduler
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if not lock_acquired:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )

    log_queue = getattr(fastapi_app.state, "log_queue", None)
    if not lock_acquired and log_queue is None:
        return False

    scheduler = AsyncIOScheduler()
    if lock_acquired:
        scheduler.add_job(
            retry_failed_payouts_once,
            "interval",
            minutes=settings.PAYOUT_RETRY_INTERVAL_MINUTES,
            args=[fastapi_app.state.gateway],
            id="payout-retry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            purge_webhook_events_once,
            "interval",
            hours=24,
            id="webhook-event-purge",
            replace_existing=True,
        )
        scheduler.add_job(
            refresh_scheduler_lock,
            "interval",
            seconds=60,
            id="scheduler-lock-heartbeat",
            replace_existing=True,
        )
    if log_queue is not None:
        scheduler.add_job(
            log_queue.flush,
            "interval",
            seconds=settings.LOG_FLUSH_INTERVAL_SECONDS,
            id="log-flush",
            replace_existing=True,
            max_instances=1,
        )
    scheduler.start()
    set_scheduler_active(lock_acquired)
    if lock_acquired and settings.app_env.lower() != "dev":
        logger.warning(
            "APScheduler enabled with DB lock; ensure only one runner has SCHEDULER_ENABLED=1 in production.",
            extra={"env": settings.app_env},
        )
    return lock_acquired


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    global scheduler
    settings = _current_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_gateway_secrets(settings)

    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    gateway = ChapaClient(settings)
    fastapi_app.state.gateway = gateway
    fastapi_app.state.rate_limiter = RateLimiter()
    shipping = attach_log_shipping(
        settings.LOG_SHIPPER_URL, settings.LOG_SHIPPER_TOKEN, environment=settings.app_env
    )
    fastapi_app.state.log_queue = shipping[0] if shipping else None
    if not gateway.is_configured:
        logger.warning("Chapa secret key missing; gateway calls will fail with a configuration error.")

    set_scheduler_active(False)
    lock_acquired = _start_scheduler(fastapi_app, settings)
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        if shipping:
            queue, flusher = shipping
            while queue.flush():
                pass
            detach_log_shipping()
            flusher.close()
        gateway.close()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/api/"):
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Service error", extra={"code": exc.code, "path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.warning(
        "Gateway error",
        extra={"path": request.url.path, "gateway_status": exc.status_code, "gateway_message": exc.message},
    )
    return JSONResponse(status_code=exc.client_status(), content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", "Invalid request.", {"errors": errors}),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]

"""FastAPI dependency providers for process-wide collaborators.

The gateway client and the rate limiter are created in the application
lifespan and stored on ``app.state``; tests replace them through
``app.dependency_overrides``.
"""
from __future__ import annotations

from fastapi import Request

from app.config import Settings, get_settings
from app.services.chapa import ChapaClient
from app.services.rate_limit import RateLimiter
from app.utils.errors import ConfigurationError, FeatureDisabledError


def get_app_settings() -> Settings:
    return get_settings()


def get_gateway(request: Request) -> ChapaClient:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise ConfigurationError("Payment gateway client is not initialised.")
    return gateway


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise ConfigurationError("Rate limiter is not initialised.")
    return limiter


def require_commerce_enabled() -> None:
    if not get_settings().COMMERCE_ENABLED:
        raise FeatureDisabledError()


__all__ = ["get_app_settings", "get_gateway", "get_rate_limiter", "require_commerce_enabled"]

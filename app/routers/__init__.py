"""API routers for the payments backend."""
from fastapi import APIRouter

from . import admin, health, payments, payouts, subscriptions


def get_api_router() -> APIRouter:
    """Return the root router; business routes live under ``/api``."""

    api_router = APIRouter()
    api_router.include_router(health.router)

    business = APIRouter(prefix="/api")
    business.include_router(payments.router)
    business.include_router(subscriptions.router)
    business.include_router(payouts.router)
    business.include_router(admin.router)
    api_router.include_router(business)
    return api_router

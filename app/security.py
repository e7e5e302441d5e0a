# app/security.py
"""Request identity resolution and role enforcement."""
from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiRole
from app.utils.apikey import find_valid_key
from app.utils.errors import AuthError
from app.utils.time import utcnow


@dataclass(frozen=True)
class RequestContext:
    """Everything a service needs to know about the caller of one request."""

    identity: str | None
    role: ApiRole | None
    trace_id: str
    client_ip: str | None = None
    user_agent: str | None = None
    email: str | None = None
    display_name: str | None = None
    business_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    @property
    def is_admin(self) -> bool:
        return self.role == ApiRole.admin


def client_ip(request: Request) -> str | None:
    """Return the originating client address, honouring proxy headers."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return None


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the credential from ``Authorization: Bearer`` or ``X-API-Key``."""

    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _build_context(request: Request, key: ApiKey | None) -> RequestContext:
    return RequestContext(
        identity=key.subject if key else None,
        role=key.role if key else None,
        trace_id=request.headers.get("x-request-id") or uuid.uuid4().hex,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        email=key.email if key else None,
        display_name=key.display_name if key else None,
        business_id=key.business_id if key else None,
    )


def _resolve_key(db: Session, token: str | None) -> ApiKey | None:
    if not token:
        return None
    key = find_valid_key(db, token)
    if key is None:
        raise AuthError("Invalid or expired API key.", code="INVALID_API_KEY")
    key.last_used_at = utcnow()
    db.commit()
    return key


def optional_context(
    request: Request,
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> RequestContext:
    """Context for endpoints that also serve anonymous callers."""

    return _build_context(request, _resolve_key(db, token))


def require_context(
    request: Request,
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> RequestContext:
    """Context for endpoints that need a verified identity (401 otherwise)."""

    if not token:
        raise AuthError("Authentication required.", code="NO_API_KEY")
    return _build_context(request, _resolve_key(db, token))


def require_role(*allowed: ApiRole):
    """Dependency factory enforcing the identity's ``role`` claim (403 otherwise)."""

    if not allowed:
        raise RuntimeError("require_role needs at least one ApiRole")

    def _dep(ctx: RequestContext = Depends(require_context)) -> RequestContext:
        if ctx.role == ApiRole.admin or ctx.role in allowed:
            return ctx
        raise AuthError.forbidden(f"Requires one of: {[role.value for role in allowed]}")

    return _dep


require_admin = require_role(ApiRole.admin)


def webhook_context(request: Request) -> RequestContext:
    """Anonymous context for gateway callbacks."""

    return _build_context(request, None)


__all__ = [
    "RequestContext",
    "client_ip",
    "optional_context",
    "require_admin",
    "require_context",
    "require_role",
    "webhook_context",
]

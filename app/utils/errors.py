"""Error payload helpers and the service exception hierarchy."""
from __future__ import annotations

from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class ServiceError(Exception):
    """Base class for errors that map onto a client-safe HTTP response."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    default_message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.headers = headers
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class ConfigurationError(ServiceError):
    """A required server-side secret or setting is missing."""

    status_code = 500
    code = "CONFIGURATION_ERROR"
    default_message = "Server configuration error."

    def to_payload(self) -> dict[str, Any]:
        # The internal message names the missing setting; clients get the generic one.
        return error_response(self.code, self.default_message)


class ValidationError(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request."


class AuthError(ServiceError):
    """Missing identity (401) or insufficient role (403)."""

    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required."

    @classmethod
    def forbidden(cls, message: str = "Insufficient permissions.") -> "AuthError":
        return cls(message, code="FORBIDDEN", status_code=403)


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found."


class ConflictError(ServiceError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Request conflicts with the current state."


class RateLimitError(ServiceError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, headers: dict[str, str], message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(
            message or f"Too many requests. Please try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
            headers=headers,
        )


class SignatureError(ServiceError):
    status_code = 401
    code = "INVALID_SIGNATURE"
    default_message = "Invalid signature."


class FeatureDisabledError(ServiceError):
    status_code = 503
    code = "FEATURE_DISABLED"
    default_message = "Payment features are currently unavailable. Coming soon!"


class GatewayError(Exception):
    """Raised when the payment gateway rejects a call or cannot be reached.

    ``message`` and ``body`` carry the provider's own wording and are meant for
    logs only; :meth:`client_status` and :meth:`to_payload` give the response
    sent to callers.
    """

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def client_status(self) -> int:
        if self.status_code in (400, 404):
            return self.status_code
        if self.status_code is None or self.status_code >= 500:
            return 503
        return 502

    def to_payload(self) -> dict[str, Any]:
        status_code = self.client_status()
        if status_code == 400:
            return error_response("GATEWAY_REJECTED", "The payment provider rejected the request.")
        if status_code == 404:
            return error_response("GATEWAY_NOT_FOUND", "The payment provider has no record of this reference.")
        if status_code == 503:
            return error_response("GATEWAY_UNAVAILABLE", "Payment service temporarily unavailable.")
        return error_response("GATEWAY_ERROR", "Unexpected response from the payment provider.")


__all__ = [
    "error_response",
    "ServiceError",
    "ConfigurationError",
    "ValidationError",
    "AuthError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "SignatureError",
    "FeatureDisabledError",
    "GatewayError",
]

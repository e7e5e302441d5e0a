"""HMAC-SHA256 verification for gateway callbacks."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import Mapping

from app.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

_HEX_SIGNATURE = re.compile(r"^[0-9a-fA-F]{64}$")
_PREFIX = "sha256="

SIGNATURE_HEADERS = ("x-chapa-signature", "chapa-signature")


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 digest of ``raw_body``."""

    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _normalise(signature: str) -> str:
    value = signature.strip()
    if value[: len(_PREFIX)].lower() == _PREFIX:
        value = value[len(_PREFIX) :]
    return value


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Check ``signature_header`` against the HMAC of the exact request bytes.

    Returns ``False`` (never raises) for an absent header or secret, a value that
    is not 64 hex characters after stripping an optional ``sha256=`` prefix, or
    a mismatch. The comparison is constant time.
    """

    if not signature_header or not secret:
        return False

    provided = _normalise(signature_header)
    if not _HEX_SIGNATURE.match(provided):
        return False

    expected = compute_signature(raw_body, secret)
    provided = provided.lower()
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(expected, provided)


def signature_from_headers(headers: Mapping[str, str]) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def secret_fingerprint(secret: str | None) -> str | None:
    """Deterministic marker for logs instead of the raw secret."""

    if not secret:
        return None
    return f"sha256:{hashlib.sha256(secret.encode()).hexdigest()[:8]}"


def resolve_secret(purpose: str, candidates: Mapping[str, str | None]) -> str:
    """Return the first configured secret of an ordered fallback chain.

    ``candidates`` maps setting names to values in priority order, e.g.
    ``{"CHAPA_WEBHOOK_SECRET": ..., "CHAPA_ENCRYPTION_KEY": ...}``.
    """

    for name, value in candidates.items():
        if value:
            return value

    logger.error(
        "Signing secret is not configured",
        extra={"purpose": purpose, "settings": list(candidates)},
    )
    raise ConfigurationError(f"{purpose} secret is not configured; set one of {', '.join(candidates)}.")


def payment_webhook_secret(settings) -> str:
    return resolve_secret(
        "payment webhook",
        {
            "CHAPA_WEBHOOK_SECRET": settings.CHAPA_WEBHOOK_SECRET,
            "CHAPA_ENCRYPTION_KEY": settings.CHAPA_ENCRYPTION_KEY,
        },
    )


def payout_approval_secret(settings) -> str:
    return resolve_secret(
        "payout approval",
        {
            "CHAPA_TRANSFER_APPROVAL_SECRET": settings.CHAPA_TRANSFER_APPROVAL_SECRET,
            "CHAPA_ENCRYPTION_KEY": settings.CHAPA_ENCRYPTION_KEY,
        },
    )


def payout_webhook_secret(settings) -> str:
    return resolve_secret(
        "payout webhook",
        {
            "CHAPA_TRANSFER_WEBHOOK_SECRET": settings.CHAPA_TRANSFER_WEBHOOK_SECRET,
            "CHAPA_ENCRYPTION_KEY": settings.CHAPA_ENCRYPTION_KEY,
        },
    )


__all__ = [
    "SIGNATURE_HEADERS",
    "compute_signature",
    "verify_signature",
    "signature_from_headers",
    "secret_fingerprint",
    "resolve_secret",
    "payment_webhook_secret",
    "payout_approval_secret",
    "payout_webhook_secret",
]

"""HTTP client for the Chapa payment gateway."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

import httpx

from app.config import Settings, get_settings
from app.utils.errors import ConfigurationError, GatewayError

logger = logging.getLogger(__name__)

TRANSFER_RETRY_BACKOFF_SECONDS = (0.5, 1.5)


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class TransactionVerification:
    """Provider view of a transaction, as returned by ``/transaction/verify``."""

    status: str
    tx_ref: str
    reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    method: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class RefundResult:
    reference: str
    status: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class TransferResult:
    reference: str
    status: str | None = None
    chapa_reference: str | None = None
    bank_reference: str | None = None
    amount: Decimal | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


def _format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


def extract_error_message(body: Any, default: str) -> str:
    """Build a readable message from a Chapa error body.

    ``message`` may be a string or a nested object; ``errors`` may be a list of
    strings or a field -> message mapping.
    """

    if not isinstance(body, dict):
        return default

    message = body.get("message")
    if isinstance(message, str) and message:
        return message
    if message:
        return json.dumps(message, sort_keys=True, default=str)

    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        return ", ".join(str(item) for item in errors)
    if isinstance(errors, dict) and errors:
        return ", ".join(f"{key}: {value}" for key, value in errors.items())
    return default


class ChapaClient:
    """Thin wrapper around the Chapa REST API.

    Every call needs the server-held secret key; a missing key raises
    :class:`ConfigurationError` before any network traffic. Every provider
    failure surfaces as :class:`GatewayError`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.base_url = settings.CHAPA_BASE_URL.rstrip("/")
        self._sleep = sleep
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.CHAPA_TIMEOUT_SECONDS),
            transport=transport,
        )

    @classmethod
    def from_env(cls) -> "ChapaClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.chapa_secret)

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        secret = self.settings.chapa_secret
        if not secret:
            raise ConfigurationError(
                "Chapa secret key is missing; configure CHAPA_SECRET_KEY (or CHAPA_TEST_SECRET_KEY outside prod)."
            )
        return {"Authorization": f"Bearer {secret}", "Content-Type": "application/json"}

    def _request(self, method: str, path: str, *, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = self._headers()
        try:
            response = self._http.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "Chapa request failed before a response was received",
                extra={"path": path, "error": type(exc).__name__},
            )
            raise GatewayError(f"Chapa unreachable: {type(exc).__name__}", status_code=503) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = extract_error_message(body, f"Chapa request failed with status {response.status_code}")
            logger.warning(
                "Chapa returned an error response",
                extra={"path": path, "status_code": response.status_code, "gateway_message": message},
            )
            raise GatewayError(message, status_code=response.status_code, body=body)

        if not isinstance(body, dict):
            raise GatewayError("Chapa returned a non-JSON response", status_code=502, body=response.text[:500])

        if str(body.get("status", "")).lower() != "success":
            message = extract_error_message(body, "Chapa reported an unsuccessful request")
            raise GatewayError(message, status_code=response.status_code, body=body)
        return body

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def initialize_checkout(
        self,
        *,
        tx_ref: str,
        amount: Decimal,
        currency: str,
        email: str,
        first_name: str,
        last_name: str,
        callback_url: str,
        return_url: str,
        title: str = "AfriConnect",
        description: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> CheckoutSession:
        """Create a hosted checkout session and return its URL."""

        customization: dict[str, str] = {"title": title[:16]}
        if description:
            customization["description"] = description[:50]
        payload = {
            "amount": _format_amount(amount),
            "currency": currency,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "tx_ref": tx_ref,
            "callback_url": callback_url,
            "return_url": return_url,
            "customization": customization,
            "meta": meta or {},
        }
        body = self._request("POST", "/transaction/initialize", payload=payload)
        data = body.get("data") or {}
        checkout_url = data.get("checkout_url")
        if not checkout_url:
            raise GatewayError("Chapa response is missing checkout_url", status_code=502, body=body)
        logger.info("Chapa checkout initialized", extra={"tx_ref": tx_ref})
        return CheckoutSession(checkout_url=checkout_url, raw=body)

    def verify_transaction(self, tx_ref: str) -> TransactionVerification:
        body = self._request("GET", f"/transaction/verify/{tx_ref}")
        data = body.get("data") or {}
        status = data.get("status")
        if not status:
            raise GatewayError("Chapa verification response is missing a status", status_code=502, body=body)
        return TransactionVerification(
            status=str(status),
            tx_ref=data.get("tx_ref") or tx_ref,
            reference=data.get("reference"),
            amount=_to_decimal(data.get("amount")),
            currency=data.get("currency"),
            method=data.get("method") or data.get("payment_method"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            raw=data,
        )

    def list_banks(self) -> list[dict[str, Any]]:
        body = self._request("GET", "/banks")
        data = body.get("data")
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    def process_refund(
        self,
        provider_reference: str,
        *,
        reference: str,
        reason: str | None = None,
        amount: Decimal | None = None,
        meta: dict[str, Any] | None = None,
    ) -> RefundResult:
        """Refund a settled transaction; ``reference`` makes resubmission idempotent."""

        payload: dict[str, Any] = {"reference": reference}
        if reason:
            payload["reason"] = reason
        if amount is not None:
            payload["amount"] = _format_amount(amount)
        if meta:
            payload["meta"] = meta
        body = self._request("POST", f"/refund/{provider_reference}", payload=payload)
        data = body.get("data") or {}
        return RefundResult(
            reference=data.get("reference") or reference,
            status=data.get("status"),
            amount=_to_decimal(data.get("amount")),
            currency=data.get("currency"),
            raw=data,
        )

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------
    def create_transfer(
        self,
        *,
        reference: str,
        amount: Decimal,
        currency: str,
        account_name: str,
        account_number: str,
        bank_code: str,
    ) -> TransferResult:
        """Submit a bank transfer, retrying transient failures with the same reference."""

        payload = {
            "account_name": account_name,
            "account_number": account_number,
            "amount": _format_amount(amount),
            "currency": currency,
            "reference": reference,
            "bank_code": bank_code,
        }
        delays = list(TRANSFER_RETRY_BACKOFF_SECONDS)
        while True:
            try:
                body = self._request("POST", "/transfers", payload=payload)
                break
            except GatewayError as exc:
                transient = exc.status_code is None or exc.status_code >= 500
                if not transient or not delays:
                    raise
                delay = delays.pop(0)
                logger.info(
                    "Retrying Chapa transfer after transient failure",
                    extra={"reference": reference, "delay_seconds": delay},
                )
                self._sleep(delay)

        data = body.get("data")
        data = data if isinstance(data, dict) else {}
        return TransferResult(
            reference=data.get("reference") or reference,
            status=data.get("status") or "queued",
            chapa_reference=data.get("chapa_reference") or data.get("chapa_transfer_id"),
            bank_reference=data.get("bank_reference"),
            amount=_to_decimal(data.get("amount")),
            raw=data,
        )

    def verify_transfer(self, reference: str) -> TransferResult:
        body = self._request("GET", f"/transfers/verify/{reference}")
        data = body.get("data") or {}
        status = data.get("status")
        if not status:
            raise GatewayError("Chapa transfer verification is missing a status", status_code=502, body=body)
        return TransferResult(
            reference=data.get("reference") or reference,
            status=str(status),
            chapa_reference=data.get("chapa_reference") or data.get("chapa_transfer_id"),
            bank_reference=data.get("bank_reference"),
            amount=_to_decimal(data.get("amount")),
            raw=data,
        )


__all__ = [
    "ChapaClient",
    "CheckoutSession",
    "RefundResult",
    "TransactionVerification",
    "TransferResult",
    "extract_error_message",
]

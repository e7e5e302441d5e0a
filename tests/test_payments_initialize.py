from datetime import timedelta

import pytest
from sqlalchemy import select

from app.models import AuditLog, Payment, PaymentStatus
from app.utils.errors import GatewayError
from app.utils.time import utcnow


def gateway_down(status_code: int | None = 503) -> GatewayError:
    return GatewayError("upstream exploded with secret details", status_code=status_code)


async def _initialize(client, headers, **body):
    payload = {"amount": 500, "currency": "ETB"}
    payload.update(body)
    return await client.post("/api/payments/initialize", json=payload, headers=headers)


@pytest.mark.anyio
async def test_initialize_returns_checkout_url(client, db_session, buyer_headers, fake_gateway):
    response = await _initialize(client, buyer_headers, metadata={"orderId": "o-1"})
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["checkoutUrl"].startswith("https://checkout.chapa.test/")
    assert body["txRef"].startswith("AC-")
    assert "cached" not in body
    assert response.headers["X-RateLimit-Limit"] == "5"

    payment = db_session.get(Payment, body["paymentId"])
    assert payment.status == PaymentStatus.PENDING
    assert payment.owner_id == "buyer-1"
    assert payment.checkout_url == body["checkoutUrl"]
    assert payment.metadata_json == {"orderId": "o-1"}

    _, call = fake_gateway.calls[0]
    assert call["callback_url"] == "https://app.test/api/payments/webhook"
    assert call["return_url"].endswith(f"tx_ref={body['txRef']}")
    assert call["email"] == "buyer@example.com"
    assert call["first_name"] == "Abebe"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("amount", "currency", "expected"),
    [
        ("0.99", "ETB", 400),
        ("1", "ETB", 200),
        ("10000000", "ETB", 200),
        ("10000000.01", "ETB", 400),
        ("100000.01", "USD", 400),
        ("100000", "USD", 200),
        ("10.001", "ETB", 400),
        ("-5", "ETB", 400),
    ],
)
async def test_amount_bounds(client, buyer_headers, amount, currency, expected):
    response = await _initialize(client, buyer_headers, amount=amount, currency=currency)
    assert response.status_code == expected, response.text
    if expected == 400:
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.anyio
async def test_unsupported_currency_rejected(client, buyer_headers):
    response = await _initialize(client, buyer_headers, currency="EUR")
    assert response.status_code == 400


@pytest.mark.anyio
async def test_requires_identity(client, fake_gateway):
    response = await _initialize(client, {})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "NO_API_KEY"
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_invalid_credential_rejected(client):
    response = await _initialize(client, {"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_API_KEY"


@pytest.mark.anyio
async def test_idempotent_retry_after_success_is_cached(client, db_session, buyer_headers, fake_gateway):
    first = await _initialize(client, buyer_headers, idempotencyKey="cart-42")
    assert first.status_code == 200
    payment = db_session.get(Payment, first.json()["paymentId"])
    payment.status = PaymentStatus.SUCCESS
    db_session.commit()

    second = await _initialize(client, buyer_headers, idempotencyKey="cart-42")
    assert second.status_code == 200
    body = second.json()
    assert body["cached"] is True
    assert body["status"] == "success"
    assert body["message"] == "Payment already completed"
    assert body["paymentId"] == payment.id
    assert fake_gateway.count("initialize_checkout") == 1


@pytest.mark.anyio
async def test_idempotent_retry_while_pending_returns_same_url(client, buyer_headers, fake_gateway):
    first = await _initialize(client, buyer_headers, idempotencyKey="cart-43")
    second = await client.post(
        "/api/payments/initialize",
        json={"amount": 500},
        headers={**buyer_headers, "Idempotency-Key": "cart-43"},
    )
    assert second.json()["cached"] is True
    assert second.json()["checkoutUrl"] == first.json()["checkoutUrl"]
    assert fake_gateway.count("initialize_checkout") == 1


@pytest.mark.anyio
async def test_concurrent_first_attempt_conflicts(client, make_payment, buyer_headers, fake_gateway):
    make_payment(owner_id="buyer-1", idempotency_key="cart-44")
    response = await _initialize(client, buyer_headers, idempotencyKey="cart-44")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "IDEMPOTENT_REQUEST_IN_PROGRESS"
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_expired_key_starts_new_attempt(client, db_session, make_payment, buyer_headers):
    old = make_payment(owner_id="buyer-1", idempotency_key="cart-45", checkout_url="https://old")
    old.created_at = utcnow() - timedelta(hours=2)
    db_session.commit()

    response = await _initialize(client, buyer_headers, idempotencyKey="cart-45")
    assert response.status_code == 200
    assert response.json()["paymentId"] != old.id
    db_session.refresh(old)
    assert old.idempotency_key is None
    assert old.status == PaymentStatus.PENDING


@pytest.mark.anyio
async def test_gateway_failure_releases_key_and_hides_provider_text(
    client, db_session, buyer_headers, fake_gateway
):
    fake_gateway.errors["initialize_checkout"] = gateway_down(503)
    response = await _initialize(client, buyer_headers, idempotencyKey="cart-46")
    assert response.status_code == 503
    assert response.json()["error"]["message"] == "Payment service temporarily unavailable."
    assert "secret details" not in response.text

    payment = db_session.scalars(select(Payment).where(Payment.owner_id == "buyer-1")).one()
    assert payment.status == PaymentStatus.PENDING
    assert payment.idempotency_key is None

    audit = db_session.scalars(select(AuditLog).where(AuditLog.action == "payment.initialize_failed")).one()
    assert audit.tx_ref == payment.tx_ref

    fake_gateway.errors.clear()
    retry = await _initialize(client, buyer_headers, idempotencyKey="cart-46")
    assert retry.status_code == 200


@pytest.mark.anyio
async def test_gateway_rejection_maps_to_400(client, buyer_headers, fake_gateway):
    fake_gateway.errors["initialize_checkout"] = gateway_down(400)
    response = await _initialize(client, buyer_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "GATEWAY_REJECTED"


@pytest.mark.anyio
async def test_rate_limit_blocks_before_gateway(client, buyer_headers, fake_gateway):
    for _ in range(5):
        assert (await _initialize(client, buyer_headers)).status_code == 200
    blocked = await _initialize(client, buyer_headers)
    assert blocked.status_code == 429
    assert "Retry-After" in blocked.headers
    assert blocked.json()["error"]["code"] == "RATE_LIMITED"
    assert fake_gateway.count("initialize_checkout") == 5


@pytest.mark.anyio
async def test_missing_email_rejected(client, make_api_key, fake_gateway):
    headers = make_api_key(email=None)
    response = await _initialize(client, headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EMAIL_REQUIRED"
    assert fake_gateway.calls == []

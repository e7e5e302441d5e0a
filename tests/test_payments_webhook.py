import hashlib
import hmac
import json

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.config import get_settings
from app.dependencies import get_app_settings
from app.main import app
from app.models import AuditLog, PaymentStatus, WebhookEvent
from app.utils.errors import GatewayError
from app.utils.time import epoch_millis

SECRET = "test-webhook-secret"


def _signed(payload: dict, secret: str = SECRET, **extra_headers) -> tuple[bytes, dict[str, str]]:
    raw = json.dumps(payload).encode()
    signature = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    headers = {"Content-Type": "application/json", "x-chapa-signature": signature}
    headers.update(extra_headers)
    return raw, headers


async def _post(client, payload: dict, **kwargs):
    raw, headers = _signed(payload, **kwargs)
    return await client.post("/api/payments/webhook", content=raw, headers=headers)


@pytest.mark.anyio
async def test_signed_webhook_reverifies_and_applies(client, db_session, make_payment, fake_gateway):
    payment = make_payment()
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"})
    assert response.status_code == 200, response.text
    assert response.json() == {"success": True, "message": "Webhook processed", "status": "success"}
    assert fake_gateway.count("verify_transaction") == 1

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.SUCCESS
    event = db_session.scalars(select(WebhookEvent).where(WebhookEvent.tx_ref == payment.tx_ref)).one()
    assert event.event_type == "charge.success"
    assert event.processed_at is not None


@pytest.mark.anyio
async def test_replayed_webhook_is_noop(client, db_session, make_payment, fake_gateway):
    payment = make_payment()
    body = {"tx_ref": payment.tx_ref, "status": "success"}
    assert (await _post(client, body)).status_code == 200

    replay = await _post(client, body)
    assert replay.status_code == 200
    assert replay.json()["message"] == "Already processed"
    assert fake_gateway.count("verify_transaction") == 1
    events = db_session.scalars(select(WebhookEvent).where(WebhookEvent.tx_ref == payment.tx_ref)).all()
    assert len(events) == 1


@pytest.mark.anyio
async def test_unsettled_webhook_is_reverified_on_redelivery(client, db_session, make_payment, fake_gateway):
    fake_gateway.transaction_status = "pending"
    payment = make_payment()
    body = {"tx_ref": payment.tx_ref, "status": "success"}

    first = await _post(client, body)
    assert first.status_code == 200, first.text
    assert first.json() == {"success": True, "message": "Awaiting settlement", "status": "pending"}
    event = db_session.scalars(select(WebhookEvent).where(WebhookEvent.tx_ref == payment.tx_ref)).one()
    assert event.processed_at is None

    fake_gateway.transaction_status = "success"
    redelivery = await _post(client, body)
    assert redelivery.json() == {"success": True, "message": "Webhook processed", "status": "success"}
    assert fake_gateway.count("verify_transaction") == 2
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.SUCCESS


@pytest.mark.anyio
async def test_bad_signature_rejected_without_change(client, db_session, make_payment, fake_gateway):
    payment = make_payment()
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"}, secret="wrong-secret")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "SIGNATURE_INVALID"
    assert fake_gateway.calls == []

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING
    audit = db_session.scalars(select(AuditLog).where(AuditLog.action == "webhook.signature_invalid")).one()
    assert audit.status == "rejected"


@pytest.mark.anyio
async def test_missing_signature_rejected(client, make_payment):
    payment = make_payment()
    response = await client.post(
        "/api/payments/webhook", json={"tx_ref": payment.tx_ref, "status": "success"}
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "SIGNATURE_MISSING"


@pytest.mark.anyio
async def test_alternate_header_and_prefix_accepted(client, make_payment):
    payment = make_payment()
    raw, headers = _signed({"tx_ref": payment.tx_ref, "status": "success"})
    signature = headers.pop("x-chapa-signature")
    headers["Chapa-Signature"] = f"sha256={signature}"
    response = await client.post("/api/payments/webhook", content=raw, headers=headers)
    assert response.status_code == 200


@pytest.mark.anyio
async def test_stale_timestamp_rejected(client, make_payment, fake_gateway):
    payment = make_payment()
    stale = str(epoch_millis() - 10 * 60 * 1000)
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"}, **{"x-chapa-timestamp": stale})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_EXPIRED"
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_fresh_timestamp_accepted(client, make_payment):
    payment = make_payment()
    fresh = str(epoch_millis() - 1000)
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"}, **{"x-chapa-timestamp": fresh})
    assert response.status_code == 200


@pytest.mark.anyio
async def test_payload_requires_tx_ref_and_status(client):
    response = await _post(client, {"status": "success"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_PAYLOAD"


@pytest.mark.anyio
async def test_declared_status_is_not_trusted(client, db_session, make_payment, fake_gateway):
    fake_gateway.transaction_status = "failed"
    payment = make_payment()
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"})
    assert response.json()["status"] == "failed"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.anyio
async def test_unverifiable_webhook_awaits_redelivery(client, db_session, make_payment, fake_gateway):
    payment = make_payment()
    body = {"tx_ref": payment.tx_ref, "status": "success"}
    fake_gateway.errors["verify_transaction"] = GatewayError("timeout", status_code=None)

    response = await _post(client, body)
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "VERIFICATION_UNAVAILABLE"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING

    fake_gateway.errors.clear()
    redelivered = await _post(client, body)
    assert redelivered.status_code == 200
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.SUCCESS


@pytest.mark.anyio
async def test_storage_failure_asks_for_retry(client, db_session, make_payment, monkeypatch):
    payment = make_payment()

    def _broken_update(*args, **kwargs):
        raise OperationalError("UPDATE payments", {}, Exception("database is locked"))

    monkeypatch.setattr("app.services.reconciliation.update_status", _broken_update)
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"})
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "RECONCILIATION_PENDING"
    event = db_session.scalars(select(WebhookEvent).where(WebhookEvent.tx_ref == payment.tx_ref)).one()
    assert event.processed_at is None


@pytest.mark.anyio
async def test_unknown_transaction_acknowledged(client, fake_gateway):
    response = await _post(client, {"tx_ref": "AC-1700000000000-ZZZZZZ", "status": "success"})
    assert response.status_code == 200
    assert response.json()["message"] == "Ignored: unknown transaction"
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_ip_allowlist_enforced(client, make_payment, fake_gateway):
    restricted = get_settings().model_copy(update={"CHAPA_WEBHOOK_IPS": "196.189.0.10, 196.189.0.11"})
    app.dependency_overrides[get_app_settings] = lambda: restricted
    payment = make_payment()
    response = await _post(client, {"tx_ref": payment.tx_ref, "status": "success"})
    assert response.status_code == 403
    assert fake_gateway.calls == []

    allowed = await _post(
        client, {"tx_ref": payment.tx_ref, "status": "success"}, **{"X-Forwarded-For": "196.189.0.11"}
    )
    assert allowed.status_code == 200


# --- Redirect GET fallback -------------------------------------------------


@pytest.mark.anyio
async def test_callback_get_reverifies(client, db_session, make_payment):
    payment = make_payment()
    response = await client.get("/api/payments/webhook", params={"trx_ref": payment.tx_ref, "status": "success"})
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.SUCCESS


@pytest.mark.anyio
async def test_callback_never_applies_unverified_success(client, db_session, make_payment, fake_gateway):
    fake_gateway.errors["verify_transaction"] = GatewayError("down", status_code=503)
    payment = make_payment()
    response = await client.get("/api/payments/webhook", params={"tx_ref": payment.tx_ref, "status": "success"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Verification pending"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.anyio
async def test_callback_applies_unverified_failure(client, db_session, make_payment, fake_gateway):
    fake_gateway.errors["verify_transaction"] = GatewayError("down", status_code=503)
    payment = make_payment()
    response = await client.get("/api/payments/webhook", params={"tx_ref": payment.tx_ref, "status": "cancelled"})
    assert response.json()["status"] == "cancelled"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.CANCELLED


@pytest.mark.anyio
async def test_callback_requires_reference(client):
    response = await client.get("/api/payments/webhook")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_TX_REF"


@pytest.mark.anyio
async def test_callback_rate_limited_per_tx_ref(client, make_payment):
    payment = make_payment()
    for _ in range(5):
        await client.get("/api/payments/webhook", params={"tx_ref": payment.tx_ref})
    response = await client.get("/api/payments/webhook", params={"tx_ref": payment.tx_ref})
    assert response.status_code == 429


@pytest.mark.anyio
async def test_api_responses_carry_security_headers(client, make_payment):
    payment = make_payment()
    response = await client.get("/api/payments/webhook", params={"tx_ref": payment.tx_ref})
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"

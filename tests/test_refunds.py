import pytest
from sqlalchemy import select

from app.models import AuditLog, BillingCycle, PaymentStatus, PaymentType, Subscription, SubscriptionStatus
from app.services.refunds import build_refund_reference
from app.utils.errors import GatewayError


@pytest.fixture
def paid_subscription(db_session, make_payment, make_plan):
    plan = make_plan()
    payment = make_payment(
        payment_type=PaymentType.SUBSCRIPTION,
        status=PaymentStatus.SUCCESS,
        amount="1500.00",
        metadata={"planId": str(plan.id), "billingCycle": "monthly", "businessId": "biz-1"},
        chapa_trx_ref="APxyz123",
    )
    subscription = Subscription(
        business_id="biz-1",
        plan_id=plan.id,
        billing_cycle=BillingCycle.MONTHLY,
        status=SubscriptionStatus.ACTIVE,
        last_payment_tx_ref=payment.tx_ref,
    )
    db_session.add(subscription)
    db_session.commit()
    return payment, subscription


@pytest.mark.anyio
async def test_refund_requires_admin(client, buyer_headers, paid_subscription, fake_gateway):
    payment, _ = paid_subscription
    response = await client.post("/api/admin/refunds", json={"paymentId": payment.id}, headers=buyer_headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_refund_cancels_subscription(client, db_session, admin_headers, paid_subscription, fake_gateway):
    payment, subscription = paid_subscription
    response = await client.post(
        "/api/admin/refunds",
        json={"paymentId": payment.id, "reason": "Duplicate charge"},
        headers=admin_headers,
    )
    assert response.status_code == 200, response.text
    refund = response.json()["refund"]
    assert refund["reference"] == build_refund_reference(payment)
    assert refund["amount"] == "1500.00"
    assert refund["providerStatus"] == "refunded"

    _, call = fake_gateway.calls[0]
    assert call["provider_reference"] == "APxyz123"
    assert call["reason"] == "Duplicate charge"

    db_session.refresh(payment)
    assert payment.refunded_at is not None
    assert payment.refund_reference == refund["reference"]
    assert payment.refunded_by == "admin-1"
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert db_session.scalars(select(AuditLog).where(AuditLog.action == "payment.refunded")).one()


@pytest.mark.anyio
async def test_partial_refund_amount(client, admin_headers, paid_subscription, fake_gateway):
    payment, _ = paid_subscription
    response = await client.post(
        "/api/admin/refunds", json={"paymentId": payment.id, "amount": "500"}, headers=admin_headers
    )
    assert response.json()["refund"]["amount"] == "500"
    _, call = fake_gateway.calls[0]
    assert str(call["amount"]) == "500"


@pytest.mark.anyio
async def test_refund_over_payment_amount_rejected(client, admin_headers, paid_subscription, fake_gateway):
    payment, _ = paid_subscription
    response = await client.post(
        "/api/admin/refunds", json={"paymentId": payment.id, "amount": "1500.01"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "REFUND_EXCEEDS_PAYMENT"
    assert fake_gateway.calls == []


@pytest.mark.anyio
async def test_second_refund_rejected(client, admin_headers, paid_subscription, fake_gateway):
    payment, _ = paid_subscription
    first = await client.post("/api/admin/refunds", json={"paymentId": payment.id}, headers=admin_headers)
    assert first.status_code == 200
    second = await client.post("/api/admin/refunds", json={"paymentId": payment.id}, headers=admin_headers)
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "ALREADY_REFUNDED"
    assert fake_gateway.count("process_refund") == 1


@pytest.mark.anyio
async def test_order_payment_not_refundable(client, admin_headers, make_payment):
    payment = make_payment(status=PaymentStatus.SUCCESS, chapa_trx_ref="APorder1")
    response = await client.post("/api/admin/refunds", json={"paymentId": payment.id}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "REFUND_NOT_SUPPORTED"


@pytest.mark.anyio
async def test_pending_payment_not_refundable(client, admin_headers, make_payment):
    payment = make_payment(payment_type=PaymentType.SUBSCRIPTION, chapa_trx_ref="APsub1")
    response = await client.post("/api/admin/refunds", json={"paymentId": payment.id}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PAYMENT_NOT_SUCCESSFUL"


@pytest.mark.anyio
async def test_unknown_payment_is_404(client, admin_headers):
    response = await client.post("/api/admin/refunds", json={"paymentId": 999999}, headers=admin_headers)
    assert response.status_code == 404


@pytest.mark.anyio
async def test_gateway_refusal_leaves_payment_untouched(
    client, db_session, admin_headers, paid_subscription, fake_gateway
):
    payment, subscription = paid_subscription
    fake_gateway.errors["process_refund"] = GatewayError("refund window closed", status_code=400)
    response = await client.post("/api/admin/refunds", json={"paymentId": payment.id}, headers=admin_headers)
    assert response.status_code == 400
    db_session.refresh(payment)
    assert payment.refunded_at is None
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE


def test_refund_reference_is_stable(make_payment):
    payment = make_payment(payment_type=PaymentType.SUBSCRIPTION)
    assert build_refund_reference(payment) == build_refund_reference(payment)
    assert build_refund_reference(payment).startswith(f"REF-{payment.id}-")

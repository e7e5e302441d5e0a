"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session

# --- Default environment, set before the settings object is built
os.environ.setdefault("DATABASE_URL", "sqlite:///./africonnect_test.db")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("COMMERCE_ENABLED", "true")
os.environ.setdefault("SECRET_KEY", "test-hmac-secret")
os.environ.setdefault("CHAPA_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CHAPA_ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("CHAPA_TEST_SECRET_KEY", "CHASECK_TEST-unit")
os.environ.setdefault("APP_URL", "https://app.test")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from app.main import app  # noqa: E402
from app.db import get_db  # noqa: E402
from app.dependencies import get_gateway, get_rate_limiter  # noqa: E402
from app.models import (  # noqa: E402
    ApiKey,
    ApiRole,
    Currency,
    Payment,
    PaymentStatus,
    PaymentType,
    SubscriptionPlan,
)
from app.services.chapa import (  # noqa: E402
    CheckoutSession,
    RefundResult,
    TransactionVerification,
    TransferResult,
)
from app.services.payments import generate_tx_ref  # noqa: E402
from app.services.rate_limit import RateLimiter  # noqa: E402
from app.utils.apikey import hash_key  # noqa: E402

DB_PATH = Path("./africonnect_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per test session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)


# pysqlite needs explicit BEGIN for SAVEPOINT-based isolation to work.
@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record) -> None:
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


# --- (2) Schema is built by Alembic only
_run_migrations()


@dataclass
class FakeGateway:
    """In-memory stand-in for :class:`ChapaClient`.

    Each operation returns the configured value or raises the configured
    gateway error; ``calls`` records every invocation.
    """

    transaction_status: str = "success"
    transaction_amount: Decimal | None = None
    transfer_status: str = "queued"
    verify_transfer_status: str = "success"
    errors: dict[str, Exception] = field(default_factory=dict)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    is_configured: bool = True

    def _record(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        error = self.errors.get(name)
        if error is not None:
            raise error

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def initialize_checkout(self, *, tx_ref: str, **kwargs: Any) -> CheckoutSession:
        self._record("initialize_checkout", tx_ref=tx_ref, **kwargs)
        return CheckoutSession(checkout_url=f"https://checkout.chapa.test/{tx_ref}", raw={})

    def verify_transaction(self, tx_ref: str) -> TransactionVerification:
        self._record("verify_transaction", tx_ref=tx_ref)
        return TransactionVerification(
            status=self.transaction_status,
            tx_ref=tx_ref,
            reference=f"CH-{tx_ref[-6:]}",
            amount=self.transaction_amount,
            currency="ETB",
            method="telebirr",
            created_at="2026-10-19T10:00:00Z",
            updated_at="2026-10-19T10:01:00Z",
            raw={"status": self.transaction_status, "tx_ref": tx_ref},
        )

    def list_banks(self) -> list[dict[str, Any]]:
        self._record("list_banks")
        return [{"id": "946", "name": "Commercial Bank of Ethiopia"}]

    def process_refund(self, provider_reference: str | None, **kwargs: Any) -> RefundResult:
        self._record("process_refund", provider_reference=provider_reference, **kwargs)
        return RefundResult(
            reference=kwargs["reference"],
            status="refunded",
            amount=kwargs.get("amount"),
            currency="ETB",
            raw={},
        )

    def create_transfer(self, *, reference: str, **kwargs: Any) -> TransferResult:
        self._record("create_transfer", reference=reference, **kwargs)
        return TransferResult(
            reference=reference,
            status=self.transfer_status,
            chapa_reference=f"CHT-{reference[-6:]}",
            bank_reference=None,
            amount=kwargs.get("amount"),
            raw={},
        )

    def verify_transfer(self, reference: str) -> TransferResult:
        self._record("verify_transfer", reference=reference)
        return TransferResult(
            reference=reference,
            status=self.verify_transfer_status,
            chapa_reference=f"CHT-{reference[-6:]}",
            bank_reference="BANK-REF-1",
            amount=None,
            raw={},
        )

    def close(self) -> None:
        pass


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        join_transaction_mode="create_savepoint",
        autoflush=False,
        expire_on_commit=False,
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter()


@pytest.fixture(autouse=True)
def override_dependencies(
    db_session: Session, fake_gateway: FakeGateway, rate_limiter: RateLimiter
) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., dict[str, str]]:
    """Create a credential and return the matching auth headers."""

    def _factory(
        role: ApiRole = ApiRole.buyer,
        *,
        subject: str | None = None,
        email: str | None = "buyer@example.com",
        display_name: str | None = "Abebe Kebede",
        business_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, str]:
        token = f"ac_{role.value}-{uuid4().hex}"
        api_key = ApiKey(
            name=f"{role.value}-{uuid4().hex}",
            prefix=token[:9],
            key_hash=hash_key(token),
            subject=subject or f"user-{uuid4().hex[:12]}",
            role=role,
            email=email,
            display_name=display_name,
            business_id=business_id,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        return {"Authorization": f"Bearer {token}"}

    return _factory


@pytest.fixture
def buyer_headers(make_api_key) -> dict[str, str]:
    return make_api_key(ApiRole.buyer, subject="buyer-1")


@pytest.fixture
def seller_headers(make_api_key) -> dict[str, str]:
    return make_api_key(ApiRole.seller, subject="seller-1", email="seller@example.com")


@pytest.fixture
def admin_headers(make_api_key) -> dict[str, str]:
    return make_api_key(ApiRole.admin, subject="admin-1", email="ops@example.com")


@pytest.fixture
def business_headers(make_api_key) -> dict[str, str]:
    return make_api_key(ApiRole.seller, subject="owner-1", email="owner@example.com", business_id="biz-1")


@pytest.fixture
def make_payment(db_session: Session) -> Callable[..., Payment]:
    def _factory(
        *,
        owner_id: str = "buyer-1",
        amount: str = "250.00",
        currency: Currency = Currency.ETB,
        status: PaymentStatus = PaymentStatus.PENDING,
        payment_type: PaymentType = PaymentType.ORDER,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
        checkout_url: str | None = None,
        chapa_trx_ref: str | None = None,
    ) -> Payment:
        prefix = "AC-SUB" if payment_type == PaymentType.SUBSCRIPTION else "AC"
        payment = Payment(
            owner_id=owner_id,
            tx_ref=generate_tx_ref(prefix),
            amount=Decimal(amount),
            currency=currency,
            payment_type=payment_type,
            status=status,
            metadata_json=metadata or {},
            idempotency_key=idempotency_key,
            checkout_url=checkout_url,
            chapa_trx_ref=chapa_trx_ref,
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _factory


@pytest.fixture
def make_plan(db_session: Session) -> Callable[..., SubscriptionPlan]:
    def _factory(
        *,
        slug: str | None = None,
        currency: Currency = Currency.ETB,
        price_monthly: int = 150000,
        price_annual: int = 1500000,
        is_active: bool = True,
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            slug=slug or f"plan-{uuid4().hex[:8]}",
            name="Growth",
            currency=currency,
            price_monthly=price_monthly,
            price_annual=price_annual,
            is_active=is_active,
        )
        db_session.add(plan)
        db_session.commit()
        db_session.refresh(plan)
        return plan

    return _factory


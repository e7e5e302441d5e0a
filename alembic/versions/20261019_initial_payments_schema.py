"""initial payments schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None

CURRENCIES = ("ETB", "USD")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("role", sa.Enum("buyer", "seller", "admin", name="apirole"), nullable=False),
        sa.Column("email", sa.String(length=254), nullable=True),
        sa.Column("display_name", sa.String(length=200), nullable=True),
        sa.Column("business_id", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_api_keys_subject", "api_keys", ["subject"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("tx_ref", sa.String(length=100), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.Enum(*CURRENCIES, name="payment_currency"), nullable=False),
        sa.Column("payment_type", sa.Enum("order", "subscription", name="payment_type"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "success", "failed", "cancelled", name="payment_status"),
            nullable=False,
        ),
        sa.Column("checkout_url", sa.String(length=2048), nullable=True),
        sa.Column("chapa_trx_ref", sa.String(length=128), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("refund_reason", sa.String(length=500), nullable=True),
        sa.Column("refund_reference", sa.String(length=64), nullable=True, unique=True),
        sa.Column("refunded_by", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.UniqueConstraint("owner_id", "idempotency_key", name="uq_payments_owner_idempotency_key"),
    )
    op.create_index("ix_payments_owner_id", "payments", ["owner_id"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_owner_status", "payments", ["owner_id", "status"])

    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(length=100), nullable=False, unique=True),
        sa.Column("order_ref", sa.String(length=100), nullable=False),
        sa.Column("seller_id", sa.String(length=128), nullable=False),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=True),
        sa.Column("amount_gross", sa.Numeric(18, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_net", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.Enum(*CURRENCIES, name="payout_currency"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "queued", "approved", "success", "failed", "reverted", name="payout_status"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("account_name", sa.String(length=200), nullable=False),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("bank_code", sa.String(length=32), nullable=False),
        sa.Column("chapa_reference", sa.String(length=128), nullable=True),
        sa.Column("bank_reference", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_gross > 0", name="ck_payout_positive_gross"),
        sa.CheckConstraint("amount_net > 0", name="ck_payout_positive_net"),
    )
    op.create_index("ix_payouts_payment_id", "payouts", ["payment_id"])
    op.create_index("ix_payouts_seller_order", "payouts", ["seller_id", "order_ref"])
    op.create_index("ix_payouts_status_updated", "payouts", ["status", "updated_at"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("tx_ref", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("signature_prefix", sa.String(length=16), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "provider", "tx_ref", "event_type", name="uq_webhook_events_provider_tx_ref_event_type"
        ),
    )
    op.create_index("ix_webhook_events_received", "webhook_events", ["received_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("tx_ref", sa.String(length=100), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_tx_ref", "audit_logs", ["tx_ref"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("currency", sa.Enum(*CURRENCIES, name="plan_currency"), nullable=False),
        sa.Column("price_monthly", sa.Integer, nullable=False, server_default="0"),
        sa.Column("price_annual", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("business_id", sa.String(length=128), nullable=False, unique=True),
        sa.Column("plan_id", sa.Integer, sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("billing_cycle", sa.Enum("monthly", "annual", name="billing_cycle"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "trialing", "active", "cancelled", "expired", name="subscription_status"),
            nullable=False,
        ),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_tx_ref", sa.String(length=100), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    op.drop_index("ix_audit_logs_tx_ref", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_webhook_events_received", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_payouts_status_updated", table_name="payouts")
    op.drop_index("ix_payouts_seller_order", table_name="payouts")
    op.drop_index("ix_payouts_payment_id", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("ix_payments_owner_status", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_created_at", table_name="payments")
    op.drop_index("ix_payments_owner_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_api_keys_subject", table_name="api_keys")
    op.drop_table("api_keys")

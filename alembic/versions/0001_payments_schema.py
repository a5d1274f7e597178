from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects.postgresql import JSONB


revision = "0001_payments_schema"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = JSONB().with_variant(sa.JSON(), "sqlite")


def _has_index(inspector, table_name: str, index_name: str) -> bool:
    return any(idx["name"] == index_name for idx in inspector.get_indexes(table_name))


def _create_index(bind, table_name: str, column: str, *, unique: bool = False) -> None:
    inspector = inspect(bind)
    name = f"ix_{table_name}_{column}"
    if not _has_index(inspector, table_name, name):
        op.create_index(name, table_name, [column], unique=unique)


def upgrade() -> None:
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())

    if "companies" not in tables:
        op.create_table(
            "companies",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=160), nullable=False),
            sa.Column("owner_user_id", sa.Integer(), nullable=True),
            sa.Column("owner_email", sa.String(length=255), nullable=True),
            sa.Column("subscription_status", sa.String(length=20), nullable=False, server_default="free"),
            sa.Column("subscription_plan", sa.String(length=64), nullable=True),
            sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("subscription_grace_end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "companies", "owner_user_id")

    if "subscription_plans" not in tables:
        op.create_table(
            "subscription_plans",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "subscription_plans", "key", unique=True)

    if "company_payment_settings" not in tables:
        op.create_table(
            "company_payment_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
            sa.Column("mercadopago_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("mercadopago_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("mercadopago_access_token", sa.String(), nullable=True),
            sa.Column("picpay_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("picpay_client_id", sa.String(), nullable=True),
            sa.Column("picpay_client_secret", sa.String(), nullable=True),
            sa.Column("picpay_token", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "company_payment_settings", "company_id", unique=True)

    if "customers" not in tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=30), nullable=False, server_default=""),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "customers", "email")
    _create_index(bind, "customers", "phone")

    if "coupons" not in tables:
        op.create_table(
            "coupons",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="fixed"),
            sa.Column("value", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("max_uses", sa.Integer(), nullable=True),
            sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "coupons", "company_id")

    if "orders" not in tables:
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=True),
            sa.Column("customer_name", sa.String(length=120), nullable=False),
            sa.Column("customer_phone", sa.String(length=30), nullable=False, server_default=""),
            sa.Column("customer_email", sa.String(length=255), nullable=True),
            sa.Column("delivery_address_id", sa.String(length=64), nullable=True),
            sa.Column("table_session_id", sa.String(length=64), nullable=True),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="online"),
            sa.Column("payment_method", sa.String(length=30), nullable=False, server_default="pix"),
            sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="paid"),
            sa.Column("provider_payment_ref", sa.String(length=160), nullable=True),
            sa.Column("subtotal", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("delivery_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("total", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("coupon_id", sa.Integer(), sa.ForeignKey("coupons.id"), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
            sa.Column("estimated_delivery_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "orders", "company_id")
    _create_index(bind, "orders", "provider_payment_ref")

    if "order_items" not in tables:
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.String(length=64), nullable=True),
            sa.Column("product_name", sa.String(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("unit_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("total_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("options", JSON_TYPE, nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "order_items", "order_id")

    if "pending_payments" not in tables:
        op.create_table(
            "pending_payments",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
            sa.Column("provider", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("provider_payment_ref", sa.String(length=120), nullable=True),
            sa.Column("provider_preference_ref", sa.String(length=120), nullable=True),
            sa.Column("order_data", JSON_TYPE, nullable=False),
            sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("claim_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.CheckConstraint(
                "(status = 'completed' AND order_id IS NOT NULL) OR (status != 'completed' AND order_id IS NULL)",
                name="ck_pending_payments_order_matches_status",
            ),
        )
    for column in ("company_id", "status", "provider_payment_ref", "provider_preference_ref", "created_at"):
        _create_index(bind, "pending_payments", column)

    if "integration_events" not in tables:
        op.create_table(
            "integration_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("company_id", sa.Integer(), nullable=True),
            sa.Column("integration", sa.String(length=40), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ok"),
            sa.Column("pending_payment_id", sa.String(length=36), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    for column in ("company_id", "pending_payment_id", "created_at"):
        _create_index(bind, "integration_events", column)

    if "notifications" not in tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=160), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="info"),
            sa.Column("data_json", sa.Text(), nullable=True),
            sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
    _create_index(bind, "notifications", "user_id")
    _create_index(bind, "notifications", "company_id")


def downgrade() -> None:
    for table in (
        "notifications",
        "integration_events",
        "pending_payments",
        "order_items",
        "orders",
        "coupons",
        "customers",
        "company_payment_settings",
        "subscription_plans",
        "companies",
    ):
        op.drop_table(table)

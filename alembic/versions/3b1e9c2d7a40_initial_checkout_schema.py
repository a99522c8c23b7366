"""Initial cart, checkout, discount and credit schema

Revision ID: 3b1e9c2d7a40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1e9c2d7a40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("payment_customer_ref", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_customers_tenant_id", "customers", ["tenant_id"])
    op.create_index("ix_customers_email", "customers", ["email"])
    op.create_index("ix_customers_payment_customer_ref", "customers", ["payment_customer_ref"])

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_products_tenant_id", "products", ["tenant_id"])

    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("sku", sa.String(100), nullable=False, unique=True),
        sa.Column("size", sa.String(50), nullable=True),
        sa.Column("color", sa.String(50), nullable=True),
        sa.Column("price", MONEY, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_product_variants_product_id", "product_variants", ["product_id"])

    op.create_table(
        "inventory_levels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("variant_id", sa.Integer(), sa.ForeignKey("product_variants.id"), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("on_hand", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("committed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("variant_id", "location_id", name="uq_inventory_variant_location"),
    )
    op.create_index("ix_inventory_levels_variant_id", "inventory_levels", ["variant_id"])

    op.create_table(
        "inventory_reconciliations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("variant_id", sa.Integer(), sa.ForeignKey("product_variants.id"), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("reason", sa.String(100), nullable=False),
        sa.Column("status", sa.Enum("PENDING", "APPLIED", name="reconciliationstatus"), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_inventory_reconciliations_status", "inventory_reconciliations", ["status"])

    op.create_table(
        "discounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("value_type", sa.Enum("PERCENTAGE", "FIXED_AMOUNT", name="discountvaluetype"), nullable=False),
        sa.Column("value", MONEY, nullable=False),
        sa.Column("status", sa.Enum("ACTIVE", "DISABLED", name="discountstatus"), nullable=False),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("ends_at", sa.DateTime(), nullable=True),
        sa.Column("minimum_amount", MONEY, nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_limit_per_customer", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("tenant_id", "code", name="uq_discounts_tenant_code"),
    )
    op.create_index("ix_discounts_tenant_id", "discounts", ["tenant_id"])
    op.create_index("ix_discounts_code", "discounts", ["code"])

    op.create_table(
        "cart_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("variant_id", sa.Integer(), sa.ForeignKey("product_variants.id"), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("variant_data", sa.JSON(), nullable=False),
        sa.Column("added_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("quantity = 1", name="ck_cart_items_single_unit"),
    )
    op.create_index("ix_cart_items_tenant_id", "cart_items", ["tenant_id"])
    op.create_index("ix_cart_items_customer_id", "cart_items", ["customer_id"])
    op.create_index("ix_cart_items_added_at", "cart_items", ["added_at"])

    op.create_table(
        "cart_discounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False, unique=True),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id"), nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "credit_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False, unique=True),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        sa.Column("total_earned", MONEY, nullable=False, server_default="0"),
        sa.Column("total_spent", MONEY, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column(
            "transaction_type",
            sa.Enum("GRANT", "SPEND", "ADJUSTMENT", "EXPIRATION", name="credittransactiontype"),
            nullable=False,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.String(100), nullable=True),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("expired_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_credit_transactions_customer_id", "credit_transactions", ["customer_id"])
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(50), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("customer_name", sa.String(200), nullable=False),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("payment_method", sa.String(30), nullable=False),
        sa.Column("payment_reference", sa.String(100), nullable=False),
        sa.Column("checkout_session_id", sa.String(36), nullable=False, unique=True),
        sa.Column("subtotal", MONEY, nullable=False),
        sa.Column("tax_amount", MONEY, nullable=False),
        sa.Column("shipping_amount", MONEY, nullable=False),
        sa.Column("discount_amount", MONEY, nullable=False),
        sa.Column("discount_code", sa.String(50), nullable=True),
        sa.Column("credits_applied", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("status", sa.Enum("PROCESSING", "PAID", "FAILED", name="orderstatus"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"], unique=True)
    op.create_index("ix_orders_tenant_id", "orders", ["tenant_id"])
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("variant_id", sa.Integer(), sa.ForeignKey("product_variants.id"), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("product_title", sa.String(200), nullable=False),
        sa.Column("variant_data", sa.JSON(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", MONEY, nullable=False),
    )

    op.create_table(
        "discount_usages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id"), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("discount_id", "order_id", name="uq_discount_usage_order"),
    )
    op.create_index("ix_discount_usages_discount_id", "discount_usages", ["discount_id"])
    op.create_index("ix_discount_usages_customer_id", "discount_usages", ["customer_id"])

    op.create_table(
        "checkout_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=True),
        sa.Column(
            "state",
            sa.Enum("PREPARING", "AWAITING_PAYMENT", "COMPLETING", "COMPLETED", "FAILED", name="checkoutstate"),
            nullable=False,
        ),
        sa.Column("credits_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("intent_id", sa.String(100), nullable=True, unique=True),
        sa.Column("client_secret", sa.String(200), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("subtotal", MONEY, nullable=False),
        sa.Column("tax", MONEY, nullable=False),
        sa.Column("shipping", MONEY, nullable=False),
        sa.Column("discount_amount", MONEY, nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id"), nullable=True),
        sa.Column("discount_code", sa.String(50), nullable=True),
        sa.Column("credits_applied", MONEY, nullable=False),
        sa.Column("total", MONEY, nullable=False),
        sa.Column("cart_item_ids", sa.JSON(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("reconciliation_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("customer_id", "idempotency_key", name="uq_checkout_customer_idempotency"),
    )
    op.create_index("ix_checkout_sessions_customer_id", "checkout_sessions", ["customer_id"])
    op.create_index("ix_checkout_sessions_state", "checkout_sessions", ["state"])
    op.create_index("ix_checkout_sessions_expires_at", "checkout_sessions", ["expires_at"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("intent_id", sa.String(100), nullable=True),
        sa.Column("provider_payment_id", sa.String(100), nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.Enum("SUCCEEDED", "REFUNDED", name="paymentstatus"), nullable=False),
        sa.Column("gateway_response", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_payment_transactions_order_id", "payment_transactions", ["order_id"])
    op.create_index("ix_payment_transactions_intent_id", "payment_transactions", ["intent_id"])
    op.create_index("ix_payment_transactions_provider_payment_id", "payment_transactions", ["provider_payment_id"])

    op.create_table(
        "saved_payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("provider_customer_ref", sa.String(100), nullable=False),
        sa.Column("token_id", sa.String(100), nullable=False, unique=True),
        sa.Column("method", sa.String(30), nullable=True),
        sa.Column("last4", sa.String(4), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_saved_payment_methods_customer_id", "saved_payment_methods", ["customer_id"])

    op.create_table(
        "waitlist_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("variant_id", sa.Integer(), sa.ForeignKey("product_variants.id"), nullable=False),
        sa.Column("status", sa.Enum("WAITING", "AUTHORIZED", "REMOVED", name="waitliststatus"), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("authorized_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_waitlist_entries_tenant_id", "waitlist_entries", ["tenant_id"])
    op.create_index("ix_waitlist_entries_customer_id", "waitlist_entries", ["customer_id"])
    op.create_index("ix_waitlist_entries_variant_id", "waitlist_entries", ["variant_id"])
    op.create_index("ix_waitlist_entries_status", "waitlist_entries", ["status"])
    op.create_index("ix_waitlist_entries_created_at", "waitlist_entries", ["created_at"])

    op.create_table(
        "plugins",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("webhook_url", sa.String(500), nullable=False),
        sa.Column("secret", sa.String(200), nullable=False),
        sa.Column("events", sa.JSON(), nullable=False),
        sa.Column("status", sa.Enum("ACTIVE", "INACTIVE", name="pluginstatus"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_plugins_tenant_slug"),
    )
    op.create_index("ix_plugins_tenant_id", "plugins", ["tenant_id"])

    op.create_table(
        "plugin_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plugin_id", sa.Integer(), sa.ForeignKey("plugins.id"), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.Enum("PENDING", "DELIVERED", "FAILED", name="plugineventstatus"), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_plugin_events_plugin_id", "plugin_events", ["plugin_id"])
    op.create_index("ix_plugin_events_status", "plugin_events", ["status"])
    op.create_index("ix_plugin_events_created_at", "plugin_events", ["created_at"])

    op.create_table(
        "feature_flags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("flag_key", sa.String(100), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rollout_percentage", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("tenant_id", "flag_key", name="uq_feature_flags_tenant_key"),
    )
    op.create_index("ix_feature_flags_flag_key", "feature_flags", ["flag_key"])


def downgrade() -> None:
    for table in (
        "feature_flags",
        "plugin_events",
        "plugins",
        "waitlist_entries",
        "saved_payment_methods",
        "payment_transactions",
        "checkout_sessions",
        "discount_usages",
        "order_items",
        "orders",
        "credit_transactions",
        "credit_balances",
        "cart_discounts",
        "cart_items",
        "discounts",
        "inventory_reconciliations",
        "inventory_levels",
        "product_variants",
        "products",
        "customers",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_name in (
        "reconciliationstatus",
        "discountvaluetype",
        "discountstatus",
        "credittransactiontype",
        "orderstatus",
        "checkoutstate",
        "paymentstatus",
        "waitliststatus",
        "pluginstatus",
        "plugineventstatus",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)

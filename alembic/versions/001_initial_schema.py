"""Initial schema - orders, payments, webhook ledger, fulfillment, benchmarks.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("contact_name", sa.String(255)),
        sa.Column("company_name", sa.String(255)),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Orders
    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id")),
        sa.Column("state", sa.String(30), nullable=False, server_default="draft"),
        sa.Column("total_retail", sa.Integer, server_default="0"),
        sa.Column("total_wholesale", sa.Integer, server_default="0"),
        sa.Column("service_fee", sa.Integer, server_default="0"),
        sa.Column("estimated_budget_min", sa.Integer),
        sa.Column("estimated_budget_max", sa.Integer),
        sa.Column("estimated_links_count", sa.Integer),
        sa.Column("estimated_price_per_link", sa.Integer),
        sa.Column("estimator_snapshot", postgresql.JSONB),
        sa.Column("preferences_dr_min", sa.Integer),
        sa.Column("preferences_dr_max", sa.Integer),
        sa.Column("preferences_traffic_min", sa.Integer),
        sa.Column("preferences_categories", postgresql.JSONB, server_default="[]"),
        sa.Column("preferences_types", postgresql.JSONB, server_default="[]"),
        sa.Column("preferences_niches", postgresql.JSONB, server_default="[]"),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_orders_account_id", "orders", ["account_id"])
    op.create_index("ix_orders_state", "orders", ["state"])

    # Payment intent mirror
    op.create_table(
        "payment_intents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=False, unique=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id")),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("amount_received", sa.Integer),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("payment_method_id", sa.String(255)),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("last_error", sa.Text),
        sa.Column("failure_code", sa.String(100)),
        sa.Column("failure_message", sa.Text),
        sa.Column("last_webhook_event_id", sa.String(255)),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("succeeded_at", sa.DateTime(timezone=True)),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payment_intents_order_id", "payment_intents", ["order_id"])
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])

    # Completed payments ledger
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id")),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("status", sa.String(30), nullable=False, server_default="completed"),
        sa.Column("method", sa.String(30), server_default="stripe"),
        sa.Column("transaction_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_payment_intent_id", sa.String(255)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    # Webhook event ledger (event_id is the idempotency key)
    op.create_table(
        "payment_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text),
        sa.Column("payment_intent_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("payment_intents.id")),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id")),
        sa.Column("event_data", postgresql.JSONB),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_payment_webhook_events_status", "payment_webhook_events", ["status"])
    op.create_index("ix_payment_webhook_events_created_at", "payment_webhook_events", ["created_at"])
    op.create_index("ix_payment_webhook_events_order_id", "payment_webhook_events", ["order_id"])

    # Fulfillment: clients and websites
    op.create_table(
        "clients",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("website", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "websites",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("domain", sa.String(255), nullable=False, unique=True),
        sa.Column("domain_rating", sa.Integer),
        sa.Column("total_traffic", sa.Integer),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Modern fulfillment: one line item per link
    op.create_table(
        "order_line_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("target_page_url", sa.Text),
        sa.Column("target_page_id", sa.String(255)),
        sa.Column("anchor_text", sa.Text),
        sa.Column("status", sa.String(30), nullable=False, server_default="draft"),
        sa.Column("assigned_domain_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("websites.id")),
        sa.Column("assigned_domain", sa.String(255)),
        sa.Column("wholesale_price", sa.Integer),
        sa.Column("estimated_price", sa.Integer),
        sa.Column("approved_price", sa.Integer),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_order_line_items_order_id", "order_line_items", ["order_id"])

    # Legacy fulfillment: groups and site submissions
    op.create_table(
        "order_groups",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("link_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("target_pages", postgresql.JSONB, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_order_groups_order_id", "order_groups", ["order_id"])

    op.create_table(
        "order_site_submissions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_group_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("order_groups.id"), nullable=False),
        sa.Column("domain_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("websites.id")),
        sa.Column("submission_status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("inclusion_status", sa.String(30)),
        sa.Column("exclusion_reason", sa.Text),
        sa.Column("wholesale_price_snapshot", sa.Integer),
        sa.Column("retail_price_snapshot", sa.Integer),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_order_site_submissions_group_id", "order_site_submissions", ["order_group_id"])

    # Benchmarks: one row per (order, version), at most one latest per order
    op.create_table(
        "order_benchmarks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("is_latest", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("benchmark_type", sa.String(30), nullable=False, server_default="initial"),
        sa.Column("capture_reason", sa.String(30), nullable=False),
        sa.Column("captured_by", sa.String(255)),
        sa.Column("benchmark_data", postgresql.JSONB, nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("captured_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", "version", name="uq_order_benchmarks_order_version"),
    )
    op.create_index(
        "uq_order_benchmarks_latest",
        "order_benchmarks",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("is_latest"),
    )

    op.create_table(
        "benchmark_comparisons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("benchmark_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("order_benchmarks.id"), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("compared_by", sa.String(255)),
        sa.Column("comparison_data", postgresql.JSONB, nullable=False),
        sa.Column("compared_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_benchmark_comparisons_order_id", "benchmark_comparisons", ["order_id"])

    # Database fallback for per-order locks
    op.create_table(
        "order_lock_leases",
        sa.Column("lock_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("lock_key", sa.String(255), nullable=False),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("order_lock_leases")
    op.drop_index("ix_benchmark_comparisons_order_id", table_name="benchmark_comparisons")
    op.drop_table("benchmark_comparisons")
    op.drop_index("uq_order_benchmarks_latest", table_name="order_benchmarks")
    op.drop_table("order_benchmarks")
    op.drop_table("order_site_submissions")
    op.drop_table("order_groups")
    op.drop_table("order_line_items")
    op.drop_table("websites")
    op.drop_table("clients")
    op.drop_table("payment_webhook_events")
    op.drop_table("payments")
    op.drop_table("payment_intents")
    op.drop_table("orders")
    op.drop_table("accounts")

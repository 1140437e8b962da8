"""create subscription, billing and AI usage tables

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 09:10:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("price", sa.Numeric(18, 6), nullable=False),
        sa.Column("billing_interval", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("stripe_price_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_subscription_plans_name"),
        sa.UniqueConstraint("stripe_price_id"),
        sa.CheckConstraint("billing_interval IN ('monthly', 'yearly')", name="ck_subscription_plans_interval"),
        sa.CheckConstraint("price >= 0", name="ck_subscription_plans_price_nonnegative"),
    )

    op.create_table(
        "organization_subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_plan_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("payment_method_id", sa.String(length=128), nullable=True),
        sa.Column("subscription_provider", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("provider_subscription_id", sa.String(length=128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_subscription_id"),
        sa.CheckConstraint(
            "status IN ('active', 'trialing', 'trial', 'past_due', 'canceled', 'expired')",
            name="ck_organization_subscriptions_status",
        ),
    )
    op.create_index(
        "ix_organization_subscriptions_org_created",
        "organization_subscriptions",
        ["organization_id", "created_at"],
    )

    op.create_table(
        "subscription_invoices",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="unpaid"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_url", sa.String(length=1024), nullable=True),
        sa.Column("invoice_pdf", sa.String(length=1024), nullable=True),
        sa.Column("provider_invoice_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_id"], ["organization_subscriptions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_invoice_id"),
        sa.CheckConstraint("status IN ('paid', 'unpaid', 'void')", name="ck_subscription_invoices_status"),
        sa.CheckConstraint("amount >= 0", name="ck_subscription_invoices_amount_nonnegative"),
    )
    op.create_index(
        "ix_subscription_invoices_org_created",
        "subscription_invoices",
        ["organization_id", "created_at"],
    )

    op.create_table(
        "stripe_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=False, server_default="processed"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_event_id"),
    )
    op.create_index("ix_stripe_events_type_processed", "stripe_events", ["event_type", "processed_at"])

    op.create_table(
        "ai_usage_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("message_type", sa.String(length=32), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cost_usd", sa.Numeric(18, 6), nullable=False),
        sa.Column("feature_used", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "message_type IN ('email_response', 'ai_future', 'profiling', 'general', 'drafting')",
            name="ck_ai_usage_records_message_type",
        ),
    )
    op.create_index("ix_ai_usage_records_org_created", "ai_usage_records", ["organization_id", "created_at"])

    op.create_table(
        "ai_topup_purchases",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("package_id", sa.String(length=32), nullable=False),
        sa.Column("messages_purchased", sa.Integer(), nullable=False),
        sa.Column("messages_remaining", sa.Integer(), nullable=False),
        sa.Column("price_paid", sa.Numeric(18, 6), nullable=False),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_provider", sa.String(length=32), nullable=True),
        sa.Column("payment_provider_id", sa.String(length=128), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed', 'refunded')",
            name="ck_ai_topup_purchases_payment_status",
        ),
        sa.CheckConstraint("messages_remaining >= 0", name="ck_ai_topup_purchases_remaining"),
    )
    op.create_index(
        "ix_ai_topup_purchases_org_status",
        "ai_topup_purchases",
        ["organization_id", "payment_status"],
    )


def downgrade() -> None:
    op.drop_index("ix_ai_topup_purchases_org_status", table_name="ai_topup_purchases")
    op.drop_table("ai_topup_purchases")
    op.drop_index("ix_ai_usage_records_org_created", table_name="ai_usage_records")
    op.drop_table("ai_usage_records")
    op.drop_index("ix_stripe_events_type_processed", table_name="stripe_events")
    op.drop_table("stripe_events")
    op.drop_index("ix_subscription_invoices_org_created", table_name="subscription_invoices")
    op.drop_table("subscription_invoices")
    op.drop_index("ix_organization_subscriptions_org_created", table_name="organization_subscriptions")
    op.drop_table("organization_subscriptions")
    op.drop_table("subscription_plans")

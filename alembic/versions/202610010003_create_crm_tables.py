"""create contact, lead scoring and sales pipeline tables

Revision ID: 202610010003
Revises: 202610010002
Create Date: 2026-10-01 09:20:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010003"
down_revision: str | None = "202610010002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("firstname", sa.String(length=255), nullable=False),
        sa.Column("lastname", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("company", sa.String(length=255), nullable=True),
        sa.Column("position", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("personality_type", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contacts_org_created", "contacts", ["organization_id", "created_at"])

    op.create_table(
        "contact_email_interactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.String(length=998), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("direction IN ('inbound', 'outbound')", name="ck_contact_email_interactions_direction"),
    )
    op.create_index(
        "ix_contact_email_interactions_contact_occurred",
        "contact_email_interactions",
        ["contact_id", "occurred_at"],
    )

    op.create_table(
        "lead_scores",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("demographic_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("behavioral_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("engagement_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("company_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email_interaction_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recency_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overall_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qualification_status", sa.String(length=16), nullable=False, server_default="unqualified"),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contact_id"),
        sa.CheckConstraint(
            "qualification_status IN ('hot', 'warm', 'cold', 'unqualified')",
            name="ck_lead_scores_qualification_status",
        ),
        sa.CheckConstraint("overall_score BETWEEN 0 AND 100", name="ck_lead_scores_overall_score"),
    )
    op.create_index("ix_lead_scores_org_status", "lead_scores", ["organization_id", "qualification_status"])

    op.create_table(
        "lead_scoring_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("previous_score", sa.Integer(), nullable=True),
        sa.Column("new_score", sa.Integer(), nullable=False),
        sa.Column("score_change", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("change_reason", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_lead_scoring_history_contact_created",
        "lead_scoring_history",
        ["contact_id", "created_at"],
    )

    op.create_table(
        "sales_pipelines",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#3B82F6"),
        sa.Column("icon", sa.String(length=64), nullable=False, server_default="pipeline"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pipeline_stages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#6B7280"),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("is_closed_won", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_closed_lost", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_id"], ["sales_pipelines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline_id", "sort_order", name="uq_pipeline_stages_pipeline_sort_order"),
        sa.CheckConstraint("probability BETWEEN 0 AND 100", name="ck_pipeline_stages_probability"),
        sa.CheckConstraint("NOT (is_closed_won AND is_closed_lost)", name="ck_pipeline_stages_single_outcome"),
    )

    op.create_table(
        "sales_opportunities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("value", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("actual_close_date", sa.Date(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["pipeline_id"], ["sales_pipelines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('open', 'won', 'lost')", name="ck_sales_opportunities_status"),
        sa.CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')", name="ck_sales_opportunities_priority"
        ),
        sa.CheckConstraint("probability BETWEEN 0 AND 100", name="ck_sales_opportunities_probability"),
    )
    op.create_index(
        "ix_sales_opportunities_pipeline_stage",
        "sales_opportunities",
        ["pipeline_id", "stage_id"],
    )

    op.create_table(
        "opportunity_activities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["sales_opportunities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "activity_type IN ('note_added', 'stage_changed', 'call', 'email', 'meeting', 'task')",
            name="ck_opportunity_activities_type",
        ),
    )
    op.create_index(
        "ix_opportunity_activities_opportunity_created",
        "opportunity_activities",
        ["opportunity_id", "created_at"],
    )

    op.create_table(
        "pipeline_metrics",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("metric_date", sa.Date(), nullable=False),
        sa.Column("total_opportunities", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("open_opportunities", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("won_opportunities", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lost_opportunities", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_value", sa.Numeric(18, 2), nullable=False),
        sa.Column("weighted_value", sa.Numeric(18, 2), nullable=False),
        sa.Column("won_value", sa.Numeric(18, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_id"], ["sales_pipelines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline_id", "metric_date", name="uq_pipeline_metrics_pipeline_date"),
    )


def downgrade() -> None:
    op.drop_table("pipeline_metrics")
    op.drop_index("ix_opportunity_activities_opportunity_created", table_name="opportunity_activities")
    op.drop_table("opportunity_activities")
    op.drop_index("ix_sales_opportunities_pipeline_stage", table_name="sales_opportunities")
    op.drop_table("sales_opportunities")
    op.drop_table("pipeline_stages")
    op.drop_table("sales_pipelines")
    op.drop_index("ix_lead_scoring_history_contact_created", table_name="lead_scoring_history")
    op.drop_table("lead_scoring_history")
    op.drop_index("ix_lead_scores_org_status", table_name="lead_scores")
    op.drop_table("lead_scores")
    op.drop_index("ix_contact_email_interactions_contact_occurred", table_name="contact_email_interactions")
    op.drop_table("contact_email_interactions")
    op.drop_index("ix_contacts_org_created", table_name="contacts")
    op.drop_table("contacts")

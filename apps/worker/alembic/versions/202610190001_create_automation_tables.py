"""create automation and crm lead tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("channel", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("assigned_user_id", sa.Uuid(), nullable=True),
        sa.Column("current_pipeline_id", sa.Uuid(), nullable=True),
        sa.Column("current_stage_id", sa.Uuid(), nullable=True),
        sa.Column("last_contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_organization_status", "crm_lead", ["organization_id", "status"], unique=False)
    op.create_index("ix_crm_lead_current_stage_id", "crm_lead", ["current_stage_id"], unique=False)

    op.create_table(
        "crm_message_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body_html", sa.Text(), nullable=False),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_message_template_organization_id",
        "crm_message_template",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "crm_timeline_entry",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("entry_type", sa.String(length=32), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_by_user_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_timeline_entry_lead_created",
        "crm_timeline_entry",
        ["lead_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "automation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trigger_kind", sa.String(length=32), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=True),
        sa.Column("applies_to_channel", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_scope_trigger_active",
        "automation",
        ["organization_id", "trigger_kind", "is_active"],
        unique=False,
    )

    op.create_table(
        "automation_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("action_kind", sa.String(length=32), nullable=False),
        sa.Column("action_config", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["automation_id"], ["automation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("automation_id", "position", name="uq_automation_step_position"),
    )
    op.create_index("ix_automation_step_automation_id", "automation_step", ["automation_id"], unique=False)

    op.create_table(
        "automation_enrollment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("current_step_position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("next_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["automation_id"], ["automation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_enrollment_lead_id", "automation_enrollment", ["lead_id"], unique=False)
    op.create_index(
        "ix_automation_enrollment_status_next_action",
        "automation_enrollment",
        ["status", "next_action_at"],
        unique=False,
    )
    op.create_index(
        "uq_automation_enrollment_active_pair",
        "automation_enrollment",
        ["automation_id", "lead_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_automation_enrollment_active_pair", table_name="automation_enrollment")
    op.drop_index("ix_automation_enrollment_status_next_action", table_name="automation_enrollment")
    op.drop_index("ix_automation_enrollment_lead_id", table_name="automation_enrollment")
    op.drop_table("automation_enrollment")

    op.drop_index("ix_automation_step_automation_id", table_name="automation_step")
    op.drop_table("automation_step")

    op.drop_index("ix_automation_scope_trigger_active", table_name="automation")
    op.drop_table("automation")

    op.drop_index("ix_crm_timeline_entry_lead_created", table_name="crm_timeline_entry")
    op.drop_table("crm_timeline_entry")

    op.drop_index("ix_crm_message_template_organization_id", table_name="crm_message_template")
    op.drop_table("crm_message_template")

    op.drop_index("ix_crm_lead_current_stage_id", table_name="crm_lead")
    op.drop_index("ix_crm_lead_organization_status", table_name="crm_lead")
    op.drop_table("crm_lead")

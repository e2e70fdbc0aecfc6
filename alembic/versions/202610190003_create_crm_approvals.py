"""create crm approval processes, requests and transitions

Revision ID: 202610190003
Revises: 202610190002
Create Date: 2026-10-19 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190003"
down_revision: str | None = "202610190002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_approval_process",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("trigger_stage_from", sa.String(length=64), nullable=True),
        sa.Column("trigger_stage_to", sa.String(length=64), nullable=True),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["module_id"], ["crm_module.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_approval_process_module_enabled",
        "crm_approval_process",
        ["module_id", "is_enabled"],
        unique=False,
    )

    op.create_table(
        "crm_blueprint_transition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", sa.String(length=64), nullable=False),
        sa.Column("to_stage", sa.String(length=64), nullable=False),
        sa.Column("required_fields", sa.JSON(), nullable=False),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("require_reason", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("approval_process_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["module_id"], ["crm_module.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approval_process_id"], ["crm_approval_process.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("module_id", "from_stage", "to_stage", name="uq_crm_blueprint_transition_edge"),
    )
    op.create_index(
        "ix_crm_blueprint_transition_module_from",
        "crm_blueprint_transition",
        ["module_id", "from_stage"],
        unique=False,
    )

    op.create_table(
        "crm_approval_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("module_id", sa.Uuid(), nullable=False),
        sa.Column("process_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_steps", sa.Integer(), nullable=False),
        sa.Column("steps_snapshot", sa.JSON(), nullable=False),
        sa.Column("transition_snapshot", sa.JSON(), nullable=False),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("requested_by", sa.String(length=128), nullable=False),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_errors", sa.JSON(), nullable=True),
        sa.Column("supersedes_request_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["record_id"], ["crm_record.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["module_id"], ["crm_module.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["process_id"], ["crm_approval_process.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["supersedes_request_id"], ["crm_approval_request.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_crm_approval_request_pending_per_record",
        "crm_approval_request",
        ["record_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "ix_crm_approval_request_status_module",
        "crm_approval_request",
        ["status", "module_id"],
        unique=False,
    )
    op.create_index(
        "ix_crm_approval_request_requested_by",
        "crm_approval_request",
        ["requested_by", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_approval_decision",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("approval_request_id", sa.Uuid(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["approval_request_id"], ["crm_approval_request.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_approval_decision_request",
        "crm_approval_decision",
        ["approval_request_id", "decided_at"],
        unique=False,
    )

    op.create_table(
        "crm_user_profile",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=64), nullable=True),
        sa.Column("manager_user_id", sa.String(length=128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_crm_user_profile_manager", "crm_user_profile", ["manager_user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_user_profile_manager", table_name="crm_user_profile")
    op.drop_table("crm_user_profile")

    op.drop_index("ix_crm_approval_decision_request", table_name="crm_approval_decision")
    op.drop_table("crm_approval_decision")

    op.drop_index("ix_crm_approval_request_requested_by", table_name="crm_approval_request")
    op.drop_index("ix_crm_approval_request_status_module", table_name="crm_approval_request")
    op.drop_index("uq_crm_approval_request_pending_per_record", table_name="crm_approval_request")
    op.drop_table("crm_approval_request")

    op.drop_index("ix_crm_blueprint_transition_module_from", table_name="crm_blueprint_transition")
    op.drop_table("crm_blueprint_transition")

    op.drop_index("ix_crm_approval_process_module_enabled", table_name="crm_approval_process")
    op.drop_table("crm_approval_process")

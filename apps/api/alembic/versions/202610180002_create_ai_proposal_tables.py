"""create ai proposal tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "ai_proposal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("module", sa.String(length=64), nullable=False, server_default="pipeline"),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("contact_name", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(status = 'pending' AND resolved_at IS NULL) OR (status <> 'pending' AND resolved_at IS NOT NULL)",
            name="ck_ai_proposal_resolved_at_matches_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ai_proposal_tenant_status_created",
        "ai_proposal",
        ["tenant_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_ai_proposal_pending_dedup",
        "ai_proposal",
        ["tenant_id", "type", "contact_id", "status"],
        unique=False,
    )

    op.create_table(
        "ai_autonomy_setting",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("proposal_type", sa.String(length=64), nullable=False),
        sa.Column("tier", sa.String(length=64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "proposal_type", name="uq_ai_autonomy_setting_tenant_type"),
    )

    op.create_table(
        "ai_proposal_stat",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("proposal_type", sa.String(length=64), nullable=False),
        sa.Column("approved_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dismissed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("auto_approved_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "proposal_type", name="uq_ai_proposal_stat_tenant_type"),
    )

    op.create_table(
        "ai_usage_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("usage_type", sa.String(length=64), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ai_usage_log_tenant_type_created",
        "ai_usage_log",
        ["tenant_id", "usage_type", "created_at"],
        unique=False,
    )

    op.create_table(
        "ai_search_result",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("search_type", sa.String(length=64), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ai_search_result_tenant_query",
        "ai_search_result",
        ["tenant_id", "search_type", "query", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_ai_search_result_tenant_query", table_name="ai_search_result")
    op.drop_table("ai_search_result")
    op.drop_index("ix_ai_usage_log_tenant_type_created", table_name="ai_usage_log")
    op.drop_table("ai_usage_log")
    op.drop_table("ai_proposal_stat")
    op.drop_table("ai_autonomy_setting")
    op.drop_index("ix_ai_proposal_pending_dedup", table_name="ai_proposal")
    op.drop_index("ix_ai_proposal_tenant_status_created", table_name="ai_proposal")
    op.drop_table("ai_proposal")

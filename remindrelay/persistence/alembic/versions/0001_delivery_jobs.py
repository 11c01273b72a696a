"""delivery jobs and ledger

Revision ID: 0001_delivery_jobs
Revises: 
Create Date: 2026-10-05 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_delivery_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "delivery_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("items", postgresql.JSONB(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("cursor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("interval_seconds", sa.Float(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("pause_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    # A second active job for the same owner must fail even when two creates race the pre-check.
    op.create_index(
        "uq_delivery_jobs_owner_active",
        "delivery_jobs",
        ["owner_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing', 'paused')"),
    )
    op.create_index("ix_delivery_jobs_owner_created", "delivery_jobs", ["owner_id", "created_at"])
    op.create_index("ix_delivery_jobs_status", "delivery_jobs", ["status"])

    # Insert-only ledger of confirmed deliveries; the unique key is the duplicate guard.
    op.create_table(
        "delivery_ledger",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("cycle_key", sa.String(), nullable=False),
        sa.Column("sent_via", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "owner_id",
            "recipient_id",
            "notification_type",
            "cycle_key",
            name="uq_delivery_ledger_key",
        ),
    )


def downgrade() -> None:
    op.drop_table("delivery_ledger")
    op.drop_index("ix_delivery_jobs_status", table_name="delivery_jobs")
    op.drop_index("ix_delivery_jobs_owner_created", table_name="delivery_jobs")
    op.drop_index("uq_delivery_jobs_owner_active", table_name="delivery_jobs")
    op.drop_table("delivery_jobs")

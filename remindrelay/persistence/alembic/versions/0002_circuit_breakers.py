"""circuit breakers and deflection queue

Revision ID: 0002_circuit_breakers
Revises: 0001_delivery_jobs
Create Date: 2026-10-08
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_circuit_breakers"
down_revision = "0001_delivery_jobs"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Persist per-owner breaker state so restarts and workers share one view of the gateway.
    op.create_table(
        "circuit_breakers",
        sa.Column("owner_id", sa.String(), primary_key=True),
        sa.Column("status", sa.String(), nullable=False, server_default="closed"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_threshold", sa.Integer(), nullable=False),
        sa.Column("success_threshold", sa.Integer(), nullable=False),
        sa.Column("reset_timeout_ms", sa.Integer(), nullable=False),
        sa.Column("half_open_trials", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Messages deflected while a circuit is open, redelivered oldest first.
    op.create_table(
        "queued_messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=True),
        sa.Column("cycle_key", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_queued_messages_owner_status_enqueued",
        "queued_messages",
        ["owner_id", "status", "enqueued_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_queued_messages_owner_status_enqueued", table_name="queued_messages")
    op.drop_table("queued_messages")
    op.drop_table("circuit_breakers")

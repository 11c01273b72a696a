from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so sqlite test databases can create the schema.
JsonPayload = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_JOB_STATUS_SQL = "status IN ('pending', 'processing', 'paused')"


class Base(DeclarativeBase):
    pass


class DeliveryJob(Base):
    __tablename__ = "delivery_jobs"
    __table_args__ = (
        # At most one non-terminal job per owner, even under concurrent creates.
        Index(
            "uq_delivery_jobs_owner_active",
            "owner_id",
            unique=True,
            postgresql_where=text(ACTIVE_JOB_STATUS_SQL),
            sqlite_where=text(ACTIVE_JOB_STATUS_SQL),
        ),
        Index("ix_delivery_jobs_owner_created", "owner_id", "created_at"),
        Index("ix_delivery_jobs_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    # Ordered recipients snapshot; never mutated after creation.
    items: Mapped[list[dict[str, Any]]] = mapped_column(JsonPayload)
    total_items: Mapped[int] = mapped_column(Integer)
    # Index of the next item to process; success_count + error_count always equals it.
    cursor: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    interval_seconds: Mapped[float] = mapped_column(Float)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # operator or breaker_open; cleared on resume.
    pause_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CircuitBreakerState(Base):
    __tablename__ = "circuit_breakers"

    # One breaker per owner; shared across every job and direct send of that owner.
    owner_id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, default="closed")
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_threshold: Mapped[int] = mapped_column(Integer)
    success_threshold: Mapped[int] = mapped_column(Integer)
    reset_timeout_ms: Mapped[int] = mapped_column(Integer)
    # Trials admitted since entering half_open.
    half_open_trials: Mapped[int] = mapped_column(Integer, default=0)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class QueuedMessage(Base):
    __tablename__ = "queued_messages"
    __table_args__ = (
        Index("ix_queued_messages_owner_status_enqueued", "owner_id", "status", "enqueued_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String)
    address: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String)
    # Ledger key parts; present when the message came from a job item.
    recipient_id: Mapped[str | None] = mapped_column(String, nullable=True)
    cycle_key: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="queued")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set after a failed redelivery; the row is skipped until then.
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DeliveryLedgerEntry(Base):
    __tablename__ = "delivery_ledger"
    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "recipient_id",
            "notification_type",
            "cycle_key",
            name="uq_delivery_ledger_key",
        ),
    )

    # Insert-only record of confirmed deliveries.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String)
    recipient_id: Mapped[str] = mapped_column(String)
    notification_type: Mapped[str] = mapped_column(String)
    cycle_key: Mapped[str] = mapped_column(String)
    sent_via: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

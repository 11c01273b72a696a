from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from remindrelay.core.errors import JobConflictError
from remindrelay.domain.models import DeliveryJob
from remindrelay.domain.state import (
    ACTIVE_JOB_STATUSES,
    JOB_COMPLETED,
    JOB_PAUSED,
    JOB_PENDING,
    JOB_PROCESSING,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_job(session: AsyncSession, job_id: str) -> DeliveryJob | None:
    result = await session.execute(select(DeliveryJob).where(DeliveryJob.id == job_id))
    return result.scalar_one_or_none()


async def get_active_job(session: AsyncSession, owner_id: str) -> DeliveryJob | None:
    result = await session.execute(
        select(DeliveryJob)
        .where(DeliveryJob.owner_id == owner_id, DeliveryJob.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(DeliveryJob.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_jobs(session: AsyncSession, *, owner_id: str | None = None, limit: int = 10) -> list[DeliveryJob]:
    stmt = select(DeliveryJob).order_by(DeliveryJob.created_at.desc(), DeliveryJob.id.desc())
    if owner_id is not None:
        stmt = stmt.where(DeliveryJob.owner_id == owner_id)
    result = await session.execute(stmt.limit(max(1, int(limit))))
    return list(result.scalars().all())


async def list_jobs_by_status(
    session: AsyncSession,
    statuses: Sequence[str],
    *,
    pause_reason: str | None = None,
    limit: int = 100,
) -> list[DeliveryJob]:
    stmt = select(DeliveryJob).where(DeliveryJob.status.in_(tuple(statuses)))
    if pause_reason is not None:
        stmt = stmt.where(DeliveryJob.pause_reason == pause_reason)
    result = await session.execute(stmt.order_by(DeliveryJob.updated_at.asc()).limit(max(1, int(limit))))
    return list(result.scalars().all())


async def insert_job(
    session: AsyncSession,
    *,
    owner_id: str,
    items: list[dict[str, Any]],
    interval_seconds: float,
) -> DeliveryJob:
    # Pre-check for a friendly conflict, then rely on the partial unique index under races.
    existing = await get_active_job(session, owner_id)
    if existing is not None:
        raise JobConflictError(owner_id, existing.id)
    now = _utc_now()
    job = DeliveryJob(
        id=uuid4().hex,
        owner_id=owner_id,
        status=JOB_PENDING,
        items=items,
        total_items=len(items),
        cursor=0,
        success_count=0,
        error_count=0,
        interval_seconds=interval_seconds,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        winner = await get_active_job(session, owner_id)
        raise JobConflictError(owner_id, winner.id if winner is not None else None) from None
    return job


async def transition_job(
    session: AsyncSession,
    job_id: str,
    *,
    from_statuses: Sequence[str],
    to_status: str,
    **values: Any,
) -> bool:
    # Conditional status write; returns False when the job was not in an allowed source status.
    result = await session.execute(
        update(DeliveryJob)
        .where(DeliveryJob.id == job_id, DeliveryJob.status.in_(tuple(from_statuses)))
        .values(status=to_status, updated_at=_utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def record_item_progress(
    session: AsyncSession,
    job_id: str,
    *,
    expected_cursor: int,
    delivered: bool,
    error: str | None = None,
) -> bool:
    """Advance the cursor by one and bump exactly one counter.

    The write only applies while the job is processing or paused and the
    stored cursor still equals ``expected_cursor``, so terminal jobs stay
    untouched and a stale loop can never double count an item.
    """
    values: dict[str, Any] = {"cursor": DeliveryJob.cursor + 1, "updated_at": _utc_now()}
    if delivered:
        values["success_count"] = DeliveryJob.success_count + 1
    else:
        values["error_count"] = DeliveryJob.error_count + 1
        values["last_error"] = error
    result = await session.execute(
        update(DeliveryJob)
        .where(
            DeliveryJob.id == job_id,
            DeliveryJob.cursor == expected_cursor,
            DeliveryJob.status.in_((JOB_PROCESSING, JOB_PAUSED)),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def complete_job(session: AsyncSession, job_id: str) -> bool:
    now = _utc_now()
    result = await session.execute(
        update(DeliveryJob)
        .where(
            DeliveryJob.id == job_id,
            DeliveryJob.status == JOB_PROCESSING,
            DeliveryJob.cursor >= DeliveryJob.total_items,
        )
        .values(status=JOB_COMPLETED, completed_at=now, updated_at=now, pause_reason=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)

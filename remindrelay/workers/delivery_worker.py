from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq.connections import RedisSettings

from remindrelay.core.config import get_settings
from remindrelay.core.logging import configure_logging
from remindrelay.services.backoff import BackoffManager
from remindrelay.services.jobs import JobEngine
from remindrelay.services.resilience import QueueProcessResult, owners_with_queued_messages

logger = logging.getLogger(__name__)


class QueueDrainer:
    """Drain per-owner deflection queues, backing off owners whose redeliveries keep failing.

    An owner whose drain fails gets a retry scheduled through its own
    ``BackoffManager``; the periodic tick skips owners with a retry pending so
    the two paths never drain the same queue at once.
    """

    def __init__(self, engine: JobEngine) -> None:
        self._engine = engine
        self._backoff: dict[str, BackoffManager] = {}
        self._draining: set[str] = set()

    def backoff_for(self, owner_id: str) -> BackoffManager:
        manager = self._backoff.get(owner_id)
        if manager is None:
            manager = BackoffManager(name=f"queue-drain:{owner_id}")
            self._backoff[owner_id] = manager
        return manager

    async def drain_owner(self, owner_id: str) -> QueueProcessResult | None:
        if owner_id in self._draining:
            return None
        self._draining.add(owner_id)
        try:
            result = await self._engine.breaker_for(owner_id).process_queue()
        finally:
            self._draining.discard(owner_id)
        manager = self.backoff_for(owner_id)
        if result.failed and not result.delivered:
            manager.record_failure()
            manager.schedule_retry(lambda: self.drain_owner(owner_id))
        elif result.delivered:
            manager.record_success()
        return result

    async def tick(self, *, limit: int = 100) -> dict[str, QueueProcessResult]:
        # One pass over owners with queued messages; open circuits are refused inside process_queue.
        async with self._engine.sessionmaker() as session:
            owners = await owners_with_queued_messages(session=session, limit=limit)
        results: dict[str, QueueProcessResult] = {}
        for owner_id in owners:
            if self.backoff_for(owner_id).state.is_retrying:
                continue
            result = await self.drain_owner(owner_id)
            if result is not None:
                results[owner_id] = result
        return results

    def close(self) -> None:
        for manager in self._backoff.values():
            manager.cancel_retry()
        self._backoff.clear()


async def run_delivery_job(ctx: dict[str, Any], job_id: str) -> str:
    # Drive one job loop in this worker; a lease held elsewhere turns this into a no-op.
    engine: JobEngine = ctx["job_engine"]
    return await engine.spawn(job_id)


async def scheduler_tick(engine: JobEngine, drainer: QueueDrainer) -> None:
    # Recover orphaned loops, drain deflection queues, then resume jobs whose circuit admits calls again.
    await engine.recover_interrupted_jobs()
    await drainer.tick()
    resumed = await engine.resume_breaker_paused_jobs()
    if resumed:
        logger.info("delivery_jobs_resumed_after_breaker count=%s", len(resumed))


async def _scheduler_loop(engine: JobEngine, drainer: QueueDrainer) -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.worker_poll_interval_s))
    while True:
        try:
            await scheduler_tick(engine, drainer)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("delivery scheduler tick failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx: dict[str, Any]) -> None:
    # The worker runs loops in-process, so its engine never dispatches back to the queue.
    from remindrelay.persistence.db import SessionLocal

    configure_logging()
    engine = JobEngine(sessionmaker=SessionLocal)
    drainer = QueueDrainer(engine)
    ctx["job_engine"] = engine
    ctx["queue_drainer"] = drainer
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop(engine, drainer))


async def _shutdown(ctx: dict[str, Any]) -> None:
    # Cancel scheduler and loops; interrupted jobs stay processing and are recovered on next start.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()
    drainer = ctx.get("queue_drainer")
    if drainer is not None:
        drainer.close()
    engine = ctx.get("job_engine")
    if engine is not None:
        await engine.shutdown()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.job_queue_name
    max_jobs = max(1, int(settings.worker_max_jobs))
    job_timeout = max(1, int(settings.worker_job_timeout_s))
    # Retries are the job lease's business; arq runs each enqueue once.
    max_tries = 1
    functions = [run_delivery_job]
    on_startup = _startup
    on_shutdown = _shutdown

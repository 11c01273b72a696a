from __future__ import annotations

import asyncio
from collections import Counter, OrderedDict
import logging
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from remindrelay.core.config import get_settings
from remindrelay.core.errors import EngineFaultError, JobNotFoundError, JobStateError
from remindrelay.domain.models import DeliveryJob
from remindrelay.domain.state import (
    ACTIVE_JOB_STATUSES,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_PAUSED,
    JOB_PENDING,
    JOB_PROCESSING,
    PAUSE_REASON_BREAKER,
    PAUSE_REASON_OPERATOR,
    TERMINAL_JOB_STATUSES,
    JobItem,
)
from remindrelay.persistence.repos import jobs as jobs_repo
from remindrelay.services.gateway import GatewayClient
from remindrelay.services.idempotency import LedgerKey, ledger_exists, record_delivery
from remindrelay.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    OutboundMessage,
    acquire_job_lease,
    refresh_job_lease,
    release_job_lease,
)
from remindrelay.services.telemetry import DeliveryLog, increment_counter, set_gauge


logger = logging.getLogger(__name__)

ITEM_DELIVERED = "delivered"
ITEM_FAILED = "failed"
ITEM_DUPLICATE = "duplicate_skipped"
ITEM_BREAKER_OPEN = "breaker_open"
ITEM_STALE = "stale"

LOOP_LEASE_LOST = "lease_lost"

_LAST_ERROR_MAX_CHARS = 1000

GatewayFactory = Callable[[str], GatewayClient]
JobDispatcher = Callable[[str], Awaitable[bool]]


class JobEngine:
    """Resumable batch delivery engine.

    Each job runs as one detached task that walks ``items`` from the
    persisted cursor. Every iteration re-reads the job row, so pause and
    cancel are cooperative: an operator change takes effect at the top of
    the next iteration. The reaction latency is therefore bounded by one
    in-flight item (gateway timeout times the number of address variants)
    plus one pacing interval.

    Delivery is at-least-once. The ledger row is written after the gateway
    acknowledges; a crash between the acknowledgment and that write can
    still produce one duplicate send on resume.
    """

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        gateway_factory: GatewayFactory | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        delivery_log: DeliveryLog | None = None,
        dispatcher: JobDispatcher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._sessionmaker = sessionmaker
        # Gateway settings are process-wide, so by default every owner shares one client and its pool.
        self._shared_gateway: GatewayClient | None = None
        self._gateway_factory = gateway_factory or self._shared_gateway_for
        self._owner_cache_size = max(1, int(settings.engine_owner_cache_size))
        self._breaker_config = breaker_config
        self._dispatcher = dispatcher
        self._sleep = sleep
        # Least recently used first; breaker state lives in the database, so eviction only drops the local lock.
        self._gateways: OrderedDict[str, GatewayClient] = OrderedDict()
        self._breakers: OrderedDict[str, CircuitBreaker] = OrderedDict()
        # Owners with a breaker call in flight are never evicted.
        self._busy_owners: Counter[str] = Counter()
        self._closing: set[asyncio.Task[None]] = set()
        self._tasks: dict[str, asyncio.Task[str]] = {}
        # Outcome of the last finished local run per job, for callers that arrive late.
        self._outcomes: OrderedDict[str, str] = OrderedDict()
        # Jobs resumed while their previous loop was still winding down.
        self._rerun_requested: set[str] = set()
        self.delivery_log = delivery_log or DeliveryLog(settings.delivery_log_capacity)

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        return self._sessionmaker

    def _shared_gateway_for(self, _owner_id: str) -> GatewayClient:
        if self._shared_gateway is None:
            self._shared_gateway = GatewayClient()
        return self._shared_gateway

    def gateway_for(self, owner_id: str) -> GatewayClient:
        client = self._gateways.get(owner_id)
        if client is None:
            client = self._gateway_factory(owner_id)
            self._gateways[owner_id] = client
            self._evict_idle_owners()
        else:
            self._gateways.move_to_end(owner_id)
        return client

    def breaker_for(self, owner_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(owner_id)
        if breaker is None:
            breaker = CircuitBreaker(
                owner_id,
                sessionmaker=self._sessionmaker,
                gateway=self.gateway_for(owner_id),
                config=self._breaker_config,
                sleep=self._sleep,
            )
            self._breakers[owner_id] = breaker
            self._evict_idle_owners()
        else:
            self._breakers.move_to_end(owner_id)
        return breaker

    def _evict_idle_owners(self) -> None:
        # Drop least recently used owners past the cache bound, gateway and breaker together.
        while max(len(self._gateways), len(self._breakers)) > self._owner_cache_size:
            victim = next((owner for owner in [*self._breakers, *self._gateways] if not self._busy_owners[owner]), None)
            if victim is None:
                return
            self._breakers.pop(victim, None)
            client = self._gateways.pop(victim, None)
            if client is not None and client is not self._shared_gateway:
                task = asyncio.get_running_loop().create_task(client.aclose())
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def spawn(self, job_id: str) -> asyncio.Task[str]:
        # One live task per job id in this process; the lease covers other processes.
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self.run(job_id), name=f"delivery-job-{job_id}")
        self._tasks[job_id] = task

        def _forget(done: asyncio.Task[str]) -> None:
            if self._tasks.get(job_id) is done:
                self._tasks.pop(job_id, None)
            if not done.cancelled() and done.exception() is None:
                self._outcomes[job_id] = done.result()
                self._outcomes.move_to_end(job_id)
                while len(self._outcomes) > self._owner_cache_size:
                    self._outcomes.popitem(last=False)
            if job_id in self._rerun_requested:
                self._rerun_requested.discard(job_id)
                if not done.cancelled():
                    self.spawn(job_id)

        task.add_done_callback(_forget)
        set_gauge("delivery_jobs_running", float(len(self._tasks)))
        return task

    async def wait_for(self, job_id: str) -> str | None:
        # Await the local task for a job, or report how its last local run ended.
        task = self._tasks.get(job_id)
        if task is None:
            return self._outcomes.get(job_id)
        return await task

    async def _start(self, job_id: str) -> None:
        if self._dispatcher is not None:
            if await self._dispatcher(job_id):
                return
            logger.warning("delivery_job_dispatch_failed job_id=%s falling_back=inline", job_id)
        self.spawn(job_id)

    async def _require(self, session: AsyncSession, job_id: str) -> DeliveryJob:
        job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise JobNotFoundError(f"delivery job {job_id} not found")
        return job

    async def create(
        self,
        *,
        owner_id: str,
        items: Sequence[JobItem],
        interval_seconds: float | None = None,
    ) -> DeliveryJob:
        """Persist a new job and start its loop; raises JobConflictError for a busy owner."""
        settings = get_settings()
        interval = settings.job_default_interval_s if interval_seconds is None else float(interval_seconds)
        interval = max(settings.job_min_interval_s, interval)
        async with self._sessionmaker() as session:
            job = await jobs_repo.insert_job(
                session,
                owner_id=owner_id,
                items=[dict(item) for item in items],
                interval_seconds=interval,
            )
        increment_counter("delivery_jobs_created_total")
        logger.info(
            "delivery_job_created job_id=%s owner_id=%s items=%s interval_s=%s",
            job.id,
            owner_id,
            job.total_items,
            interval,
        )
        await self._start(job.id)
        return job

    async def status(self, job_id: str) -> DeliveryJob:
        async with self._sessionmaker() as session:
            return await self._require(session, job_id)

    async def get_active(self, owner_id: str) -> DeliveryJob | None:
        async with self._sessionmaker() as session:
            return await jobs_repo.get_active_job(session, owner_id)

    async def list_jobs(self, *, owner_id: str | None = None, limit: int | None = None) -> list[DeliveryJob]:
        limit = limit or get_settings().job_list_default_limit
        async with self._sessionmaker() as session:
            return await jobs_repo.list_jobs(session, owner_id=owner_id, limit=limit)

    async def pause(self, job_id: str) -> DeliveryJob:
        async with self._sessionmaker() as session:
            job = await self._require(session, job_id)
            if job.status == JOB_PAUSED:
                return job
            if job.status in TERMINAL_JOB_STATUSES:
                raise JobStateError(job_id, job.status, "pause")
            changed = await jobs_repo.transition_job(
                session,
                job_id,
                from_statuses=(JOB_PENDING, JOB_PROCESSING),
                to_status=JOB_PAUSED,
                pause_reason=PAUSE_REASON_OPERATOR,
            )
        if changed:
            logger.info("delivery_job_paused job_id=%s", job_id)
        return await self._settled(job_id, "pause", JOB_PAUSED)

    async def resume(self, job_id: str) -> DeliveryJob:
        async with self._sessionmaker() as session:
            job = await self._require(session, job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                raise JobStateError(job_id, job.status, "resume")
            if job.status != JOB_PROCESSING:
                await jobs_repo.transition_job(
                    session,
                    job_id,
                    from_statuses=(JOB_PENDING, JOB_PAUSED),
                    to_status=JOB_PROCESSING,
                    pause_reason=None,
                )
        job = await self._settled(job_id, "resume", JOB_PROCESSING)
        # A loop that already saw the pause may be exiting; run again once it has.
        if self.is_running(job_id):
            self._rerun_requested.add(job_id)
        else:
            # Also restarts a job left processing by a dead process.
            logger.info("delivery_job_resumed job_id=%s cursor=%s", job_id, job.cursor)
            await self._start(job_id)
        return job

    async def cancel(self, job_id: str) -> DeliveryJob:
        async with self._sessionmaker() as session:
            job = await self._require(session, job_id)
            if job.status == JOB_CANCELLED:
                return job
            if job.status == JOB_COMPLETED:
                raise JobStateError(job_id, job.status, "cancel")
            changed = await jobs_repo.transition_job(
                session,
                job_id,
                from_statuses=ACTIVE_JOB_STATUSES,
                to_status=JOB_CANCELLED,
            )
        if changed:
            increment_counter("delivery_jobs_cancelled_total")
            logger.info("delivery_job_cancelled job_id=%s", job_id)
        return await self._settled(job_id, "cancel", JOB_CANCELLED)

    async def _settled(self, job_id: str, action: str, target: str) -> DeliveryJob:
        # Re-read after a conditional write; a concurrent terminal transition surfaces as a state error.
        job = await self.status(job_id)
        if job.status != target and job.status in TERMINAL_JOB_STATUSES:
            raise JobStateError(job_id, job.status, action)
        return job

    async def recover_interrupted_jobs(self, *, limit: int = 100) -> list[str]:
        # Restart loops for jobs a dead process left pending or processing.
        async with self._sessionmaker() as session:
            rows = await jobs_repo.list_jobs_by_status(session, (JOB_PENDING, JOB_PROCESSING), limit=limit)
        started: list[str] = []
        for row in rows:
            if self.is_running(row.id):
                continue
            await self._start(row.id)
            started.append(row.id)
        if started:
            logger.info("delivery_jobs_recovered count=%s", len(started))
        return started

    async def resume_breaker_paused_jobs(self, *, limit: int = 100) -> list[str]:
        # Resume jobs paused by an open circuit once the owner's breaker admits calls again.
        async with self._sessionmaker() as session:
            rows = await jobs_repo.list_jobs_by_status(
                session, (JOB_PAUSED,), pause_reason=PAUSE_REASON_BREAKER, limit=limit
            )
        resumed: list[str] = []
        for row in rows:
            if not await self.breaker_for(row.owner_id).admits_calls():
                continue
            try:
                await self.resume(row.id)
            except JobStateError:
                continue
            resumed.append(row.id)
        return resumed

    async def run(self, job_id: str) -> str:
        """Drive one job until it stops, completes, pauses on an open circuit, or faults."""
        lease = await acquire_job_lease(job_id)
        if lease is None:
            logger.info("delivery_job_already_running job_id=%s", job_id)
            return "skipped"
        try:
            return await self._run_loop(job_id, lease)
        except asyncio.CancelledError:
            # Shutdown: the job stays processing and is recovered on the next start.
            raise
        except Exception as exc:  # noqa: BLE001 - a dead loop must never leave the job processing
            await self._fault(job_id, exc)
            return "faulted"
        finally:
            await release_job_lease(lease)

    async def _run_loop(self, job_id: str, lease: Any) -> str:
        async with self._sessionmaker() as session:
            await jobs_repo.transition_job(
                session, job_id, from_statuses=(JOB_PENDING,), to_status=JOB_PROCESSING
            )
        while True:
            async with self._sessionmaker() as session:
                job = await jobs_repo.get_job(session, job_id)
            if job is None:
                return "missing"
            if job.status != JOB_PROCESSING:
                logger.info("delivery_job_loop_stopped job_id=%s status=%s cursor=%s", job_id, job.status, job.cursor)
                return job.status
            if job.cursor >= job.total_items:
                return await self._complete(job)
            if not await refresh_job_lease(lease):
                return LOOP_LEASE_LOST

            outcome = await self._process_item(job, job.items[job.cursor])
            if outcome == ITEM_BREAKER_OPEN:
                return JOB_PAUSED
            if outcome == ITEM_STALE:
                continue
            if job.cursor + 1 >= job.total_items:
                return await self._complete(job)
            # Pacing holds no session or lock, but the lease must outlast the sleep.
            if job.interval_seconds > 0:
                if not await refresh_job_lease(lease, hold_s=job.interval_seconds):
                    return LOOP_LEASE_LOST
                await self._sleep(job.interval_seconds)

    async def _complete(self, job: DeliveryJob) -> str:
        async with self._sessionmaker() as session:
            completed = await jobs_repo.complete_job(session, job.id)
            refreshed = await jobs_repo.get_job(session, job.id)
        if not completed:
            return refreshed.status if refreshed is not None else "missing"
        increment_counter("delivery_jobs_completed_total")
        logger.info(
            "delivery_job_completed job_id=%s owner_id=%s success=%s errors=%s",
            job.id,
            job.owner_id,
            refreshed.success_count if refreshed is not None else None,
            refreshed.error_count if refreshed is not None else None,
        )
        return JOB_COMPLETED

    async def _process_item(self, job: DeliveryJob, item: dict[str, Any]) -> str:
        key = LedgerKey.for_item(job.owner_id, item)
        async with self._sessionmaker() as session:
            already_sent = await ledger_exists(session=session, key=key)

        variant: str | None = None
        status_code: int | None = None
        error: str | None = None
        if already_sent:
            delivered = True
            outcome = ITEM_DUPLICATE
            increment_counter("delivery_items_duplicate_total")
        else:
            message = OutboundMessage(
                address=str(item["address"]),
                body=str(item["body"]),
                message_type=key.notification_type,
                recipient_id=key.recipient_id,
                cycle_key=key.cycle_key,
            )
            self._busy_owners[job.owner_id] += 1
            try:
                result = await self.breaker_for(job.owner_id).call(message)
            finally:
                self._busy_owners[job.owner_id] -= 1
                if self._busy_owners[job.owner_id] <= 0:
                    del self._busy_owners[job.owner_id]
            if result.breaker_open:
                await self._pause_for_breaker(job, result.queued_message_id)
                return ITEM_BREAKER_OPEN
            delivery = result.delivery
            delivered = bool(delivery is not None and delivery.success)
            if delivery is not None:
                variant = delivery.variant
                status_code = delivery.status_code
                error = None if delivered else (delivery.error or "delivery failed")
            if delivered:
                async with self._sessionmaker() as session:
                    await record_delivery(session=session, key=key, sent_via="job")
            outcome = ITEM_DELIVERED if delivered else ITEM_FAILED

        async with self._sessionmaker() as session:
            advanced = await jobs_repo.record_item_progress(
                session,
                job.id,
                expected_cursor=job.cursor,
                delivered=delivered,
                error=error[:_LAST_ERROR_MAX_CHARS] if error else None,
            )
        if not advanced:
            logger.warning("delivery_job_progress_skipped job_id=%s cursor=%s", job.id, job.cursor)
            return ITEM_STALE

        increment_counter(f"delivery_items_{outcome}_total")
        self.delivery_log.record(
            owner_id=job.owner_id,
            job_id=job.id,
            recipient_id=key.recipient_id,
            outcome=outcome,
            variant=variant,
            status_code=status_code,
            detail=error,
        )
        if not delivered:
            self._maybe_alert(job, job.error_count + 1, error)
        return outcome

    def _maybe_alert(self, job: DeliveryJob, error_count: int, error: str | None) -> None:
        # Escalate once errors pass the threshold, then every N errors.
        settings = get_settings()
        threshold = max(0, settings.job_alert_error_threshold)
        every = max(1, settings.job_alert_error_every)
        if error_count > threshold and error_count % every == 0:
            increment_counter("delivery_job_error_alerts_total")
            logger.error(
                "delivery_job_error_alert job_id=%s owner_id=%s errors=%s cursor=%s total=%s last_error=%s",
                job.id,
                job.owner_id,
                error_count,
                job.cursor + 1,
                job.total_items,
                error,
            )

    async def _pause_for_breaker(self, job: DeliveryJob, queued_message_id: str | None) -> None:
        # The item is not counted; the cursor stays so a later resume retries it behind the ledger.
        reason = f"circuit open for owner {job.owner_id}; item {job.cursor} queued as {queued_message_id}"
        async with self._sessionmaker() as session:
            await jobs_repo.transition_job(
                session,
                job.id,
                from_statuses=(JOB_PROCESSING,),
                to_status=JOB_PAUSED,
                pause_reason=PAUSE_REASON_BREAKER,
                last_error=reason,
            )
        increment_counter("delivery_jobs_breaker_paused_total")
        self.delivery_log.record(
            owner_id=job.owner_id,
            job_id=job.id,
            recipient_id=str(job.items[job.cursor].get("recipient_id")),
            outcome=ITEM_BREAKER_OPEN,
            detail=reason,
        )
        logger.warning("delivery_job_paused_by_breaker job_id=%s cursor=%s", job.id, job.cursor)

    async def _fault(self, job_id: str, exc: Exception) -> None:
        fault = EngineFaultError(f"{type(exc).__name__}: {exc}")
        logger.error("delivery_job_engine_fault job_id=%s error=%s", job_id, fault, exc_info=exc)
        increment_counter("delivery_jobs_faulted_total")
        try:
            async with self._sessionmaker() as session:
                await jobs_repo.transition_job(
                    session,
                    job_id,
                    from_statuses=ACTIVE_JOB_STATUSES,
                    to_status=JOB_CANCELLED,
                    last_error=f"engine_fault: {fault}"[:_LAST_ERROR_MAX_CHARS],
                )
        except Exception:  # noqa: BLE001 - persistence itself may be the fault; recovery picks it up
            logger.exception("delivery_job_fault_persist_failed job_id=%s", job_id)

    async def shutdown(self) -> None:
        # Cancel local loops and close gateway clients; interrupted jobs stay processing for recovery.
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        clients = {id(client): client for client in self._gateways.values()}
        if self._shared_gateway is not None:
            clients[id(self._shared_gateway)] = self._shared_gateway
        for client in clients.values():
            await client.aclose()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._shared_gateway = None
        self._gateways.clear()
        self._breakers.clear()
        self._outcomes.clear()


def build_job_engine(*, sessionmaker: async_sessionmaker[AsyncSession] | None = None) -> JobEngine:
    # Wire the engine from settings: queue mode hands loops to the arq worker.
    settings = get_settings()
    dispatcher: JobDispatcher | None = None
    if settings.job_execution_mode == "queue":
        from remindrelay.services.dispatch import enqueue_job_run

        dispatcher = enqueue_job_run
    if sessionmaker is None:
        from remindrelay.persistence.db import SessionLocal

        sessionmaker = SessionLocal
    return JobEngine(sessionmaker=sessionmaker, dispatcher=dispatcher)

from __future__ import annotations

import pytest

from remindrelay.domain.state import JOB_COMPLETED, JOB_PAUSED
from remindrelay.persistence.repos import jobs as jobs_repo
from remindrelay.services.jobs import JobEngine
from remindrelay.services.resilience import CircuitBreakerConfig, OutboundMessage
from remindrelay.tests.utils.gateway import ScriptedGateway, ok, server_error
from remindrelay.workers.delivery_worker import QueueDrainer, run_delivery_job, scheduler_tick


CONFIG = CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=60000, queue_redelivery_interval_ms=0)


class Upstream:
    def __init__(self) -> None:
        self.down = False
        self.gateway = ScriptedGateway(default=lambda _request: server_error() if self.down else ok())


async def _sleep(_seconds: float) -> None:
    return None


def _engine(sessionmaker, upstream: Upstream) -> JobEngine:
    return JobEngine(
        sessionmaker=sessionmaker,
        gateway_factory=upstream.gateway.factory(),
        breaker_config=CONFIG,
        sleep=_sleep,
    )


async def _deflect(engine: JobEngine, upstream: Upstream, owner_id: str, count: int) -> None:
    breaker = engine.breaker_for(owner_id)
    upstream.down = True
    await breaker.call(OutboundMessage(address="5511987654321", body="trip"))
    upstream.down = False
    for index in range(count):
        result = await breaker.call(
            OutboundMessage(
                address="5511987654321",
                body="reminder",
                message_type="due_reminder",
                recipient_id=f"client-{index}",
                cycle_key="2026-10",
            )
        )
        assert result.breaker_open


@pytest.mark.asyncio
async def test_drainer_skips_open_circuits_and_drains_closed_ones(sessionmaker) -> None:
    upstream = Upstream()
    engine = _engine(sessionmaker, upstream)
    drainer = QueueDrainer(engine)
    await _deflect(engine, upstream, "owner-1", 2)

    results = await drainer.tick()
    assert results["owner-1"].stopped_reason == "circuit_open"
    assert results["owner-1"].remaining == 2

    await engine.breaker_for("owner-1").reset_circuit()
    results = await drainer.tick()
    assert results["owner-1"].delivered == 2
    assert await engine.breaker_for("owner-1").queue_length() == 0
    drainer.close()
    await engine.shutdown()


@pytest.mark.asyncio
async def test_failed_drain_backs_off_the_owner(sessionmaker) -> None:
    upstream = Upstream()
    engine = _engine(sessionmaker, upstream)
    drainer = QueueDrainer(engine)
    await _deflect(engine, upstream, "owner-1", 1)
    await engine.breaker_for("owner-1").reset_circuit()

    upstream.down = True
    result = await drainer.drain_owner("owner-1")
    assert result is not None and result.failed == 1
    backoff = drainer.backoff_for("owner-1")
    assert backoff.state.consecutive_failures == 1
    assert backoff.state.is_retrying is True

    # The periodic tick leaves an owner with a scheduled retry alone.
    assert await drainer.tick() == {}
    drainer.close()
    await engine.shutdown()


@pytest.mark.asyncio
async def test_scheduler_tick_resumes_breaker_paused_job(sessionmaker) -> None:
    upstream = Upstream()
    engine = _engine(sessionmaker, upstream)
    drainer = QueueDrainer(engine)
    items = [
        {
            "recipient_id": f"client-{index}",
            "address": f"55119876500{index:02d}",
            "body": "Reminder",
            "notification_type": "due_reminder",
            "cycle_key": "2026-10",
        }
        for index in range(3)
    ]

    upstream.down = True
    job = await engine.create(owner_id="owner-1", items=items)
    assert await engine.wait_for(job.id) == JOB_PAUSED
    upstream.down = False

    await engine.breaker_for("owner-1").reset_circuit()
    await scheduler_tick(engine, drainer)
    # The drain redelivered the deflected item; the resumed job then skips it through the ledger.
    assert await engine.wait_for(job.id) == JOB_COMPLETED
    job = await engine.status(job.id)
    assert job.cursor == 3
    assert job.success_count == 2
    assert job.error_count == 1
    drainer.close()
    await engine.shutdown()


@pytest.mark.asyncio
async def test_run_delivery_job_drives_engine(sessionmaker) -> None:
    upstream = Upstream()
    engine = _engine(sessionmaker, upstream)
    async with sessionmaker() as session:
        job = await jobs_repo.insert_job(
            session,
            owner_id="owner-1",
            items=[
                {
                    "recipient_id": "client-1",
                    "address": "5511987654321",
                    "body": "Reminder",
                    "notification_type": "due_reminder",
                    "cycle_key": "2026-10",
                }
            ],
            interval_seconds=0,
        )
    assert await run_delivery_job({"job_engine": engine}, job.id) == JOB_COMPLETED
    await engine.shutdown()

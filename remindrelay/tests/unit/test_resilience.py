from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from remindrelay.core.errors import BreakerOpenError, TransientDeliveryError
from remindrelay.domain.models import QueuedMessage
from remindrelay.domain.state import CIRCUIT_CLOSED, CIRCUIT_HALF_OPEN, CIRCUIT_OPEN, QUEUE_EXPIRED, QUEUE_FAILED
from remindrelay.services.idempotency import LedgerKey, ledger_exists, record_delivery
from remindrelay.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    OutboundMessage,
    acquire_job_lease,
    owners_with_queued_messages,
    release_job_lease,
)
from remindrelay.services.telemetry import counters_snapshot, gauges_snapshot
from remindrelay.tests.utils.gateway import ScriptedGateway, ok, rejected, server_error


CONFIG = CircuitBreakerConfig(
    failure_threshold=2,
    success_threshold=2,
    reset_timeout_ms=1000,
    half_open_max_trials=1,
    queue_max_retries=2,
    queue_message_ttl_hours=1,
    queue_redelivery_interval_ms=0,
    queue_process_batch_size=10,
)


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class Upstream:
    # Gateway switch: down answers 500 on every variant, up acknowledges.
    def __init__(self) -> None:
        self.down = False
        self.gateway = ScriptedGateway(default=lambda _request: server_error() if self.down else ok())


def _message(recipient_id: str = "client-1", cycle_key: str = "2026-10") -> OutboundMessage:
    return OutboundMessage(
        address="5511987654321",
        body="Your plan expires tomorrow",
        message_type="expiry_reminder",
        recipient_id=recipient_id,
        cycle_key=cycle_key,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def breaker(sessionmaker, clock, upstream) -> CircuitBreaker:
    return CircuitBreaker(
        "owner-1",
        sessionmaker=sessionmaker,
        gateway=upstream.gateway.client(),
        config=CONFIG,
        clock=clock,
    )


async def _trip(breaker: CircuitBreaker, upstream: Upstream) -> None:
    upstream.down = True
    for index in range(CONFIG.failure_threshold):
        result = await breaker.call(_message(recipient_id=f"trip-{index}"))
        assert result.delivered is False
    upstream.down = False


@pytest.mark.asyncio
async def test_closed_circuit_forwards_and_counts_transient_failures(breaker, upstream) -> None:
    result = await breaker.call(_message())
    assert result.delivered is True
    assert result.circuit_status == CIRCUIT_CLOSED

    upstream.down = True
    result = await breaker.call(_message("client-2"))
    assert result.delivered is False
    assert result.delivery is not None and result.delivery.transient
    snapshot = await breaker.snapshot()
    assert snapshot.status == CIRCUIT_CLOSED
    assert snapshot.failure_count == 1


@pytest.mark.asyncio
async def test_threshold_opens_and_deflects_without_gateway_call(breaker, upstream) -> None:
    await _trip(breaker, upstream)
    snapshot = await breaker.snapshot()
    assert snapshot.status == CIRCUIT_OPEN
    assert snapshot.opened_at is not None
    assert snapshot.cooldown_remaining_ms == 1000

    sent_before = len(upstream.gateway.requests)
    result = await breaker.call(_message("client-9"))
    assert result.breaker_open is True
    assert result.queued_message_id
    assert len(upstream.gateway.requests) == sent_before
    assert await breaker.queue_length() == 1


@pytest.mark.asyncio
async def test_rejection_by_responsive_gateway_is_not_a_breaker_failure(sessionmaker, clock) -> None:
    gateway = ScriptedGateway(default=lambda _request: rejected(403))
    breaker = CircuitBreaker("owner-1", sessionmaker=sessionmaker, gateway=gateway.client(), config=CONFIG, clock=clock)
    for index in range(CONFIG.failure_threshold + 1):
        result = await breaker.call(_message(f"client-{index}"))
        assert result.delivered is False
    snapshot = await breaker.snapshot()
    assert snapshot.status == CIRCUIT_CLOSED
    assert snapshot.failure_count == 0


@pytest.mark.asyncio
async def test_cool_down_then_half_open_successes_close(breaker, upstream, clock) -> None:
    await _trip(breaker, upstream)
    clock.advance(milliseconds=500)
    assert (await breaker.call(_message("early"))).breaker_open is True

    clock.advance(milliseconds=600)
    first = await breaker.call(_message("trial-1"))
    assert first.delivered is True
    assert first.circuit_status == CIRCUIT_HALF_OPEN
    second = await breaker.call(_message("trial-2"))
    assert second.delivered is True
    assert second.circuit_status == CIRCUIT_CLOSED

    snapshot = await breaker.snapshot()
    assert snapshot.failure_count == 0
    assert snapshot.success_count == 0
    assert snapshot.opened_at is None


@pytest.mark.asyncio
async def test_half_open_failure_reopens(breaker, upstream, clock) -> None:
    await _trip(breaker, upstream)
    clock.advance(seconds=2)
    upstream.down = True
    result = await breaker.call(_message("trial"))
    assert result.delivered is False
    assert result.circuit_status == CIRCUIT_OPEN
    snapshot = await breaker.snapshot()
    assert snapshot.failure_count == CONFIG.failure_threshold
    assert snapshot.cooldown_remaining_ms == 1000


@pytest.mark.asyncio
async def test_operator_trial_and_reset(breaker, upstream) -> None:
    await _trip(breaker, upstream)
    assert (await breaker.begin_trial()).status == CIRCUIT_HALF_OPEN
    assert await breaker.admits_calls() is True

    await _trip(breaker, upstream)
    snapshot = await breaker.reset_circuit()
    assert snapshot.status == CIRCUIT_CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.last_error is None


@pytest.mark.asyncio
async def test_send_raises_domain_errors(breaker, upstream) -> None:
    delivery = await breaker.send(_message())
    assert delivery.success is True

    upstream.down = True
    with pytest.raises(TransientDeliveryError):
        await breaker.send(_message("client-2"))
    with pytest.raises(TransientDeliveryError):
        await breaker.send(_message("client-3"))
    with pytest.raises(BreakerOpenError) as excinfo:
        await breaker.send(_message("client-4"))
    assert excinfo.value.owner_id == "owner-1"
    assert excinfo.value.queued_message_id


@pytest.mark.asyncio
async def test_transitions_are_logged_and_counted(breaker, upstream, caplog) -> None:
    caplog.set_level("WARNING", logger="remindrelay.services.resilience")
    await _trip(breaker, upstream)
    assert gauges_snapshot()["circuit_breaker_state.owner-1"] == 1.0
    await breaker.reset_circuit()

    counters = counters_snapshot()
    assert counters["circuit_breaker_transition_total.open"] == 1
    assert counters["circuit_breaker_transition_total.closed"] == 1
    assert counters["circuit_breaker_open_total"] == 1
    assert gauges_snapshot()["circuit_breaker_state.owner-1"] == 0.0
    assert "circuit_breaker_transition owner_id=owner-1 from=closed to=open" in caplog.text
    assert "circuit_breaker_transition owner_id=owner-1 from=open to=closed" in caplog.text


@pytest.mark.asyncio
async def test_repeated_deflection_reuses_the_queued_row(breaker, upstream) -> None:
    await _trip(breaker, upstream)
    first = await breaker.call(_message("client-5"))
    second = await breaker.call(_message("client-5"))
    assert first.queued_message_id == second.queued_message_id
    assert await breaker.queue_length() == 1


@pytest.mark.asyncio
async def test_process_queue_refused_while_open(breaker, upstream) -> None:
    await _trip(breaker, upstream)
    await breaker.call(_message("client-5"))
    result = await breaker.process_queue()
    assert result.stopped_reason == "circuit_open"
    assert result.attempted == 0
    assert result.remaining == 1


@pytest.mark.asyncio
async def test_process_queue_redelivers_and_records_ledger(breaker, upstream, sessionmaker) -> None:
    await _trip(breaker, upstream)
    await breaker.call(_message("client-5"))
    await breaker.call(_message("client-6"))
    await breaker.reset_circuit()

    result = await breaker.process_queue()
    assert result.attempted == 2
    assert result.delivered == 2
    assert result.remaining == 0
    assert await breaker.list_queue() == []
    async with sessionmaker() as session:
        key = LedgerKey("owner-1", "client-5", "expiry_reminder", "2026-10")
        assert await ledger_exists(session=session, key=key) is True


@pytest.mark.asyncio
async def test_process_queue_drops_already_delivered_messages(breaker, upstream, sessionmaker) -> None:
    await _trip(breaker, upstream)
    await breaker.call(_message("client-5"))
    async with sessionmaker() as session:
        await record_delivery(
            session=session,
            key=LedgerKey("owner-1", "client-5", "expiry_reminder", "2026-10"),
            sent_via="job",
        )
    await breaker.reset_circuit()
    sent_before = len(upstream.gateway.requests)

    result = await breaker.process_queue()
    assert result.skipped_duplicates == 1
    assert result.attempted == 0
    assert len(upstream.gateway.requests) == sent_before


@pytest.mark.asyncio
async def test_process_queue_expires_and_fails_messages(breaker, upstream, clock, sessionmaker) -> None:
    await _trip(breaker, upstream)
    await breaker.call(_message("stale"))
    clock.advance(hours=2)
    await breaker.reset_circuit()
    await _trip(breaker, upstream)
    await breaker.call(_message("fresh"))
    await breaker.reset_circuit()

    # A non-transient refusal leaves the circuit closed but burns the message's retries.
    upstream.gateway.push(rejected(403))
    first = await breaker.process_queue()
    assert first.expired == 1
    assert first.failed == 1
    clock.advance(milliseconds=CONFIG.queue_retry_delay_ms)
    upstream.gateway.push(rejected(403))
    second = await breaker.process_queue()
    assert second.failed == 1
    assert second.remaining == 0

    async with sessionmaker() as session:
        statuses = {
            row.recipient_id: row.status
            for row in (await session.execute(select(QueuedMessage))).scalars().all()
        }
    assert statuses == {"stale": QUEUE_EXPIRED, "fresh": QUEUE_FAILED}


@pytest.mark.asyncio
async def test_failed_redelivery_waits_before_next_attempt(breaker, upstream, clock) -> None:
    await _trip(breaker, upstream)
    await breaker.call(_message("client-5"))
    await breaker.reset_circuit()

    upstream.gateway.push(rejected(403))
    first = await breaker.process_queue()
    assert first.failed == 1
    sent_after_failure = len(upstream.gateway.requests)

    held = await breaker.process_queue()
    assert held.attempted == 0
    assert held.remaining == 1
    assert len(upstream.gateway.requests) == sent_after_failure
    [row] = await breaker.list_queue()
    assert row.retry_count == 1
    assert row.next_retry_at is not None

    clock.advance(milliseconds=CONFIG.queue_retry_delay_ms)
    retried = await breaker.process_queue()
    assert retried.attempted == 1
    assert retried.delivered == 1
    assert retried.remaining == 0


@pytest.mark.asyncio
async def test_clear_queue_and_owner_listing(breaker, upstream, sessionmaker) -> None:
    await _trip(breaker, upstream)
    await breaker.call(_message("client-5"))
    await breaker.call(_message("client-6"))
    async with sessionmaker() as session:
        assert await owners_with_queued_messages(session=session) == ["owner-1"]

    assert await breaker.clear_queue() == 2
    assert await breaker.queue_length() == 0
    async with sessionmaker() as session:
        assert await owners_with_queued_messages(session=session) == []


@pytest.mark.asyncio
async def test_breaker_state_is_shared_per_owner_row(sessionmaker, clock, upstream, breaker) -> None:
    await _trip(breaker, upstream)
    other_process = CircuitBreaker(
        "owner-1",
        sessionmaker=sessionmaker,
        gateway=upstream.gateway.client(),
        config=CONFIG,
        clock=clock,
    )
    assert (await other_process.snapshot()).status == CIRCUIT_OPEN
    unrelated = CircuitBreaker(
        "owner-2",
        sessionmaker=sessionmaker,
        gateway=upstream.gateway.client(),
        config=CONFIG,
        clock=clock,
    )
    assert (await unrelated.snapshot()).status == CIRCUIT_CLOSED


@pytest.mark.asyncio
async def test_local_job_lease_is_single_flight() -> None:
    lease = await acquire_job_lease("job-1")
    assert lease is not None
    assert await acquire_job_lease("job-1") is None
    await release_job_lease(lease)
    again = await acquire_job_lease("job-1")
    assert again is not None
    await release_job_lease(again)

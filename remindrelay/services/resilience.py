from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from remindrelay.core.config import get_settings
from remindrelay.core.errors import BreakerOpenError
from remindrelay.domain.models import CircuitBreakerState, QueuedMessage
from remindrelay.domain.state import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_OPEN,
    QUEUE_EXPIRED,
    QUEUE_FAILED,
    QUEUE_QUEUED,
)
from remindrelay.services.gateway import DeliveryResult, GatewayClient
from remindrelay.services.idempotency import LedgerKey, ledger_exists, record_delivery
from remindrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

OUTCOME_DELIVERED = "delivered"
OUTCOME_FAILED = "failed"
OUTCOME_BREAKER_OPEN = "breaker_open"

_STATE_GAUGE = {CIRCUIT_CLOSED: 0.0, CIRCUIT_HALF_OPEN: 0.5, CIRCUIT_OPEN: 1.0}


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection per event loop for job lease coordination.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 3
    reset_timeout_ms: int = 30000
    half_open_max_trials: int = 3
    queue_max_retries: int = 3
    queue_message_ttl_hours: int = 24
    queue_redelivery_interval_ms: int = 2000
    queue_process_batch_size: int = 10
    queue_retry_delay_ms: int = 60000


def default_circuit_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=max(1, settings.cb_failure_threshold),
        success_threshold=max(1, settings.cb_success_threshold),
        reset_timeout_ms=max(0, settings.cb_reset_timeout_ms),
        half_open_max_trials=max(1, settings.cb_half_open_max_trials),
        queue_max_retries=max(1, settings.queue_max_retries),
        queue_message_ttl_hours=max(1, settings.queue_message_ttl_hours),
        queue_redelivery_interval_ms=max(0, settings.queue_redelivery_interval_ms),
        queue_process_batch_size=max(1, settings.queue_process_batch_size),
        queue_retry_delay_ms=max(0, settings.queue_retry_delay_ms),
    )


@dataclass(frozen=True)
class OutboundMessage:
    address: str
    body: str
    message_type: str = "notification"
    # Present for job items so redelivery can consult and write the ledger.
    recipient_id: str | None = None
    cycle_key: str | None = None

    def ledger_key(self, owner_id: str) -> LedgerKey | None:
        if not (self.recipient_id and self.cycle_key):
            return None
        return LedgerKey(
            owner_id=owner_id,
            recipient_id=self.recipient_id,
            notification_type=self.message_type,
            cycle_key=self.cycle_key,
        )


@dataclass(frozen=True)
class BreakerResult:
    outcome: str
    circuit_status: str
    delivery: DeliveryResult | None = None
    queued_message_id: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome == OUTCOME_DELIVERED

    @property
    def breaker_open(self) -> bool:
        return self.outcome == OUTCOME_BREAKER_OPEN


@dataclass(frozen=True)
class CircuitSnapshot:
    owner_id: str
    status: str
    failure_count: int
    success_count: int
    failure_threshold: int
    success_threshold: int
    reset_timeout_ms: int
    opened_at: datetime | None
    last_failure_at: datetime | None
    last_success_at: datetime | None
    last_error: str | None
    # Milliseconds until an open circuit admits a trial call; None unless open.
    cooldown_remaining_ms: int | None
    queue_length: int


@dataclass(frozen=True)
class QueueProcessResult:
    attempted: int
    delivered: int
    failed: int
    expired: int
    skipped_duplicates: int
    remaining: int
    stopped_reason: str | None = None


class CircuitBreaker:
    """Per-owner circuit breaker guarding the messaging gateway.

    State lives in the ``circuit_breakers`` row for the owner so every job
    and every process shares one view. Deflected messages go to the
    ``queued_messages`` table and are only redelivered by ``process_queue``.
    Only transient gateway failures count against the circuit; a gateway
    that answers with a rejection is healthy.
    """

    def __init__(
        self,
        owner_id: str,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._owner_id = owner_id
        self._sessionmaker = sessionmaker
        self._gateway = gateway
        self._config = config or default_circuit_config()
        self._clock = clock or _utc_now
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    async def _load(self, session: AsyncSession) -> CircuitBreakerState:
        # Lazily create the owner's row; a concurrent creator wins and we reload theirs.
        row = await session.get(CircuitBreakerState, self._owner_id)
        if row is not None:
            return row
        session.add(
            CircuitBreakerState(
                owner_id=self._owner_id,
                status=CIRCUIT_CLOSED,
                failure_count=0,
                success_count=0,
                failure_threshold=self._config.failure_threshold,
                success_threshold=self._config.success_threshold,
                reset_timeout_ms=self._config.reset_timeout_ms,
                half_open_trials=0,
                updated_at=self._clock(),
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
        row = await session.get(CircuitBreakerState, self._owner_id, populate_existing=True)
        if row is None:
            raise RuntimeError(f"circuit state row missing for owner {self._owner_id}")
        return row

    def _cooldown_remaining_ms(self, row: CircuitBreakerState, now: datetime) -> int | None:
        if row.status != CIRCUIT_OPEN:
            return None
        opened_at = _as_utc(row.opened_at)
        if opened_at is None:
            return 0
        elapsed_ms = (now - opened_at).total_seconds() * 1000.0
        return max(0, int(row.reset_timeout_ms - elapsed_ms))

    async def _transition(self, row: CircuitBreakerState, target: str, now: datetime) -> None:
        # Emit logs and metrics on every state change for operator visibility.
        source = row.status
        if source == target:
            return
        row.status = target
        row.success_count = 0
        row.half_open_trials = 0
        if target == CIRCUIT_CLOSED:
            row.failure_count = 0
            row.opened_at = None
        elif target == CIRCUIT_OPEN:
            row.opened_at = now
        logger.warning(
            "circuit_breaker_transition owner_id=%s from=%s to=%s", self._owner_id, source, target
        )
        increment_counter(f"circuit_breaker_transition_total.{target}")
        if target == CIRCUIT_OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{self._owner_id}", _STATE_GAUGE.get(target, 0.0))

    async def _admit(self) -> tuple[bool, str]:
        # Decide whether a call may reach the gateway; open and saturated half-open deflect.
        async with self._lock:
            async with self._sessionmaker() as session:
                row = await self._load(session)
                now = self._clock()
                if row.status == CIRCUIT_OPEN:
                    if self._cooldown_remaining_ms(row, now):
                        return False, CIRCUIT_OPEN
                    await self._transition(row, CIRCUIT_HALF_OPEN, now)
                if row.status == CIRCUIT_HALF_OPEN:
                    if row.half_open_trials >= self._config.half_open_max_trials:
                        await session.commit()
                        return False, CIRCUIT_HALF_OPEN
                    row.half_open_trials += 1
                row.updated_at = now
                status = row.status
                await session.commit()
                return True, status

    async def _release_trial(self) -> None:
        async with self._lock:
            async with self._sessionmaker() as session:
                row = await self._load(session)
                if row.status == CIRCUIT_HALF_OPEN and row.half_open_trials > 0:
                    row.half_open_trials -= 1
                    await session.commit()

    async def record_success(self) -> str:
        async with self._lock:
            async with self._sessionmaker() as session:
                row = await self._load(session)
                now = self._clock()
                row.last_success_at = now
                if row.status == CIRCUIT_CLOSED:
                    row.failure_count = 0
                elif row.status == CIRCUIT_HALF_OPEN:
                    row.half_open_trials = max(0, row.half_open_trials - 1)
                    row.success_count += 1
                    if row.success_count >= row.success_threshold:
                        await self._transition(row, CIRCUIT_CLOSED, now)
                row.updated_at = now
                status = row.status
                await session.commit()
                return status

    async def record_failure(self, error: str | None = None) -> str:
        async with self._lock:
            async with self._sessionmaker() as session:
                row = await self._load(session)
                now = self._clock()
                row.last_failure_at = now
                row.last_error = error
                if row.status == CIRCUIT_HALF_OPEN:
                    await self._transition(row, CIRCUIT_OPEN, now)
                    row.failure_count = row.failure_threshold
                elif row.status == CIRCUIT_CLOSED:
                    row.failure_count += 1
                    if row.failure_count >= row.failure_threshold:
                        await self._transition(row, CIRCUIT_OPEN, now)
                row.updated_at = now
                status = row.status
                await session.commit()
                return status

    async def _attempt(self, message: OutboundMessage) -> tuple[DeliveryResult, str]:
        # Forward one admitted call and feed its outcome back into the state machine.
        try:
            result = await self._gateway.send(message.address, message.body, owner_id=self._owner_id)
        except BaseException:
            await self._release_trial()
            raise
        if result.transient:
            status = await self.record_failure(result.error)
        else:
            status = await self.record_success()
        return result, status

    async def call(self, message: OutboundMessage) -> BreakerResult:
        admitted, status = await self._admit()
        if not admitted:
            queued_id = await self._enqueue(message)
            increment_counter("circuit_breaker_deflected_total")
            logger.info(
                "circuit_breaker_deflected owner_id=%s status=%s queued_message_id=%s",
                self._owner_id,
                status,
                queued_id,
            )
            return BreakerResult(outcome=OUTCOME_BREAKER_OPEN, circuit_status=status, queued_message_id=queued_id)
        result, status = await self._attempt(message)
        outcome = OUTCOME_DELIVERED if result.success else OUTCOME_FAILED
        return BreakerResult(outcome=outcome, circuit_status=status, delivery=result)

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Exception-style ``call``: raises ``BreakerOpenError`` on deflection and ``DeliveryError`` on failure."""
        result = await self.call(message)
        if result.breaker_open:
            raise BreakerOpenError(self._owner_id, result.queued_message_id)
        assert result.delivery is not None
        result.delivery.raise_for_failure()
        return result.delivery

    async def _enqueue(self, message: OutboundMessage) -> str:
        # Reuse a pending row for the same ledger key so repeated deflection never stacks duplicates.
        now = self._clock()
        async with self._sessionmaker() as session:
            if message.recipient_id and message.cycle_key:
                existing = (
                    await session.execute(
                        select(QueuedMessage.id).where(
                            QueuedMessage.owner_id == self._owner_id,
                            QueuedMessage.status == QUEUE_QUEUED,
                            QueuedMessage.recipient_id == message.recipient_id,
                            QueuedMessage.message_type == message.message_type,
                            QueuedMessage.cycle_key == message.cycle_key,
                        )
                    )
                ).scalars().first()
                if existing is not None:
                    return existing
            row = QueuedMessage(
                id=uuid4().hex,
                owner_id=self._owner_id,
                address=message.address,
                body=message.body,
                message_type=message.message_type,
                recipient_id=message.recipient_id,
                cycle_key=message.cycle_key,
                status=QUEUE_QUEUED,
                retry_count=0,
                max_retries=self._config.queue_max_retries,
                enqueued_at=now,
                expires_at=now + timedelta(hours=self._config.queue_message_ttl_hours),
            )
            session.add(row)
            await session.commit()
            return row.id

    async def queue_length(self) -> int:
        async with self._sessionmaker() as session:
            return int(
                (
                    await session.execute(
                        select(func.count())
                        .select_from(QueuedMessage)
                        .where(QueuedMessage.owner_id == self._owner_id, QueuedMessage.status == QUEUE_QUEUED)
                    )
                ).scalar_one()
            )

    async def list_queue(self, *, limit: int = 50) -> list[QueuedMessage]:
        async with self._sessionmaker() as session:
            rows = (
                await session.execute(
                    select(QueuedMessage)
                    .where(QueuedMessage.owner_id == self._owner_id)
                    .order_by(QueuedMessage.enqueued_at.asc(), QueuedMessage.id.asc())
                    .limit(max(1, int(limit)))
                )
            ).scalars().all()
        return list(rows)

    async def snapshot(self) -> CircuitSnapshot:
        async with self._sessionmaker() as session:
            row = await self._load(session)
            now = self._clock()
            cooldown = self._cooldown_remaining_ms(row, now)
        return CircuitSnapshot(
            owner_id=row.owner_id,
            status=row.status,
            failure_count=row.failure_count,
            success_count=row.success_count,
            failure_threshold=row.failure_threshold,
            success_threshold=row.success_threshold,
            reset_timeout_ms=row.reset_timeout_ms,
            opened_at=_as_utc(row.opened_at),
            last_failure_at=_as_utc(row.last_failure_at),
            last_success_at=_as_utc(row.last_success_at),
            last_error=row.last_error,
            cooldown_remaining_ms=cooldown,
            queue_length=await self.queue_length(),
        )

    async def admits_calls(self) -> bool:
        # Read-only check: closed, half-open, or open with the cool-down elapsed.
        async with self._sessionmaker() as session:
            row = await self._load(session)
            return not self._cooldown_remaining_ms(row, self._clock())

    async def reset_circuit(self) -> CircuitSnapshot:
        # Operator override: force closed and clear counters from any state.
        async with self._lock:
            async with self._sessionmaker() as session:
                row = await self._load(session)
                now = self._clock()
                await self._transition(row, CIRCUIT_CLOSED, now)
                row.failure_count = 0
                row.success_count = 0
                row.half_open_trials = 0
                row.opened_at = None
                row.last_error = None
                row.updated_at = now
                await session.commit()
        logger.info("circuit_breaker_reset owner_id=%s", self._owner_id)
        return await self.snapshot()

    async def begin_trial(self) -> CircuitSnapshot:
        # Operator shortcut: skip the remaining cool-down and allow trial calls now.
        async with self._lock:
            async with self._sessionmaker() as session:
                row = await self._load(session)
                if row.status == CIRCUIT_OPEN:
                    now = self._clock()
                    await self._transition(row, CIRCUIT_HALF_OPEN, now)
                    row.updated_at = now
                    await session.commit()
        return await self.snapshot()

    async def clear_queue(self) -> int:
        """Discard every pending, failed and expired message for the owner without sending.

        This is a data-loss action and is never called implicitly.
        """
        async with self._sessionmaker() as session:
            result = await session.execute(delete(QueuedMessage).where(QueuedMessage.owner_id == self._owner_id))
            await session.commit()
        deleted = int(result.rowcount or 0)
        logger.warning("circuit_queue_purged owner_id=%s deleted=%s", self._owner_id, deleted)
        increment_counter("circuit_queue_purged_total", deleted)
        return deleted

    async def process_queue(self, *, limit: int | None = None) -> QueueProcessResult:
        """Redeliver queued messages oldest first.

        Refuses to start while the circuit is open and cooling down, and stops
        as soon as a redelivery is deflected again. Messages whose ledger key
        is already recorded are dropped without a gateway call; messages past
        their TTL are marked expired; repeated failures mark a message failed.
        A failed redelivery holds the message back for ``queue_retry_delay_ms``.
        """
        if not await self.admits_calls():
            return QueueProcessResult(0, 0, 0, 0, 0, await self.queue_length(), stopped_reason="circuit_open")

        batch_size = max(1, int(limit or self._config.queue_process_batch_size))
        async with self._sessionmaker() as session:
            batch_ids = list(
                (
                    await session.execute(
                        select(QueuedMessage.id)
                        .where(
                            QueuedMessage.owner_id == self._owner_id,
                            QueuedMessage.status == QUEUE_QUEUED,
                            or_(QueuedMessage.next_retry_at.is_(None), QueuedMessage.next_retry_at <= self._clock()),
                        )
                        .order_by(QueuedMessage.enqueued_at.asc(), QueuedMessage.id.asc())
                        .limit(batch_size)
                    )
                ).scalars().all()
            )

        attempted = delivered = failed = expired = skipped = 0
        stopped_reason: str | None = None
        for index, message_id in enumerate(batch_ids):
            if index > 0 and attempted and self._config.queue_redelivery_interval_ms > 0:
                await self._sleep(self._config.queue_redelivery_interval_ms / 1000.0)
            async with self._sessionmaker() as session:
                row = await session.get(QueuedMessage, message_id)
                if row is None or row.status != QUEUE_QUEUED:
                    continue
                now = self._clock()
                if _as_utc(row.expires_at) <= now:
                    row.status = QUEUE_EXPIRED
                    row.last_error = "expired before redelivery"
                    await session.commit()
                    expired += 1
                    continue
                message = OutboundMessage(
                    address=row.address,
                    body=row.body,
                    message_type=row.message_type,
                    recipient_id=row.recipient_id,
                    cycle_key=row.cycle_key,
                )
                key = message.ledger_key(self._owner_id)
                if key is not None and await ledger_exists(session=session, key=key):
                    await session.delete(row)
                    await session.commit()
                    skipped += 1
                    continue

            admitted, _status = await self._admit()
            if not admitted:
                stopped_reason = "circuit_open"
                break
            attempted += 1
            result, status = await self._attempt(message)
            async with self._sessionmaker() as session:
                if result.success and key is not None:
                    await record_delivery(session=session, key=key, sent_via="queue")
                row = await session.get(QueuedMessage, message_id)
                if row is not None:
                    if result.success:
                        await session.delete(row)
                    else:
                        row.retry_count += 1
                        row.last_error = result.error
                        if row.retry_count >= row.max_retries:
                            row.status = QUEUE_FAILED
                        else:
                            row.next_retry_at = self._clock() + timedelta(milliseconds=self._config.queue_retry_delay_ms)
                    await session.commit()
            if result.success:
                delivered += 1
            else:
                failed += 1
            if status == CIRCUIT_OPEN:
                stopped_reason = "circuit_open"
                break

        remaining = await self.queue_length()
        logger.info(
            "circuit_queue_processed owner_id=%s attempted=%s delivered=%s failed=%s expired=%s skipped=%s remaining=%s",
            self._owner_id,
            attempted,
            delivered,
            failed,
            expired,
            skipped,
            remaining,
        )
        return QueueProcessResult(attempted, delivered, failed, expired, skipped, remaining, stopped_reason)


async def owners_with_queued_messages(*, session: AsyncSession, limit: int = 100) -> list[str]:
    # Feed the worker's queue-drain scheduler.
    rows = (
        await session.execute(
            select(QueuedMessage.owner_id)
            .where(QueuedMessage.status == QUEUE_QUEUED)
            .group_by(QueuedMessage.owner_id)
            .limit(max(1, int(limit)))
        )
    ).scalars().all()
    return list(rows)


@dataclass(slots=True)
class JobLease:
    job_id: str
    token: str
    redis: Any | None
    local: bool


_local_leases: dict[str, str] = {}


def _lease_key(job_id: str) -> str:
    return f"{get_settings().job_lease_prefix}:{job_id}"


async def acquire_job_lease(job_id: str) -> JobLease | None:
    # Single-flight per job across processes; in-process map when Redis is disabled or down.
    settings = get_settings()
    token = uuid4().hex
    if settings.job_lease_backend == "redis":
        redis = await get_resilience_redis()
        if redis is not None:
            try:
                acquired = await redis.set(_lease_key(job_id), token, nx=True, ex=max(5, settings.job_lease_ttl_s))
            except (RedisError, OSError) as exc:
                logger.warning("job_lease_redis_unavailable job_id=%s error=%s", job_id, exc)
            else:
                if not acquired:
                    return None
                return JobLease(job_id=job_id, token=token, redis=redis, local=False)
    if job_id in _local_leases:
        return None
    _local_leases[job_id] = token
    return JobLease(job_id=job_id, token=token, redis=None, local=True)


async def refresh_job_lease(lease: JobLease, *, hold_s: float = 0.0) -> bool:
    """Extend the lease to cover the next ``hold_s`` seconds plus one item.

    Returns False when another holder owns the key, in which case the caller
    must stop without sending. An expired key is reclaimed. Redis errors keep
    the loop running, since the cursor guard still prevents double counting.
    """
    if lease.local:
        return _local_leases.get(lease.job_id) == lease.token
    if lease.redis is None:
        return True
    ttl_s = max(5, get_settings().job_lease_ttl_s + math.ceil(max(0.0, hold_s)))
    key = _lease_key(lease.job_id)
    try:
        current = await lease.redis.get(key)
        if current == lease.token:
            await lease.redis.expire(key, ttl_s)
            return True
        if current is None and await lease.redis.set(key, lease.token, nx=True, ex=ttl_s):
            logger.warning("job_lease_reclaimed job_id=%s", lease.job_id)
            return True
    except (RedisError, OSError) as exc:
        logger.warning("job_lease_refresh_failed job_id=%s error=%s", lease.job_id, exc)
        return True
    logger.warning("job_lease_lost job_id=%s", lease.job_id)
    return False


async def release_job_lease(lease: JobLease) -> None:
    # Release only if this holder still owns the token.
    if lease.local:
        if _local_leases.get(lease.job_id) == lease.token:
            _local_leases.pop(lease.job_id, None)
        return
    if lease.redis is None:
        return
    try:
        current = await lease.redis.get(_lease_key(lease.job_id))
        if current == lease.token:
            await lease.redis.delete(_lease_key(lease.job_id))
    except (RedisError, OSError) as exc:
        logger.warning("job_lease_release_failed job_id=%s error=%s", lease.job_id, exc)

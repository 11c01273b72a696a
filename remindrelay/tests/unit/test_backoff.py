from __future__ import annotations

import asyncio

import pytest

from remindrelay.services.backoff import (
    MIN_DELAY_MS,
    BackoffConfig,
    BackoffManager,
    calculate_delay,
    execute_with_backoff,
)


def _no_jitter() -> float:
    return 0.5


def test_calculate_delay_doubles_until_cap() -> None:
    config = BackoffConfig(base_delay_ms=1000, max_delay_ms=60000, factor=2.0, jitter_factor=0.3)
    delays = [calculate_delay(attempt, config, random_fn=_no_jitter) for attempt in range(8)]
    assert delays == [1000, 2000, 4000, 8000, 16000, 32000, 60000, 60000]


def test_calculate_delay_jitter_stays_within_bounds() -> None:
    config = BackoffConfig(base_delay_ms=1000, max_delay_ms=60000, jitter_factor=0.3)
    assert calculate_delay(0, config, random_fn=lambda: 0.0) == 700
    assert calculate_delay(0, config, random_fn=lambda: 1.0) == 1300
    # Jitter never pushes a capped delay past the maximum.
    assert calculate_delay(10, config, random_fn=lambda: 1.0) == 60000


def test_calculate_delay_has_floor_and_survives_huge_attempts() -> None:
    config = BackoffConfig(base_delay_ms=10, max_delay_ms=60000, jitter_factor=0.0)
    assert calculate_delay(0, config) == MIN_DELAY_MS
    assert calculate_delay(10_000, config) == 60000
    assert calculate_delay(-3, config) == MIN_DELAY_MS


def test_manager_tracks_streaks_and_budget() -> None:
    manager = BackoffManager(BackoffConfig(max_attempts=2), time_source=lambda: 100.0)
    assert manager.should_retry() is True
    manager.record_failure()
    manager.record_failure()
    state = manager.state
    assert state.attempt == 2
    assert state.consecutive_failures == 2
    assert state.last_attempt_at == 100.0
    assert manager.should_retry() is False
    assert manager.next_delay() == 0

    manager.record_success()
    state = manager.state
    assert state.attempt == 0
    assert state.consecutive_failures == 0
    assert state.consecutive_successes == 1
    assert manager.should_retry() is True


def test_manager_state_is_a_copy() -> None:
    manager = BackoffManager()
    snapshot = manager.state
    manager.record_failure()
    assert snapshot.attempt == 0


@pytest.mark.asyncio
async def test_schedule_retry_is_single_flight() -> None:
    config = BackoffConfig(base_delay_ms=100, jitter_factor=0.0, max_attempts=3)
    now = {"t": 1000.0}
    manager = BackoffManager(config, time_source=lambda: now["t"])
    fired: list[int] = []
    done = asyncio.Event()

    async def _callback() -> None:
        fired.append(1)
        done.set()

    delay = manager.schedule_retry(_callback)
    assert delay == 100
    assert manager.state.is_retrying is True
    assert manager.time_until_retry() == 100
    # A second schedule while one is pending is refused.
    assert manager.schedule_retry(_callback) is None

    await asyncio.wait_for(done.wait(), timeout=2)
    assert fired == [1]
    assert manager.state.is_retrying is False


@pytest.mark.asyncio
async def test_schedule_retry_refused_after_budget_and_cancel_clears() -> None:
    manager = BackoffManager(BackoffConfig(base_delay_ms=100, max_attempts=1, jitter_factor=0.0))
    calls: list[int] = []
    assert manager.schedule_retry(lambda: calls.append(1)) == 100
    manager.cancel_retry()
    assert manager.state.is_retrying is False
    assert manager.time_until_retry() is None

    manager.record_failure()
    assert manager.schedule_retry(lambda: calls.append(1)) is None
    await asyncio.sleep(0.15)
    assert calls == []

    manager.reset()
    assert manager.state.attempt == 0


@pytest.mark.asyncio
async def test_success_drops_pending_retry() -> None:
    manager = BackoffManager(BackoffConfig(base_delay_ms=100, max_attempts=3, jitter_factor=0.0))
    fired: list[str] = []
    manager.record_failure()
    assert manager.schedule_retry(lambda: fired.append("first")) is not None
    manager.record_success()
    assert manager.schedule_retry(lambda: fired.append("second")) == 100
    manager.cancel_retry()
    await asyncio.sleep(0.3)
    assert fired == []


@pytest.mark.asyncio
async def test_failing_retry_callback_is_logged(caplog) -> None:
    manager = BackoffManager(BackoffConfig(base_delay_ms=100, max_attempts=3, jitter_factor=0.0), name="drain")
    done = asyncio.Event()

    async def _boom() -> None:
        done.set()
        raise RuntimeError("drain exploded")

    with caplog.at_level("ERROR", logger="remindrelay.services.backoff"):
        manager.schedule_retry(_boom)
        await asyncio.wait_for(done.wait(), timeout=2)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
    assert "backoff_retry_callback_failed name=drain" in caplog.text

@pytest.mark.asyncio
async def test_execute_with_backoff_retries_then_succeeds() -> None:
    attempts = {"count": 0}
    retries: list[tuple[int, int]] = []
    sleeps: list[float] = []

    async def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise TimeoutError("gateway timeout")
        return "ok"

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    result = await execute_with_backoff(
        flaky,
        BackoffConfig(base_delay_ms=1000, jitter_factor=0.0, max_attempts=5),
        lambda attempt, delay: retries.append((attempt, delay)),
        sleep=_sleep,
    )
    assert result == "ok"
    assert retries == [(1, 1000), (2, 2000)]
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_execute_with_backoff_reraises_last_error_without_final_sleep() -> None:
    sleeps: list[float] = []

    async def always_down() -> None:
        raise ConnectionError("down")

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    with pytest.raises(ConnectionError):
        await execute_with_backoff(
            always_down,
            BackoffConfig(base_delay_ms=100, jitter_factor=0.0, max_attempts=3),
            sleep=_sleep,
        )
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_execute_with_backoff_stops_on_non_retryable() -> None:
    calls = {"count": 0}

    async def refused() -> None:
        calls["count"] += 1
        raise ValueError("bad request")

    async def _sleep(_seconds: float) -> None:
        return None

    with pytest.raises(ValueError):
        await execute_with_backoff(
            refused,
            BackoffConfig(max_attempts=5),
            retryable=lambda exc: isinstance(exc, TimeoutError),
            sleep=_sleep,
        )
    assert calls["count"] == 1

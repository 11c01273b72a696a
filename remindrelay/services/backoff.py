from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from remindrelay.core.config import get_settings
from remindrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Floor keeps every scheduled retry strictly in the future.
MIN_DELAY_MS = 100
# Exponent cap keeps factor ** attempt finite for runaway attempt counters.
_MAX_EXPONENT = 64


@dataclass(frozen=True)
class BackoffConfig:
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    max_attempts: int = 5
    jitter_factor: float = 0.3
    factor: float = 2.0


def default_backoff_config() -> BackoffConfig:
    settings = get_settings()
    return BackoffConfig(
        base_delay_ms=settings.backoff_base_delay_ms,
        max_delay_ms=settings.backoff_max_delay_ms,
        max_attempts=settings.backoff_max_attempts,
        jitter_factor=settings.backoff_jitter_factor,
        factor=settings.backoff_factor,
    )


def calculate_delay(
    attempt: int,
    config: BackoffConfig | None = None,
    *,
    random_fn: Callable[[], float] = random.random,
) -> int:
    """Return the retry delay in milliseconds for a zero-based attempt number.

    The un-jittered delay is ``min(base * factor ** attempt, max_delay)``. A
    symmetric jitter of ``+/- delay * jitter_factor`` is applied and the result
    is clamped into ``[MIN_DELAY_MS, max_delay]``.
    """
    config = config or default_backoff_config()
    exponent = min(max(0, int(attempt)), _MAX_EXPONENT)
    capped = min(config.base_delay_ms * (config.factor**exponent), config.max_delay_ms)
    jitter = capped * config.jitter_factor * (random_fn() * 2 - 1)
    delay = round(capped + jitter)
    return int(max(MIN_DELAY_MS, min(delay, config.max_delay_ms)))


@dataclass
class BackoffState:
    attempt: int = 0
    last_attempt_at: float | None = None
    next_retry_at: float | None = None
    is_retrying: bool = False
    consecutive_failures: int = 0
    consecutive_successes: int = 0


class BackoffManager:
    """Stateful retry tracker for one flaky operation.

    ``schedule_retry`` is single-flight: while one retry is pending, further
    calls return ``None`` without scheduling anything.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        name: str = "backoff",
        time_source: Callable[[], float] | None = None,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or default_backoff_config()
        self._name = name
        self._time = time_source or time.time
        self._random = random_fn
        self._state = BackoffState()
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[Any] | None = None

    @property
    def config(self) -> BackoffConfig:
        return self._config

    @property
    def state(self) -> BackoffState:
        return replace(self._state)

    def record_success(self) -> None:
        # A success clears the failure streak, drops any pending retry and keeps the success streak growing.
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._state = replace(
            self._state,
            attempt=0,
            consecutive_failures=0,
            consecutive_successes=self._state.consecutive_successes + 1,
            is_retrying=False,
            next_retry_at=None,
        )

    def record_failure(self) -> None:
        self._state = replace(
            self._state,
            attempt=self._state.attempt + 1,
            last_attempt_at=self._time(),
            consecutive_failures=self._state.consecutive_failures + 1,
            consecutive_successes=0,
        )

    def should_retry(self) -> bool:
        return self._state.attempt < self._config.max_attempts

    def next_delay(self) -> int:
        if not self.should_retry():
            return 0
        return calculate_delay(self._state.attempt, self._config, random_fn=self._random)

    def schedule_retry(self, callback: Callable[[], Any]) -> int | None:
        # Refuse overlapping retries and retries past the attempt budget.
        if self._state.is_retrying:
            logger.debug("backoff_retry_already_scheduled name=%s", self._name)
            return None
        if not self.should_retry():
            logger.info("backoff_attempts_exhausted name=%s attempts=%s", self._name, self._state.attempt)
            return None
        delay_ms = calculate_delay(self._state.attempt, self._config, random_fn=self._random)
        self._state = replace(
            self._state,
            is_retrying=True,
            next_retry_at=self._time() + delay_ms / 1000.0,
        )
        logger.info(
            "backoff_retry_scheduled name=%s delay_ms=%s attempt=%s max_attempts=%s",
            self._name,
            delay_ms,
            self._state.attempt + 1,
            self._config.max_attempts,
        )
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_ms / 1000.0, self._fire, callback)
        return delay_ms

    def _fire(self, callback: Callable[[], Any]) -> None:
        # Clear the in-flight flag before running so the callback may schedule the next retry.
        self._handle = None
        self._state = replace(self._state, is_retrying=False)
        result = callback()
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._log_retry_failure)

    def _log_retry_failure(self, task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("backoff_retry_callback_failed name=%s", self._name, exc_info=exc)

    def cancel_retry(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._state = replace(self._state, is_retrying=False, next_retry_at=None)

    def reset(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._state = BackoffState()

    def time_until_retry(self) -> int | None:
        # Milliseconds until the pending retry fires, or None when nothing is scheduled.
        if self._state.next_retry_at is None:
            return None
        return max(0, int((self._state.next_retry_at - self._time()) * 1000))


async def execute_with_backoff(
    func: Callable[[], Awaitable[Any]],
    config: BackoffConfig | None = None,
    on_retry: Callable[[int, int], Any] | None = None,
    *,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    random_fn: Callable[[], float] = random.random,
) -> Any:
    # Attempt func up to max_attempts times; the last error propagates unchanged.
    config = config or default_backoff_config()
    attempts = max(1, config.max_attempts)
    for attempt in range(attempts):
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - re-raised once attempts are exhausted
            if attempt >= attempts - 1 or (retryable is not None and not retryable(exc)):
                raise
            delay_ms = calculate_delay(attempt, config, random_fn=random_fn)
            increment_counter("backoff_retries_total")
            if on_retry is not None:
                result = on_retry(attempt + 1, delay_ms)
                if inspect.isawaitable(result):
                    await result
            await sleep(delay_ms / 1000.0)
    raise RuntimeError("execute_with_backoff exhausted without a result")

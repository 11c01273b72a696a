from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from typing import Any, Deque


@dataclass(frozen=True)
class GatewayCallSample:
    ts: float
    owner_id: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class DeliveryLogEntry:
    ts: float
    job_id: str | None
    owner_id: str
    recipient_id: str | None
    outcome: str
    variant: str | None = None
    status_code: int | None = None
    detail: str | None = None


class DeliveryLog:
    """Bounded ring buffer of recent delivery outcomes.

    Each engine owns its own instance so tests and owners never share
    history; the oldest entries are evicted once ``capacity`` is reached.
    """

    def __init__(self, capacity: int = 500) -> None:
        self._entries: Deque[DeliveryLogEntry] = deque(maxlen=max(1, int(capacity)))
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: DeliveryLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def record(
        self,
        *,
        owner_id: str,
        outcome: str,
        job_id: str | None = None,
        recipient_id: str | None = None,
        variant: str | None = None,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> DeliveryLogEntry:
        entry = DeliveryLogEntry(
            ts=time.time(),
            job_id=job_id,
            owner_id=owner_id,
            recipient_id=recipient_id,
            outcome=outcome,
            variant=variant,
            status_code=status_code,
            detail=detail,
        )
        self.append(entry)
        return entry

    def recent(
        self,
        *,
        limit: int | None = None,
        owner_id: str | None = None,
        job_id: str | None = None,
    ) -> list[DeliveryLogEntry]:
        # Newest first, optionally filtered.
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        if owner_id is not None:
            entries = [entry for entry in entries if entry.owner_id == owner_id]
        if job_id is not None:
            entries = [entry for entry in entries if entry.job_id == job_id]
        if limit is not None:
            entries = entries[: max(0, int(limit))]
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def delivery_log_entry_payload(entry: DeliveryLogEntry) -> dict[str, Any]:
    return asdict(entry)


_gateway_samples: Deque[GatewayCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_gateway_call(*, owner_id: str, latency_ms: float, success: bool) -> None:
    # Capture gateway latency and outcome for the ops metrics endpoint.
    _gateway_samples.append(
        GatewayCallSample(ts=time.time(), owner_id=owner_id, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def gateway_latency_stats(window_s: int) -> dict[str, float | int | None]:
    # Summarize p95/max latency and failure ratio for gateway calls in the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _gateway_samples if sample.ts >= cutoff]
    if not samples:
        return {"count": 0, "p95": None, "max": None, "failure_ratio": None}
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    failures = sum(1 for sample in samples if not sample.success)
    return {
        "count": len(samples),
        "p95": latencies[idx],
        "max": latencies[-1],
        "failure_ratio": failures / len(samples),
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _gateway_samples.clear()
    _counters.clear()
    _gauges.clear()

from __future__ import annotations

from typing import TypedDict


JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_PAUSED = "paused"
JOB_COMPLETED = "completed"
JOB_CANCELLED = "cancelled"

ACTIVE_JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_PAUSED)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_CANCELLED)

PAUSE_REASON_OPERATOR = "operator"
PAUSE_REASON_BREAKER = "breaker_open"

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"

QUEUE_QUEUED = "queued"
QUEUE_FAILED = "failed"
QUEUE_EXPIRED = "expired"


class JobItem(TypedDict):
    recipient_id: str
    address: str
    body: str
    notification_type: str
    cycle_key: str

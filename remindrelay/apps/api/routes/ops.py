from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from remindrelay.apps.api.deps import get_job_engine
from remindrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from remindrelay.apps.api.response import SuccessEnvelope, success_response
from remindrelay.persistence.db import pool_stats
from remindrelay.services.jobs import JobEngine
from remindrelay.services.telemetry import (
    counters_snapshot,
    delivery_log_entry_payload,
    gateway_latency_stats,
    gauges_snapshot,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class OpsMetricsResponse(BaseModel):
    # Aggregate counters and gateway latency for operator dashboards.
    counters: dict[str, int]
    gauges: dict[str, float]
    gateway: dict[str, Any]
    db_pool: dict[str, Any]


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
) -> dict:
    payload = OpsMetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        gateway=gateway_latency_stats(window_s),
        db_pool=pool_stats(),
    )
    return success_response(request=request, data=payload)


@router.get("/delivery-log", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def ops_delivery_log(
    request: Request,
    owner_id: str | None = Query(default=None, max_length=128),
    limit: int = Query(default=100, ge=1, le=1000),
    engine: JobEngine = Depends(get_job_engine),
) -> dict:
    # Newest first; held in memory so it only covers this process.
    entries = engine.delivery_log.recent(owner_id=owner_id, limit=limit)
    return success_response(request=request, data={"items": [delivery_log_entry_payload(entry) for entry in entries]})

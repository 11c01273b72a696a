from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from remindrelay.apps.api.deps import get_job_engine
from remindrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from remindrelay.apps.api.response import SuccessEnvelope, iso, success_response
from remindrelay.core.config import get_settings
from remindrelay.domain.models import DeliveryJob
from remindrelay.services.addressing import normalize_address
from remindrelay.services.jobs import JobEngine
from remindrelay.services.telemetry import delivery_log_entry_payload

router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


class JobItemRequest(BaseModel):
    recipient_id: str = Field(..., min_length=1, max_length=128)
    address: str = Field(..., min_length=1, max_length=64)
    body: str = Field(..., min_length=1, max_length=4096)
    notification_type: str = Field(..., min_length=1, max_length=64)
    cycle_key: str = Field(..., min_length=1, max_length=64)


class JobCreateRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    items: list[JobItemRequest] = Field(..., min_length=1)
    interval_seconds: float | None = Field(default=None, ge=0, le=3600)


def _job_payload(row: DeliveryJob) -> dict[str, Any]:
    return {
        "id": row.id,
        "owner_id": row.owner_id,
        "status": row.status,
        "total_items": row.total_items,
        "cursor": row.cursor,
        "success_count": row.success_count,
        "error_count": row.error_count,
        "interval_seconds": row.interval_seconds,
        "last_error": row.last_error,
        "pause_reason": row.pause_reason,
        "created_at": iso(row.created_at),
        "updated_at": iso(row.updated_at),
        "completed_at": iso(row.completed_at),
    }


def _address_corrections(items: list[JobItemRequest]) -> list[dict[str, Any]]:
    # Surface every address rewrite the gateway client will apply; items are stored as submitted.
    country_code = get_settings().gateway_country_code
    corrections: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        normalized = normalize_address(item.address, country_code=country_code)
        if normalized.corrected:
            corrections.append(
                {
                    "index": index,
                    "recipient_id": item.recipient_id,
                    "original": normalized.raw,
                    "normalized": normalized.value,
                    "corrections": list(normalized.corrections),
                }
            )
    return corrections


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_job(
    payload: JobCreateRequest,
    request: Request,
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    # Start a batch for one owner; a second active batch for the same owner is a conflict.
    max_items = get_settings().job_max_items
    if len(payload.items) > max_items:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "ITEMS_LIMIT_EXCEEDED",
                "message": f"A job accepts at most {max_items} items",
                "max_items": max_items,
            },
        )
    job = await engine.create(
        owner_id=payload.owner_id,
        items=[item.model_dump() for item in payload.items],
        interval_seconds=payload.interval_seconds,
    )
    return success_response(
        request=request,
        data={
            "job_id": job.id,
            "status": job.status,
            "total_items": job.total_items,
            "address_corrections": _address_corrections(payload.items),
        },
    )


@router.get("", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def list_jobs(
    request: Request,
    owner_id: str | None = Query(default=None, max_length=128),
    limit: int = Query(default=10, ge=1, le=100),
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    rows = await engine.list_jobs(owner_id=owner_id, limit=limit)
    return success_response(request=request, data={"items": [_job_payload(row) for row in rows]})


@router.get("/active", response_model=SuccessEnvelope[dict[str, Any] | None])
async def get_active_job(
    request: Request,
    owner_id: str = Query(..., min_length=1, max_length=128),
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    # Return the owner's non-terminal job, or null when the owner is idle.
    row = await engine.get_active(owner_id)
    return success_response(request=request, data=_job_payload(row) if row is not None else None)


@router.get("/{job_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_job(job_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    row = await engine.status(job_id)
    return success_response(request=request, data=_job_payload(row))


@router.post("/{job_id}/pause", response_model=SuccessEnvelope[dict[str, Any]])
async def pause_job(job_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    # Cooperative: the loop stops before its next item, an in-flight send still completes.
    row = await engine.pause(job_id)
    return success_response(request=request, data=_job_payload(row))


@router.post("/{job_id}/resume", response_model=SuccessEnvelope[dict[str, Any]])
async def resume_job(job_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    row = await engine.resume(job_id)
    return success_response(request=request, data=_job_payload(row))


@router.post("/{job_id}/cancel", response_model=SuccessEnvelope[dict[str, Any]])
async def cancel_job(job_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    row = await engine.cancel(job_id)
    return success_response(request=request, data=_job_payload(row))


@router.get("/{job_id}/log", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_job_log(
    job_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    # Recent per-item outcomes held in this process's delivery log.
    await engine.status(job_id)
    entries = engine.delivery_log.recent(job_id=job_id, limit=limit)
    return success_response(request=request, data={"items": [delivery_log_entry_payload(entry) for entry in entries]})

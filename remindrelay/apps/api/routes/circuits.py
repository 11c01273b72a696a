from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from remindrelay.apps.api.deps import get_job_engine
from remindrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from remindrelay.apps.api.response import SuccessEnvelope, iso, success_response
from remindrelay.domain.models import QueuedMessage
from remindrelay.services.jobs import JobEngine
from remindrelay.services.resilience import CircuitSnapshot

router = APIRouter(prefix="/circuits", tags=["circuits"], responses=DEFAULT_ERROR_RESPONSES)


class ProcessQueueRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=100)


def _circuit_payload(snapshot: CircuitSnapshot) -> dict[str, Any]:
    return {
        "owner_id": snapshot.owner_id,
        "status": snapshot.status,
        "failure_count": snapshot.failure_count,
        "success_count": snapshot.success_count,
        "failure_threshold": snapshot.failure_threshold,
        "success_threshold": snapshot.success_threshold,
        "reset_timeout_ms": snapshot.reset_timeout_ms,
        "opened_at": iso(snapshot.opened_at),
        "last_failure_at": iso(snapshot.last_failure_at),
        "last_success_at": iso(snapshot.last_success_at),
        "last_error": snapshot.last_error,
        "cooldown_remaining_ms": snapshot.cooldown_remaining_ms,
        "queue_length": snapshot.queue_length,
    }


def _queued_message_payload(row: QueuedMessage) -> dict[str, Any]:
    return {
        "id": row.id,
        "address": row.address,
        "message_type": row.message_type,
        "recipient_id": row.recipient_id,
        "cycle_key": row.cycle_key,
        "status": row.status,
        "retry_count": row.retry_count,
        "max_retries": row.max_retries,
        "last_error": row.last_error,
        "next_retry_at": iso(row.next_retry_at),
        "enqueued_at": iso(row.enqueued_at),
        "expires_at": iso(row.expires_at),
    }


@router.get("/{owner_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_circuit(owner_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    snapshot = await engine.breaker_for(owner_id).snapshot()
    return success_response(request=request, data=_circuit_payload(snapshot))


@router.post("/{owner_id}/reset", response_model=SuccessEnvelope[dict[str, Any]])
async def reset_circuit(owner_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    # Operator override: force closed regardless of the current state.
    snapshot = await engine.breaker_for(owner_id).reset_circuit()
    return success_response(request=request, data=_circuit_payload(snapshot))


@router.post("/{owner_id}/trial", response_model=SuccessEnvelope[dict[str, Any]])
async def begin_trial(owner_id: str, request: Request, engine: JobEngine = Depends(get_job_engine)) -> dict[str, Any]:
    # Move an open circuit to half_open without waiting out the cool-down.
    snapshot = await engine.breaker_for(owner_id).begin_trial()
    return success_response(request=request, data=_circuit_payload(snapshot))


@router.get("/{owner_id}/queue", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def list_queue(
    owner_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    rows = await engine.breaker_for(owner_id).list_queue(limit=limit)
    return success_response(request=request, data={"items": [_queued_message_payload(row) for row in rows]})


@router.post("/{owner_id}/queue/process", response_model=SuccessEnvelope[dict[str, Any]])
async def process_queue(
    owner_id: str,
    request: Request,
    payload: ProcessQueueRequest | None = None,
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    # Redeliver deflected messages oldest first; refused while the circuit is open.
    result = await engine.breaker_for(owner_id).process_queue(limit=payload.limit if payload else None)
    return success_response(
        request=request,
        data={
            "attempted": result.attempted,
            "delivered": result.delivered,
            "failed": result.failed,
            "expired": result.expired,
            "skipped_duplicates": result.skipped_duplicates,
            "remaining": result.remaining,
            "stopped_reason": result.stopped_reason,
        },
    )


@router.delete("/{owner_id}/queue", response_model=SuccessEnvelope[dict[str, Any]])
async def clear_queue(
    owner_id: str,
    request: Request,
    confirm: bool = Query(default=False),
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    # Purging drops messages without sending them, so it must be confirmed explicitly.
    if not confirm:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "CONFIRMATION_REQUIRED",
                "message": "Clearing the queue discards messages unsent; repeat with confirm=true",
            },
        )
    deleted = await engine.breaker_for(owner_id).clear_queue()
    return success_response(request=request, data={"owner_id": owner_id, "deleted": deleted})

from __future__ import annotations

from dataclasses import replace
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from remindrelay.apps.api.deps import get_job_engine
from remindrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from remindrelay.apps.api.response import SuccessEnvelope, success_response
from remindrelay.core.config import get_settings
from remindrelay.services.addressing import address_variants, normalize_address
from remindrelay.services.backoff import default_backoff_config
from remindrelay.services.gateway import DeliveryResult, send_with_backoff
from remindrelay.services.jobs import JobEngine
from remindrelay.services.resilience import OutboundMessage

router = APIRouter(prefix="/messages", tags=["messages"], responses=DEFAULT_ERROR_RESPONSES)


class DirectSendRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    address: str = Field(..., min_length=1, max_length=64)
    body: str = Field(..., min_length=1, max_length=4096)
    max_attempts: int | None = Field(default=None, ge=1, le=10)
    # Route through the owner's circuit instead of retrying; a deflected send answers 503.
    via_circuit: bool = False


class AddressPreviewRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=64)


def _delivery_payload(result: DeliveryResult) -> dict[str, Any]:
    return {
        "delivered": result.success,
        "variant": result.variant,
        "message_id": result.message_id,
        "status_code": result.status_code,
        "error": result.error,
        "error_kind": result.error_kind,
    }


@router.post("/send", response_model=SuccessEnvelope[dict[str, Any]])
async def send_message(
    payload: DirectSendRequest,
    request: Request,
    engine: JobEngine = Depends(get_job_engine),
) -> dict[str, Any]:
    # One-off send outside any job.
    if payload.via_circuit:
        # BreakerOpenError and DeliveryError surface through the domain error handler.
        result = await engine.breaker_for(payload.owner_id).send(
            OutboundMessage(address=payload.address, body=payload.body, message_type="direct")
        )
        return success_response(request=request, data={**_delivery_payload(result), "retries": []})

    config = default_backoff_config()
    if payload.max_attempts is not None:
        config = replace(config, max_attempts=payload.max_attempts)
    retries: list[dict[str, int]] = []

    def _on_retry(attempt: int, delay_ms: int) -> None:
        retries.append({"attempt": attempt, "delay_ms": delay_ms})

    result = await send_with_backoff(
        engine.gateway_for(payload.owner_id),
        payload.address,
        payload.body,
        owner_id=payload.owner_id,
        config=config,
        on_retry=_on_retry,
    )
    data = {**_delivery_payload(result), "retries": retries}
    if not result.success:
        raise HTTPException(
            status_code=502,
            detail={"code": "DELIVERY_FAILED", "message": result.error or "Delivery failed", **data},
        )
    return success_response(request=request, data=data)


@router.post("/address-preview", response_model=SuccessEnvelope[dict[str, Any]])
async def preview_address(payload: AddressPreviewRequest, request: Request) -> dict[str, Any]:
    # Show the canonical form, the corrections applied and the variants the gateway will see.
    country_code = get_settings().gateway_country_code
    normalized = normalize_address(payload.address, country_code=country_code)
    return success_response(
        request=request,
        data={
            "original": normalized.raw,
            "normalized": normalized.value,
            "corrections": list(normalized.corrections),
            "variants": address_variants(payload.address, country_code=country_code),
        },
    )

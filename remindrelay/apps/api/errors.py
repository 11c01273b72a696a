from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from remindrelay.apps.api.response import error_response
from remindrelay.core.errors import (
    BreakerOpenError,
    DeliveryError,
    GatewayConfigError,
    JobConflictError,
    JobNotFoundError,
    JobStateError,
    RemindRelayError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "DELIVERY_FAILED",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _domain_error(exc: RemindRelayError) -> tuple[int, str, dict[str, Any] | None]:
    # Map domain failures onto HTTP status, error code and structured details.
    if isinstance(exc, JobConflictError):
        return 409, "JOB_CONFLICT", {"owner_id": exc.owner_id, "existing_job_id": exc.existing_job_id}
    if isinstance(exc, JobNotFoundError):
        return 404, "NOT_FOUND", None
    if isinstance(exc, JobStateError):
        return 409, "JOB_STATE_INVALID", {"job_id": exc.job_id, "status": exc.status, "action": exc.action}
    if isinstance(exc, BreakerOpenError):
        return 503, "CIRCUIT_OPEN", {"owner_id": exc.owner_id, "queued_message_id": exc.queued_message_id}
    if isinstance(exc, GatewayConfigError):
        return 503, "GATEWAY_NOT_CONFIGURED", None
    if isinstance(exc, DeliveryError):
        return 502, "DELIVERY_FAILED", {"status_code": exc.status_code}
    return 500, "INTERNAL_ERROR", None


async def remindrelay_exception_handler(request: Request, exc: RemindRelayError) -> JSONResponse:
    status_code, code, details = _domain_error(exc)
    if status_code >= 500:
        logger.warning("request_domain_error path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routing errors raised by Starlette (404/405) get the same envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=jsonable(payload), status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def jsonable(payload: dict[str, Any]) -> Any:
    # Pydantic error contexts may carry exception objects; stringify anything JSON cannot encode.
    return jsonable_encoder(payload, custom_encoder={Exception: str})

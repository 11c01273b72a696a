from __future__ import annotations

from typing import Any

from remindrelay.apps.api.response import API_VERSION, ErrorEnvelope


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Document every error status with the shared envelope and a concrete example.
    example: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        example["error"]["details"] = details
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response("Bad request", code="BAD_REQUEST", message="Bad request"),
    404: _error_response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _error_response(
        "Conflict",
        code="JOB_CONFLICT",
        message="owner o-1 already has an active delivery job",
        details={"owner_id": "o-1", "existing_job_id": "6f1c..."},
    ),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _error_response(
        "Gateway delivery failed",
        code="DELIVERY_FAILED",
        message="HTTP 503: upstream unavailable",
        details={"error_kind": "transient", "status_code": 503},
    ),
    503: _error_response(
        "Service unavailable",
        code="GATEWAY_NOT_CONFIGURED",
        message="Messaging gateway base_url and instance must be configured",
    ),
}

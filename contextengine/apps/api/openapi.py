from __future__ import annotations

from typing import Any

from contextengine.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1", "tenant_id": "t-acme"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Invalid input",
        _error_example(code="VALIDATION_ERROR", message="too many ref_ids: 150 exceeds limit of 100"),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Context not found"),
    ),
    422: _response(
        "Request validation error",
        _error_example(
            code="REQUEST_VALIDATION_ERROR",
            message="Request body or parameters are invalid",
            details={"errors": [{"loc": ["body", "ref_ids"], "msg": "Field required"}]},
        ),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

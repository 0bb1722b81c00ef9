from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contextengine.apps.api.response import error_json
from contextengine.core.errors import ContextPersistenceError, ContextValidationError
from contextengine.persistence.guards import TenantScopeError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "REQUEST_VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Route helpers raise {code, message, ...}; framework errors carry a plain string.
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return str(detail.get("code") or default_code), str(detail.get("message") or "Request failed"), extra or None
    return default_code, detail if isinstance(detail, str) else "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Registered for both the Starlette and FastAPI exception types.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return error_json(request, exc.status_code, code=code, message=message, details=details, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_json(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Request body or parameters are invalid",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def context_validation_exception_handler(request: Request, exc: ContextValidationError) -> JSONResponse:
    return error_json(request, 400, code="VALIDATION_ERROR", message=str(exc))


async def context_persistence_exception_handler(request: Request, exc: ContextPersistenceError) -> JSONResponse:
    logger.error("context_persistence_failed path=%s error=%s", request.url.path, exc)
    return error_json(request, 500, code="PERSISTENCE_ERROR", message="Context store write failed")


async def tenant_scope_exception_handler(request: Request, exc: TenantScopeError) -> JSONResponse:
    # A missing tenant predicate is a server bug, not a caller error.
    logger.error("tenant_scope_violation path=%s message=%s", request.url.path, exc.message)
    return error_json(request, 500, code="TENANT_SCOPE_REQUIRED", message="Tenant scope required")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return error_json(request, 500, code="INTERNAL_ERROR", message="Internal server error")

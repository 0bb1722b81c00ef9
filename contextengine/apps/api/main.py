from __future__ import annotations

import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contextengine.apps.api.errors import (
    context_persistence_exception_handler,
    context_validation_exception_handler,
    http_exception_handler,
    tenant_scope_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from contextengine.apps.api.response import API_VERSION
from contextengine.apps.api.routes.context import router as context_router
from contextengine.apps.api.routes.health import router as health_router
from contextengine.core.config import get_settings
from contextengine.core.errors import ContextPersistenceError, ContextValidationError
from contextengine.core.logging import configure_logging
from contextengine.persistence.guards import TenantScopeError


logger = logging.getLogger(__name__)

PREFIX = f"/{API_VERSION}"
# Routes that answer without the forwarded tenant/user headers.
_PUBLIC_PATHS = {f"{PREFIX}/health"}

_EXCEPTION_HANDLERS: list[tuple[type[Exception], Any]] = [
    # FastAPI's HTTPException subclasses Starlette's, so one registration covers both.
    (StarletteHTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (ContextValidationError, context_validation_exception_handler),
    (ContextPersistenceError, context_persistence_exception_handler),
    (TenantScopeError, tenant_scope_exception_handler),
    (Exception, unhandled_exception_handler),
]


def _openapi_schema(app: FastAPI) -> dict[str, Any]:
    if app.openapi_schema:
        return app.openapi_schema
    settings = get_settings()
    schema = get_openapi(
        title=app.title,
        version=API_VERSION,
        description="Tiered context documents, corrections and reference resolution.",
        routes=app.routes,
    )
    schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
    schemes["TenantHeader"] = {"type": "apiKey", "in": "header", "name": "X-Tenant-Id"}
    schemes["UserHeader"] = {"type": "apiKey", "in": "header", "name": "X-User-Id"}
    for path, operations in schema.get("paths", {}).items():
        if path in _PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation.setdefault("security", [{"TenantHeader": [], "UserHeader": []}])
    schema["info"]["x-app-name"] = settings.app_name
    app.openapi_schema = schema
    return schema


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Context Engine API",
        openapi_url=f"{PREFIX}/openapi.json",
        docs_url=f"{PREFIX}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    for exc_type, handler in _EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_type, handler)

    app.include_router(health_router, prefix=PREFIX)
    app.include_router(context_router, prefix=PREFIX)

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"{PREFIX}/docs")

    app.openapi = lambda: _openapi_schema(app)  # type: ignore[method-assign]
    return app


app = create_app()

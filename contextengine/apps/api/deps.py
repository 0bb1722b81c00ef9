from __future__ import annotations

import asyncio

from fastapi import HTTPException, Request, status
from pydantic import BaseModel

from contextengine.services.context.runtime import build_default_runtime
from contextengine.services.context.service import ContextService


class Principal(BaseModel):
    # Identity issuance happens upstream; the gateway forwards tenant and user headers.
    subject_id: str
    tenant_id: str


_service: ContextService | None = None
_service_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required")
    subject_id = (request.headers.get("X-User-Id") or "").strip()
    if not subject_id:
        raise _auth_error("X-User-Id header is required")
    # Response envelopes echo the tenant the request was scoped to.
    request.state.tenant_id = tenant_id
    return Principal(subject_id=subject_id, tenant_id=tenant_id)


async def get_context_service() -> ContextService:
    # Build the default runtime once per process; tests override this dependency.
    global _service
    if _service is None:
        async with _service_lock:
            if _service is None:
                _service = ContextService(await build_default_runtime())
    return _service


def not_found(message: str) -> HTTPException:
    # Missing and cross-tenant resources share one response.
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": message},
    )

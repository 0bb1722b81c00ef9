from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_serializer


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Echoes the tenant the request was scoped to; absent before authentication.
    tenant_id: str | None = None

    @model_serializer(mode="wrap")
    def _drop_missing_tenant(self, handler):
        data = handler(self)
        if data.get("tenant_id") is None:
            data.pop("tenant_id", None)
        return data


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def build_meta(request: Request) -> dict[str, Any]:
    meta = ResponseMeta(
        request_id=get_request_id(request),
        tenant_id=getattr(request.state, "tenant_id", None),
    )
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": build_meta(request)}


def error_json(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error = ErrorDetail(code=code, message=message, details=details)
    payload = {"error": error.model_dump(mode="json", exclude_none=True), "meta": build_meta(request)}
    return JSONResponse(content=payload, status_code=status_code, headers=headers)

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from contextengine.apps.api.deps import Principal, get_context_service, get_current_principal, not_found
from contextengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contextengine.apps.api.response import SuccessEnvelope, success_response
from contextengine.domain.context import (
    TIER_FULL,
    CombinedContextResult,
    ContextResult,
    CorrectionView,
    EmailReplyContextResult,
    ResolvedReference,
)
from contextengine.services.context.service import ContextService


router = APIRouter(tags=["context"], responses=DEFAULT_ERROR_RESPONSES)


class RegenerateRequest(BaseModel):
    sections: list[str] | None = Field(default=None)
    tier: str = Field(default=TIER_FULL)

    # Tenant comes from the principal, never from the payload.
    model_config = {"extra": "forbid"}


class CorrectionCreateRequest(BaseModel):
    section_id: str
    correction_type: str
    corrected_value: str
    field_path: str | None = None
    original_value: str | None = None
    reason: str | None = None

    model_config = {"extra": "forbid"}


class CorrectionUpdateRequest(BaseModel):
    corrected_value: str

    model_config = {"extra": "forbid"}


class ResolveReferencesRequest(BaseModel):
    # Left untyped so list-shape and size checks report as VALIDATION_ERROR.
    ref_ids: Any

    model_config = {"extra": "forbid"}


class InvalidateResponse(BaseModel):
    entity_type: str
    entity_id: str
    invalidated: bool


class ResolveReferencesResponse(BaseModel):
    references: dict[str, ResolvedReference]


class DeleteCorrectionResponse(BaseModel):
    id: str
    deleted: bool


@router.get(
    "/contexts/{entity_type}/{entity_id}",
    response_model=SuccessEnvelope[ContextResult],
)
async def get_context(
    request: Request,
    entity_type: str,
    entity_id: str,
    tier: str = Query(default=TIER_FULL),
    force_refresh: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    result = await service.get_context(
        entity_type, entity_id, tier, force_refresh=force_refresh, tenant_id=principal.tenant_id
    )
    if result is None:
        raise not_found("Context not found")
    return success_response(request=request, data=result)


@router.post(
    "/contexts/{entity_type}/{entity_id}/invalidate",
    response_model=SuccessEnvelope[InvalidateResponse],
)
async def invalidate_context(
    request: Request,
    entity_type: str,
    entity_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    invalidated = await service.invalidate(entity_type, entity_id, tenant_id=principal.tenant_id)
    if not invalidated:
        raise not_found("Context not found")
    payload = InvalidateResponse(entity_type=entity_type.upper(), entity_id=entity_id, invalidated=True)
    return success_response(request=request, data=payload)


@router.post(
    "/contexts/{entity_type}/{entity_id}/regenerate",
    response_model=SuccessEnvelope[ContextResult],
)
async def regenerate_context(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: RegenerateRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    payload = payload or RegenerateRequest()
    if payload.sections is None:
        result = await service.regenerate(entity_type, entity_id, payload.tier, tenant_id=principal.tenant_id)
    else:
        result = await service.regenerate_sections(
            entity_type, entity_id, payload.sections, payload.tier, tenant_id=principal.tenant_id
        )
    if result is None:
        raise not_found("Entity not found")
    return success_response(request=request, data=result)


@router.get(
    "/cases/{case_id}/combined-context",
    response_model=SuccessEnvelope[CombinedContextResult],
)
async def get_combined_context(
    request: Request,
    case_id: str,
    tier: str = Query(default=TIER_FULL),
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    result = await service.get_combined_context(case_id, principal.tenant_id, tier)
    if result is None:
        raise not_found("Case not found")
    return success_response(request=request, data=result)


@router.get(
    "/cases/{case_id}/email-reply-context",
    response_model=SuccessEnvelope[EmailReplyContextResult],
)
async def get_email_reply_context(
    request: Request,
    case_id: str,
    conversation_id: str | None = Query(default=None),
    target_actor_id: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    result = await service.get_email_reply_context(
        case_id,
        principal.tenant_id,
        conversation_id=conversation_id,
        target_actor_id=target_actor_id,
    )
    if result is None:
        raise not_found("Case not found")
    return success_response(request=request, data=result)


@router.get(
    "/references/{ref_id}",
    response_model=SuccessEnvelope[ResolvedReference],
)
async def resolve_reference(
    request: Request,
    ref_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    result = await service.resolve_reference(ref_id, principal.tenant_id, actor_id=principal.subject_id)
    if result is None:
        raise not_found("Reference not found")
    return success_response(request=request, data=result)


@router.post(
    "/references/resolve",
    response_model=SuccessEnvelope[ResolveReferencesResponse],
)
async def resolve_references(
    request: Request,
    payload: ResolveReferencesRequest,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    resolved = await service.resolve_references(payload.ref_ids, principal.tenant_id)
    return success_response(request=request, data=ResolveReferencesResponse(references=resolved))


@router.post(
    "/contexts/{entity_type}/{entity_id}/corrections",
    response_model=SuccessEnvelope[CorrectionView],
    status_code=201,
)
async def add_correction(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: CorrectionCreateRequest,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    view = await service.add_correction(
        entity_type,
        entity_id,
        section_id=payload.section_id,
        correction_type=payload.correction_type,
        corrected_value=payload.corrected_value,
        created_by=principal.subject_id,
        field_path=payload.field_path,
        original_value=payload.original_value,
        reason=payload.reason,
        tenant_id=principal.tenant_id,
    )
    if view is None:
        raise not_found("Entity not found")
    return success_response(request=request, data=view)


@router.patch(
    "/corrections/{correction_id}",
    response_model=SuccessEnvelope[CorrectionView],
)
async def update_correction(
    request: Request,
    correction_id: str,
    payload: CorrectionUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    view = await service.update_correction(
        correction_id,
        payload.corrected_value,
        updated_by=principal.subject_id,
        tenant_id=principal.tenant_id,
    )
    if view is None:
        raise not_found("Correction not found")
    return success_response(request=request, data=view)


@router.delete(
    "/corrections/{correction_id}",
    response_model=SuccessEnvelope[DeleteCorrectionResponse],
)
async def delete_correction(
    request: Request,
    correction_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ContextService = Depends(get_context_service),
) -> dict:
    deleted = await service.delete_correction(
        correction_id, deleted_by=principal.subject_id, tenant_id=principal.tenant_id
    )
    if not deleted:
        raise not_found("Correction not found")
    return success_response(request=request, data=DeleteCorrectionResponse(id=correction_id, deleted=True))

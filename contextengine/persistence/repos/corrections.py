from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.core.errors import ContextPersistenceError
from contextengine.domain.models import ContextCorrection


async def list_active(session: AsyncSession, context_record_id: str) -> list[ContextCorrection]:
    # Creation order drives application order, so keep it stable.
    result = await session.execute(
        select(ContextCorrection)
        .where(
            ContextCorrection.context_record_id == context_record_id,
            ContextCorrection.is_active.is_(True),
        )
        .order_by(ContextCorrection.created_at, ContextCorrection.id)
    )
    return list(result.scalars().all())


async def get_correction(session: AsyncSession, correction_id: str) -> ContextCorrection | None:
    # Use with care; tenant checks are enforced by callers through the owning record.
    result = await session.execute(
        select(ContextCorrection).where(ContextCorrection.id == correction_id)
    )
    return result.scalar_one_or_none()


async def create_correction(
    session: AsyncSession,
    *,
    context_record_id: str,
    tenant_id: str,
    section_id: str,
    field_path: str | None,
    correction_type: str,
    corrected_value: str,
    created_by: str,
    original_value: str | None = None,
    reason: str | None = None,
) -> ContextCorrection:
    correction = ContextCorrection(
        context_record_id=context_record_id,
        tenant_id=tenant_id,
        section_id=section_id,
        field_path=field_path,
        correction_type=correction_type,
        original_value=original_value,
        corrected_value=corrected_value,
        reason=reason,
        created_by=created_by,
        is_active=True,
    )
    try:
        session.add(correction)
        await session.flush()
    except SQLAlchemyError as exc:
        raise ContextPersistenceError("correction insert failed") from exc
    return correction


async def delete_correction(session: AsyncSession, correction_id: str) -> bool:
    # Remove the row only; the record's section data is never touched.
    try:
        result = await session.execute(
            delete(ContextCorrection).where(ContextCorrection.id == correction_id)
        )
    except SQLAlchemyError as exc:
        raise ContextPersistenceError(f"correction delete failed for {correction_id}") from exc
    return bool(result.rowcount)

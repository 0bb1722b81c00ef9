from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.core.errors import ContextPersistenceError
from contextengine.domain.models import ContextRecord, ContextReference
from contextengine.persistence.guards import tenant_scoped


async def list_for_record(session: AsyncSession, context_record_id: str) -> list[ContextReference]:
    result = await session.execute(
        select(ContextReference)
        .where(ContextReference.context_record_id == context_record_id)
        .order_by(ContextReference.ref_type, ContextReference.ref_id)
    )
    return list(result.scalars().all())


async def replace_for_record(
    session: AsyncSession, context_record_id: str, entries: Iterable[ContextReference]
) -> int:
    # Delete-all then insert-all inside the caller's transaction so both land or neither does.
    rows = list(entries)
    try:
        await session.execute(
            delete(ContextReference).where(ContextReference.context_record_id == context_record_id)
        )
        session.add_all(rows)
        await session.flush()
    except SQLAlchemyError as exc:
        raise ContextPersistenceError(
            f"reference rebuild failed for record {context_record_id}"
        ) from exc
    return len(rows)


async def find_by_ref_id(
    session: AsyncSession, ref_id: str
) -> list[tuple[ContextReference, ContextRecord]]:
    # Unscoped lookup; callers must run the tenant check before exposing anything.
    result = await session.execute(
        select(ContextReference, ContextRecord)
        .join(ContextRecord, ContextRecord.id == ContextReference.context_record_id)
        .where(ContextReference.ref_id == ref_id)
        .order_by(ContextReference.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_by_ref_ids_for_tenant(
    session: AsyncSession, ref_ids: list[str], tenant_id: str
) -> list[tuple[ContextReference, ContextRecord]]:
    # Tenant scoping in the query drops cross-tenant ids without revealing them.
    stmt = (
        select(ContextReference, ContextRecord)
        .join(ContextRecord, ContextRecord.id == ContextReference.context_record_id)
        .where(ContextReference.ref_id.in_(ref_ids))
        .order_by(ContextReference.ref_id, ContextReference.id)
    )
    # Scope before any I/O so a missing tenant fails without touching the database.
    stmt = tenant_scoped(stmt, ContextReference, tenant_id)
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]

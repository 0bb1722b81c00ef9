from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.core.errors import ContextPersistenceError
from contextengine.domain.context import SECTION_IDS
from contextengine.domain.models import ContextRecord


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; treat naive timestamps as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_valid(record: ContextRecord, *, now: datetime, schema_version: int) -> bool:
    # Valid means schema-current and not yet past its validity window.
    return record.schema_version == schema_version and as_utc(record.valid_until) > now


async def get_record(session: AsyncSession, entity_type: str, entity_id: str) -> ContextRecord | None:
    result = await session.execute(
        select(ContextRecord).where(
            ContextRecord.entity_type == entity_type,
            ContextRecord.entity_id == entity_id,
        )
    )
    return result.scalar_one_or_none()


async def get_record_by_id(session: AsyncSession, record_id: str) -> ContextRecord | None:
    result = await session.execute(select(ContextRecord).where(ContextRecord.id == record_id))
    return result.scalar_one_or_none()


async def get_if_valid(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    *,
    now: datetime,
    schema_version: int,
) -> ContextRecord | None:
    record = await get_record(session, entity_type, entity_id)
    if record is None or not is_valid(record, now=now, schema_version=schema_version):
        return None
    return record


def _apply_tiers(record: ContextRecord, tiers: dict[str, Any]) -> None:
    record.section_tiers = tiers["section_tiers"]
    record.content_full = tiers["content_full"]
    record.content_standard = tiers["content_standard"]
    record.content_critical = tiers["content_critical"]
    record.tokens_full = tiers["tokens_full"]
    record.tokens_standard = tiers["tokens_standard"]
    record.tokens_critical = tiers["tokens_critical"]


async def upsert_full(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str,
    entity_id: str,
    client_id: str | None,
    sections: dict[str, dict[str, Any]],
    parent_snapshot: dict[str, Any] | None,
    tiers: dict[str, Any],
    schema_version: int,
    now: datetime,
    validity: timedelta,
) -> ContextRecord:
    # Replace every section and tier; version starts at 1 and increments on each write.
    try:
        record = await get_record(session, entity_type, entity_id)
        if record is None:
            record = ContextRecord(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                version=1,
            )
            session.add(record)
        else:
            record.version = record.version + 1
        record.tenant_id = tenant_id
        record.client_id = client_id
        for section_id in SECTION_IDS:
            setattr(record, section_id, sections.get(section_id) or {})
        record.parent_snapshot = parent_snapshot
        _apply_tiers(record, tiers)
        record.schema_version = schema_version
        record.generated_at = now
        record.valid_until = now + validity
        await session.flush()
    except SQLAlchemyError as exc:
        raise ContextPersistenceError(f"context upsert failed for {entity_type}:{entity_id}") from exc
    return record


async def update_sections(
    session: AsyncSession,
    record: ContextRecord,
    *,
    section_patch: dict[str, dict[str, Any]],
    parent_snapshot: dict[str, Any] | None,
    tiers: dict[str, Any],
    now: datetime,
    validity: timedelta,
) -> ContextRecord:
    # Only the patched sections change; the rest pass through untouched.
    try:
        for section_id, data in section_patch.items():
            if section_id not in SECTION_IDS:
                continue
            setattr(record, section_id, data)
        if parent_snapshot is not None:
            record.parent_snapshot = parent_snapshot
        _apply_tiers(record, tiers)
        record.version = record.version + 1
        record.generated_at = now
        record.valid_until = now + validity
        await session.flush()
    except SQLAlchemyError as exc:
        raise ContextPersistenceError(f"context section update failed for record {record.id}") from exc
    return record


async def soft_expire(session: AsyncSession, entity_type: str, entity_id: str, *, now: datetime) -> int:
    # Expire without deleting so the next read regenerates from fresh data.
    try:
        result = await session.execute(
            update(ContextRecord)
            .where(
                ContextRecord.entity_type == entity_type,
                ContextRecord.entity_id == entity_id,
            )
            .values(valid_until=now)
        )
    except SQLAlchemyError as exc:
        raise ContextPersistenceError(f"context expiry failed for {entity_type}:{entity_id}") from exc
    return int(result.rowcount or 0)


def mark_corrected(record: ContextRecord, *, user_id: str, now: datetime) -> None:
    record.last_corrected_by = user_id
    record.corrections_applied_at = now
    # Corrections only show up after a re-render, so expire the stored tiers.
    record.valid_until = now

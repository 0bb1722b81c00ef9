from __future__ import annotations

import base64
import hashlib
import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.core.errors import ContextValidationError
from contextengine.domain.context import (
    ENTITY_CASE,
    ENTITY_CLIENT,
    REF_DOCUMENT,
    REF_EMAIL,
    REF_PREFIXES,
    REF_THREAD,
    SECTION_COMMUNICATIONS,
    SECTION_DOCUMENTS,
    SOURCE_DOCUMENT,
    SOURCE_EMAIL,
    SOURCE_THREAD,
    ReferenceInfo,
    ResolvedReference,
)
from contextengine.domain.models import ContextRecord, ContextReference
from contextengine.persistence.repos import references as references_repo
from contextengine.persistence.repos import sources as sources_repo
from contextengine.services.audit import record_cross_tenant_denial
from contextengine.services.context.access import ensure_same_tenant


logger = logging.getLogger(__name__)

REF_HASH_CHARS = 5


def generate_ref_id(ref_type: str, source_id: str) -> str:
    # Deterministic: the same source always gets the same short code.
    digest = hashlib.sha256(source_id.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return f"{REF_PREFIXES[ref_type]}-{encoded[:REF_HASH_CHARS]}"


def _parse_date(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _dicts(section: dict[str, Any] | None, key: str) -> list[dict[str, Any]]:
    value = (section or {}).get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict) and item.get("ref_id") and item.get("source_id")]


def build_reference_entries(
    record_id: str,
    tenant_id: str,
    documents: dict[str, Any] | None,
    communications: dict[str, Any] | None,
) -> list[ContextReference]:
    entries: list[ContextReference] = []
    seen: set[str] = set()

    def add(**values: Any) -> None:
        if values["ref_id"] in seen:
            return
        seen.add(values["ref_id"])
        entries.append(ContextReference(context_record_id=record_id, tenant_id=tenant_id, **values))

    for item in _dicts(documents, "items"):
        add(
            ref_id=item["ref_id"],
            ref_type=REF_DOCUMENT,
            source_id=item["source_id"],
            source_type=SOURCE_DOCUMENT,
            title=str(item.get("file_name") or item["source_id"]),
            summary=item.get("summary"),
            source_date=_parse_date(item.get("uploaded_at")),
            metadata_json={"document_type": item.get("document_type"), "is_scan": bool(item.get("is_scan"))},
        )
    for thread in _dicts(communications, "threads"):
        add(
            ref_id=thread["ref_id"],
            ref_type=REF_THREAD,
            source_id=thread["source_id"],
            source_type=SOURCE_THREAD,
            title=str(thread.get("subject") or thread.get("conversation_id") or thread["source_id"]),
            summary=thread.get("overview"),
            source_date=_parse_date(thread.get("last_message_date")),
            metadata_json={
                "conversation_id": thread.get("conversation_id"),
                "participants": thread.get("participants") or [],
                "message_count": thread.get("message_count"),
            },
        )
    for email in _dicts(communications, "emails"):
        add(
            ref_id=email["ref_id"],
            ref_type=REF_EMAIL,
            source_id=email["source_id"],
            source_type=SOURCE_EMAIL,
            title=str(email.get("subject") or "(No subject)"),
            summary=email.get("body_preview"),
            source_date=_parse_date(email.get("received_at")),
            metadata_json={
                "from": email.get("from"),
                "has_attachments": bool(email.get("has_attachments")),
                "is_important": bool(email.get("is_important")),
            },
        )
    return entries


async def rebuild(session: AsyncSession, record: ContextRecord, sections: dict[str, Any]) -> int:
    """Replace the record's reference entries from raw documents/communications data."""
    entries = build_reference_entries(
        record.id,
        record.tenant_id,
        sections.get(SECTION_DOCUMENTS),
        sections.get(SECTION_COMMUNICATIONS),
    )
    count = await references_repo.replace_for_record(session, record.id, entries)
    logger.info(
        "context_references_rebuilt entity_type=%s entity_id=%s count=%s",
        record.entity_type,
        record.entity_id,
        count,
    )
    return count


def to_reference_info(entry: ContextReference) -> ReferenceInfo:
    return ReferenceInfo(ref_id=entry.ref_id, ref_type=entry.ref_type, title=entry.title, summary=entry.summary)


async def list_reference_infos(session: AsyncSession, record_id: str) -> list[ReferenceInfo]:
    return [to_reference_info(entry) for entry in await references_repo.list_for_record(session, record_id)]


def _owner_details(record: ContextRecord) -> dict[str, Any]:
    details: dict[str, Any] = {}
    if record.entity_type == ENTITY_CLIENT:
        details["client_id"] = record.entity_id
    elif record.entity_type == ENTITY_CASE:
        details["case_id"] = record.entity_id
        if record.client_id:
            details["client_id"] = record.client_id
    return details


def _source_details(entry: ContextReference, source: Any) -> dict[str, Any] | None:
    if entry.source_type == SOURCE_DOCUMENT:
        return {
            "file_name": source.file_name,
            "storage_path": source.storage_path,
            "sharepoint_item_id": source.sharepoint_item_id,
        }
    if entry.source_type == SOURCE_EMAIL:
        from_json = source.from_json if isinstance(source.from_json, dict) else {}
        address = from_json.get("emailAddress") if isinstance(from_json.get("emailAddress"), dict) else {}
        return {
            "graph_message_id": source.graph_message_id,
            "subject": source.subject,
            "from": address.get("address") or address.get("name"),
        }
    if entry.source_type == SOURCE_THREAD:
        return {"conversation_id": source.conversation_id, "message_count": source.message_count}
    return None


def _resolved(entry: ContextReference, record: ContextRecord, source: Any, tenant_id: str) -> ResolvedReference | None:
    if source is None or getattr(source, "tenant_id", None) != tenant_id:
        logger.warning(
            "context_reference_source_missing ref_id=%s source_type=%s source_id=%s",
            entry.ref_id,
            entry.source_type,
            entry.source_id,
        )
        return None
    details = _source_details(entry, source)
    if details is None:
        return None
    return ResolvedReference(
        ref_id=entry.ref_id,
        ref_type=entry.ref_type,
        source_id=entry.source_id,
        title=entry.title,
        summary=entry.summary,
        entity_details={**_owner_details(record), **details},
    )


async def _load_sources(session: AsyncSession, entries: Iterable[ContextReference]) -> dict[tuple[str, str], Any]:
    # One query per source type, whatever the batch size.
    by_type: dict[str, list[str]] = {SOURCE_DOCUMENT: [], SOURCE_EMAIL: [], SOURCE_THREAD: []}
    for entry in entries:
        if entry.source_type in by_type:
            by_type[entry.source_type].append(entry.source_id)
    loaded: dict[tuple[str, str], Any] = {}
    for source_id, doc in (await sources_repo.get_documents_by_ids(session, by_type[SOURCE_DOCUMENT])).items():
        loaded[(SOURCE_DOCUMENT, source_id)] = doc
    for source_id, email in (await sources_repo.get_emails_by_ids(session, by_type[SOURCE_EMAIL])).items():
        loaded[(SOURCE_EMAIL, source_id)] = email
    for source_id, thread in (await sources_repo.get_threads_by_ids(session, by_type[SOURCE_THREAD])).items():
        loaded[(SOURCE_THREAD, source_id)] = thread
    return loaded


async def resolve_one(
    session: AsyncSession,
    ref_id: str,
    requesting_tenant: str,
    *,
    actor_id: str | None = None,
) -> ResolvedReference | None:
    if not isinstance(ref_id, str) or not ref_id.strip():
        return None
    rows = await references_repo.find_by_ref_id(session, ref_id.strip())
    if not rows:
        return None
    owned = [(entry, record) for entry, record in rows if entry.tenant_id == requesting_tenant]
    if not owned:
        entry, _ = rows[0]
        ensure_same_tenant(entry.tenant_id, requesting_tenant, resource_type="context_reference", resource_id=ref_id)
        await record_cross_tenant_denial(
            session,
            requesting_tenant=requesting_tenant,
            owner_tenant=entry.tenant_id,
            actor_id=actor_id,
            resource_type="context_reference",
            resource_id=ref_id,
        )
        return None
    entry, record = owned[0]
    sources = await _load_sources(session, [entry])
    return _resolved(entry, record, sources.get((entry.source_type, entry.source_id)), requesting_tenant)


def validate_ref_ids(ref_ids: Any, max_refs: int) -> list[str]:
    if not isinstance(ref_ids, (list, tuple)):
        raise ContextValidationError("ref_ids must be a list")
    if len(ref_ids) > max_refs:
        raise ContextValidationError(f"too many ref_ids: {len(ref_ids)} exceeds limit of {max_refs}")
    cleaned: list[str] = []
    dropped = 0
    for value in ref_ids:
        if not isinstance(value, str) or not value.strip():
            dropped += 1
            continue
        candidate = value.strip()
        if candidate not in cleaned:
            cleaned.append(candidate)
    if dropped:
        logger.warning("context_reference_ids_dropped count=%s", dropped)
    return cleaned


async def resolve_many(
    session: AsyncSession,
    ref_ids: Any,
    requesting_tenant: str,
    *,
    max_refs: int,
) -> dict[str, ResolvedReference]:
    """Resolve a batch of reference ids for one tenant.

    Ids that are unknown, owned by another tenant, or whose source is gone are
    left out of the result instead of failing the batch.
    """
    cleaned = validate_ref_ids(ref_ids, max_refs)
    if not cleaned:
        return {}
    rows = await references_repo.list_by_ref_ids_for_tenant(session, cleaned, requesting_tenant)
    first: dict[str, tuple[ContextReference, ContextRecord]] = {}
    for entry, record in rows:
        first.setdefault(entry.ref_id, (entry, record))
    sources = await _load_sources(session, [entry for entry, _ in first.values()])
    resolved: dict[str, ResolvedReference] = {}
    for ref_id in cleaned:
        pair = first.get(ref_id)
        if pair is None:
            continue
        entry, record = pair
        result = _resolved(entry, record, sources.get((entry.source_type, entry.source_id)), requesting_tenant)
        if result is not None:
            resolved[ref_id] = result
    return resolved

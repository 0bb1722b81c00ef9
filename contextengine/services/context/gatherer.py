from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.core.config import Settings
from contextengine.domain.context import (
    ENTITY_CASE,
    ENTITY_CLIENT,
    REF_DOCUMENT,
    REF_EMAIL,
    REF_THREAD,
    SECTION_COMMUNICATIONS,
    SECTION_DOCUMENTS,
    SECTION_IDENTITY,
    SECTION_IDS,
    SECTION_PEOPLE,
)
from contextengine.domain.models import Case, CaseActor, Client, Document, Email, ThreadSummary
from contextengine.persistence.repos import sources as sources_repo
from contextengine.services.context.references import generate_ref_id


logger = logging.getLogger(__name__)

DOCUMENT_SUMMARY_CHARS = 200
SCAN_EXTRACTION_STATUSES = frozenset({"NONE", "FAILED"})
SOURCE_TYPE_LABELS = {
    "AI_GENERATED": "generated",
    "EMAIL_ATTACHMENT": "received",
    "SHAREPOINT": "sharepoint",
}
TASK_ACTION_TYPES = {
    "email_reply": "reply",
    "respond": "reply",
    "reply": "reply",
    "review": "review",
    "document_review": "review",
    "contract_review": "review",
    "analyze": "review",
    "sign": "sign",
    "signature": "sign",
    "sign_document": "sign",
    "submit": "submit",
    "file": "submit",
    "filing": "submit",
    "submission": "submit",
    "deadline": "submit",
}


@dataclass
class GatheredSections:
    entity_type: str
    entity_id: str
    tenant_id: str
    client_id: str | None
    sections: dict[str, dict[str, Any]] = field(default_factory=dict)
    parent_snapshot: dict[str, Any] | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dict_list(value: Any) -> list[dict[str, Any]]:
    # Collaborator JSON columns are loosely typed; keep only object entries.
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def map_task_type(task_type: str | None) -> str:
    if not task_type:
        return "other"
    return TASK_ACTION_TYPES.get(task_type.lower(), "other")


def map_source_type(source_type: str | None) -> str:
    return SOURCE_TYPE_LABELS.get(source_type or "", "uploaded")


def email_sender(from_json: Any) -> str:
    address = from_json.get("emailAddress") if isinstance(from_json, dict) else None
    if isinstance(address, dict):
        return address.get("address") or address.get("name") or "Unknown"
    return "Unknown"


def communications_overview(threads: list[dict[str, Any]]) -> str:
    if not threads:
        return "No recent communications."
    urgent = sum(1 for thread in threads if thread.get("is_urgent"))
    overview = f"{len(threads)} active conversations."
    if urgent:
        overview += f" {urgent} need urgent attention."
    return overview


# ---------------------------------------------------------------------------
# Identity and people
# ---------------------------------------------------------------------------


def build_client_identity(client: Client) -> dict[str, Any]:
    contact_info = client.contact_info if isinstance(client.contact_info, dict) else {}
    return {
        "entity_type": ENTITY_CLIENT,
        "id": client.id,
        "name": client.name,
        "type": "individual" if client.client_type == "Individual" else "company",
        "company_type": client.company_type,
        "cui": client.cui,
        "registration_number": client.registration_number,
        "address": client.address,
        "phone": contact_info.get("phone"),
        "email": contact_info.get("email"),
    }


def _person(raw: dict[str, Any], default_role: str, *, primary: bool | None = None) -> dict[str, Any]:
    return {
        "id": raw.get("id"),
        "name": raw.get("name") or raw.get("nume"),
        "role": raw.get("role") or raw.get("functie") or default_role,
        "email": raw.get("email"),
        "phone": raw.get("phone") or raw.get("telefon"),
        "is_primary": bool(raw.get("isPrimary") or raw.get("is_primary")) if primary is None else primary,
    }


def build_client_people(client: Client) -> dict[str, Any]:
    administrators = [_person(item, "Administrator") for item in _dict_list(client.administrators)]
    for admin in administrators:
        admin.pop("is_primary", None)
    raw_contacts = _dict_list(client.contacts)
    contacts = [_person(item, "Contact") for item in raw_contacts]
    primary = next((c for c in contacts if c["is_primary"]), None)
    if primary is None and contacts:
        primary = contacts[0]
    return {
        "entity_type": ENTITY_CLIENT,
        "administrators": administrators,
        "contacts": contacts,
        "primary_contact": dict(primary) if primary else None,
    }


def build_people_snapshot(client: Client, *, max_administrators: int, max_contacts: int) -> dict[str, Any]:
    # Condensed people for a case's parent snapshot: primary contact first, then by name.
    people = build_client_people(client)
    contacts = sorted(people["contacts"], key=lambda c: (not c["is_primary"], (c["name"] or "").lower()))
    return {
        "entity_type": ENTITY_CLIENT,
        "administrators": people["administrators"][:max_administrators],
        "contacts": contacts[:max_contacts],
        "primary_contact": people["primary_contact"],
    }


def build_parent_snapshot(client: Client, settings: Settings) -> dict[str, Any]:
    snapshot = build_client_identity(client)
    snapshot["people"] = build_people_snapshot(
        client,
        max_administrators=settings.max_snapshot_administrators,
        max_contacts=settings.max_snapshot_contacts,
    )
    return snapshot


def build_case_identity(case: Case) -> dict[str, Any]:
    metadata = case.metadata_json if isinstance(case.metadata_json, dict) else {}
    return {
        "entity_type": ENTITY_CASE,
        "id": case.id,
        "case_number": case.case_number,
        "title": case.title,
        "type": case.type,
        "type_label": case.type,
        "status": case.status,
        "status_label": case.status,
        "court": metadata.get("court"),
        "phase": case.phase,
        "phase_label": case.phase_label,
        "value": case.value,
        "opened_date": _iso(case.opened_at),
        "closed_date": _iso(case.closed_at),
        "summary": case.description,
        "keywords": _string_list(case.keywords),
    }


def build_actor(actor: CaseActor) -> dict[str, Any]:
    return {
        "id": actor.id,
        "name": actor.name,
        "role": actor.role,
        "role_label": actor.custom_role_code or actor.role,
        "organization": actor.organization,
        "email": actor.email,
        "email_domains": _string_list(actor.email_domains),
        "phone": actor.phone,
        "address": actor.address,
        "communication_notes": actor.communication_notes,
        "preferred_tone": actor.preferred_tone,
        "is_client": actor.role == "CLIENT",
    }


async def build_case_people(session: AsyncSession, case: Case) -> dict[str, Any]:
    actors = await sources_repo.list_case_actors(session, case.id)
    team_rows = await sources_repo.list_case_team(session, case.id)
    team = []
    for member, user in team_rows:
        name = " ".join(part for part in (user.first_name, user.last_name) if part) or "Unknown"
        team.append(
            {
                "user_id": member.user_id,
                "name": name,
                "user_role": user.role,
                "case_role": member.role,
                "case_role_label": member.role,
            }
        )
    return {"entity_type": ENTITY_CASE, "actors": [build_actor(actor) for actor in actors], "team": team}


# ---------------------------------------------------------------------------
# Documents and communications
# ---------------------------------------------------------------------------


def build_document_item(doc: Document) -> dict[str, Any]:
    summary = doc.user_description or (
        doc.extracted_content[:DOCUMENT_SUMMARY_CHARS] if doc.extracted_content else None
    )
    return {
        "ref_id": generate_ref_id(REF_DOCUMENT, doc.id),
        "source_id": doc.id,
        "file_name": doc.file_name,
        "uploaded_at": _iso(doc.created_at),
        "document_type": doc.file_type,
        "summary": summary,
        "is_scan": doc.extraction_status in SCAN_EXTRACTION_STATUSES,
        "source": map_source_type(doc.source_type),
    }


def _documents_section(docs: list[Document], total: int, limit: int, label: str) -> dict[str, Any]:
    if docs and total > limit:
        logger.debug("context_documents_truncated %s fetched=%s total=%s", label, len(docs), total)
    return {
        "items": [build_document_item(doc) for doc in docs],
        "total_count": total,
        "has_more": total > limit,
    }


def build_thread_ref(thread: ThreadSummary, subjects: dict[str, str]) -> dict[str, Any]:
    return {
        "ref_id": generate_ref_id(REF_THREAD, thread.id),
        "source_id": thread.id,
        "conversation_id": thread.conversation_id,
        "subject": subjects.get(thread.conversation_id) or thread.conversation_id,
        "participants": _string_list(thread.participants),
        "last_message_date": _iso(thread.last_analyzed_at),
        "message_count": thread.message_count,
        "overview": thread.overview,
        "key_points": _string_list(thread.key_points),
        "action_items": _string_list(thread.action_items),
        "sentiment": thread.sentiment,
        "is_urgent": thread.sentiment == "urgent",
    }


def build_email_ref(email: Email) -> dict[str, Any]:
    return {
        "ref_id": generate_ref_id(REF_EMAIL, email.id),
        "source_id": email.id,
        "subject": email.subject or "(No subject)",
        "from": email_sender(email.from_json),
        "received_at": _iso(email.received_at),
        "body_preview": email.body_preview,
        "has_attachments": bool(email.has_attachments),
        "is_important": (email.importance or "").lower() == "high",
    }


async def _build_communications(
    session: AsyncSession,
    settings: Settings,
    tenant_id: str,
    *,
    client_id: str | None,
    case_id: str | None,
) -> dict[str, Any]:
    threads = await sources_repo.list_thread_summaries(
        session, tenant_id, client_id=client_id, case_id=case_id, limit=settings.max_threads
    )
    conversation_ids = [thread.conversation_id for thread in threads]
    subjects = await sources_repo.get_thread_subjects(session, conversation_ids)
    thread_refs = [build_thread_ref(thread, subjects) for thread in threads]
    # Emails from conversations already summarized as threads are not repeated.
    emails = await sources_repo.list_important_emails(
        session,
        tenant_id,
        client_id=client_id,
        case_id=case_id,
        exclude_conversation_ids=conversation_ids,
        limit=settings.max_emails,
    )
    pending_actions: list[dict[str, Any]] = []
    if case_id is not None:
        tasks = await sources_repo.list_pending_tasks(session, case_id, limit=settings.max_pending_actions)
        pending_actions = [
            {
                "id": task.id,
                "type": map_task_type(task.type),
                "description": task.title,
                "due_date": _iso(task.due_date),
            }
            for task in tasks
        ]
    return {
        "overview": communications_overview(thread_refs),
        "threads": thread_refs,
        "emails": [build_email_ref(email) for email in emails],
        "total_threads": len(thread_refs),
        "urgent_count": sum(1 for thread in thread_refs if thread["is_urgent"]),
        "pending_actions": pending_actions,
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _requested(sections: Iterable[str] | None) -> tuple[str, ...]:
    if sections is None:
        return SECTION_IDS
    wanted = set(sections)
    return tuple(section_id for section_id in SECTION_IDS if section_id in wanted)


async def gather(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    *,
    settings: Settings,
    sections: Iterable[str] | None = None,
) -> GatheredSections | None:
    """Collect uncorrected section data for a client or case.

    Returns None when the entity itself does not exist. Cases always carry a
    fresh parent snapshot of the owning client.
    """
    wanted = _requested(sections)
    if entity_type == ENTITY_CLIENT:
        client = await sources_repo.get_client(session, entity_id)
        if client is None:
            return None
        gathered = GatheredSections(
            entity_type=entity_type, entity_id=entity_id, tenant_id=client.tenant_id, client_id=client.id
        )
        if SECTION_IDENTITY in wanted:
            gathered.sections[SECTION_IDENTITY] = build_client_identity(client)
        if SECTION_PEOPLE in wanted:
            gathered.sections[SECTION_PEOPLE] = build_client_people(client)
        if SECTION_DOCUMENTS in wanted:
            docs, total = await sources_repo.list_client_documents(
                session, client.id, client.tenant_id, limit=settings.max_documents
            )
            gathered.sections[SECTION_DOCUMENTS] = _documents_section(
                docs, total, settings.max_documents, f"client_id={client.id}"
            )
        if SECTION_COMMUNICATIONS in wanted:
            gathered.sections[SECTION_COMMUNICATIONS] = await _build_communications(
                session, settings, client.tenant_id, client_id=client.id, case_id=None
            )
        return gathered

    if entity_type != ENTITY_CASE:
        return None
    case = await sources_repo.get_case(session, entity_id)
    if case is None:
        return None
    gathered = GatheredSections(
        entity_type=entity_type, entity_id=entity_id, tenant_id=case.tenant_id, client_id=case.client_id
    )
    client = await sources_repo.get_client(session, case.client_id)
    if client is not None and client.tenant_id == case.tenant_id:
        gathered.parent_snapshot = build_parent_snapshot(client, settings)
    if SECTION_IDENTITY in wanted:
        gathered.sections[SECTION_IDENTITY] = build_case_identity(case)
    if SECTION_PEOPLE in wanted:
        gathered.sections[SECTION_PEOPLE] = await build_case_people(session, case)
    if SECTION_DOCUMENTS in wanted:
        docs, total = await sources_repo.list_case_documents(session, case.id, limit=settings.max_documents)
        gathered.sections[SECTION_DOCUMENTS] = _documents_section(
            docs, total, settings.max_documents, f"case_id={case.id}"
        )
    if SECTION_COMMUNICATIONS in wanted:
        gathered.sections[SECTION_COMMUNICATIONS] = await _build_communications(
            session, settings, case.tenant_id, client_id=case.client_id, case_id=case.id
        )
    return gathered

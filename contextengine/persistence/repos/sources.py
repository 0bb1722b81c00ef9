from __future__ import annotations

from sqlalchemy import case, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.domain.models import (
    Case,
    CaseActor,
    CaseDocument,
    CaseTeamMember,
    Client,
    Document,
    Email,
    Task,
    ThreadSummary,
    User,
)


# Read-only queries against collaborator tables. Callers enforce tenant checks.

OPEN_TASK_STATUSES = ("Pending", "InProgress")


async def get_client(session: AsyncSession, client_id: str) -> Client | None:
    result = await session.execute(select(Client).where(Client.id == client_id))
    return result.scalar_one_or_none()


async def get_case(session: AsyncSession, case_id: str) -> Case | None:
    result = await session.execute(select(Case).where(Case.id == case_id))
    return result.scalar_one_or_none()


async def list_case_actors(session: AsyncSession, case_id: str) -> list[CaseActor]:
    result = await session.execute(
        select(CaseActor).where(CaseActor.case_id == case_id).order_by(CaseActor.name, CaseActor.id)
    )
    return list(result.scalars().all())


async def get_case_actor(session: AsyncSession, case_id: str, actor_id: str) -> CaseActor | None:
    result = await session.execute(
        select(CaseActor).where(CaseActor.id == actor_id, CaseActor.case_id == case_id)
    )
    return result.scalar_one_or_none()


async def list_case_team(session: AsyncSession, case_id: str) -> list[tuple[CaseTeamMember, User]]:
    result = await session.execute(
        select(CaseTeamMember, User)
        .join(User, User.id == CaseTeamMember.user_id)
        .where(CaseTeamMember.case_id == case_id)
        .order_by(CaseTeamMember.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_client_documents(
    session: AsyncSession, client_id: str, tenant_id: str, *, limit: int
) -> tuple[list[Document], int]:
    # Client-level documents are the ones not linked to any case.
    unlinked = ~exists().where(CaseDocument.document_id == Document.id)
    filters = (Document.client_id == client_id, Document.tenant_id == tenant_id, unlinked)
    docs = await session.execute(
        select(Document).where(*filters).order_by(Document.created_at.desc(), Document.id).limit(limit)
    )
    total = await session.execute(select(func.count()).select_from(Document).where(*filters))
    return list(docs.scalars().all()), int(total.scalar_one())


async def list_case_documents(
    session: AsyncSession, case_id: str, *, limit: int
) -> tuple[list[Document], int]:
    docs = await session.execute(
        select(Document)
        .join(CaseDocument, CaseDocument.document_id == Document.id)
        .where(CaseDocument.case_id == case_id)
        .order_by(CaseDocument.linked_at.desc(), Document.id)
        .limit(limit)
    )
    total = await session.execute(
        select(func.count()).select_from(CaseDocument).where(CaseDocument.case_id == case_id)
    )
    return list(docs.scalars().all()), int(total.scalar_one())


async def list_thread_summaries(
    session: AsyncSession,
    tenant_id: str,
    *,
    client_id: str | None = None,
    case_id: str | None = None,
    limit: int,
) -> list[ThreadSummary]:
    stmt = select(ThreadSummary).where(ThreadSummary.tenant_id == tenant_id)
    if case_id is not None:
        stmt = stmt.where(ThreadSummary.case_id == case_id)
    else:
        # Client-level threads are the client's threads not filed under a case.
        stmt = stmt.where(ThreadSummary.client_id == client_id, ThreadSummary.case_id.is_(None))
    result = await session.execute(
        stmt.order_by(ThreadSummary.last_analyzed_at.desc(), ThreadSummary.id).limit(limit)
    )
    return list(result.scalars().all())


async def get_thread_subjects(session: AsyncSession, conversation_ids: list[str]) -> dict[str, str]:
    # Subject of the earliest email in each conversation.
    if not conversation_ids:
        return {}
    result = await session.execute(
        select(Email.conversation_id, Email.subject)
        .where(Email.conversation_id.in_(conversation_ids))
        .order_by(Email.received_at.asc(), Email.id)
    )
    subjects: dict[str, str] = {}
    for conversation_id, subject in result.all():
        if conversation_id in subjects:
            continue
        if subject:
            subjects[conversation_id] = subject
    return subjects


async def list_important_emails(
    session: AsyncSession,
    tenant_id: str,
    *,
    client_id: str | None = None,
    case_id: str | None = None,
    exclude_conversation_ids: list[str] | None = None,
    limit: int,
) -> list[Email]:
    stmt = select(Email).where(Email.tenant_id == tenant_id)
    if case_id is not None:
        stmt = stmt.where(Email.case_id == case_id)
    else:
        stmt = stmt.where(Email.client_id == client_id, Email.case_id.is_(None))
    if exclude_conversation_ids:
        stmt = stmt.where(Email.conversation_id.not_in(exclude_conversation_ids))
    rank = case((func.lower(Email.importance) == "high", 0), else_=1)
    result = await session.execute(
        stmt.order_by(rank.asc(), Email.received_at.desc(), Email.id).limit(limit)
    )
    return list(result.scalars().all())


async def list_pending_tasks(session: AsyncSession, case_id: str, *, limit: int) -> list[Task]:
    result = await session.execute(
        select(Task)
        .where(Task.case_id == case_id, Task.status.in_(OPEN_TASK_STATUSES))
        .order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_documents_by_ids(session: AsyncSession, ids: list[str]) -> dict[str, Document]:
    if not ids:
        return {}
    result = await session.execute(select(Document).where(Document.id.in_(ids)))
    return {doc.id: doc for doc in result.scalars().all()}


async def get_emails_by_ids(session: AsyncSession, ids: list[str]) -> dict[str, Email]:
    if not ids:
        return {}
    result = await session.execute(select(Email).where(Email.id.in_(ids)))
    return {email.id: email for email in result.scalars().all()}


async def get_threads_by_ids(session: AsyncSession, ids: list[str]) -> dict[str, ThreadSummary]:
    if not ids:
        return {}
    result = await session.execute(select(ThreadSummary).where(ThreadSummary.id.in_(ids)))
    return {thread.id: thread for thread in result.scalars().all()}


async def list_conversation_emails(
    session: AsyncSession, conversation_id: str, tenant_id: str
) -> list[Email]:
    result = await session.execute(
        select(Email)
        .where(Email.conversation_id == conversation_id, Email.tenant_id == tenant_id)
        .order_by(Email.received_at.asc(), Email.id)
    )
    return list(result.scalars().all())

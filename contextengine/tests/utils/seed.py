from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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


SEED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CLIENT_NAME = "Acme Industries SRL"
CLIENT_DOCUMENT_NAME = "acme_statute_2019.pdf"


def _sender(name: str, address: str) -> dict:
    return {"emailAddress": {"name": name, "address": address}}


def client_rows(tenant_id: str, client_id: str, *, name: str = CLIENT_NAME, documents: int = 1) -> list[object]:
    # A company client with one administrator, two contacts and client-level documents and mail.
    rows: list[object] = [
        Client(
            id=client_id,
            tenant_id=tenant_id,
            name=name,
            client_type="Company",
            company_type="SRL",
            cui="RO1234567",
            registration_number="J40/100/2010",
            address="1 Main Street, Bucharest",
            contact_info={"phone": "+40 21 000 0000", "email": "office@acme.example"},
            administrators=[{"name": "Elena Pop", "role": "Director"}],
            contacts=[
                {"id": "contact-1", "name": "Mihai Ionescu", "email": "mihai@acme.example", "is_primary": True},
                {"id": "contact-2", "name": "Ana Dumitru", "email": "ana@acme.example"},
            ],
        )
    ]
    for index in range(documents):
        rows.append(
            Document(
                id=f"{client_id}-doc-{index}",
                tenant_id=tenant_id,
                client_id=client_id,
                file_name=CLIENT_DOCUMENT_NAME if index == 0 else f"acme_annex_{index}.pdf",
                file_type="pdf",
                extraction_status="COMPLETED",
                extracted_content="Articles of association describing share capital and governance.",
                created_at=SEED_NOW - timedelta(days=10 + index),
            )
        )
    rows.extend(
        [
            ThreadSummary(
                id=f"{client_id}-thread-1",
                tenant_id=tenant_id,
                client_id=client_id,
                case_id=None,
                conversation_id=f"{client_id}-conv-1",
                overview="Client asked about the annual shareholder meeting.",
                participants=["mihai@acme.example"],
                message_count=3,
                sentiment="neutral",
                last_analyzed_at=SEED_NOW - timedelta(days=1),
            ),
            Email(
                id=f"{client_id}-email-1",
                tenant_id=tenant_id,
                client_id=client_id,
                case_id=None,
                conversation_id=f"{client_id}-conv-1",
                graph_message_id=f"{client_id}-graph-1",
                subject="Shareholder meeting",
                from_json=_sender("Mihai Ionescu", "mihai@acme.example"),
                body_preview="Can we schedule the meeting for next month?",
                received_at=SEED_NOW - timedelta(days=2),
            ),
            Email(
                id=f"{client_id}-email-2",
                tenant_id=tenant_id,
                client_id=client_id,
                case_id=None,
                conversation_id=f"{client_id}-conv-2",
                graph_message_id=f"{client_id}-graph-2",
                subject="Invoice dispute",
                from_json=_sender("Ana Dumitru", "ana@acme.example"),
                body_preview="Please review the attached invoice.",
                has_attachments=True,
                importance="high",
                received_at=SEED_NOW - timedelta(days=3),
            ),
        ]
    )
    return rows


def case_rows(tenant_id: str, case_id: str, client_id: str) -> list[object]:
    user_id = f"{case_id}-user"
    return [
        Case(
            id=case_id,
            tenant_id=tenant_id,
            client_id=client_id,
            case_number="1024/3/2026",
            title="Acme v. Carpathia Freight",
            type="Litigation",
            status="Active",
            value=125000.0,
            opened_at=SEED_NOW - timedelta(days=40),
            description="Unpaid freight invoices for Q1 shipments.",
            keywords=["freight", "invoices"],
            phase="first_instance",
            phase_label="First instance",
            metadata_json={"court": "Bucharest Tribunal"},
        ),
        CaseActor(
            id=f"{case_id}-actor-1",
            case_id=case_id,
            name="Carpathia Freight SA",
            role="Defendant",
            organization="Carpathia Freight",
            email="legal@carpathia.example",
            communication_notes="Replies only through counsel.",
            preferred_tone="formal",
        ),
        User(id=user_id, tenant_id=tenant_id, first_name="Ioana", last_name="Radu", role="Partner"),
        CaseTeamMember(case_id=case_id, user_id=user_id, role="Lead"),
        Document(
            id=f"{case_id}-doc-1",
            tenant_id=tenant_id,
            client_id=client_id,
            file_name="statement_of_claim.pdf",
            file_type="pdf",
            extraction_status="NONE",
            user_description="Statement of claim for unpaid invoices.",
            created_at=SEED_NOW - timedelta(days=30),
        ),
        CaseDocument(case_id=case_id, document_id=f"{case_id}-doc-1", linked_at=SEED_NOW - timedelta(days=30)),
        ThreadSummary(
            id=f"{case_id}-thread-1",
            tenant_id=tenant_id,
            client_id=client_id,
            case_id=case_id,
            conversation_id=f"{case_id}-conv-1",
            overview="Opposing counsel proposed a settlement meeting.",
            participants=["legal@carpathia.example"],
            action_items=["Confirm meeting date"],
            message_count=2,
            sentiment="urgent",
            last_analyzed_at=SEED_NOW - timedelta(days=1),
        ),
        Email(
            id=f"{case_id}-email-1",
            tenant_id=tenant_id,
            client_id=client_id,
            case_id=case_id,
            conversation_id=f"{case_id}-conv-1",
            graph_message_id=f"{case_id}-graph-1",
            subject="Settlement proposal",
            from_json=_sender("Carpathia Legal", "legal@carpathia.example"),
            body_preview="We would like to propose a meeting next week.",
            importance="high",
            received_at=SEED_NOW - timedelta(days=2),
        ),
        Email(
            id=f"{case_id}-email-2",
            tenant_id=tenant_id,
            client_id=client_id,
            case_id=case_id,
            conversation_id=f"{case_id}-conv-1",
            graph_message_id=f"{case_id}-graph-2",
            subject="Re: Settlement proposal",
            from_json=_sender("Ioana Radu", "ioana@firm.example"),
            body_preview="Thursday works for us.",
            received_at=SEED_NOW - timedelta(days=1),
        ),
        Task(
            id=f"{case_id}-task-1",
            tenant_id=tenant_id,
            case_id=case_id,
            title="Reply to settlement proposal",
            type="email_reply",
            status="Pending",
            due_date=SEED_NOW + timedelta(days=3),
        ),
        Task(
            id=f"{case_id}-task-2",
            tenant_id=tenant_id,
            case_id=case_id,
            title="File the statement of claim",
            type="filing",
            status="Completed",
        ),
    ]


async def add_rows(session_factory: async_sessionmaker[AsyncSession], rows: Iterable[object]) -> None:
    async with session_factory() as session:
        session.add_all(list(rows))
        await session.commit()


async def seed_client(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    tenant_id: str = "t1",
    client_id: str = "client-1",
    name: str = CLIENT_NAME,
    documents: int = 1,
) -> str:
    await add_rows(session_factory, client_rows(tenant_id, client_id, name=name, documents=documents))
    return client_id


async def seed_case(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    tenant_id: str = "t1",
    case_id: str = "case-1",
    client_id: str = "client-1",
) -> str:
    # Seeds the owning client too so the case has a parent snapshot.
    await add_rows(session_factory, client_rows(tenant_id, client_id) + case_rows(tenant_id, case_id, client_id))
    return case_id

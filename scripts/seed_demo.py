from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone

from contextengine.core.logging import configure_logging
from contextengine.domain.context import ENTITY_CASE, ENTITY_CLIENT, TIERS
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
from contextengine.persistence.db import SessionLocal
from contextengine.services.context.runtime import build_default_runtime
from contextengine.services.context.service import ContextService


DEMO_TENANT_ID = "t-demo"
DEMO_CLIENT_ID = "client-demo"
DEMO_CASE_ID = "case-demo"


def _sender(name: str, address: str) -> dict:
    return {"emailAddress": {"name": name, "address": address}}


def build_demo_rows(now: datetime) -> list[object]:
    # Fixed ids keep the seed idempotent and the reference ids stable across runs.
    return [
        Client(
            id=DEMO_CLIENT_ID,
            tenant_id=DEMO_TENANT_ID,
            name="Northwind Logistics SRL",
            client_type="Company",
            company_type="SRL",
            cui="RO18273645",
            registration_number="J40/1234/2015",
            address="12 Harbor Street, Bucharest",
            contact_info={"phone": "+40 21 555 0101", "email": "office@northwind.example"},
            administrators=[{"name": "Elena Pop", "role": "Director"}],
            contacts=[
                {"name": "Mihai Ionescu", "email": "mihai@northwind.example", "is_primary": True},
                {"name": "Ana Dumitru", "email": "ana@northwind.example"},
            ],
        ),
        Case(
            id=DEMO_CASE_ID,
            tenant_id=DEMO_TENANT_ID,
            client_id=DEMO_CLIENT_ID,
            case_number="1024/3/2026",
            title="Northwind v. Carpathia Freight",
            type="Litigation",
            status="Active",
            value=125000.0,
            opened_at=now - timedelta(days=40),
            description="Unpaid freight invoices for Q1 shipments.",
            keywords=["freight", "invoices"],
            phase="first_instance",
            phase_label="First instance",
            metadata_json={"court": "Bucharest Tribunal"},
        ),
        CaseActor(
            id="actor-demo-1",
            case_id=DEMO_CASE_ID,
            name="Carpathia Freight SA",
            role="Defendant",
            organization="Carpathia Freight",
            email="legal@carpathia.example",
            communication_notes="Replies only through counsel.",
            preferred_tone="formal",
        ),
        User(id="user-demo-1", tenant_id=DEMO_TENANT_ID, first_name="Ioana", last_name="Radu", role="Partner"),
        CaseTeamMember(case_id=DEMO_CASE_ID, user_id="user-demo-1", role="Lead"),
        Document(
            id="doc-demo-1",
            tenant_id=DEMO_TENANT_ID,
            client_id=DEMO_CLIENT_ID,
            file_name="statement_of_claim.pdf",
            file_type="pdf",
            extraction_status="COMPLETED",
            extracted_content="Statement of claim for unpaid invoices totalling 125,000 EUR.",
            created_at=now - timedelta(days=30),
        ),
        CaseDocument(case_id=DEMO_CASE_ID, document_id="doc-demo-1"),
        Document(
            id="doc-demo-2",
            tenant_id=DEMO_TENANT_ID,
            client_id=DEMO_CLIENT_ID,
            file_name="articles_of_association.pdf",
            file_type="pdf",
            user_description="Company statute, 2019 revision.",
            created_at=now - timedelta(days=300),
        ),
        ThreadSummary(
            id="thread-demo-1",
            tenant_id=DEMO_TENANT_ID,
            client_id=DEMO_CLIENT_ID,
            case_id=DEMO_CASE_ID,
            conversation_id="conv-demo-1",
            overview="Opposing counsel proposed a settlement meeting.",
            participants=["legal@carpathia.example", "ioana@firm.example"],
            message_count=2,
            last_analyzed_at=now - timedelta(days=1),
        ),
        Email(
            id="email-demo-1",
            tenant_id=DEMO_TENANT_ID,
            client_id=DEMO_CLIENT_ID,
            case_id=DEMO_CASE_ID,
            conversation_id="conv-demo-1",
            graph_message_id="graph-demo-1",
            subject="Settlement proposal",
            from_json=_sender("Carpathia Legal", "legal@carpathia.example"),
            body_preview="We would like to propose a meeting next week.",
            importance="high",
            received_at=now - timedelta(days=2),
        ),
        Task(
            id="task-demo-1",
            tenant_id=DEMO_TENANT_ID,
            case_id=DEMO_CASE_ID,
            title="Reply to settlement proposal",
            type="email_reply",
            status="Pending",
            due_date=now + timedelta(days=3),
        ),
    ]


async def seed_demo(tier: str) -> int:
    async with SessionLocal() as session:
        if await session.get(Client, DEMO_CLIENT_ID) is None:
            session.add_all(build_demo_rows(datetime.now(timezone.utc)))
            await session.commit()
            print(f"Seeded demo tenant {DEMO_TENANT_ID}")
        else:
            print(f"Demo tenant {DEMO_TENANT_ID} already seeded")

    service = ContextService(await build_default_runtime())
    for entity_type, entity_id in ((ENTITY_CLIENT, DEMO_CLIENT_ID), (ENTITY_CASE, DEMO_CASE_ID)):
        result = await service.get_context(entity_type, entity_id, tier, tenant_id=DEMO_TENANT_ID)
        if result is None:
            print(f"{entity_type} {entity_id}: no context", file=sys.stderr)
            return 1
        print(f"===== {entity_type} {entity_id} [{tier}] {result.token_count} tokens v{result.version}")
        print(result.content)
        for reference in result.references:
            print(f"  {reference.ref_id} {reference.ref_type} {reference.title}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a demo tenant and print its context tiers")
    parser.add_argument("--tier", choices=TIERS, default="full")
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(seed_demo(args.tier))
    except Exception as exc:  # noqa: BLE001 - surface seed failures clearly
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

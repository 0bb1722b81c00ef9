from __future__ import annotations

import dataclasses

import pytest
from sqlalchemy import delete, select

from contextengine.core.errors import ContextValidationError
from contextengine.domain.models import AuditEvent, Document
from contextengine.services.context.service import ContextService
from contextengine.tests.utils.seed import CLIENT_DOCUMENT_NAME, seed_client


async def _refs_by_type(service, tenant_id: str, client_id: str) -> dict[str, str]:
    result = await service.get_context("CLIENT", client_id, tenant_id=tenant_id)
    return {ref.ref_type: ref.ref_id for ref in result.references}


async def test_resolves_document_for_owner(service, session_factory) -> None:
    await seed_client(session_factory)
    refs = await _refs_by_type(service, "t1", "client-1")
    resolved = await service.resolve_reference(refs["DOCUMENT"], "t1", actor_id="u1")
    assert resolved.source_id == "client-1-doc-0"
    assert resolved.title == CLIENT_DOCUMENT_NAME
    assert resolved.entity_details["client_id"] == "client-1"
    assert resolved.entity_details["file_name"] == CLIENT_DOCUMENT_NAME


async def test_resolves_thread_and_email_details(service, session_factory) -> None:
    await seed_client(session_factory)
    refs = await _refs_by_type(service, "t1", "client-1")
    thread = await service.resolve_reference(refs["THREAD"], "t1")
    email = await service.resolve_reference(refs["EMAIL"], "t1")
    assert thread.entity_details["conversation_id"] == "client-1-conv-1"
    assert email.entity_details["subject"]
    assert email.entity_details["from"]


async def test_cross_tenant_resolution_is_denied_and_audited(service, session_factory) -> None:
    await seed_client(session_factory)
    await seed_client(session_factory, tenant_id="t2", client_id="client-2", name="Other Client SRL")
    refs = await _refs_by_type(service, "t1", "client-1")

    assert await service.resolve_reference(refs["DOCUMENT"], "t2", actor_id="intruder") is None

    async with session_factory() as session:
        events = (await session.execute(select(AuditEvent))).scalars().all()
    assert [event.event_type for event in events] == ["context.reference.cross_tenant_denied"]
    assert events[0].tenant_id == "t2"
    assert events[0].actor_id == "intruder"
    assert events[0].outcome == "denied"


async def test_unknown_reference_returns_none(service) -> None:
    assert await service.resolve_reference("DOC-zzzzz", "t1") is None


async def test_batch_returns_only_own_references(service, session_factory) -> None:
    await seed_client(session_factory)
    await seed_client(session_factory, tenant_id="t2", client_id="client-2", name="Other Client SRL")
    own = await _refs_by_type(service, "t1", "client-1")
    foreign = await _refs_by_type(service, "t2", "client-2")

    resolved = await service.resolve_references(
        [own["DOCUMENT"], foreign["DOCUMENT"], "DOC-nope1", own["THREAD"], own["DOCUMENT"], ""],
        "t1",
    )
    assert list(resolved) == [own["DOCUMENT"], own["THREAD"]]


async def test_batch_over_limit_is_rejected(service) -> None:
    with pytest.raises(ContextValidationError):
        await service.resolve_references([f"DOC-{i:05d}" for i in range(101)], "t1")
    with pytest.raises(ContextValidationError):
        await service.resolve_references("DOC-abcde", "t1")


async def test_empty_batch_skips_the_store(runtime) -> None:
    def _no_sessions():
        raise AssertionError("store should not be touched")

    service = ContextService(dataclasses.replace(runtime, session_factory=_no_sessions))
    assert await service.resolve_references([], "t1") == {}
    assert await service.resolve_references(["", "  "], "t1") == {}


async def test_deleted_source_is_omitted(service, session_factory) -> None:
    await seed_client(session_factory)
    refs = await _refs_by_type(service, "t1", "client-1")
    async with session_factory() as session:
        await session.execute(delete(Document).where(Document.id == "client-1-doc-0"))
        await session.commit()
    assert await service.resolve_reference(refs["DOCUMENT"], "t1") is None
    assert refs["DOCUMENT"] not in await service.resolve_references([refs["DOCUMENT"]], "t1")

from __future__ import annotations

import logging

import pytest
from sqlalchemy import select

from contextengine.core.config import get_settings
from contextengine.domain.models import ContextReference
from contextengine.persistence.guards import TenantScopeError, tenant_scoped
from contextengine.persistence.repos import references as references_repo
from contextengine.services.context.access import ensure_same_tenant


def test_same_tenant_is_allowed() -> None:
    assert ensure_same_tenant("t1", "t1", resource_type="CLIENT", resource_id="client-1")


def test_cross_tenant_is_denied_and_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        assert not ensure_same_tenant("t1", "t2", resource_type="CLIENT", resource_id="client-1")
    assert "context_access_denied" in caplog.text


def test_missing_requesting_tenant_is_denied() -> None:
    assert not ensure_same_tenant("t1", "", resource_type="CLIENT", resource_id="client-1")


def test_tenant_scoped_adds_predicate() -> None:
    stmt = tenant_scoped(select(ContextReference), ContextReference, "t1")
    assert "tenant_id" in str(stmt)


def test_tenant_scoped_requires_tenant(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()
    with pytest.raises(TenantScopeError):
        tenant_scoped(select(ContextReference), ContextReference, None)


async def test_reference_repo_requires_tenant(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()
    with pytest.raises(TenantScopeError):
        await references_repo.list_by_ref_ids_for_tenant(None, ["DOC-aaaaa"], None)  # type: ignore[arg-type]

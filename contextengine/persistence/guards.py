from __future__ import annotations

from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import Select

from contextengine.core.config import get_settings


StatementT = TypeVar("StatementT", bound=Select)


@dataclass(frozen=True)
class TenantScopeError(RuntimeError):
    # Raised when a tenant-scoped query is built without a tenant id.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantScopeError("Tenant predicate required but tenant_id is missing")


def tenant_scoped(stmt: StatementT, model, tenant_id: str | None) -> StatementT:
    # Every tenant-filtered read in the repos goes through this helper.
    require_tenant_id(tenant_id)
    return stmt.where(model.tenant_id == tenant_id)

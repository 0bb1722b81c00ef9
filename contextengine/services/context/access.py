from __future__ import annotations

import logging


logger = logging.getLogger(__name__)


def ensure_same_tenant(
    resource_tenant: str | None,
    requesting_tenant: str | None,
    *,
    resource_type: str,
    resource_id: str | None,
) -> bool:
    """Return True only when the caller's tenant owns the resource.

    A mismatch is logged and reported as False so callers can answer exactly as
    they would for a missing resource.
    """
    if resource_tenant is not None and requesting_tenant is not None and resource_tenant == requesting_tenant:
        return True
    logger.warning(
        "context_access_denied resource_type=%s resource_id=%s requesting_tenant=%s owner_tenant=%s",
        resource_type,
        resource_id,
        requesting_tenant,
        resource_tenant,
    )
    return False

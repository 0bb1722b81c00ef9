from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.domain.models import AuditEvent


logger = logging.getLogger(__name__)

# Context payloads can carry document text and mail bodies; audit rows must not.
_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "content", "body", "preview"]
_REDACTED_VALUE = "[REDACTED]"

ACTOR_USER = "user"
ACTOR_SYSTEM = "system"
OUTCOME_DENIED = "denied"

EVENT_CROSS_TENANT_DENIED = "context.reference.cross_tenant_denied"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    commit: bool = False,
) -> None:
    # Audit rows are best-effort; a failed write never breaks the calling flow.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    try:
        session.add(event)
        if commit:
            await session.commit()
        else:
            await session.flush()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)


async def record_cross_tenant_denial(
    session: AsyncSession,
    *,
    requesting_tenant: str,
    owner_tenant: str,
    actor_id: str | None,
    resource_type: str,
    resource_id: str,
) -> None:
    """Persist a denied cross-tenant access under the requesting tenant.

    The owner tenant goes into metadata only, so the requester's audit trail
    never exposes rows from the other tenant.
    """
    await record_event(
        session=session,
        tenant_id=requesting_tenant,
        actor_type=ACTOR_USER if actor_id else ACTOR_SYSTEM,
        actor_id=actor_id,
        event_type=EVENT_CROSS_TENANT_DENIED,
        outcome=OUTCOME_DENIED,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata={"owner_tenant_id": owner_tenant},
        commit=True,
    )

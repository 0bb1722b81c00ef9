from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextengine.core.config import Settings, get_settings
from contextengine.domain.context import ENTITY_CASE
from contextengine.providers.compression.base import Compressor
from contextengine.providers.compression.factory import get_compressor
from contextengine.services.context.cache import ContextCache, get_cache_redis
from contextengine.services.context.renderer import TierBudgets
from contextengine.services.resilience import RetryPolicy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ContextRuntime:
    """Everything one context call needs, passed explicitly instead of held globally."""

    session_factory: async_sessionmaker[AsyncSession]
    cache: ContextCache
    compressor: Compressor
    settings: Settings
    clock: Callable[[], datetime] = field(default=_utcnow)

    def now(self) -> datetime:
        return self.clock()

    def validity(self, entity_type: str) -> timedelta:
        if entity_type == ENTITY_CASE:
            return timedelta(hours=self.settings.case_validity_hours)
        return timedelta(hours=self.settings.client_validity_hours)

    @property
    def budgets(self) -> TierBudgets:
        return TierBudgets(
            standard_tokens=self.settings.standard_tier_tokens,
            critical_tokens=self.settings.critical_tier_tokens,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_ms=self.settings.compression_timeout_ms,
            max_attempts=self.settings.compression_max_attempts,
            backoff_ms=self.settings.compression_backoff_ms,
        )


async def build_default_runtime() -> ContextRuntime:
    # Imported lazily so tests can build runtimes without touching the default engine.
    from contextengine.persistence.db import SessionLocal

    settings = get_settings()
    redis = await get_cache_redis()
    return ContextRuntime(
        session_factory=SessionLocal,
        cache=ContextCache(redis, settings.context_cache_prefix, schema_version=settings.context_schema_version),
        compressor=get_compressor(),
        settings=settings,
    )

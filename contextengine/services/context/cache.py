from __future__ import annotations

import asyncio
import base64
import logging
import math
from datetime import datetime
from typing import Iterable

from pydantic import ValidationError
from redis.asyncio import Redis

from contextengine.core.config import get_settings
from contextengine.domain.context import TIERS, ContextResult


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_cache_redis() -> Redis | None:
    # Reuse one Redis client per event loop; None disables caching.
    settings = get_settings()
    if not settings.context_cache_enabled:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("context_cache_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _encode_id(entity_id: str) -> str:
    # url-safe base64 keeps arbitrary ids from colliding with the key separator.
    return base64.urlsafe_b64encode(entity_id.encode("utf-8")).decode("ascii").rstrip("=")


class ContextCache:
    """Best-effort per-entity, per-tier cache of rendered context results.

    Every backend failure is logged and treated as a miss or a no-op so the
    surrounding read or regeneration always proceeds.
    """

    def __init__(
        self, redis: Redis | None, prefix: str | None = None, *, schema_version: int | None = None
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or settings.context_cache_prefix
        # Part of every key, so tiers rendered under an older schema are never served.
        self._schema_version = settings.context_schema_version if schema_version is None else schema_version

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    def key(self, entity_type: str, entity_id: str, tier: str) -> str:
        return f"{self._prefix}:v{self._schema_version}:{entity_type}:{_encode_id(entity_id)}:{tier}"

    async def get(self, entity_type: str, entity_id: str, tier: str) -> ContextResult | None:
        if self._redis is None:
            return None
        key = self.key(entity_type, entity_id, tier)
        try:
            payload = await self._redis.get(key)
        except Exception as exc:  # noqa: BLE001 - cache reads degrade to a miss
            logger.warning("context_cache_read_failed key=%s error=%s", key, type(exc).__name__)
            return None
        if payload is None:
            return None
        try:
            return ContextResult.model_validate_json(payload)
        except (ValidationError, ValueError):
            logger.warning("context_cache_payload_invalid key=%s", key)
            return None

    async def set(self, result: ContextResult, *, valid_until: datetime, now: datetime) -> bool:
        if self._redis is None:
            return False
        ttl = math.floor((valid_until - now).total_seconds())
        if ttl <= 0:
            return False
        key = self.key(result.entity_type, result.entity_id, result.tier)
        try:
            await self._redis.set(key, result.model_dump_json(), ex=ttl)
        except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
            logger.warning("context_cache_write_failed key=%s error=%s", key, type(exc).__name__)
            return False
        return True

    async def populate(self, results: Iterable[ContextResult], *, valid_until: datetime, now: datetime) -> int:
        written = 0
        for result in results:
            if await self.set(result, valid_until=valid_until, now=now):
                written += 1
        return written

    async def invalidate(self, entity_type: str, entity_id: str) -> None:
        if self._redis is None:
            return
        keys = [self.key(entity_type, entity_id, tier) for tier in TIERS]
        try:
            # One multi-key DEL removes every tier together.
            await self._redis.delete(*keys)
        except Exception as exc:  # noqa: BLE001 - invalidation failures fall back to TTL expiry
            logger.warning(
                "context_cache_invalidate_failed entity_type=%s entity_id=%s error=%s",
                entity_type,
                entity_id,
                type(exc).__name__,
            )

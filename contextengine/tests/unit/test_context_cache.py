from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone

from contextengine.domain.context import ContextResult
from contextengine.services.context.cache import ContextCache


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class StubRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.delete_calls: list[tuple[str, ...]] = []
        self.fail = False

    async def get(self, key: str):
        if self.fail:
            raise ConnectionError("down")
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        if self.fail:
            raise ConnectionError("down")
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str):
        if self.fail:
            raise ConnectionError("down")
        self.delete_calls.append(keys)
        return sum(1 for key in keys if self.store.pop(key, None) is not None)


def _result(tier: str = "full", entity_id: str = "client/1") -> ContextResult:
    return ContextResult(
        entity_type="CLIENT",
        entity_id=entity_id,
        tenant_id="t1",
        tier=tier,
        content=f"## Client: Acme ({tier})",
        token_count=6,
        version=1,
        generated_at=NOW,
        valid_until=NOW + timedelta(hours=24),
    )


def test_key_encodes_entity_id() -> None:
    cache = ContextCache(StubRedis(), "ctx", schema_version=3)
    encoded = base64.urlsafe_b64encode(b"client/1").decode("ascii").rstrip("=")
    assert cache.key("CLIENT", "client/1", "standard") == f"ctx:v3:CLIENT:{encoded}:standard"
    assert "/" not in cache.key("CLIENT", "client/1", "standard").split(":")[3]


def test_schema_version_separates_keys() -> None:
    old = ContextCache(StubRedis(), "ctx", schema_version=1)
    new = ContextCache(StubRedis(), "ctx", schema_version=2)
    assert old.key("CASE", "case-1", "full") != new.key("CASE", "case-1", "full")


async def test_set_then_get_round_trips_with_ttl() -> None:
    redis = StubRedis()
    cache = ContextCache(redis, "ctx")
    result = _result()
    assert await cache.set(result, valid_until=NOW + timedelta(hours=2, seconds=30), now=NOW)
    assert redis.ttls[cache.key("CLIENT", "client/1", "full")] == 7230
    assert await cache.get("CLIENT", "client/1", "full") == result


async def test_expired_validity_is_not_cached() -> None:
    redis = StubRedis()
    cache = ContextCache(redis, "ctx")
    assert not await cache.set(_result(), valid_until=NOW, now=NOW)
    assert not await cache.set(_result(), valid_until=NOW + timedelta(milliseconds=500), now=NOW)
    assert redis.store == {}


async def test_invalidate_removes_all_tiers_in_one_call() -> None:
    redis = StubRedis()
    cache = ContextCache(redis, "ctx")
    valid_until = NOW + timedelta(hours=1)
    written = await cache.populate([_result(tier) for tier in ("full", "standard", "critical")], valid_until=valid_until, now=NOW)
    assert written == 3
    await cache.invalidate("CLIENT", "client/1")
    assert redis.store == {}
    assert len(redis.delete_calls) == 1
    assert len(redis.delete_calls[0]) == 3


async def test_invalid_payload_is_a_miss(caplog) -> None:
    redis = StubRedis()
    cache = ContextCache(redis, "ctx")
    redis.store[cache.key("CLIENT", "client/1", "full")] = "{not json"
    with caplog.at_level(logging.WARNING):
        assert await cache.get("CLIENT", "client/1", "full") is None
    assert "context_cache_payload_invalid" in caplog.text


async def test_backend_failures_degrade_quietly(caplog) -> None:
    redis = StubRedis()
    redis.fail = True
    cache = ContextCache(redis, "ctx")
    with caplog.at_level(logging.WARNING):
        assert await cache.get("CLIENT", "client/1", "full") is None
        assert not await cache.set(_result(), valid_until=NOW + timedelta(hours=1), now=NOW)
        await cache.invalidate("CLIENT", "client/1")
    assert "context_cache_read_failed" in caplog.text
    assert "context_cache_write_failed" in caplog.text
    assert "context_cache_invalidate_failed" in caplog.text


async def test_disabled_cache_is_a_no_op() -> None:
    cache = ContextCache(None, "ctx")
    assert not cache.enabled
    assert await cache.get("CLIENT", "client/1", "full") is None
    assert not await cache.set(_result(), valid_until=NOW + timedelta(hours=1), now=NOW)
    await cache.invalidate("CLIENT", "client/1")

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from contextengine.core.config import Settings, get_settings
from contextengine.domain.models import Base
from contextengine.providers.compression.fake import FakeCompressor
from contextengine.services.context.cache import ContextCache
from contextengine.services.context.runtime import ContextRuntime
from contextengine.services.context.service import ContextService


FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class StubRedis:
    """In-memory stand-in for the redis.asyncio calls the cache makes."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.delete_calls: list[tuple[str, ...]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        self.delete_calls.append(tuple(keys))
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class FixedClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Keep env overrides from leaking between tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        context_cache_enabled=True,
        context_cache_prefix="test:ctx",
        standard_tier_tokens=120,
        critical_tier_tokens=40,
        compression_provider="fake",
        compression_timeout_ms=1000,
        compression_max_attempts=1,
        compression_backoff_ms=1,
        max_refs_per_request=100,
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def stub_redis() -> StubRedis:
    return StubRedis()


@pytest.fixture
def compressor() -> FakeCompressor:
    return FakeCompressor()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def runtime(session_factory, stub_redis, compressor, test_settings, clock) -> ContextRuntime:
    return ContextRuntime(
        session_factory=session_factory,
        cache=ContextCache(
            stub_redis, test_settings.context_cache_prefix, schema_version=test_settings.context_schema_version
        ),
        compressor=compressor,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def service(runtime) -> ContextService:
    return ContextService(runtime)

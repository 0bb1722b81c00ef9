from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from contextengine.core.config import Settings, get_settings


def engine_options(settings: Settings, *, pooled: bool = True) -> dict[str, Any]:
    """Engine keyword arguments for the configured database.

    SQLite gets no pool sizing. One-shot callers (migrations, scripts) pass
    ``pooled=False`` so connections close with the engine.
    """
    if not pooled:
        return {"poolclass": NullPool}
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options["pool_size"] = max(1, settings.db_pool_size)
    options["max_overflow"] = max(0, settings.db_max_overflow)
    options["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        # Applied per connection by asyncpg.
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)}
        }
    return options


def build_engine(settings: Settings | None = None, *, pooled: bool = True) -> AsyncEngine:
    settings = settings or get_settings()
    return create_async_engine(settings.database_url, **engine_options(settings, pooled=pooled))


engine = build_engine()
# Context records are read back after commit when results are assembled.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

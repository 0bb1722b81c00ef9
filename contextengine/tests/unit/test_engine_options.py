from __future__ import annotations

from sqlalchemy.pool import NullPool

from contextengine.core.config import Settings
from contextengine.persistence.db import engine_options


def test_sqlite_gets_no_pool_sizing() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    assert options == {"pool_pre_ping": True}


def test_postgres_pool_and_statement_timeout() -> None:
    settings = Settings(
        database_url="postgresql+asyncpg://u:p@db/ctx",
        db_pool_size=0,
        db_max_overflow=-1,
        db_statement_timeout_ms=5000,
    )
    options = engine_options(settings)
    assert options["pool_size"] == 1
    assert options["max_overflow"] == 0
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "5000"}}


def test_statement_timeout_can_be_disabled() -> None:
    settings = Settings(database_url="postgresql+asyncpg://u:p@db/ctx", db_statement_timeout_ms=0)
    assert "connect_args" not in engine_options(settings)


def test_one_shot_callers_skip_pooling() -> None:
    options = engine_options(Settings(database_url="postgresql+asyncpg://u:p@db/ctx"), pooled=False)
    assert options == {"poolclass": NullPool}

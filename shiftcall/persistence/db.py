from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shiftcall.core.config import get_settings


def build_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools so sweepers and dispatch workers cannot starve the API.
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.db_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
            }
    else:
        # Concurrent sweeps on one SQLite file wait for the writer lock instead of failing fast.
        engine_kwargs["connect_args"] = {"timeout": 30}
    return create_async_engine(url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


def is_postgres(session: AsyncSession) -> bool:
    # Row locks and SKIP LOCKED only exist on Postgres; SQLite serializes writers instead.
    bind = session.get_bind()
    return bind.dialect.name == "postgresql"


from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pushrelay.core.config import Settings, get_settings
from pushrelay.domain.models import Base


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        # SQLite (dev runs and tests) keeps SQLAlchemy's default pool.
        return options
    # A push burst must queue on the pool rather than open unbounded Postgres connections.
    options.update(
        pool_size=max(1, int(settings.api_db_pool_size)),
        max_overflow=max(0, int(settings.api_db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **_engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


async def init_models() -> None:
    # Create tables directly for SQLite dev runs and tests; Postgres uses Alembic.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_models() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

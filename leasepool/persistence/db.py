from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from leasepool.core.config import Settings
from leasepool.domain.models import Base


def engine_kwargs(settings: Settings) -> dict[str, Any]:
    # Configure bounded asyncpg pools; SQLite test engines keep the driver defaults.
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return kwargs
    kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return kwargs


def build_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, **engine_kwargs(settings))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    # Create missing tables; production schemas are managed out of band.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

"""Database engine for the hwmgr object store.

The engine and session factory are created on first use from
``HWMGR_DATABASE_URL`` and torn down by ``close_db``, so tests can point
each run at a fresh database.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from hwmgr.config import get_settings
from hwmgr.logging import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine.

    SQLite connections wait up to the store timeout for a competing
    writer's lock instead of failing at once, since pools progressing
    side by side all write the same inventory record.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if make_url(settings.database_url).get_backend_name() == "sqlite":
            connect_args["timeout"] = settings.store_timeout_seconds
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            connect_args=connect_args,
        )
    return _engine


async def init_db() -> None:
    """Create any missing tables. Call on startup."""
    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("database_ready", tables=sorted(SQLModel.metadata.tables))


async def close_db() -> None:
    """Dispose of the engine. Call on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Yield a session that commits when the block exits cleanly.

    Objects stay usable after the commit; the object store hands them
    back to callers detached from any session.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

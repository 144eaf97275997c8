"""Database connection and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payroll_compute.config import get_settings
from payroll_compute.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """Create async database engine.

    Pool sizing applies to PostgreSQL only; SQLite keeps its default pool.
    """
    settings = get_settings()
    url = database_url or settings.database_url
    options: dict[str, Any] = {"echo": False}
    if url.startswith("postgresql"):
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return create_async_engine(url, **options)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the engine's standard session options."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create any missing payroll tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = make_session_factory(_engine)
    return _engine, _session_factory


async def acquire_advisory_lock(session: AsyncSession, key: str) -> bool:
    """Acquire a PostgreSQL advisory lock keyed by a payroll run id.

    Returns True if lock acquired, False if already held.
    """
    result = await session.execute(
        text("SELECT pg_try_advisory_lock(hashtext(:key))"),
        {"key": key},
    )
    return bool(result.scalar())


async def release_advisory_lock(session: AsyncSession, key: str) -> None:
    await session.execute(
        text("SELECT pg_advisory_unlock(hashtext(:key))"),
        {"key": key},
    )

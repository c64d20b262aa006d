"""Async database engine and session management."""

from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from hlsingest.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def create_engine(
    database_url: Optional[str] = None,
    use_null_pool: bool = False,
) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite connections wait on locks instead of failing immediately, since
    workers and the API write to the same file concurrently.

    Args:
        database_url: Database URL (uses settings if not provided)
        use_null_pool: Disable connection pooling (one event loop per task)

    Returns:
        Configured AsyncEngine
    """
    url = database_url or settings.DATABASE_URL
    kwargs = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs["pool_pre_ping"] = True
    if use_null_pool:
        kwargs["poolclass"] = NullPool
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine()
async_session_maker = create_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(target: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    # Registers the ingest tables on Base.metadata
    from hlsingest.modules.ingest import models  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database(factory: Optional[async_sessionmaker] = None) -> bool:
    """Return True when the database answers a trivial query."""
    try:
        async with (factory or async_session_maker)() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False

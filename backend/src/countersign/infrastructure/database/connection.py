"""Database connection and session management."""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from countersign.config import Settings, get_settings
from countersign.shared.exceptions import CountersignError

# Engine and session factory (lazy initialized)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_kwargs(settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": settings.app_debug}
    # SQLite (local runs, tests) has no connection pool sizing
    if not settings.database_url.startswith("sqlite"):
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
        kwargs["pool_pre_ping"] = True
    return kwargs


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        if settings is None:
            settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_kwargs(settings))
    assert _engine is not None
    return _engine


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        engine = get_engine(settings)
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    assert _async_session_factory is not None
    return _async_session_factory


async def dispose_engine() -> None:
    """Dispose the engine on shutdown."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit the session when the block succeeds, roll it back when it raises.

    Errors flagged ``persist_on_error`` (an expired link observed, a wrong
    one-time code counted) are refusals whose bookkeeping must outlive the
    failed request, so their pending writes are committed before re-raising.
    """
    try:
        yield session
    except CountersignError as exc:
        if exc.persist_on_error:
            await session.commit()
        else:
            await session.rollback()
        raise
    except Exception:
        await session.rollback()
        raise
    else:
        await session.commit()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a database session.

    Every request is one unit of work; see `unit_of_work`.
    """
    session_factory = get_session_factory()
    async with session_factory() as session, unit_of_work(session):
        yield session


# Type alias for dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]

"""Database session management."""

from functools import lru_cache
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from trustpipe.config import Settings, get_settings
from trustpipe.errors import PersistenceError

logger = structlog.get_logger()

T = TypeVar("T")

WRITE_ATTEMPTS = 2


def create_engine(settings: Optional[Settings] = None) -> Optional[AsyncEngine]:
    """New async engine for the configured database, or None when unset."""
    settings = settings or get_settings()
    if not settings.database_url:
        return None
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=5,
        pool_timeout=settings.external_call_timeout_seconds,
        pool_recycle=300,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache
def get_engine() -> Optional[AsyncEngine]:
    """Process-wide engine for the worker's event loop."""
    return create_engine()


@lru_cache
def get_session_factory() -> Optional[async_sessionmaker[AsyncSession]]:
    engine = get_engine()
    if engine is None:
        return None
    return create_session_factory(engine)


async def dispose_engine() -> None:
    engine = get_engine()
    if engine is not None:
        await engine.dispose()
    get_session_factory.cache_clear()
    get_engine.cache_clear()


async def write_with_retry(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
    work: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Run ``work`` in a transaction, retrying once inline on a DB error.

    A second failure is escalated as a PersistenceError, which the
    dispatcher dead-letters without further retries.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, WRITE_ATTEMPTS + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await work(session)
        except SQLAlchemyError as e:
            last_error = e
            logger.warning("Database write failed", operation=operation, attempt=attempt, error=str(e))
    raise PersistenceError(f"{operation} failed: {last_error}") from last_error

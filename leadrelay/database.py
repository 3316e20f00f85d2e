"""
Async SQLAlchemy database engine and session management.
Uses asyncpg driver for PostgreSQL in production, aiosqlite for local runs and tests.
CRITICAL: expire_on_commit=False prevents lazy-loading issues in async contexts.
"""
import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine = None
_async_session_factory = None


class Base(DeclarativeBase):
    pass


def create_engine_from_url(url: str, pool_size: int = 20, max_overflow: int = 10, echo: bool = False) -> AsyncEngine:
    """Build an async engine. SQLite does not accept pool sizing arguments."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
    )


def _get_engine():
    global _engine
    if _engine is None:
        from leadrelay.config import get_settings
        settings = get_settings()
        _engine = create_engine_from_url(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.app_env == "development",
        )
    return _engine


def _get_session_factory():
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            _get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _async_session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory handed to repositories by the composition root."""
    return _get_session_factory()


async def create_tables() -> None:
    """Create missing tables (local/dev runs; production uses Alembic)."""
    import leadrelay.models  # noqa: F401 - registers mappers on Base.metadata

    async with _get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    session_factory = _get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Database session error, rolling back: %s", str(e))
            await session.rollback()
            raise
        finally:
            await session.close()

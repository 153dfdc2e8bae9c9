"""Card delivery database module.

- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Engine and session factory construction via psycopg

The engine is built once per process by the caller and handed to the
gateway; nothing here is initialized lazily at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from carddelivery.core.config import DatabaseSettings


def get_async_database_url(settings: DatabaseSettings) -> str:
    """Build the async driver URL from database settings.

    Args:
        settings: Database settings holding the configured DSN.

    Returns:
        PostgreSQL connection URL using the psycopg async driver.
    """
    url = str(settings.url)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def create_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create the async engine with pool settings applied."""
    return create_async_engine(
        get_async_database_url(settings),
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        echo=settings.echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``.

    Sessions keep attributes loaded after commit so rows can be mapped to
    records once the transaction is closed.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_engine(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool.

    Call this during application shutdown to clean up connections.
    """
    await engine.dispose()

"""
Database Connection Module
Handles the database connection using the SQLAlchemy async engine.
"""

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from cafe_orders.core.config import get_settings
from cafe_orders.core.exceptions import TransientStorageError

logger = logging.getLogger(__name__)


# Base class for all our models
class Base(DeclarativeBase):
    pass


def create_engine_from_settings(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Build an async engine.

    Pool options only apply to server databases; SQLite uses its own pool.
    """
    settings = get_settings()
    url = database_url or settings.database_url

    options = {"echo": settings.database_echo}
    if not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10, pool_pre_ping=True)

    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new database sessions."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Objects remain accessible after commit
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    return create_engine_from_settings()


@lru_cache()
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory bound to get_engine()."""
    return create_session_factory(get_engine())


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Register models on the metadata
    from cafe_orders import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


@asynccontextmanager
async def storage_errors(operation: str) -> AsyncIterator[None]:
    """
    Translate driver-level connectivity failures into TransientStorageError.

    Only infrastructure failures are translated; integrity or programming
    errors propagate unchanged.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise TransientStorageError(
            f"Storage unavailable during {operation}",
            details={"operation": operation},
        ) from e

"""
Database connection management.

`Database` owns the async engine and session factory. One instance is built at
process start (FastAPI lifespan, worker entrypoint, seed script) and passed to
whatever needs it; there is no module-level engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from database.unit_of_work import UnitOfWork
from shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Database:
    """Async SQLAlchemy engine + session factory."""

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 5,
        pool_timeout: float = 10.0,
        echo: bool = False,
    ) -> None:
        self.url = url
        self.engine: AsyncEngine = create_async_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        settings = settings or get_settings()
        return cls(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
            echo=settings.DB_ECHO,
        )

    def unit_of_work(self) -> UnitOfWork:
        """Open a new UnitOfWork; use as `async with db.unit_of_work() as uow:`."""
        return UnitOfWork(self.session_factory())

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Plain session for read-only queries and seed scripts."""
        async with self.session_factory() as session:
            yield session

    async def ping(self) -> bool:
        """Return True if `SELECT 1` succeeds."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database ping failed: {e}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")

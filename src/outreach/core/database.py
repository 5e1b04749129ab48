"""Async SQLAlchemy engine ownership for the pipeline service.

Provides:
- Base: Declarative base for all pipeline tables
- Database: explicitly constructed data-access handle owning the engine,
  the session factory, and the connection pool lifecycle

The application lifespan builds exactly one Database and hands its
session() callable to repositories. Nothing in the codebase reaches a
module-level engine.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = structlog.get_logger(__name__)


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for pipeline models (deals, activities, notifications)."""


# ── Database Handle ─────────────────────────────────────────────────────────


class Database:
    """Owns one AsyncEngine and its session factory.

    Args:
        url: SQLAlchemy async database URL (e.g. postgresql+asyncpg://...).
        pool_size: Connection pool size.
        max_overflow: Extra connections allowed beyond pool_size.
        echo: Log emitted SQL.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self._engine: AsyncEngine | None = create_async_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            echo=echo,
        )
        self._sessionmaker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database has been disposed")
        return self._engine

    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield an AsyncSession; closed when the consumer finishes."""
        async with self._sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        """Create all tables registered on Base.metadata if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all tables registered on Base.metadata (test teardown)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def ping(self) -> None:
        """Round-trip a trivial query; raises on connectivity failure."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        """Dispose of the engine and close all pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info("database.disposed")

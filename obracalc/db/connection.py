"""Database connection and session management for ObraCalc.

Provides async SQLAlchemy session management with connection pooling.
The ``Database`` object is created by the entry point and passed to the
repositories; there is no module-level engine.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from obracalc.config import DBConfig
from obracalc.db.models import Base


class Database:
    """Owns the async engine and session factory."""

    def __init__(self, config: DBConfig):
        self.config = config
        self.engine: AsyncEngine = self._create_engine(config)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
        )

    @staticmethod
    def _create_engine(config: DBConfig) -> AsyncEngine:
        engine_kwargs: dict = {"echo": config.echo}

        url = config.url.lower()
        if "sqlite" in url:
            # In-memory databases must share one connection across sessions
            if ":memory:" in url:
                engine_kwargs.update({
                    "poolclass": StaticPool,
                    "connect_args": {"check_same_thread": False},
                })
        else:
            engine_kwargs.update({
                "pool_size": config.pool_size,
                "max_overflow": config.pool_max_overflow,
                "pool_timeout": config.pool_timeout,
                "pool_pre_ping": True,  # Verify connections before using
                "pool_recycle": 3600,  # Recycle connections after 1 hour
            })

        return create_async_engine(config.url, **engine_kwargs)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session (context manager).

        Commits on success, rolls back on any exception.

        Usage:
            async with db.session() as session:
                result = await session.execute(query)
        """
        session = self.session_factory()

        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create all tables (and the pgvector extension on PostgreSQL).

        Note: For production, use migrations instead.
        """
        async with self.engine.begin() as conn:
            if self.dialect == "postgresql":
                from sqlalchemy import text

                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close database engine and dispose connections.

        Call this on application shutdown.
        """
        await self.engine.dispose()

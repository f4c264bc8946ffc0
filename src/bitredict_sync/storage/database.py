"""Async engine and session handling for the event store.

PostgreSQL (asyncpg) in production, aiosqlite for local runs and tests.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bitredict_sync.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from bitredict_sync.config import DatabaseSettings

logger = logging.getLogger(__name__)

ASYNC_POSTGRES_SCHEME = "postgresql+asyncpg://"


def normalize_async_database_url(database_url: str) -> str:
    """Map a plain `postgresql://` URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        return ASYNC_POSTGRES_SCHEME + database_url[len("postgresql://") :]
    return database_url


def create_async_db_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    statement_timeout_ms: int | None = None,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine.

    Only PostgreSQL gets a sized pool and a server-side `statement_timeout`;
    SQLite keeps SQLAlchemy's defaults.
    """
    url = normalize_async_database_url(database_url)
    options: dict[str, Any] = {"echo": echo}
    if url.startswith(ASYNC_POSTGRES_SCHEME):
        options.update(pool_size=pool_size, max_overflow=0, pool_pre_ping=True)
        if statement_timeout_ms:
            options["connect_args"] = {
                "server_settings": {"statement_timeout": str(statement_timeout_ms)}
            }
    return create_async_engine(url, **options)


class DatabaseManager:
    """Process-wide connection pool with an explicit lifecycle.

    `initialize()` builds the engine, `get_async_session()` hands out
    sessions that commit on success and roll back on error, and
    `shutdown()` disposes the pool.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        statement_timeout_ms: int | None = 30_000,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self._pool_size = pool_size
        self._statement_timeout_ms = statement_timeout_ms
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> DatabaseManager:
        return cls(
            settings.url,
            pool_size=settings.pool_max,
            statement_timeout_ms=settings.statement_timeout_ms,
        )

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> DatabaseManager:
        """Wrap an existing engine (in-memory SQLite in tests)."""
        manager = cls(str(engine.url))
        manager._engine = engine
        return manager

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_db_engine(
                self.database_url,
                pool_size=self._pool_size,
                statement_timeout_ms=self._statement_timeout_ms,
                echo=self._echo,
            )
            logger.debug("Database engine created for %s", self._engine.url.render_as_string())
        return self._engine

    def initialize(self) -> None:
        self.engine  # noqa: B018

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on exit and rolls back if the body raises."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._sessions()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        """Create every table directly; deployments run the Alembic migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def shutdown(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database connections closed")

"""
Message Store Backend — Shared Database Handle
================================================

What:  The single ``DatabaseHandle`` a backend owns: an async SQLAlchemy engine
       (connection pool) plus a session factory.
How:   ``create_database_handle()`` validates and normalizes the URL, then builds
       the engine. Every route stage receives the same handle object; none of
       them owns it and only the backend disposes it on shutdown.
Who:   Built by ``StoreBackend.__init__``; used by handlers, middleware, the
       migration runner and the health check.

Concurrency:
    The engine's pool hands each concurrent operation its own connection, so
    the handle is safe to share across in-flight requests without extra locking.

Connection Pooling (non-SQLite URLs):
    pool_size / max_overflow come from ServerConfig (defaults 20 / 10)
    pool_pre_ping validates connections before use
    pool_recycle=3600 recycles connections every hour
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, InvalidRequestError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from msgstore.config import ServerConfig
from msgstore.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Sync driver names mapped to the async driver the engine needs
_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def normalize_database_url(raw: str) -> URL:
    """
    Parse a connection string and pick an async driver when none is given.

    ``postgresql://…`` (the usual form of a DATABASE_URL) becomes
    ``postgresql+asyncpg://…``. Anything unparseable raises ConfigurationError.
    """
    if not raw or not raw.strip():
        raise ConfigurationError(message="Database URL must not be empty", field="database_url")
    try:
        url = make_url(raw.strip())
    except ArgumentError as exc:
        raise ConfigurationError(
            message="Database URL is malformed",
            field="database_url",
            context={"error": str(exc)},
        ) from exc

    if url.drivername in _ASYNC_DRIVERS:
        url = url.set(drivername=_ASYNC_DRIVERS[url.drivername])
    return url


class DatabaseHandle:
    """
    Shared, concurrency-safe handle to the backing store.

    Exposes read-only accessors and a session context manager. Handlers must
    not call ``dispose()``; the owning backend does on shutdown.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        # expire_on_commit=False: attributes stay readable after commit
        self._session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def url(self) -> str:
        """Connection URL with the password masked (safe to log)."""
        return self._engine.url.render_as_string(hide_password=True)

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Provide a session for one unit of work.

        Commits when the block exits normally, rolls back and re-raises on any
        exception, and always returns the connection to the pool.

        Example usage in a handler:
            async def list_messages(db, request):
                async with db.session() as session:
                    rows = await session.execute(select(messages))
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def ping(self) -> bool:
        """Run ``SELECT 1``; False when the database is unreachable."""
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Database ping failed for %s: %s", self.url, str(e))
            return False
        return True

    async def dispose(self) -> None:
        """Close all pooled connections. Called by the owner on shutdown."""
        await self._engine.dispose()

    def __repr__(self) -> str:
        return f"<DatabaseHandle url={self.url!r}>"


def create_database_handle(config: ServerConfig) -> DatabaseHandle:
    """
    Build the shared handle from a ServerConfig.

    Raises:
        ConfigurationError: malformed URL, unknown or non-async driver, or a
                            driver package that is not installed.
    """
    url = normalize_database_url(config.database_url)

    engine_options = {
        "echo": config.db_echo,
        "pool_pre_ping": config.db_pool_pre_ping,
    }
    # SQLite pools (Static/NullPool/QueuePool per URL) reject sizing arguments
    if url.get_backend_name() != "sqlite":
        engine_options.update(
            pool_size=config.db_pool_size,
            max_overflow=config.db_max_overflow,
            pool_recycle=3600,
        )

    try:
        engine = create_async_engine(url, **engine_options)
    except (ArgumentError, InvalidRequestError, ImportError) as exc:
        raise ConfigurationError(
            message=f"Cannot create database engine for driver '{url.drivername}'",
            field="database_url",
            context={"error": str(exc)},
        ) from exc

    handle = DatabaseHandle(engine)
    logger.info("Database handle created for %s", handle.url)
    return handle

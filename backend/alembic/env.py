"""
Alembic Migration Environment
===============================

What:  Runs the message store migrations against an async SQLAlchemy database.
How:   Two entry paths:
       - Programmatic (``StoreBackend.migrate()``): the runner passes an open
         connection in ``config.attributes["connection"]``; it is reused so the
         upgrade runs inside the backend's own transaction.
       - ``alembic`` CLI: builds a throwaway async engine from DATABASE_URL
         (or ``sqlalchemy.url``) and runs over it.
Who:   Alembic, on ``upgrade`` / ``downgrade`` / ``revision``.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Migrations are written by hand with op.*; no ORM metadata to autogenerate from
target_metadata = None


def _database_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    from msgstore.config import get_settings
    from msgstore.database import normalize_database_url

    settings = get_settings()
    settings.validate_required()
    return normalize_database_url(settings.database_url).render_as_string(hide_password=False)


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting (``alembic upgrade --sql``)."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = create_async_engine(_database_url(), poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        do_run_migrations(connection)
    else:
        asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

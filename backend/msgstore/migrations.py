"""
Message Store Backend — Migration Runner
==========================================

What:  Applies pending Alembic migrations through the backend's own engine.
How:   Alembic's programmatic API with connection sharing: the async engine opens
       one transaction, hands its sync connection to ``command.upgrade`` via
       ``Config.attributes["connection"]``, and ``alembic/env.py`` reuses it.
When:  ``StoreBackend.migrate()``, before the listener starts.

Idempotence:
    Alembic records the applied revision in ``alembic_version``; upgrading to
    ``head`` when already at ``head`` runs no migration scripts.

Failure policy:
    Every failure is logged and raised as ``MigrationError``. Nothing is
    swallowed: a half-migrated schema must not serve traffic.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from alembic import command
from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Connection

from msgstore.database import DatabaseHandle
from msgstore.exceptions import MigrationError

logger = logging.getLogger(__name__)

# backend/alembic/, next to the package
DEFAULT_MIGRATIONS_LOCATION = Path(__file__).resolve().parent.parent / "alembic"


def resolve_migrations_location(location: Optional[Union[str, Path]] = None) -> Path:
    """
    Absolute script directory for Alembic.

    ``None`` selects the bundled folder; relative paths resolve against the
    working directory of the running process.
    """
    if location is None:
        return DEFAULT_MIGRATIONS_LOCATION
    return Path(location).expanduser().resolve()


def build_alembic_config(location: Path, connection: Optional[Connection] = None) -> AlembicConfig:
    cfg = AlembicConfig()
    cfg.set_main_option("script_location", str(location))
    if connection is not None:
        cfg.attributes["connection"] = connection
    return cfg


def _upgrade_to_head(connection: Connection, location: Path) -> Optional[str]:
    command.upgrade(build_alembic_config(location, connection), "head")
    return MigrationContext.configure(connection).get_current_revision()


async def run_migrations(db: DatabaseHandle, location: Path) -> Optional[str]:
    """
    Upgrade the database behind ``db`` to the newest revision in ``location``.

    Returns:
        The revision the database is at afterwards.

    Raises:
        MigrationError: folder missing, script error, or database failure.
    """
    if not location.is_dir():
        raise MigrationError(
            message=f"Migrations folder not found: {location}",
            location=str(location),
        )

    logger.info("Applying migrations from %s to %s", location, db.url)
    try:
        async with db.engine.begin() as conn:
            revision = await conn.run_sync(_upgrade_to_head, location)
    except Exception as exc:
        logger.error("Migration failed: %s", str(exc), exc_info=True)
        raise MigrationError(
            message=f"Could not apply migrations: {exc}",
            location=str(location),
            context={"error_type": type(exc).__name__},
        ) from exc

    logger.info("Database schema at revision %s", revision or "<base>")
    return revision

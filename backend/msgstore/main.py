"""
Message Store Backend — Process Entry Point
=============================================

What:  The ``msgstore`` command: reads the environment, builds the backend,
       applies migrations and serves until stopped.
How:   A typer command wrapping ``run()``. Startup errors (missing DATABASE_URL,
       bad configuration, failed migration) print one line to stderr and exit 1.
Who:   ``msgstore`` console script, ``python -m msgstore``, container CMD.

Startup sequence:
    1. Load settings (environment + .env)
    2. Configure logging
    3. Build ServerConfig and StoreBackend (fail fast on bad config)
    4. Register GET /health
    5. Apply migrations (unless --skip-migrations)
    6. Serve on host:port until SIGINT/SIGTERM
"""

import asyncio
import logging
import sys
from typing import Optional

import typer

from msgstore import __version__
from msgstore.backend import StoreBackend
from msgstore.config import Settings, get_settings
from msgstore.exceptions import ConfigurationError, MigrationError
from msgstore.routes.health import health_check

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger once, before anything else logs.

    Format: 2026-10-19T12:00:00 [INFO] msgstore.backend: Registered GET /health (0 middleware)

    Access lines (``msgstore.access``) go through the same handler.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),  # Docker captures stdout
        ],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic.runtime.migration").setLevel(logging.INFO)


# ══════════════════════════════════════════════════════════════════════════
# Backend Assembly
# ══════════════════════════════════════════════════════════════════════════

def create_backend(
    settings: Settings,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> StoreBackend:
    """Build a backend from settings, with the built-in health route registered."""
    config = settings.to_server_config(host=host, port=port)
    backend = StoreBackend(config)
    backend.route("GET", "/health", health_check, name="health")
    return backend


async def run(backend: StoreBackend, migrate: bool = True) -> None:
    """Migrate, then serve. Returns when the server shuts down."""
    if migrate:
        await backend.migrate()
    else:
        logger.info("Skipping migrations (--skip-migrations)")
    await backend.serve()


# ══════════════════════════════════════════════════════════════════════════
# CLI
# ══════════════════════════════════════════════════════════════════════════

cli = typer.Typer(
    help="Message store HTTP backend",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"msgstore {__version__}")
        raise typer.Exit()


@cli.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: HOST or 0.0.0.0)"),
    port: Optional[int] = typer.Option(None, "--port", min=1, max=65535, help="Bind port (default: PORT or 3000)"),
    skip_migrations: bool = typer.Option(False, "--skip-migrations", help="Start without applying migrations"),
    version: Optional[bool] = typer.Option(
        None, "--version", callback=_version_callback, is_eager=True, help="Show the version and exit",
    ),
) -> None:
    """Apply pending migrations and serve the message store API."""
    try:
        settings = get_settings()
        setup_logging(settings.log_level)
        backend = create_backend(settings, host=host, port=port)
        logger.info("Starting message store backend v%s", __version__)
        asyncio.run(run(backend, migrate=not skip_migrations))
    except (ConfigurationError, MigrationError) as exc:
        logger.error("Startup failed: %s", exc.message)
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

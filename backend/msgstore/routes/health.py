"""
Message Store Backend — Health Check Route
============================================

What:  ``GET /health`` for container health checks and load balancer probes.
How:   Pings the shared database handle with ``SELECT 1`` and reports the result.
Who:   Registered by the CLI entry point; library callers may register it too:

           backend.route("GET", "/health", health_check)

Status levels:
    healthy:    database reachable (HTTP 200)
    unhealthy:  database unreachable (HTTP 503, stop routing traffic)

The access log skips this path, so frequent probes don't flood it.
"""

import logging
import time

from starlette.requests import Request
from starlette.responses import JSONResponse

from msgstore import __version__
from msgstore.database import DatabaseHandle
from msgstore.schemas import HealthResponse

logger = logging.getLogger(__name__)

# Module-level: set once when the module loads
_start_time = time.time()


async def health_check(db: DatabaseHandle, request: Request) -> JSONResponse:
    """
    Report service health.

    A lightweight probe runs every few seconds, so it checks connectivity only:
    one ``SELECT 1`` on a pooled connection.
    """
    connected = await db.ping()
    if not connected:
        logger.warning("Health check: database unreachable")

    report = HealthResponse(
        status="healthy" if connected else "unhealthy",
        version=__version__,
        database="connected" if connected else "disconnected",
        dialect=db.dialect,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    return JSONResponse(
        status_code=200 if connected else 503,
        content=report.model_dump(),
    )

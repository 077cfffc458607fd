"""
Message Store Backend — Package Initializer
=============================================

What: A small HTTP backend scaffold: one shared database handle, startup
      migrations, and per-route middleware chains composed at registration.
Who:  Imported by the CLI (``python -m msgstore``), Alembic's env.py and pytest.

Architecture Note:
    ┌─────────────────────────────────────┐
    │     StoreBackend (backend.py)       │  ← owns app, db handle, global middleware
    ├─────────────────────────────────────┤
    │  Route Composition (routing.py)     │  ← descriptor → guarded stage chain
    ├─────────────────────────────────────┤
    │  Global middleware (middleware/)    │  ← security, access log, CORS, bodies
    ├─────────────────────────────────────┤
    │   DatabaseHandle (database.py)      │  ← async SQLAlchemy engine + sessions
    └─────────────────────────────────────┘
"""

# Defined before the submodule imports below: routes/health.py reads it.
__version__ = "1.0.0"

from msgstore.backend import StoreBackend  # noqa: E402
from msgstore.config import CorsPolicy, ServerConfig  # noqa: E402
from msgstore.database import DatabaseHandle  # noqa: E402
from msgstore.routing import RouteDescriptor  # noqa: E402

__all__ = [
    "CorsPolicy",
    "DatabaseHandle",
    "RouteDescriptor",
    "ServerConfig",
    "StoreBackend",
    "__version__",
]

"""
Message Store Backend — Backend Core
======================================

What:  ``StoreBackend`` owns the ASGI app, the one shared ``DatabaseHandle`` and the
       global middleware, and exposes route registration and the lifecycle
       (``migrate`` → ``listen``).
How:   A FastAPI app is built at construction with the global middleware in
       their fixed order. ``route()`` validates a descriptor, composes its chain
       (routing.py) and installs it. ``listen()``/``serve()`` freeze registration
       and hand the app to uvicorn.
Who:   Constructed by the CLI (main.py) or directly by library callers and tests.

Lifecycle:
    construct ──► route()/use_middleware() … ──► await migrate() ──► await serve()
                  (single-threaded startup)       (optional)         (frozen)

    From synchronous code, ``listen(migrate=True)`` runs both steps on one loop.

Global middleware (execution order):
    security headers → access log → CORS → body parsers → caller middleware
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from msgstore import __version__
from msgstore.config import ServerConfig
from msgstore.database import DatabaseHandle, create_database_handle
from msgstore.exceptions import (
    ConfigurationError,
    RouteCollisionError,
    StoreBackendError,
)
from msgstore.middleware.body_parser import PARSERS, BodyParserMiddleware
from msgstore.middleware.bound import DatabaseBoundMiddleware
from msgstore.middleware.logging import AccessLogMiddleware, request_id_var
from msgstore.middleware.security import SecurityHeadersMiddleware
from msgstore.migrations import resolve_migrations_location, run_migrations
from msgstore.responses import GENERIC_SERVER_ERROR, error_response, http_error_response
from msgstore.routing import (
    MiddlewareChain,
    RouteDescriptor,
    RouteHandler,
    RouteMiddleware,
    compose,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Consistent error bodies for failures outside route chains.

    Route stages convert their own failures; these handlers cover what the
    framework raises itself (unknown path, wrong method) and anything escaping
    a plain Starlette middleware.
    """

    @app.exception_handler(StoreBackendError)
    async def handle_store_backend_error(request: Request, exc: StoreBackendError):
        rid = request_id_var.get("")
        logger.warning("[%s] %s: %s", rid, type(exc).__name__, exc.message)
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return http_error_response(exc.status_code, exc.detail, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return http_error_response(500, GENERIC_SERVER_ERROR)


# ══════════════════════════════════════════════════════════════════════════
# Backend Core
# ══════════════════════════════════════════════════════════════════════════

class StoreBackend:
    """
    HTTP backend with one shared database handle and per-route middleware chains.

    Example:
        backend = StoreBackend(ServerConfig(database_url=url, port=3000))

        async def require_bearer(db, request, call_next):
            if not request.headers.get("authorization", "").startswith("Bearer "):
                return JSONResponse({"error": "unauthorized"}, status_code=401)
            return await call_next(request)

        async def read_messages(db, request):
            async with db.session() as session:
                ...

        backend.route("GET", "/messages/:user_id", read_messages, [require_bearer])

        # inside a coroutine
        await backend.migrate()
        await backend.serve()

        # or, from synchronous code
        backend.listen(migrate=True)

    Raises:
        ConfigurationError: from construction when the database URL is unusable.
    """

    def __init__(self, config: ServerConfig):
        if not isinstance(config, ServerConfig):
            raise ConfigurationError(
                message=f"StoreBackend expects a ServerConfig, got {type(config).__name__}",
            )
        self._config = config
        self._db = create_database_handle(config)
        self._chains: Dict[str, MiddlewareChain] = {}
        self._frozen = False

        self._app = FastAPI(
            title="Message Store Backend",
            version=__version__,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            middleware=self._global_middleware(),
            lifespan=self._lifespan,
        )
        register_exception_handlers(self._app)

    # ── Accessors ─────────────────────────────────────────────────────────

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def db(self) -> DatabaseHandle:
        """The shared handle every stage receives. Owned by the backend."""
        return self._db

    @property
    def app(self) -> FastAPI:
        """The ASGI application (for uvicorn, test clients, or mounting)."""
        return self._app

    @property
    def routes(self) -> Tuple[RouteDescriptor, ...]:
        return tuple(chain.descriptor for chain in self._chains.values())

    @property
    def migrations_location(self) -> Path:
        return resolve_migrations_location(self._config.migrations_location)

    @property
    def is_listening(self) -> bool:
        return self._frozen

    # ── Global middleware ─────────────────────────────────────────────────

    def _global_middleware(self) -> List[Middleware]:
        stack = [
            Middleware(SecurityHeadersMiddleware),
            Middleware(AccessLogMiddleware),
            Middleware(CORSMiddleware, **self._config.cors_policy.middleware_options()),
            Middleware(
                BodyParserMiddleware,
                kinds=("json", "urlencoded"),
                limit=self._config.body_limit,
            ),
        ]
        for item in self._config.middleware:
            if isinstance(item, Middleware):
                stack.append(item)
            else:
                stack.append(Middleware(DatabaseBoundMiddleware, func=item, db=self._db))
        return stack

    def use_middleware(self, kind: str, **options) -> None:
        """
        Append a built-in middleware to the global chain after construction.

        Kinds:
            json | urlencoded | text | raw   body parser; option ``limit`` (bytes)
            static                           file serving; options ``directory``,
                                             ``prefix`` (default ``/static``)

        Raises:
            ConfigurationError: unknown kind or option, missing directory, or
                                called after the listener started.
        """
        self._ensure_open("add middleware")
        if self._app.middleware_stack is not None:
            # Starlette builds the stack once, on the first request
            raise ConfigurationError(message="Cannot add middleware after the app handled a request")
        kind = kind.lower()

        if kind in PARSERS:
            limit = options.pop("limit", self._config.body_limit)
            self._reject_unknown_options(kind, options)
            if not isinstance(limit, int) or limit <= 0:
                raise ConfigurationError(message="Body parser limit must be a positive integer", field="limit")
            self._app.user_middleware.append(
                Middleware(BodyParserMiddleware, kinds=(kind,), limit=limit)
            )
            logger.info("Added %s body parser (limit=%d bytes)", kind, limit)
            return

        if kind == "static":
            directory = options.pop("directory", None)
            prefix = options.pop("prefix", "/static")
            self._reject_unknown_options(kind, options)
            if directory is None or not Path(directory).is_dir():
                raise ConfigurationError(
                    message=f"Static directory does not exist: {directory}",
                    field="directory",
                )
            if not prefix.startswith("/"):
                raise ConfigurationError(message="Static prefix must start with '/'", field="prefix")
            self._app.mount(prefix, StaticFiles(directory=str(directory)), name=f"static:{prefix}")
            logger.info("Serving static files from %s at %s", directory, prefix)
            return

        raise ConfigurationError(
            message=f"Unknown middleware kind '{kind}'",
            field="kind",
            context={"supported": sorted([*PARSERS, "static"])},
        )

    @staticmethod
    def _reject_unknown_options(kind: str, options: dict) -> None:
        if options:
            raise ConfigurationError(
                message=f"Unknown option(s) for {kind} middleware: {', '.join(sorted(options))}",
                field="options",
            )

    # ── Route registration ────────────────────────────────────────────────

    def route(
        self,
        method: str,
        path: str,
        handler: RouteHandler,
        middleware: Tuple[RouteMiddleware, ...] = (),
        name: Optional[str] = None,
    ) -> RouteDescriptor:
        """
        Register one endpoint: middleware run in the given order, then the handler.

        Validation happens before the routing table is touched, so a rejected
        route leaves the app unchanged.

        Raises:
            ConfigurationError: invalid method/path/handler, or after listen().
            RouteCollisionError: same method and path shape already registered.
        """
        self._ensure_open("register routes")
        descriptor = RouteDescriptor(
            method=method,
            path=path,
            handler=handler,
            middleware=tuple(middleware),
            name=name,
        )

        existing = self._chains.get(descriptor.signature)
        if existing is not None:
            raise RouteCollisionError(descriptor.method, descriptor.path, existing.descriptor.path)

        chain = compose(self._db, descriptor)
        self._app.add_route(
            descriptor.starlette_path,
            chain.dispatch,
            methods=[descriptor.method],
            name=descriptor.name,
            include_in_schema=False,
        )
        self._chains[descriptor.signature] = chain
        logger.info(
            "Registered %s %s (%d middleware)",
            descriptor.method, descriptor.path, len(descriptor.middleware),
        )
        return descriptor

    def _decorator(
        self, method: str, path: str, middleware: Tuple[RouteMiddleware, ...], name: Optional[str]
    ) -> Callable[[RouteHandler], RouteHandler]:
        def register(handler: RouteHandler) -> RouteHandler:
            self.route(method, path, handler, middleware, name=name)
            return handler
        return register

    def get(self, path: str, *middleware: RouteMiddleware, name: Optional[str] = None):
        return self._decorator("GET", path, middleware, name)

    def post(self, path: str, *middleware: RouteMiddleware, name: Optional[str] = None):
        return self._decorator("POST", path, middleware, name)

    def put(self, path: str, *middleware: RouteMiddleware, name: Optional[str] = None):
        return self._decorator("PUT", path, middleware, name)

    def patch(self, path: str, *middleware: RouteMiddleware, name: Optional[str] = None):
        return self._decorator("PATCH", path, middleware, name)

    def delete(self, path: str, *middleware: RouteMiddleware, name: Optional[str] = None):
        return self._decorator("DELETE", path, middleware, name)

    def _ensure_open(self, action: str) -> None:
        if self._frozen:
            raise ConfigurationError(message=f"Cannot {action} after the server started listening")

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def migrate(self) -> Optional[str]:
        """
        Bring the schema to the newest revision. Safe to run repeatedly.

        Returns:
            The revision the database is at afterwards.

        Raises:
            MigrationError: always fatal; startup must not continue.
        """
        try:
            return await run_migrations(self._db, self.migrations_location)
        finally:
            # Pooled connections are bound to this loop; serve() may run on another
            await self._db.dispose()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Message store backend starting (%d routes)", len(self._chains))
        yield
        logger.info("Message store backend shutting down...")
        await self._db.dispose()
        logger.info("Shutdown complete.")

    def _freeze(self) -> None:
        self._frozen = True

    async def serve(self) -> None:
        """
        Bind ``host:port`` and serve until shutdown, on the running event loop.

        A port that is already bound makes uvicorn exit the process (status 1).
        """
        self._freeze()
        server = uvicorn.Server(
            uvicorn.Config(
                self._app,
                host=self._config.host,
                port=self._config.port,
                access_log=False,  # AccessLogMiddleware logs every request
                log_config=None,   # keep the application's logging setup
                lifespan="on",
            )
        )
        logger.info("Listening on http://%s:%d", self._config.host, self._config.port)
        await server.serve()

    def listen(self, migrate: bool = False) -> None:
        """
        Blocking form of ``serve()``; returns only when the server stops.

        With ``migrate=True`` the schema is upgraded first, on the same loop.

        Raises:
            RuntimeError: called from a running event loop; await ``serve()`` there.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise RuntimeError("listen() cannot run inside an event loop; use 'await backend.serve()'")

        async def _main() -> None:
            if migrate:
                await self.migrate()
            await self.serve()

        asyncio.run(_main())

    def __repr__(self) -> str:
        return (
            f"<StoreBackend port={self._config.port} routes={len(self._chains)} "
            f"db={self._db.url!r}>"
        )

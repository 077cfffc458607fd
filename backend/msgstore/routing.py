"""
Message Store Backend — Route Composition Layer
=================================================

What:  Turns a ``RouteDescriptor`` (method, path, middleware list, handler) into
       the endpoint installed on the Starlette routing table, with the shared
       database handle bound into every stage.
How:   Stages are built back to front: the terminal handler first, then each
       middleware wrapped around the stage after it. Calling a middleware's
       ``call_next`` runs the next stage; not calling it halts the chain.
Who:   ``StoreBackend.route()`` validates, composes and installs; nothing else
       touches the routing table.

Signatures:
    middleware:  async (db, request, call_next) -> Response
    handler:     async (db, request) -> Response | dict | list | BaseModel | str | None

    Sync callables are accepted and run in Starlette's threadpool.

Per-request state machine:
    Pending → Middleware_0 → … → Middleware_n → Terminal handler → Responded
                   │
                   ├─ returns a response without call_next → Responded (halted)
                   ├─ returns None                         → 500 (halted without response)
                   └─ raises                               → error response

Every stage runs inside the same guard: an exception never leaves a stage. A
``StoreBackendError`` becomes its mapped status (404, 400, …); an
``HTTPException`` keeps its status; anything else is logged with its traceback
and answered with a generic 500.

Path syntax:
    /messages/:user_id      → /messages/{user_id}
    /messages/{user_id}     → unchanged (Starlette converters allowed: {id:int})
    /static/*filepath       → /static/{filepath:path}
"""

import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple

from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import compile_path

from msgstore.exceptions import (
    ConfigurationError,
    HandlerError,
    MiddlewareError,
    StoreBackendError,
)
from msgstore.responses import error_response, http_error_response, to_response

logger = logging.getLogger(__name__)


# =============================================================================
# TYPE ALIASES
# =============================================================================

CallNext = Callable[[Request], Awaitable[Response]]
Stage = Callable[[Request], Awaitable[Response]]
RouteMiddleware = Callable[[Any, Request, CallNext], Any]
RouteHandler = Callable[[Any, Request], Any]

SUPPORTED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_COLON_PARAM = re.compile(rf"^:(?P<name>{_NAME})$")
_WILDCARD_PARAM = re.compile(rf"^\*(?P<name>{_NAME})$")
_BRACE_PARAM = re.compile(rf"^\{{(?P<name>{_NAME})(?::(?P<convertor>[a-z]+))?\}}$")


# =============================================================================
# PATH HANDLING
# =============================================================================


def to_starlette_path(path: str) -> str:
    """Rewrite ``:param`` and ``*param`` segments into Starlette's brace syntax."""
    segments = path.split("/")
    for index, segment in enumerate(segments):
        colon = _COLON_PARAM.match(segment)
        if colon:
            segments[index] = "{%s}" % colon.group("name")
            continue
        wildcard = _WILDCARD_PARAM.match(segment)
        if wildcard:
            if index != len(segments) - 1:
                raise ConfigurationError(
                    message=f"Wildcard segment must be last in path '{path}'",
                    field="path",
                )
            segments[index] = "{%s:path}" % wildcard.group("name")
    return "/".join(segments)


def path_signature(starlette_path: str) -> str:
    """
    Shape of a path with parameter names erased.

    Two routes with the same method and signature would shadow each other:
    ``/messages/{user_id}`` and ``/messages/{id}`` both become ``/messages/{}``.
    """
    segments = []
    for segment in starlette_path.rstrip("/").split("/") or [""]:
        brace = _BRACE_PARAM.match(segment)
        if brace:
            segments.append("{*}" if brace.group("convertor") == "path" else "{}")
        else:
            segments.append(segment)
    return "/".join(segments) or "/"


# =============================================================================
# ROUTE DESCRIPTOR
# =============================================================================


@dataclass(frozen=True)
class RouteDescriptor:
    """
    Declarative record of one endpoint.

    Validated on construction; an invalid descriptor never exists, so a failed
    registration never reaches the routing table.

    Raises:
        ConfigurationError: unsupported method, empty or relative path,
                            non-callable handler or middleware.
    """

    method: str
    path: str
    handler: RouteHandler
    middleware: Tuple[RouteMiddleware, ...] = ()
    name: Optional[str] = None
    starlette_path: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        method = self.method.upper() if isinstance(self.method, str) else self.method
        if method not in SUPPORTED_METHODS:
            raise ConfigurationError(
                message=f"Unsupported method {self.method!r}; expected one of {', '.join(SUPPORTED_METHODS)}",
                field="method",
            )
        if not isinstance(self.path, str) or not self.path.strip():
            raise ConfigurationError(message="Route path must not be empty", field="path")
        if not self.path.startswith("/"):
            raise ConfigurationError(
                message=f"Route path '{self.path}' must start with '/'",
                field="path",
            )
        if not callable(self.handler):
            raise ConfigurationError(message="Route handler must be callable", field="handler")
        middleware = tuple(self.middleware)
        for index, mw in enumerate(middleware):
            if not callable(mw):
                raise ConfigurationError(
                    message=f"Middleware #{index} of {method} {self.path} is not callable",
                    field="middleware",
                )

        starlette_path = to_starlette_path(self.path)
        try:
            compile_path(starlette_path)
        except (AssertionError, ValueError) as exc:
            # Unknown convertor or a parameter name used twice
            raise ConfigurationError(
                message=f"Invalid route path '{self.path}': {exc}",
                field="path",
            ) from exc

        object.__setattr__(self, "method", method)
        object.__setattr__(self, "middleware", middleware)
        object.__setattr__(self, "starlette_path", starlette_path)

    @property
    def signature(self) -> str:
        return f"{self.method} {path_signature(self.starlette_path)}"

    def __str__(self) -> str:
        return f"{self.method} {self.path}"


# =============================================================================
# STAGE CONSTRUCTION
# =============================================================================


def _stage_name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or type(func).__name__


def _is_async(func: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


async def _invoke(func: Callable[..., Any], *args: Any) -> Any:
    if _is_async(func):
        return await func(*args)
    result = await run_in_threadpool(func, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _recover(
    exc: Exception,
    error_cls: type,
    stage: str,
    route: str,
    request: Request,
) -> Response:
    """The uniform catch: map any stage failure to a well-formed response."""
    if isinstance(exc, StoreBackendError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "[%s] %s %s: %s", route, stage, type(exc).__name__, exc.message)
        return error_response(exc)

    if isinstance(exc, HTTPException):
        logger.warning("[%s] %s raised HTTP %d: %s", route, stage, exc.status_code, exc.detail)
        return http_error_response(exc.status_code, exc.detail, headers=exc.headers)

    logger.error(
        "[%s] %s failed on %s %s: %s",
        route, stage, request.method, request.url.path, str(exc),
        exc_info=exc,
    )
    return error_response(
        error_cls(
            message=str(exc) or type(exc).__name__,
            stage=stage,
            route=route,
            context={"error_type": type(exc).__name__},
        )
    )


def bind_handler(db: Any, handler: RouteHandler, route: str) -> Stage:
    """Terminal stage: ``handler(db, request)``, no continuation."""
    name = _stage_name(handler)

    async def terminal(request: Request) -> Response:
        try:
            result = await _invoke(handler, db, request)
            return to_response(result)
        except Exception as exc:
            return _recover(exc, HandlerError, name, route, request)

    terminal.__qualname__ = f"terminal[{name}]"
    return terminal


def bind_middleware(
    db: Any,
    middleware: RouteMiddleware,
    call_next: Stage,
    route: str,
) -> Stage:
    """Middleware stage: ``middleware(db, request, call_next)``."""
    name = _stage_name(middleware)

    async def stage(request: Request) -> Response:
        try:
            result = await _invoke(middleware, db, request, call_next)
        except Exception as exc:
            return _recover(exc, MiddlewareError, name, route, request)

        if result is None:
            logger.error(
                "[%s] middleware %s halted without a response; answering 500", route, name,
            )
            return error_response(
                MiddlewareError(
                    message="Middleware halted without a response",
                    stage=name,
                    route=route,
                )
            )
        try:
            return to_response(result)
        except Exception as exc:
            return _recover(exc, MiddlewareError, name, route, request)

    stage.__qualname__ = f"middleware[{name}]"
    return stage


# =============================================================================
# MIDDLEWARE CHAIN
# =============================================================================


@dataclass(frozen=True)
class MiddlewareChain:
    """
    The composed, immutable stage sequence of one route.

    ``stages[i]`` is middleware *i* (already wrapped around ``stages[i + 1]``);
    the last stage is the terminal handler. ``dispatch`` is what Starlette calls.
    """

    descriptor: RouteDescriptor
    stages: Tuple[Stage, ...]

    async def dispatch(self, request: Request) -> Response:
        return await self.stages[0](request)


def compose(db: Any, descriptor: RouteDescriptor) -> MiddlewareChain:
    """
    Build the chain for ``descriptor`` with ``db`` bound into every stage.

    ``db`` is the backend's own handle, passed by reference; no stage gets a copy.
    """
    route = str(descriptor)
    stage = bind_handler(db, descriptor.handler, route)
    stages = [stage]
    for mw in reversed(descriptor.middleware):
        stage = bind_middleware(db, mw, stage, route)
        stages.insert(0, stage)
    return MiddlewareChain(descriptor=descriptor, stages=tuple(stages))

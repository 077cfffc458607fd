"""
Adapter that runs a caller-supplied global middleware with the shared database
handle, using the same ``(db, request, call_next)`` signature as route middleware.
"""

import inspect
import logging
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from msgstore.exceptions import MiddlewareError, StoreBackendError
from msgstore.responses import error_response

logger = logging.getLogger(__name__)


class DatabaseBoundMiddleware(BaseHTTPMiddleware):
    """
    Global middleware layer bound to one ``DatabaseHandle``.

    Failures are converted into error responses here, like route stages, so a
    broken global middleware never reaches the server error handler.
    """

    def __init__(self, app: ASGIApp, func: Callable[..., Any], db: Any):
        super().__init__(app)
        self.func = func
        self.db = db
        self.name = getattr(func, "__qualname__", type(func).__name__)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        route = f"{request.method} {request.url.path}"
        try:
            result = self.func(self.db, request, call_next)
            if inspect.isawaitable(result):
                result = await result
        except StoreBackendError as exc:
            logger.warning("Global middleware '%s' rejected %s: %s", self.name, route, exc.message)
            return error_response(exc)
        except Exception as exc:
            logger.error(
                "Global middleware '%s' failed on %s: %s", self.name, route, str(exc),
                exc_info=True,
            )
            return error_response(
                MiddlewareError(message=str(exc), stage=self.name, route=route)
            )

        if result is None:
            logger.error("Global middleware '%s' halted %s without a response", self.name, route)
            return error_response(
                MiddlewareError(
                    message="Middleware halted without a response",
                    stage=self.name,
                    route=route,
                )
            )
        return result

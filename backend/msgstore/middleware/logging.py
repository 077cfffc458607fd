"""
Message Store Backend — Access Logging Middleware
===================================================

What:  One access-log line per request in Apache "combined" format, plus a
       request ID for correlating that line with application logs.
How:   Assigns (or accepts) an ``X-Request-ID``, stores it in a ContextVar for the
       error responses and loggers of the request, times the downstream call and
       logs on the ``msgstore.access`` logger.
When:  Second in the global chain, right after the security headers.

Combined Log Format:
    127.0.0.1 - - [19/Oct/2026:12:00:00 +0000] "GET /messages/u1 HTTP/1.1" 200 12 "-" "curl/8.4.0"

    remote-addr - remote-user [date] "method url HTTP/version" status length "referrer" "user-agent"

What we log vs what we DON'T log (privacy):
    Log: the combined fields, duration, request ID
    Don't log: request bodies, Authorization header values
"""

import base64
import binascii
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = logging.getLogger("msgstore.access")

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


def _remote_user(request: Request) -> str:
    """User name from Basic credentials, as the combined format expects."""
    auth = request.headers.get("authorization", "")
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() != "basic" or not credentials:
        return "-"
    try:
        decoded = base64.b64decode(credentials).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return "-"
    user = decoded.partition(":")[0]
    return user or "-"


def format_combined(
    request: Request,
    status: int,
    content_length: Optional[str],
    now: Optional[datetime] = None,
) -> str:
    """Render one Apache combined log line for a finished request."""
    now = now or datetime.now(timezone.utc)
    client = request.client.host if request.client else "-"
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    http_version = request.scope.get("http_version", "1.1")
    return '%s - %s [%s] "%s %s HTTP/%s" %d %s "%s" "%s"' % (
        client,
        _remote_user(request),
        now.strftime("%d/%b/%Y:%H:%M:%S %z"),
        request.method,
        target,
        http_version,
        status,
        content_length or "-",
        request.headers.get("referer", "-"),
        request.headers.get("user-agent", "-"),
    )


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    Logs every request in combined format and tags it with a request ID.

    Level by status class:
        5xx → ERROR, 4xx → WARNING, everything else → INFO

    ``skip_paths`` are still tagged with a request ID but not logged
    (health probes would otherwise dominate the log).
    """

    def __init__(self, app: ASGIApp, skip_paths: Iterable[str] = ("/health",)):
        super().__init__(app)
        self.skip_paths = frozenset(skip_paths)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        token = request_id_var.set(rid)
        request.state.request_id = rid
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            # Reaches the server error handler; still leave an access record
            self._log(request, 500, None, start_time, rid)
            request_id_var.reset(token)
            raise

        response.headers[REQUEST_ID_HEADER] = rid
        self._log(
            request,
            response.status_code,
            response.headers.get("content-length"),
            start_time,
            rid,
        )
        request_id_var.reset(token)
        return response

    def _log(
        self,
        request: Request,
        status: int,
        content_length: Optional[str],
        start_time: float,
        rid: str,
    ) -> None:
        if request.url.path in self.skip_paths:
            return

        duration_ms = (time.perf_counter() - start_time) * 1000
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            format_combined(request, status, content_length),
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )

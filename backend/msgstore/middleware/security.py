"""
Security headers middleware.

Adds a conservative set of response headers to every response (content-type
sniffing protection, framing, referrer and cross-origin isolation). Headers a
handler already set are left alone, so a route can loosen one header locally.
"""

from typing import Any, Dict, Mapping, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

DEFAULT_SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self'; base-uri 'self'; font-src 'self' https: data:; "
        "form-action 'self'; frame-ancestors 'self'; img-src 'self' data:; "
        "object-src 'none'; script-src 'self'; script-src-attr 'none'; "
        "style-src 'self' https: 'unsafe-inline'; upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Sets ``DEFAULT_SECURITY_HEADERS`` on every response.

    ``overrides`` replaces individual defaults; a ``None`` value drops that header.
    """

    def __init__(
        self,
        app: ASGIApp,
        overrides: Optional[Mapping[str, Optional[str]]] = None,
    ):
        super().__init__(app)
        headers: Dict[str, Any] = dict(DEFAULT_SECURITY_HEADERS)
        headers.update(overrides or {})
        self.headers = {name: value for name, value in headers.items() if value is not None}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        # Fingerprinting
        if "x-powered-by" in response.headers:
            del response.headers["x-powered-by"]
        return response

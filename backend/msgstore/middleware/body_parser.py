"""
Message Store Backend — Body Parser Middleware
================================================

What:  Parses request bodies once, before route logic, into ``request.state.body``.
How:   Picks a parser from the request's Content-Type, enforces a byte limit
       (413 before reading when Content-Length already exceeds it, otherwise
       413 at the first chunk past the limit), and turns malformed bodies into
       400 responses.
When:  After CORS, so disallowed origins never cost a body read.

Parsers (kind → Content-Type → request.state.body):
    json        application/json, application/*+json  → decoded JSON value
    urlencoded  application/x-www-form-urlencoded      → dict (repeated keys → list)
    text        text/plain                             → str
    raw         application/octet-stream               → bytes

Only one parser handles a request: once ``request.state.body`` is set, later
parser layers leave the request alone. Requests whose Content-Type matches
none of a layer's kinds pass through untouched.

The raw bytes stay readable downstream (``await request.body()``), since
Starlette replays a body read by a BaseHTTPMiddleware.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import parse_qs

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from msgstore.config import DEFAULT_BODY_LIMIT
from msgstore.exceptions import PayloadTooLargeError, ValidationError
from msgstore.responses import error_response

logger = logging.getLogger(__name__)


def _charset(request: Request) -> str:
    for param in request.headers.get("content-type", "").split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip('"')
    return "utf-8"


def _parse_json(raw: bytes, request: Request) -> Any:
    if not raw.strip():
        return {}
    try:
        return json.loads(raw.decode(_charset(request)))
    except (UnicodeDecodeError, LookupError, json.JSONDecodeError) as exc:
        raise ValidationError(message=f"Malformed JSON body: {exc}", field="body") from exc


def _parse_urlencoded(raw: bytes, request: Request) -> Dict[str, Any]:
    try:
        text = raw.decode(_charset(request))
    except (UnicodeDecodeError, LookupError) as exc:
        raise ValidationError(message="Form body is not valid text", field="body") from exc
    parsed = parse_qs(text, keep_blank_values=True)
    return {key: values[0] if len(values) == 1 else values for key, values in parsed.items()}


def _parse_text(raw: bytes, request: Request) -> str:
    try:
        return raw.decode(_charset(request))
    except (UnicodeDecodeError, LookupError) as exc:
        raise ValidationError(message="Text body could not be decoded", field="body") from exc


def _parse_raw(raw: bytes, request: Request) -> bytes:
    return raw


PARSERS: Dict[str, Callable[[bytes, Request], Any]] = {
    "json": _parse_json,
    "urlencoded": _parse_urlencoded,
    "text": _parse_text,
    "raw": _parse_raw,
}


def _matches(kind: str, media_type: str) -> bool:
    if kind == "json":
        return media_type == "application/json" or (
            media_type.startswith("application/") and media_type.endswith("+json")
        )
    if kind == "urlencoded":
        return media_type == "application/x-www-form-urlencoded"
    if kind == "text":
        return media_type == "text/plain"
    if kind == "raw":
        return media_type == "application/octet-stream"
    return False


class BodyParserMiddleware(BaseHTTPMiddleware):
    """
    Size-limited body parsing for the given ``kinds``.

    Args:
        kinds:  Parser names from ``PARSERS``, tried in order
        limit:  Maximum body size in bytes
    """

    def __init__(
        self,
        app: ASGIApp,
        kinds: Iterable[str] = ("json", "urlencoded"),
        limit: int = DEFAULT_BODY_LIMIT,
    ):
        super().__init__(app)
        self.kinds = tuple(kinds)
        unknown = [kind for kind in self.kinds if kind not in PARSERS]
        if unknown:
            raise ValueError(f"Unknown body parser kind(s): {unknown}")
        if limit <= 0:
            raise ValueError("Body limit must be positive")
        self.limit = limit

    def _select(self, request: Request) -> Optional[str]:
        media_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if not media_type:
            return None
        for kind in self.kinds:
            if _matches(kind, media_type):
                return kind
        return None

    async def _read_limited(self, request: Request) -> Optional[bytes]:
        """
        Read the body chunk by chunk; ``None`` as soon as it passes the limit.

        Chunked uploads carry no Content-Length, so the running total is the
        only bound on what gets buffered.
        """
        chunks = []
        total = 0
        async for chunk in request.stream():
            total += len(chunk)
            if total > self.limit:
                return None
            chunks.append(chunk)
        raw = b"".join(chunks)
        # Same cache Request.body() fills; BaseHTTPMiddleware replays it downstream
        request._body = raw
        return raw

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if hasattr(request.state, "body"):
            return await call_next(request)

        kind = self._select(request)
        if kind is None:
            return await call_next(request)

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.limit:
            logger.warning(
                "Rejected %s %s: declared body of %s bytes exceeds %d",
                request.method, request.url.path, declared, self.limit,
            )
            return error_response(PayloadTooLargeError(self.limit))

        raw = await self._read_limited(request)
        if raw is None:
            logger.warning(
                "Rejected %s %s: streamed body exceeds %d bytes",
                request.method, request.url.path, self.limit,
            )
            return error_response(PayloadTooLargeError(self.limit))

        try:
            request.state.body = PARSERS[kind](raw, request)
        except ValidationError as exc:
            logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.message)
            return error_response(exc)

        return await call_next(request)

"""
Response helpers shared by the route guard, the body parsers and the global
exception handlers.
"""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from starlette.responses import JSONResponse, PlainTextResponse, Response

from msgstore.exceptions import StoreBackendError
from msgstore.middleware.logging import request_id_var
from msgstore.schemas import ErrorResponse

GENERIC_SERVER_ERROR = "An unexpected error occurred. Please try again or contact support."

_HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    415: "unsupported_media_type",
    422: "validation_error",
    429: "rate_limit_exceeded",
}


def error_response(
    exc: StoreBackendError,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """
    Convert an application exception into its JSON error response.

    Client errors (4xx) carry their message and context; server errors carry a
    generic message only. Details of server errors belong in the logs.
    """
    body = ErrorResponse(
        error=exc.error_code,
        message=exc.message if exc.exposes_message else GENERIC_SERVER_ERROR,
        details=exc.context if exc.exposes_message and exc.context else None,
        request_id=request_id_var.get("") or None,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def http_error_response(status_code: int, detail: Any, headers: Optional[dict] = None) -> JSONResponse:
    """Error body for Starlette/FastAPI ``HTTPException`` (404 on unknown paths, 405, …)."""
    body = ErrorResponse(
        error=_HTTP_ERROR_CODES.get(status_code, "http_error"),
        message=str(detail),
        request_id=request_id_var.get("") or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def to_response(value: Any) -> Response:
    """
    Turn a terminal handler's return value into a response.

        Response            → returned unchanged
        None                → 204 No Content
        str                 → text/plain
        bytes               → application/octet-stream
        BaseModel/dict/list → JSON (200), via FastAPI's jsonable_encoder
    """
    if isinstance(value, Response):
        return value
    if value is None:
        return Response(status_code=204)
    if isinstance(value, str):
        return PlainTextResponse(value)
    if isinstance(value, (bytes, bytearray)):
        return Response(bytes(value), media_type="application/octet-stream")
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return JSONResponse(content=jsonable_encoder(value))

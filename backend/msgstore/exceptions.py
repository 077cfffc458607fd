"""
Message Store Backend — Custom Exception Hierarchy
====================================================

What:  Application-specific exceptions for startup, registration and request errors.
How:   Each exception carries a message and an optional context dict. Request-time
       exceptions also carry the HTTP status and machine-readable error code the
       route guard and the global exception handlers turn them into.
Who:   Raised by config, database, backend and routing code, and by user handlers.

Exception Hierarchy:
    StoreBackendError (base)             → 500
    ├── ConfigurationError               → fatal at startup / registration
    │   └── RouteCollisionError          → duplicate method + path
    ├── MigrationError                   → fatal at startup
    ├── HandlerError                     → 500 (terminal handler failed)
    ├── MiddlewareError                  → 500 (middleware failed or halted silently)
    ├── ValidationError                  → 400 Bad Request
    ├── NotFoundError                    → 404 Not Found
    └── PayloadTooLargeError             → 413 Payload Too Large

Startup errors are never turned into responses: they abort the process before
the listener binds. Request errors are always turned into responses.
"""

from typing import Any, Dict, Optional


class StoreBackendError(Exception):
    """
    Base exception for all message store backend errors.

    Attributes:
        message:  Human-readable description (safe to return for 4xx errors)
        context:  Additional debug info (logged but NOT returned to client)
    """

    status_code: int = 500
    error_code: str = "internal_server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    @property
    def exposes_message(self) -> bool:
        """Client errors are described to the client; server errors are not."""
        return self.status_code < 500


# ══════════════════════════════════════════════════════════════════════════
# Startup & Registration Errors
# ══════════════════════════════════════════════════════════════════════════


class ConfigurationError(StoreBackendError):
    """
    Raised when the server or a route is configured incorrectly.

    When:  Empty or malformed database URL, invalid port or body limit,
           unsupported route method, empty path, unknown middleware kind,
           registration after the listener started.
    """

    def __init__(
        self,
        message: str = "Invalid configuration",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class RouteCollisionError(ConfigurationError):
    """
    Raised when two routes share the same method and path shape.

    ``/messages/:id`` and ``/messages/{user_id}`` collide: parameter names do
    not distinguish routes, only their positions do.
    """

    def __init__(self, method: str, path: str, existing: str):
        super().__init__(
            message=f"Route {method} {path} collides with already registered {method} {existing}",
            context={"method": method, "path": path, "existing": existing},
        )
        self.method = method
        self.path = path
        self.existing = existing


class MigrationError(StoreBackendError):
    """
    Raised when schema migrations could not be applied.

    Always fatal: a partially migrated database must not serve traffic.
    """

    def __init__(
        self,
        message: str = "Database migration failed",
        location: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if location:
            ctx["location"] = location
        super().__init__(message=message, context=ctx)
        self.location = location


# ══════════════════════════════════════════════════════════════════════════
# Request-Time Errors
# ══════════════════════════════════════════════════════════════════════════


class _StageError(StoreBackendError):
    """Common shape of failures raised inside one stage of a route chain."""

    def __init__(
        self,
        message: str,
        stage: str,
        route: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx.update({"stage": stage, "route": route})
        super().__init__(message=message, context=ctx)
        self.stage = stage
        self.route = route


class HandlerError(_StageError):
    """The terminal handler of a route raised an unexpected exception."""


class MiddlewareError(_StageError):
    """
    A route middleware raised, or returned without calling its continuation
    and without producing a response (halted-without-response).
    """


class ValidationError(StoreBackendError):
    """
    Raised when client input fails validation (malformed JSON, bad form body,
    missing fields a handler requires).
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(StoreBackendError):
    """Raised by handlers when the requested resource does not exist."""

    status_code = 404
    error_code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class PayloadTooLargeError(StoreBackendError):
    """Raised by the body parsers when a request body exceeds the configured limit."""

    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, limit: int, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["limit"] = limit
        super().__init__(
            message=f"Request body exceeds the {limit} byte limit",
            context=ctx,
        )
        self.limit = limit

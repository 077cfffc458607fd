"""
Message Store Backend — Pydantic Response Schemas
===================================================

What:  The JSON shapes the backend itself produces: error bodies and the health
       report. Route handlers define their own payloads.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standardized error body for every failure turned into a response.

    Example:
        {
            "error": "not_found",
            "message": "message with ID 'u2' was not found",
            "details": {"resource": "message", "resource_id": "u2"},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Returned by GET /health."""
    status: str = Field(description="Overall service status: healthy or unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected or disconnected")
    dialect: str = Field(description="SQLAlchemy dialect of the shared handle")
    uptime_seconds: float = Field(description="Seconds since the health module loaded")

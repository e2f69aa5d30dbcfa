"""
LessonLoop Backend — Shared Response Schemas
=============================================

What:  The error envelope every failing endpoint returns, and the health
       check payload.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error body for all API errors.

    Example:
        {
            "error": "conflict",
            "message": "A billing run for this period already exists",
            "details": {"billing_run_id": "6f1c..."},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    assistant: str = Field(description="LoopAssist LLM: available, unconfigured, circuit_open")
    uptime_seconds: float = Field(description="Seconds since service started")

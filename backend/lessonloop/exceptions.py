"""
LessonLoop Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions for the different error scenarios.
How:   Each exception carries a user-safe message and an optional context dict.
       Global exception handlers (registered in main.py) turn them into
       structured JSON error responses with the matching HTTP status.
Who:   Raised by services, security dependencies and middleware.

Exception Hierarchy:
    LessonLoopError (base)
    ├── ValidationError          → 400 Bad Request
    ├── AuthenticationError      → 401 Unauthorized
    ├── PermissionDeniedError    → 403 Forbidden
    ├── NotFoundError            → 404 Not Found
    ├── ConflictError            → 409 Conflict
    ├── RateLimitExceededError   → 429 Too Many Requests
    ├── DatabaseError            → 500 Internal Server Error
    │   └── BillingRunFailedError → 500, run kept as failed
    ├── LLMServiceError          → 503 Service Unavailable
    └── CircuitBreakerOpenError  → 503 Service Unavailable
"""

from typing import Any, Dict, Optional


class LessonLoopError(Exception):
    """
    Base exception for all LessonLoop application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged; returned only where the
                  handler says so)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(LessonLoopError):
    """
    Raised when client input breaks a business rule.

    Schema-level problems are caught earlier by FastAPI (422). This one is for
    rules only the service layer can check: an end date before a start date,
    deleting the default rate card, an illegal invoice status change.
    """

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


class AuthenticationError(LessonLoopError):
    """Missing, expired or malformed bearer token."""

    def __init__(
        self,
        message: str = "Unauthorized",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class PermissionDeniedError(LessonLoopError):
    """
    The caller is authenticated but may not act on this organisation.

    Raised when there is no active membership for the org, or when the
    membership role is not in the operation's allowed set.
    """

    def __init__(
        self,
        message: str = "Not authorised for this organisation",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(LessonLoopError):
    """
    Raised when a requested resource does not exist within the caller's org.

    Rows belonging to another organisation are reported as not found as well,
    so tenant IDs cannot be probed.
    """

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


class ConflictError(LessonLoopError):
    """
    The request clashes with current state.

    Examples: a billing run for the same period already exists, a make-up
    credit was redeemed by someone else, a proposal was already processed.
    """

    def __init__(
        self,
        message: str = "The request conflicts with the current state",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class LLMServiceError(LessonLoopError):
    """
    Raised when the LLM (Gemini) service fails after all retries, or answers
    with something that is not a usable action proposal.
    """

    def __init__(
        self,
        message: str = "The assistant is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(LessonLoopError):
    """
    Raised when the circuit breaker is in OPEN state.

    CLOSED → (N consecutive failures) → OPEN → (recovery timeout) →
    HALF_OPEN → success → CLOSED, or failure → OPEN again.
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"The assistant is temporarily unavailable due to repeated failures. "
            f"It will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class DatabaseError(LessonLoopError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; the context is
    logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class BillingRunFailedError(DatabaseError):
    """
    The billing logic of a run broke before any invoice could be kept.

    The run row itself is stored with status 'failed'; its ID is the only
    context detail returned to the client.
    """

    def __init__(self, billing_run_id: str, error_type: Optional[str] = None):
        super().__init__(
            message="The billing run failed. No invoices were created.",
            context={"billing_run_id": billing_run_id, "error_type": error_type},
        )
        self.billing_run_id = billing_run_id


class RateLimitExceededError(LessonLoopError):
    """Client exceeded the sliding-window request limit."""

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after

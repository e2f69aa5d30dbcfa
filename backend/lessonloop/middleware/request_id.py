"""
LessonLoop Backend — Request ID Middleware
============================================

What:  Tags each request with a short correlation ID.
How:   Reuses the client's X-Request-ID when present, otherwise generates
       one. The ID is stored in a ContextVar for loggers and exception
       handlers, on request.state for route handlers, and echoed back in
       the X-Request-ID response header.

The ID is what a school admin quotes when a billing run fails, so it also
appears in every error envelope.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests share a thread but not this value
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns the request ID and returns it in the response headers."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response

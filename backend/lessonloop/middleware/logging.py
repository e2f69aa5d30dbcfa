"""
LessonLoop Backend — Access Log Middleware
===========================================

What:  One log line per HTTP request on the `lessonloop.access` logger.
How:   Measures wall time around the downstream app and logs method, path,
       status, duration, request ID and client IP. The same fields go into
       `extra` for log shippers that index record attributes.

Level follows the status code: 5xx → ERROR, 4xx → WARNING, else INFO.
Request bodies are never logged; they carry guardian contact details.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from lessonloop.middleware.request_id import request_id_var

logger = logging.getLogger("lessonloop.access")

# Probed by the load balancer every few seconds
QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        client_ip = request.client.host if request.client else "unknown"
        rid = request_id_var.get("")
        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        logger.log(
            level,
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response

"""
LessonLoop Backend — FastAPI Application Factory
==================================================

What:  Builds the LessonLoop API: logging, middleware, error handlers, routers.
How:   create_app() returns a configured FastAPI instance; the module-level
       `app` is what uvicorn serves (uvicorn lessonloop.main:app).

Routers (all org-scoped routes live under /api/orgs/{org_id}):
    rate_cards     rate card CRUD
    billing_runs   billing runs and retries
    invoices       invoices, payments, overdue sweep, stats
    credits        make-up credits
    roster         guardians, students, lessons, attendance
    assistant      LoopAssist proposals
    health         GET /health

Lifecycle:
    Startup   logging, configuration check (logged, not fatal)
    Shutdown  dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional, Tuple, Type

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from lessonloop import __version__
from lessonloop.config import settings
from lessonloop.database import dispose_engine
from lessonloop.exceptions import (
    AuthenticationError,
    CircuitBreakerOpenError,
    ConflictError,
    DatabaseError,
    LessonLoopError,
    LLMServiceError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitExceededError,
    ValidationError,
)
from lessonloop.middleware.logging import RequestLoggingMiddleware
from lessonloop.middleware.rate_limit import RateLimitMiddleware
from lessonloop.middleware.request_id import RequestIDMiddleware, request_id_var
from lessonloop.routes import (
    assistant,
    billing_runs,
    credits,
    health,
    invoices,
    rate_cards,
    roster,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Root logger to stdout at LOG_LEVEL.

    Format: 2025-01-15T12:00:00 [INFO] lessonloop.services.billing_run_service: ...
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Chatty third-party loggers
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("LessonLoop Backend %s starting up", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving so /health can report what is wrong
        logger.error("Configuration error: %s", str(e))

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)

    yield

    logger.info("LessonLoop Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

# exception type → (status code, error code)
CLIENT_ERRORS: Dict[Type[LessonLoopError], Tuple[int, str]] = {
    ValidationError: (400, "validation_error"),
    AuthenticationError: (401, "unauthorized"),
    PermissionDeniedError: (403, "forbidden"),
    NotFoundError: (404, "not_found"),
    ConflictError: (409, "conflict"),
}


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """The one error envelope every handler returns."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details or {},
            "request_id": request_id_var.get(""),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Maps the exception hierarchy onto HTTP responses.

        ValidationError         → 400
        AuthenticationError     → 401
        PermissionDeniedError   → 403
        NotFoundError           → 404
        ConflictError           → 409
        RateLimitExceededError  → 429 + Retry-After
        DatabaseError           → 500, generic message, context logged only
        LLMServiceError         → 503 (+ Retry-After when known)
        CircuitBreakerOpenError → 503 + Retry-After
        anything else           → 500, stack trace logged only
    """

    async def handle_client_error(request: Request, exc: LessonLoopError):
        status_code, error = CLIENT_ERRORS[type(exc)]
        logger.warning("[%s] %s: %s", request_id_var.get(""), error, exc.message)
        return error_response(status_code, error, exc.message, exc.context)

    for exc_class in CLIENT_ERRORS:
        app.add_exception_handler(exc_class, handle_client_error)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return error_response(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return error_response(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(LLMServiceError)
    async def handle_llm_error(request: Request, exc: LLMServiceError):
        logger.error("[%s] LLM service error: %s", request_id_var.get(""), exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return error_response(503, "llm_service_error", exc.message, exc.context, headers)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error(
            "[%s] Database error: %s | Context: %s",
            request_id_var.get(""), exc.message, exc.context,
        )
        # billing_run_id is safe to return and lets support find the failed run
        details = {}
        if "billing_run_id" in exc.context:
            details["billing_run_id"] = exc.context["billing_run_id"]
        return error_response(
            500,
            "server_error",
            "An internal error occurred. Please try again later.",
            details,
        )

    @app.exception_handler(LessonLoopError)
    async def handle_lessonloop_error(request: Request, exc: LessonLoopError):
        logger.error("[%s] Unhandled application error: %s", request_id_var.get(""), exc.message)
        return error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(
            "[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True
        )
        return error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="LessonLoop API",
        description=(
            "Multi-tenant music school administration: rosters, rate cards, "
            "billing runs, invoices, payments and make-up credits, with the "
            "LoopAssist confirm-before-execute assistant."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Added in reverse; runs as RateLimit → RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Total-Count", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(rate_cards.router)
    app.include_router(billing_runs.router)
    app.include_router(invoices.router)
    app.include_router(credits.router)
    app.include_router(roster.router)
    app.include_router(assistant.router)

    return app


app = create_app()

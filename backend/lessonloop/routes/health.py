"""
LessonLoop Backend — Health Check Route
=========================================

What:  GET /health for load balancers and container health checks.
How:   SELECT 1 against the database and a look at the LoopAssist circuit.

Status levels:
    healthy    database reachable, assistant available
    degraded   database reachable, assistant unconfigured or circuit open
               (billing still works without it)
    unhealthy  database unreachable → HTTP 503
"""

import logging
import time

from fastapi import APIRouter, Response
from sqlalchemy import text

from lessonloop import __version__
from lessonloop.database import engine
from lessonloop.schemas.common import HealthResponse
from lessonloop.services.gemini_service import CircuitBreaker, gemini_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(response: Response) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # No live Gemini call here; /health is probed every few seconds
    if not gemini_service.is_configured:
        assistant_status = "unconfigured"
    elif gemini_service.circuit_breaker.state == CircuitBreaker.OPEN:
        assistant_status = "circuit_open"
    else:
        assistant_status = "available"
    if assistant_status != "available" and overall == "healthy":
        overall = "degraded"

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        assistant=assistant_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )

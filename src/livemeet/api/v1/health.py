"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready), and startup
(/health/startup) checks for the container orchestrator.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.livemeet.config import get_settings
from src.livemeet.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and service wiring. Returns check results dict."""
    checks: dict = {"database": "ok", "meeting_service": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if getattr(request.app.state, "meeting_manager", None) is None:
        checks["meeting_service"] = "error"

    return checks


def _all_healthy(checks: dict) -> bool:
    return checks.get("database") == "ok" and checks.get("meeting_service") == "ok"


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies the database and the meeting service.

    Returns 200 if all pass, 503 if any critical dependency fails.
    """
    checks = await _check_dependencies(request)
    healthy = _all_healthy(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )


@router.get("/health/startup")
async def startup_check(request: Request):
    """Startup check: same as readiness, polled with a longer budget at boot."""
    checks = await _check_dependencies(request)
    healthy = _all_healthy(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "started" if healthy else "starting", "checks": checks},
    )

"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness probe pings the database owned by the running application.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.outreach.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity. Returns check results dict."""
    checks: dict = {"database": "ok"}

    database = getattr(request.app.state, "database", None)
    if database is None:
        checks["database"] = "error"
        checks["database_error"] = "Database not initialized"
        return checks

    try:
        await database.ping()
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies database connectivity.

    Returns 200 if it passes, 503 otherwise.
    """
    checks = await _check_dependencies(request)
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )

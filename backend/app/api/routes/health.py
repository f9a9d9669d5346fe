import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.core.logging import SERVICE_NAME
from app.db import database_reachable, redis_reachable

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe.

    Returns 503 once shutdown has started so the load balancer drains traffic.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": SERVICE_NAME},
        )
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check():
    """Readiness check.

    The database gates readiness. Redis only backs job tracking, so an
    unreachable Redis reports "degraded" with a 200.
    """
    checks = {"database": await database_reachable(), "redis": await redis_reachable()}

    if not checks["database"]:
        logger.error("readiness_database_failed")
        return JSONResponse(status_code=503, content={"status": "unavailable", "checks": checks})

    if not checks["redis"]:
        logger.warning("readiness_redis_unavailable", action="job_tracking_degraded")
        return JSONResponse(status_code=200, content={"status": "degraded", "checks": checks})

    return JSONResponse(status_code=200, content={"status": "ready", "checks": checks})

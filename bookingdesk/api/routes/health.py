"""
Health Check Endpoints

Health, readiness, and liveness probes. Liveness also reports whether the
background scans are running.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bookingdesk.config import settings
from bookingdesk.infra.database import check_db_health
from bookingdesk.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None
    scheduler: dict = {}


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health() -> HealthResponse:
    """Always returns 200 if the application is running."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "Database unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe.

    The database is required. Redis only backs scan leases, which fail
    open, so a Redis outage is reported as degraded, not unready.
    """
    checks = {}
    db_ok = False

    try:
        db_ok = await check_db_health()
        checks["database"] = "ok" if db_ok else "failed"
    except Exception as e:
        checks["database"] = "error"
        logger.error(f"Readiness check: Database error - {e}")

    try:
        redis_ok = await check_redis_health()
        checks["redis"] = "ok" if redis_ok else "degraded"
    except Exception as e:
        checks["redis"] = "degraded"
        logger.warning(f"Readiness check: Redis error - {e}")

    response = ReadyResponse(
        status="ready" if db_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not db_ok:
        logger.warning("Readiness check: Database unhealthy")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
)
async def live(request: Request) -> LiveResponse:
    """Returns 200 while the process is alive, with scan status."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
        scheduler=scheduler.status() if scheduler is not None else {"running": False},
    )

"""
Health Check Endpoints

/health reports what this instance is configured to talk to.
/health/ready checks what a booking turn needs: shared conversation
state in Redis and a function catalog with the workflow functions.
/health/live only says the process is up.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.agent.dispatch_table import DispatchConfigurationError, get_dispatch_table
from app.core.agent.orchestrator import APPOINTMENT_LOOKUP, PATIENT_SEARCH
from app.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

_started_at: Optional[float] = None


def set_start_time() -> None:
    """Record process start. Called once from the lifespan hook."""
    global _started_at
    _started_at = time.monotonic()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    environment: str
    booking_backend: str
    function_count: int


class ReadyResponse(BaseModel):
    """Per-dependency readiness, "ok" or "failed"."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


def _catalog_check() -> tuple[str, int]:
    """Load the function catalog and confirm the workflow functions exist."""
    try:
        table = get_dispatch_table()
        table.require(PATIENT_SEARCH)
        table.require(APPOINTMENT_LOOKUP)
    except DispatchConfigurationError as e:
        logger.warning(f"Readiness check: function catalog unusable: {e}")
        return "failed", 0
    return "ok", len(table)


@router.get("", response_model=HealthResponse, summary="Basic health check")
async def health() -> HealthResponse:
    """Always 200 while the process runs. Use /health/ready for dependencies."""
    _, function_count = _catalog_check()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        environment=settings.app_env,
        booking_backend=settings.booking_backend,
        function_count=function_count,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={503: {"description": "Redis or the function catalog is unavailable"}},
)
async def ready() -> ReadyResponse:
    """
    Readiness probe for load balancers.

    Without Redis, conversation state lives in one worker's memory and a
    caller's next turn may land on a worker that never saw the call, so
    a missing Redis is reported as not ready.
    """
    redis_ok = await check_redis_health()
    if not redis_ok:
        logger.warning("Readiness check: Redis unhealthy")
    catalog_status, _ = _catalog_check()

    checks = {
        "redis": "ok" if redis_ok else "failed",
        "function_catalog": catalog_status,
    }
    response = ReadyResponse(
        status="ready" if all(v == "ok" for v in checks.values()) else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if response.status != "ready":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response


@router.get("/live", response_model=LiveResponse, summary="Liveness probe")
async def live() -> LiveResponse:
    uptime = None if _started_at is None else round(time.monotonic() - _started_at, 3)
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=uptime,
    )

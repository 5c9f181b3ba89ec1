"""Health check endpoints.

Liveness and readiness probes.  Readiness reports the snapshot backend
and how many incidents this process is monitoring.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]
    monitored_incidents: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.  Does *not* check downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    checks: dict[str, str] = {}
    ready = True

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        checks["engine"] = "unavailable"
        ready = False
    else:
        checks["engine"] = "ok"

    snapshots = getattr(request.app.state, "snapshots", None)
    if snapshots is None:
        checks["snapshots"] = "disabled"
    else:
        checks["snapshots"] = "redis" if snapshots.using_redis else "in-memory"

    monitored = len(engine.scheduler.active_escalations()) if engine is not None else 0
    return ReadinessResponse(
        status="ready" if ready else "degraded",
        checks=checks,
        monitored_incidents=monitored,
    )

"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * SOS: trigger, resolve, location updates, reads
    * Admin: active incidents, stats, operator actions
    * Health: liveness and readiness probes
"""

from __future__ import annotations

from fastapi import APIRouter

from lane_sos.api.v1 import admin, emergency, health

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(emergency.router)
api_router.include_router(admin.router)
api_router.include_router(health.router)

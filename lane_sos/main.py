"""LANE SOS FastAPI application entry point.

Creates the FastAPI app, includes routers, and manages the lifecycle of
the escalation engine (snapshot store, incident store, notification
gateway, scheduler, scorer).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import Settings, settings
from lane_sos.api.router import api_router
from lane_sos.services.clock import Clock, SystemClock
from lane_sos.services.dispatch import LoggingDispatchService
from lane_sos.services.emergency_service import EmergencyEngine
from lane_sos.services.escalation import EscalationScheduler
from lane_sos.services.false_alarm import FalseAlarmScorer
from lane_sos.services.incident_store import IncidentStore
from lane_sos.services.notifications import (
    NotificationFanout,
    NotificationGateway,
    StaticRecipientDirectory,
    create_gateway,
)
from lane_sos.services.policy import EscalationPolicy
from lane_sos.services.snapshots import SnapshotStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            settings.log_level,
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


def build_engine(
    config: Settings,
    *,
    store: IncidentStore,
    gateway: NotificationGateway,
    clock: Clock | None = None,
) -> EmergencyEngine:
    """Assemble policy, fan-out, scheduler and scorer around *store*.

    Raises :class:`~lane_sos.errors.PolicyConfigurationError` when the
    configured timetable is invalid, so a bad deployment fails at startup.
    """
    clock = clock or SystemClock()
    policy = EscalationPolicy.from_settings(config)
    directory = StaticRecipientDirectory.from_settings(config)
    fanout = NotificationFanout(
        gateway,
        directory,
        clock=clock,
        timeout_seconds=config.notification_timeout_seconds,
    )
    scheduler = EscalationScheduler(
        store,
        policy,
        fanout,
        LoggingDispatchService(clock),
        clock=clock,
        dispatch_timeout_seconds=config.dispatch_timeout_seconds,
    )
    scorer = FalseAlarmScorer.from_settings(store, config, clock=clock)
    return EmergencyEngine(
        store,
        scheduler,
        scorer,
        fanout,
        policy,
        directory=directory,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the escalation engine.

    On startup:
      1. Open the snapshot store
      2. Build the incident store and reload snapshots
      3. Build the notification gateway and the engine
      4. Resume escalation for every non-terminal incident
      5. Store everything on ``app.state``

    On shutdown:
      - Cancel escalation timers (incidents resume on next start).
      - Close the gateway's HTTP client and the snapshot store.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, gateway=settings.notification_gateway)

    app.state.start_time = time.time()

    # -- 1. Snapshot store ----------------------------------------------------
    snapshots = SnapshotStore(
        redis_url=settings.redis_url or None,
        namespace=settings.snapshot_namespace,
    )
    app.state.snapshots = snapshots

    # -- 2. Incident store ------------------------------------------------------
    store = IncidentStore(snapshots=snapshots)
    try:
        await store.load()
    except Exception:
        logger.warning("app.snapshot_load_failed", exc_info=True)

    # -- 3. Gateway and engine --------------------------------------------------
    gateway = create_gateway(settings)
    engine = build_engine(settings, store=store, gateway=gateway)
    app.state.engine = engine
    logger.info("app.engine_initialised", gateway=type(gateway).__name__)

    # -- 4. Recovery ------------------------------------------------------------
    if settings.recover_on_startup:
        await engine.scheduler.recover()

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await engine.scheduler.shutdown()
    close = getattr(gateway, "close", None)
    if close is not None:
        await close()
    await snapshots.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LANE SOS API",
    description=(
        "Emergency escalation engine for the LANE carpool platform. "
        "Escalates unresolved SOS alerts from emergency contacts to platform "
        "admins, authorities and emergency services on a fixed timetable."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
    allow_headers=["Content-Type", "Accept", "Authorization", "X-Admin-API-Key"],
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "LANE SOS API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "trigger": "/api/v1/sos/trigger",
            "resolve": "/api/v1/sos/{emergency_id}/resolve",
            "location": "/api/v1/sos/{emergency_id}/location",
            "history": "/api/v1/sos/history/{user_id}",
            "admin_active": "/api/v1/admin/emergencies/active",
            "admin_stats": "/api/v1/admin/emergencies/stats",
            "admin_escalations": "/api/v1/admin/escalations",
        },
    }

"""SOS endpoints used by riders, drivers and the tracking feed.

Trigger, resolve, location updates and reads.  Every call goes through the
:class:`~lane_sos.services.emergency_service.EmergencyEngine` stored on
``app.state.engine``.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from lane_sos.errors import EmergencyNotFoundError, PolicyConfigurationError
from lane_sos.models.emergency import Emergency, GeoPoint
from lane_sos.models.enums import (
    EmergencyPriority,
    EmergencyType,
    MonitorOutcome,
    NotificationChannel,
    ResolutionOutcome,
)
from lane_sos.services.emergency_service import EmergencyEngine, ResolveResult
from lane_sos.services.notifications import Recipient

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sos", tags=["sos"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class LocationIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float | None = None
    speed: float | None = None
    address: str | None = None
    timestamp: datetime | None = None

    def to_point(self) -> GeoPoint:
        data = self.model_dump(exclude_none=True)
        return GeoPoint(**data)


class ContactIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    address: str = Field(..., min_length=3, max_length=320, description="Phone number or email")
    channel: NotificationChannel = NotificationChannel.SMS


class TriggerRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    type: EmergencyType = EmergencyType.SOS
    location: LocationIn
    related_ride: str | None = None
    related_booking: str | None = None
    priority: EmergencyPriority = EmergencyPriority.HIGH
    contacts: list[ContactIn] | None = Field(
        default=None,
        description="Emergency contacts to alert; omitted means the contacts already on file.",
    )


class ResolveRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=128)
    outcome: ResolutionOutcome = ResolutionOutcome.SAFE
    notes: str | None = Field(default=None, max_length=2000)


class OutcomeResponse(BaseModel):
    emergency_id: str
    outcome: MonitorOutcome


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_engine(request: Request) -> EmergencyEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="SOS engine is not available.")
    return engine


def not_found(exc: EmergencyNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Emergency {exc.emergency_id} not found.")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/trigger", response_model=Emergency, status_code=201)
async def trigger_sos(body: TriggerRequest, request: Request) -> Emergency:
    """Raise an SOS: alert emergency contacts now and start escalation."""
    engine = get_engine(request)
    contacts = None
    if body.contacts is not None:
        contacts = [Recipient(**c.model_dump()) for c in body.contacts]

    try:
        return await engine.trigger(
            body.type,
            body.user_id,
            body.location.to_point(),
            related_ride=body.related_ride,
            related_booking=body.related_booking,
            contacts=contacts,
            priority=body.priority,
        )
    except PolicyConfigurationError:
        logger.error("api.sos.policy_invalid", exc_info=True)
        raise HTTPException(status_code=500, detail="Escalation policy is misconfigured.") from None


@router.post("/{emergency_id}/resolve", response_model=ResolveResult)
async def resolve_sos(emergency_id: str, body: ResolveRequest, request: Request) -> ResolveResult:
    """Close the incident.  Repeated calls report ``already_terminal``."""
    engine = get_engine(request)
    try:
        return await engine.resolve(emergency_id, body.resolved_by, body.outcome, body.notes)
    except EmergencyNotFoundError as exc:
        raise not_found(exc) from None


@router.post("/{emergency_id}/location", response_model=OutcomeResponse)
async def update_location(emergency_id: str, body: LocationIn, request: Request) -> OutcomeResponse:
    engine = get_engine(request)
    try:
        outcome = await engine.update_location(emergency_id, body.to_point())
    except EmergencyNotFoundError as exc:
        raise not_found(exc) from None
    return OutcomeResponse(emergency_id=emergency_id, outcome=outcome)


@router.get("/history/{user_id}", response_model=list[Emergency])
async def user_history(
    user_id: str,
    request: Request,
    days: int | None = Query(default=None, ge=1, le=365),
) -> list[Emergency]:
    engine = get_engine(request)
    return await engine.history_for_user(user_id, days=days)


@router.get("/{emergency_id}", response_model=Emergency)
async def get_emergency(emergency_id: str, request: Request) -> Emergency:
    engine = get_engine(request)
    try:
        return await engine.get(emergency_id)
    except EmergencyNotFoundError as exc:
        raise not_found(exc) from None

"""Operator endpoints for the emergency dashboard.

All routes require the dashboard key (see
:func:`lane_sos.middleware.auth.require_operator`).  Routes that act on an
incident also need ``X-Operator-Id``; the escalation and the admin response
are attributed to that operator.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from lane_sos.api.v1.emergency import OutcomeResponse, get_engine, not_found
from lane_sos.errors import EmergencyNotFoundError, IncidentNotTerminalError
from lane_sos.middleware.auth import Operator, require_acting_operator, require_operator
from lane_sos.models.emergency import Emergency
from lane_sos.models.enums import AdminAction
from lane_sos.services.incident_store import EscalationStats

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin-emergencies"],
    dependencies=[Depends(require_operator)],
)


class AdminRespondRequest(BaseModel):
    action: AdminAction
    notes: str | None = Field(default=None, max_length=2000)


class MonitoredResponse(BaseModel):
    count: int
    emergency_ids: list[str]


@router.get("/emergencies/active", response_model=list[Emergency])
async def active_emergencies(request: Request) -> list[Emergency]:
    """Open incidents, most urgent first."""
    return await get_engine(request).list_active()


@router.get("/emergencies/stats", response_model=EscalationStats)
async def emergency_stats(
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
) -> EscalationStats:
    return await get_engine(request).escalation_stats(days)


@router.post("/emergencies/{emergency_id}/respond", response_model=Emergency)
async def respond(
    emergency_id: str,
    body: AdminRespondRequest,
    request: Request,
    operator: Operator = Depends(require_acting_operator),
) -> Emergency:
    """Record what the calling operator did about the incident."""
    try:
        return await get_engine(request).record_admin_response(
            emergency_id, operator.operator_id, body.action, body.notes
        )
    except EmergencyNotFoundError as exc:
        raise not_found(exc) from None
    except IncidentNotTerminalError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None


@router.post("/emergencies/{emergency_id}/escalate", response_model=OutcomeResponse)
async def escalate(
    emergency_id: str,
    request: Request,
    operator: Operator = Depends(require_acting_operator),
) -> OutcomeResponse:
    try:
        outcome = await get_engine(request).escalate_manually(emergency_id, operator.operator_id)
    except EmergencyNotFoundError as exc:
        raise not_found(exc) from None
    return OutcomeResponse(emergency_id=emergency_id, outcome=outcome)


@router.post("/emergencies/{emergency_id}/report-false-alarm", response_model=Emergency)
async def report_false_alarm(emergency_id: str, request: Request) -> Emergency:
    try:
        return await get_engine(request).mark_user_reported(emergency_id)
    except EmergencyNotFoundError as exc:
        raise not_found(exc) from None
    except IncidentNotTerminalError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None


@router.get("/escalations", response_model=MonitoredResponse)
async def monitored_escalations(request: Request) -> MonitoredResponse:
    """Incidents with a live escalation timer in this process."""
    ids = get_engine(request).scheduler.active_escalations()
    return MonitoredResponse(count=len(ids), emergency_ids=ids)

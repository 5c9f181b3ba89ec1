"""Emergency-service dispatch collaborator.

The scheduler calls into a :class:`DispatchService` at two points of the
timetable: when an incident is handed to the authorities (a case is
opened and its number logged on the timeline) and at the final level,
when responders are actually requested.  Real deployments plug in the
regional dispatch API; :class:`LoggingDispatchService` only issues case
numbers and logs the request.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from lane_sos.models.emergency import Emergency
from lane_sos.models.enums import EmergencyType, ServiceType
from lane_sos.services.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)

_AMBULANCE_TYPES = frozenset({EmergencyType.MEDICAL, EmergencyType.ACCIDENT})


def service_type_for(emergency_type: EmergencyType) -> ServiceType:
    """Medical and accident incidents get an ambulance, everything else police."""
    if emergency_type in _AMBULANCE_TYPES:
        return ServiceType.AMBULANCE
    return ServiceType.POLICE


class DispatchRecord(BaseModel):
    case_number: str
    service_type: ServiceType
    dispatched_at: datetime
    notes: str | None = None


@runtime_checkable
class DispatchService(Protocol):
    async def open_authority_case(self, emergency: Emergency) -> DispatchRecord: ...

    async def dispatch(self, emergency: Emergency, service_type: ServiceType) -> DispatchRecord: ...


class LoggingDispatchService:
    """Issues case numbers locally and logs the request."""

    __slots__ = ("_clock",)

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def _stamp(self) -> tuple[datetime, int]:
        now = self._clock.now()
        return now, int(now.timestamp() * 1000)

    async def open_authority_case(self, emergency: Emergency) -> DispatchRecord:
        now, millis = self._stamp()
        record = DispatchRecord(
            case_number=f"LANE-EMG-{millis}",
            service_type=service_type_for(emergency.type),
            dispatched_at=now,
        )
        logger.warning(
            "dispatch.authority_case_opened",
            emergency_id=emergency.emergency_id,
            case_number=record.case_number,
        )
        return record

    async def dispatch(self, emergency: Emergency, service_type: ServiceType) -> DispatchRecord:
        now, millis = self._stamp()
        point = emergency.location
        record = DispatchRecord(
            case_number=f"LANE-DISPATCH-{millis}",
            service_type=service_type,
            dispatched_at=now,
            notes=(
                "Automated dispatch after no response. "
                f"Location: {point.latitude}, {point.longitude}"
            ),
        )
        logger.critical(
            "dispatch.services_requested",
            emergency_id=emergency.emergency_id,
            service_type=service_type,
            case_number=record.case_number,
        )
        return record

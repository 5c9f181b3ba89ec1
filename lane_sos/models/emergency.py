"""Emergency aggregate and its value objects.

An :class:`Emergency` is one SOS/distress event and its full lifecycle
record.  The model enforces the lifecycle invariants locally (sequential
levels, single terminal transition, append-only logs) so that every
writer -- scheduler, resolution path, scorer, tracking feed -- goes
through the same guards.  Serialisation is plain pydantic JSON so any
storage backend can persist it.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from lane_sos.errors import IncidentNotTerminalError, InvalidTransitionError
from lane_sos.models.enums import (
    ActorKind,
    AdminAction,
    DeliveryStatus,
    EmergencyPriority,
    EmergencyStatus,
    EmergencyType,
    NotificationChannel,
    RecipientClass,
    ResolutionOutcome,
    ServiceType,
)

MAX_ESCALATION_LEVEL = 4

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_emergency_id(at: datetime | None = None) -> str:
    """Return a short, human-quotable id such as ``SOS-LZ3K1Q2A-4F0XK``."""
    moment = at or datetime.now(UTC)
    stamp = _to_base36(int(moment.timestamp() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"SOS-{stamp}-{suffix}".upper()


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class GeoPoint(BaseModel):
    """A single GPS fix."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float | None = None  # metres
    speed: float | None = None
    address: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def maps_link(self) -> str:
        return f"https://maps.google.com/?q={self.latitude},{self.longitude}"


class TimelineEntry(BaseModel):
    level: int
    timestamp: datetime
    action: str
    triggered_by: ActorKind


class Recipient(BaseModel):
    """Someone to alert at a given escalation level."""

    name: str
    address: str  # phone number, email or in-app user id
    channel: NotificationChannel = NotificationChannel.SMS


class NotificationRecord(BaseModel):
    """One delivery attempt, successful or not."""

    recipient: str
    recipient_name: str = ""
    recipient_class: RecipientClass
    channel: NotificationChannel
    level: int
    sent_at: datetime
    status: DeliveryStatus
    message_id: str | None = None
    error: str | None = None


class FalseAlarmIndicators(BaseModel):
    quick_resolution: bool = False
    no_response: bool = False
    repeated_triggers: bool = False
    user_reported: bool = False
    score: int = 0
    flagged: bool = False
    scored_at: datetime | None = None


class AdminResponse(BaseModel):
    responded_by: str
    responded_at: datetime
    action: AdminAction
    notes: str | None = None


class EmergencyServices(BaseModel):
    dispatched: bool = False
    service_type: ServiceType = ServiceType.NONE
    dispatch_time: datetime | None = None
    case_number: str | None = None
    notes: str | None = None


class Resolution(BaseModel):
    resolved_by: str
    resolved_at: datetime
    outcome: ResolutionOutcome
    notes: str | None = None


# ---------------------------------------------------------------------------
# Aggregate root
# ---------------------------------------------------------------------------


class Emergency(BaseModel):
    """An SOS incident and everything that has happened to it."""

    emergency_id: str = Field(default_factory=new_emergency_id)
    triggered_by: str
    related_ride: str | None = None
    related_booking: str | None = None
    type: EmergencyType = EmergencyType.SOS
    status: EmergencyStatus = EmergencyStatus.ACTIVE
    priority: EmergencyPriority = EmergencyPriority.HIGH
    escalation_level: int = Field(default=0, ge=0, le=MAX_ESCALATION_LEVEL)
    escalation_timeline: list[TimelineEntry] = Field(default_factory=list)
    location: GeoPoint
    location_history: list[GeoPoint] = Field(default_factory=list)
    emergency_contacts: list[Recipient] = Field(default_factory=list)
    notifications_sent: list[NotificationRecord] = Field(default_factory=list)
    false_alarm_indicators: FalseAlarmIndicators = Field(default_factory=FalseAlarmIndicators)
    user_reported: bool = False
    admin_response: AdminResponse | None = None
    emergency_services: EmergencyServices = Field(default_factory=EmergencyServices)
    resolution: Resolution | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = 0

    # -- Derived -----------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def levels_reached(self) -> list[int]:
        return [entry.level for entry in self.escalation_timeline]

    def notifications_for_level(self, level: int) -> list[NotificationRecord]:
        return [n for n in self.notifications_sent if n.level == level]

    # -- Mutations ---------------------------------------------------------

    def _ensure_open(self, what: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"cannot {what}: emergency {self.emergency_id} is {self.status}"
            )

    def record_escalation(
        self,
        level: int,
        action: str,
        triggered_by: ActorKind,
        at: datetime,
    ) -> TimelineEntry:
        """Advance to *level* and append its timeline entry.

        Level 0 is only valid as the very first entry; every later level
        must be exactly one above the current one.
        """
        self._ensure_open("escalate")
        if self.escalation_timeline:
            expected = self.escalation_level + 1
        else:
            expected = 0
        if level != expected:
            raise InvalidTransitionError(
                f"emergency {self.emergency_id} at level {self.escalation_level} "
                f"cannot move to level {level}"
            )
        entry = TimelineEntry(level=level, timestamp=at, action=action, triggered_by=triggered_by)
        self.escalation_timeline.append(entry)
        self.escalation_level = level
        return entry

    def log_notifications(self, records: list[NotificationRecord]) -> None:
        self._ensure_open("log notifications")
        self.notifications_sent.extend(records)

    def mark_escalated(self) -> bool:
        """Move ACTIVE -> ESCALATED.  Returns False if already escalated."""
        self._ensure_open("mark escalated")
        if self.status is EmergencyStatus.ESCALATED:
            return False
        self.status = EmergencyStatus.ESCALATED
        return True

    def record_dispatch(
        self,
        service_type: ServiceType,
        case_number: str,
        at: datetime,
        notes: str | None = None,
    ) -> None:
        self._ensure_open("dispatch services")
        if self.emergency_services.dispatched:
            raise InvalidTransitionError(
                f"services already dispatched for emergency {self.emergency_id}"
            )
        self.emergency_services = EmergencyServices(
            dispatched=True,
            service_type=service_type,
            dispatch_time=at,
            case_number=case_number,
            notes=notes,
        )

    def apply_resolution(
        self,
        resolved_by: str,
        outcome: ResolutionOutcome,
        at: datetime,
        notes: str | None = None,
    ) -> None:
        """The single terminal transition."""
        self._ensure_open("resolve")
        self.status = outcome.terminal_status
        self.resolution = Resolution(
            resolved_by=resolved_by,
            resolved_at=at,
            outcome=outcome,
            notes=notes,
        )

    def add_location(self, point: GeoPoint) -> None:
        self._ensure_open("update location")
        self.location_history.append(point)
        self.location = point

    def set_indicators(self, indicators: FalseAlarmIndicators) -> None:
        if not self.is_terminal:
            raise IncidentNotTerminalError(self.emergency_id, self.status)
        self.false_alarm_indicators = indicators

from __future__ import annotations

from enum import StrEnum


class EmergencyType(StrEnum):
    __slots__ = ()

    SOS = "SOS"
    ACCIDENT = "ACCIDENT"
    MEDICAL = "MEDICAL"
    THREAT = "THREAT"
    BREAKDOWN = "BREAKDOWN"
    ROUTE_DEVIATION = "ROUTE_DEVIATION"
    AUTO_ALERT = "AUTO_ALERT"
    MANUAL_REPORT = "MANUAL_REPORT"
    OTHER = "OTHER"


class EmergencyStatus(StrEnum):
    __slots__ = ()

    ACTIVE = "ACTIVE"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    FALSE_ALARM = "FALSE_ALARM"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {EmergencyStatus.RESOLVED, EmergencyStatus.FALSE_ALARM, EmergencyStatus.CANCELLED}
)


class EmergencyPriority(StrEnum):
    __slots__ = ()

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ActorKind(StrEnum):
    """Who caused a timeline entry."""

    __slots__ = ()

    AUTO = "AUTO"
    USER = "USER"
    ADMIN = "ADMIN"


class RecipientClass(StrEnum):
    __slots__ = ()

    EMERGENCY_CONTACTS = "emergency_contacts"
    PLATFORM_ADMINS = "platform_admins"
    AUTHORITIES = "authorities"
    EMERGENCY_SERVICES = "emergency_services"


class NotificationChannel(StrEnum):
    __slots__ = ()

    SMS = "SMS"
    EMAIL = "EMAIL"
    CALL = "CALL"
    IN_APP = "IN_APP"


class DeliveryStatus(StrEnum):
    __slots__ = ()

    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class EscalationAction(StrEnum):
    """What a policy level does besides fanning out notifications."""

    __slots__ = ()

    NOTIFY = "notify"
    NOTIFY_AUTHORITIES = "notify_authorities"
    DISPATCH_SERVICES = "dispatch_services"


class ServiceType(StrEnum):
    __slots__ = ()

    POLICE = "POLICE"
    AMBULANCE = "AMBULANCE"
    FIRE = "FIRE"
    NONE = "NONE"


class ResolutionOutcome(StrEnum):
    __slots__ = ()

    SAFE = "SAFE"
    HELPED = "HELPED"
    FALSE_ALARM = "FALSE_ALARM"
    NO_RESPONSE = "NO_RESPONSE"
    CANCELLED = "CANCELLED"

    @property
    def terminal_status(self) -> EmergencyStatus:
        if self is ResolutionOutcome.FALSE_ALARM:
            return EmergencyStatus.FALSE_ALARM
        if self is ResolutionOutcome.CANCELLED:
            return EmergencyStatus.CANCELLED
        return EmergencyStatus.RESOLVED


class AdminAction(StrEnum):
    __slots__ = ()

    CONTACTED_USER = "CONTACTED_USER"
    CONTACTED_EMERGENCY = "CONTACTED_EMERGENCY"
    DISPATCHED_HELP = "DISPATCHED_HELP"
    MONITORED = "MONITORED"
    CLOSED = "CLOSED"


class MonitorOutcome(StrEnum):
    """Result of an engine call that may legitimately do nothing."""

    __slots__ = ()

    APPLIED = "applied"
    ALREADY_MONITORING = "already_monitoring"
    ALREADY_TERMINAL = "already_terminal"
    ALREADY_ESCALATED = "already_escalated"

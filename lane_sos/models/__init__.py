from lane_sos.models.emergency import (
    MAX_ESCALATION_LEVEL,
    AdminResponse,
    Emergency,
    EmergencyServices,
    FalseAlarmIndicators,
    GeoPoint,
    NotificationRecord,
    Recipient,
    Resolution,
    TimelineEntry,
    new_emergency_id,
)
from lane_sos.models.enums import (
    ActorKind,
    AdminAction,
    DeliveryStatus,
    EmergencyPriority,
    EmergencyStatus,
    EmergencyType,
    EscalationAction,
    MonitorOutcome,
    NotificationChannel,
    RecipientClass,
    ResolutionOutcome,
    ServiceType,
)

__all__ = [
    "MAX_ESCALATION_LEVEL",
    "ActorKind",
    "AdminAction",
    "AdminResponse",
    "DeliveryStatus",
    "Emergency",
    "EmergencyPriority",
    "EmergencyServices",
    "EmergencyStatus",
    "EmergencyType",
    "EscalationAction",
    "FalseAlarmIndicators",
    "GeoPoint",
    "MonitorOutcome",
    "NotificationChannel",
    "NotificationRecord",
    "Recipient",
    "RecipientClass",
    "Resolution",
    "ResolutionOutcome",
    "ServiceType",
    "TimelineEntry",
    "new_emergency_id",
]

"""LANE SOS service layer -- incident store, escalation scheduler, fan-out and scoring."""

from __future__ import annotations

from lane_sos.services.clock import Clock, SystemClock
from lane_sos.services.dispatch import (
    DispatchRecord,
    DispatchService,
    LoggingDispatchService,
    service_type_for,
)
from lane_sos.services.emergency_service import EmergencyEngine, ResolveResult
from lane_sos.services.escalation import EscalationScheduler
from lane_sos.services.false_alarm import FalseAlarmScorer
from lane_sos.services.incident_store import (
    EscalationStats,
    IncidentHistory,
    IncidentHistoryLookup,
    IncidentStore,
)
from lane_sos.services.notifications import (
    LoggingNotificationGateway,
    NotificationFanout,
    NotificationGateway,
    Recipient,
    RecipientDirectory,
    SendResult,
    StaticRecipientDirectory,
    WebhookNotificationGateway,
    create_gateway,
    parse_recipients,
)
from lane_sos.services.policy import EscalationPolicy, PolicyLevel
from lane_sos.services.snapshots import SnapshotStore

__all__ = [
    "Clock",
    "DispatchRecord",
    "DispatchService",
    "EmergencyEngine",
    "EscalationPolicy",
    "EscalationScheduler",
    "EscalationStats",
    "FalseAlarmScorer",
    "IncidentHistory",
    "IncidentHistoryLookup",
    "IncidentStore",
    "LoggingDispatchService",
    "LoggingNotificationGateway",
    "NotificationFanout",
    "NotificationGateway",
    "PolicyLevel",
    "Recipient",
    "RecipientDirectory",
    "ResolveResult",
    "SendResult",
    "SnapshotStore",
    "StaticRecipientDirectory",
    "SystemClock",
    "WebhookNotificationGateway",
    "create_gateway",
    "parse_recipients",
]

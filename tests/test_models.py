"""Tests for the Emergency aggregate and its lifecycle guards."""

from __future__ import annotations

import re
from datetime import timedelta

import pytest

from lane_sos.errors import IncidentNotTerminalError, InvalidTransitionError
from lane_sos.models import (
    ActorKind,
    DeliveryStatus,
    Emergency,
    EmergencyStatus,
    FalseAlarmIndicators,
    GeoPoint,
    NotificationChannel,
    NotificationRecord,
    RecipientClass,
    ResolutionOutcome,
    ServiceType,
    new_emergency_id,
)

from conftest import T0


@pytest.fixture
def emergency() -> Emergency:
    point = GeoPoint(latitude=12.9716, longitude=77.5946, timestamp=T0)
    e = Emergency(triggered_by="user-1", location=point, location_history=[point], created_at=T0)
    e.record_escalation(0, "SOS triggered", ActorKind.USER, T0)
    return e


def _record(level: int) -> NotificationRecord:
    return NotificationRecord(
        recipient="+15550001",
        recipient_class=RecipientClass.EMERGENCY_CONTACTS,
        channel=NotificationChannel.SMS,
        level=level,
        sent_at=T0,
        status=DeliveryStatus.SENT,
    )


class TestEmergencyId:
    def test_format(self) -> None:
        eid = new_emergency_id(T0)
        assert re.fullmatch(r"SOS-[0-9A-Z]+-[0-9A-Z]{5}", eid), f"unexpected id format: {eid}"

    def test_ids_are_unique(self) -> None:
        ids = {new_emergency_id(T0) for _ in range(50)}
        assert len(ids) == 50


class TestStatuses:
    @pytest.mark.parametrize(
        "status,terminal",
        [
            (EmergencyStatus.ACTIVE, False),
            (EmergencyStatus.ESCALATED, False),
            (EmergencyStatus.RESOLVED, True),
            (EmergencyStatus.FALSE_ALARM, True),
            (EmergencyStatus.CANCELLED, True),
        ],
    )
    def test_is_terminal(self, status: EmergencyStatus, terminal: bool) -> None:
        assert status.is_terminal is terminal

    @pytest.mark.parametrize(
        "outcome,status",
        [
            (ResolutionOutcome.SAFE, EmergencyStatus.RESOLVED),
            (ResolutionOutcome.HELPED, EmergencyStatus.RESOLVED),
            (ResolutionOutcome.NO_RESPONSE, EmergencyStatus.RESOLVED),
            (ResolutionOutcome.FALSE_ALARM, EmergencyStatus.FALSE_ALARM),
            (ResolutionOutcome.CANCELLED, EmergencyStatus.CANCELLED),
        ],
    )
    def test_outcome_maps_to_terminal_status(
        self, outcome: ResolutionOutcome, status: EmergencyStatus
    ) -> None:
        assert outcome.terminal_status is status


class TestEscalationTimeline:
    def test_levels_advance_sequentially(self, emergency: Emergency) -> None:
        for level in range(1, 5):
            emergency.record_escalation(level, f"level {level}", ActorKind.AUTO, T0 + timedelta(minutes=level))
        assert emergency.escalation_level == 4
        assert emergency.levels_reached == [0, 1, 2, 3, 4]

    def test_skipping_a_level_is_rejected(self, emergency: Emergency) -> None:
        with pytest.raises(InvalidTransitionError):
            emergency.record_escalation(2, "skip", ActorKind.AUTO, T0)
        assert emergency.escalation_level == 0
        assert len(emergency.escalation_timeline) == 1

    def test_repeating_a_level_is_rejected(self, emergency: Emergency) -> None:
        emergency.record_escalation(1, "first", ActorKind.AUTO, T0)
        with pytest.raises(InvalidTransitionError):
            emergency.record_escalation(1, "again", ActorKind.AUTO, T0)

    def test_level_zero_only_as_first_entry(self) -> None:
        e = Emergency(triggered_by="u", location=GeoPoint(latitude=0, longitude=0))
        with pytest.raises(InvalidTransitionError):
            e.record_escalation(1, "too early", ActorKind.AUTO, T0)
        e.record_escalation(0, "created", ActorKind.USER, T0)
        with pytest.raises(InvalidTransitionError):
            e.record_escalation(0, "twice", ActorKind.USER, T0)

    def test_level_above_four_is_invalid(self) -> None:
        with pytest.raises(ValueError):
            Emergency(triggered_by="u", location=GeoPoint(latitude=0, longitude=0), escalation_level=5)


class TestTerminalTransition:
    def test_resolution_sets_status_and_record(self, emergency: Emergency) -> None:
        emergency.apply_resolution("user-1", ResolutionOutcome.SAFE, T0 + timedelta(seconds=30))
        assert emergency.status is EmergencyStatus.RESOLVED
        assert emergency.resolution is not None
        assert emergency.resolution.resolved_by == "user-1"

    def test_second_resolution_is_rejected(self, emergency: Emergency) -> None:
        emergency.apply_resolution("user-1", ResolutionOutcome.SAFE, T0)
        with pytest.raises(InvalidTransitionError):
            emergency.apply_resolution("admin", ResolutionOutcome.FALSE_ALARM, T0)
        assert emergency.status is EmergencyStatus.RESOLVED

    def test_no_mutation_after_terminal(self, emergency: Emergency) -> None:
        emergency.apply_resolution("user-1", ResolutionOutcome.CANCELLED, T0)
        with pytest.raises(InvalidTransitionError):
            emergency.record_escalation(1, "late", ActorKind.AUTO, T0)
        with pytest.raises(InvalidTransitionError):
            emergency.log_notifications([_record(1)])
        with pytest.raises(InvalidTransitionError):
            emergency.add_location(GeoPoint(latitude=1, longitude=1))
        with pytest.raises(InvalidTransitionError):
            emergency.mark_escalated()
        assert emergency.levels_reached == [0]
        assert emergency.notifications_sent == []

    def test_indicators_require_terminal_status(self, emergency: Emergency) -> None:
        with pytest.raises(IncidentNotTerminalError):
            emergency.set_indicators(FalseAlarmIndicators(score=30))
        emergency.apply_resolution("user-1", ResolutionOutcome.SAFE, T0)
        emergency.set_indicators(FalseAlarmIndicators(score=30))
        assert emergency.false_alarm_indicators.score == 30


class TestDispatchAndEscalated:
    def test_mark_escalated_once(self, emergency: Emergency) -> None:
        assert emergency.mark_escalated() is True
        assert emergency.mark_escalated() is False
        assert emergency.status is EmergencyStatus.ESCALATED

    def test_dispatch_recorded_once(self, emergency: Emergency) -> None:
        emergency.record_dispatch(ServiceType.POLICE, "LANE-DISPATCH-1", T0)
        assert emergency.emergency_services.dispatched is True
        with pytest.raises(InvalidTransitionError):
            emergency.record_dispatch(ServiceType.AMBULANCE, "LANE-DISPATCH-2", T0)
        assert emergency.emergency_services.case_number == "LANE-DISPATCH-1"


class TestLocationAndSerialisation:
    def test_add_location_moves_current_point(self, emergency: Emergency) -> None:
        point = GeoPoint(latitude=13.0, longitude=77.6, speed=12.5)
        emergency.add_location(point)
        assert emergency.location == point
        assert len(emergency.location_history) == 2

    def test_maps_link(self) -> None:
        assert GeoPoint(latitude=12.5, longitude=77.25).maps_link == "https://maps.google.com/?q=12.5,77.25"

    def test_json_snapshot_restores_equal_record(self, emergency: Emergency) -> None:
        emergency.log_notifications([_record(0)])
        restored = Emergency.model_validate(emergency.model_dump(mode="json"))
        assert restored == emergency

    def test_notifications_for_level(self, emergency: Emergency) -> None:
        emergency.log_notifications([_record(0), _record(1), _record(1)])
        assert len(emergency.notifications_for_level(1)) == 2
        assert emergency.notifications_for_level(2) == []

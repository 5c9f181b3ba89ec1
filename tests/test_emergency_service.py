"""Tests for the EmergencyEngine facade: trigger, resolve, operator actions."""

from __future__ import annotations

from datetime import timedelta

import pytest

from lane_sos.errors import EmergencyNotFoundError, IncidentNotTerminalError
from lane_sos.models.emergency import GeoPoint
from lane_sos.models.enums import (
    AdminAction,
    EmergencyStatus,
    EmergencyType,
    MonitorOutcome,
    RecipientClass,
    ResolutionOutcome,
)
from lane_sos.services.emergency_service import EmergencyEngine
from lane_sos.services.notifications import Recipient

from conftest import T0, USER_ID, FakeClock, RecordingGateway


class TestTrigger:
    async def test_trigger_alerts_contacts_and_monitors(
        self, engine: EmergencyEngine, location: GeoPoint, gateway: RecordingGateway
    ) -> None:
        emergency = await engine.trigger(EmergencyType.ACCIDENT, USER_ID, location, related_ride="ride-42")

        assert emergency.status is EmergencyStatus.ACTIVE
        assert emergency.escalation_level == 0
        assert emergency.related_ride == "ride-42"
        assert emergency.escalation_timeline[0].action.startswith("SOS triggered")
        initial = emergency.notifications_for_level(0)
        assert [n.recipient for n in initial] == ["+15550001", "ravi@lane.example"]
        assert all(n.recipient_class is RecipientClass.EMERGENCY_CONTACTS for n in initial)
        assert gateway.templates() == ["sos_initial", "sos_initial"]
        assert engine.scheduler.is_monitoring(emergency.emergency_id)

    async def test_trigger_registers_supplied_contacts(
        self, engine: EmergencyEngine, location: GeoPoint, gateway: RecordingGateway
    ) -> None:
        emergency = await engine.trigger(
            EmergencyType.SOS,
            "user-2",
            location,
            contacts=[Recipient(name="Meera", address="+15550777")],
        )
        assert [n.recipient for n in emergency.notifications_sent] == ["+15550777"]
        assert [c.address for c in emergency.emergency_contacts] == ["+15550777"]

    async def test_trigger_stores_contacts_on_file(self, engine: EmergencyEngine, location: GeoPoint) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        assert [c.name for c in emergency.emergency_contacts] == ["Asha", "Ravi"]

    async def test_trigger_without_contacts_records_failed_attempt(
        self, engine: EmergencyEngine, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, "user-without-contacts", location)
        assert len(emergency.notifications_sent) == 1
        assert emergency.notifications_sent[0].error == "no recipients configured"


class TestResolve:
    async def test_resolve_at_30s_is_quick(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await clock.advance(30)

        result = await engine.resolve(emergency.emergency_id, USER_ID, ResolutionOutcome.SAFE)

        resolved = result.emergency
        assert result.outcome is MonitorOutcome.APPLIED
        assert resolved.status is EmergencyStatus.RESOLVED
        assert resolved.escalation_level == 0
        assert len(resolved.escalation_timeline) == 1
        assert resolved.resolution.resolved_at == T0 + timedelta(seconds=30)
        indicators = resolved.false_alarm_indicators
        assert indicators.quick_resolution is True
        assert indicators.no_response is True, "contacts were alerted and no admin responded"
        assert indicators.score == 50
        assert indicators.flagged is True
        assert not engine.scheduler.is_monitoring(emergency.emergency_id)

    async def test_resolve_at_90s_is_not_quick(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await clock.advance(90)

        resolved = (await engine.resolve(emergency.emergency_id, USER_ID, ResolutionOutcome.SAFE)).emergency
        assert resolved.escalation_level == 0
        assert resolved.false_alarm_indicators.quick_resolution is False
        assert resolved.false_alarm_indicators.score == 20
        assert resolved.false_alarm_indicators.flagged is False

    async def test_second_resolve_is_noop(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        first = await engine.resolve(emergency.emergency_id, USER_ID, ResolutionOutcome.SAFE, "all good")
        await clock.advance(60)
        second = await engine.resolve(emergency.emergency_id, "ops-1", ResolutionOutcome.FALSE_ALARM)

        assert second.outcome is MonitorOutcome.ALREADY_TERMINAL
        assert second.emergency.status is EmergencyStatus.RESOLVED
        assert second.emergency.resolution == first.emergency.resolution
        assert second.emergency.escalation_timeline == first.emergency.escalation_timeline

    async def test_false_alarm_outcome(self, engine: EmergencyEngine, location: GeoPoint) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        result = await engine.resolve(emergency.emergency_id, "ops-1", ResolutionOutcome.FALSE_ALARM)
        assert result.emergency.status is EmergencyStatus.FALSE_ALARM

    async def test_resolve_after_escalation_keeps_level(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await clock.advance_to(timedelta(minutes=6))
        result = await engine.resolve(emergency.emergency_id, USER_ID, ResolutionOutcome.HELPED)
        await clock.advance_to(timedelta(minutes=30))

        final = await engine.get(emergency.emergency_id)
        assert final.escalation_level == 2
        assert final.levels_reached == [0, 1, 2]
        assert result.emergency.false_alarm_indicators.quick_resolution is False

    async def test_repeated_triggers_detected(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        for _ in range(2):
            earlier = await engine.trigger(EmergencyType.SOS, USER_ID, location)
            await engine.resolve(earlier.emergency_id, USER_ID, ResolutionOutcome.CANCELLED)
            await clock.advance(600)

        third = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        resolved = (await engine.resolve(third.emergency_id, USER_ID, ResolutionOutcome.SAFE)).emergency
        assert resolved.false_alarm_indicators.repeated_triggers is True

    async def test_unknown_incident(self, engine: EmergencyEngine) -> None:
        with pytest.raises(EmergencyNotFoundError):
            await engine.resolve("SOS-MISSING", USER_ID, ResolutionOutcome.SAFE)


class TestOperatorActions:
    async def test_manual_escalation(self, engine: EmergencyEngine, location: GeoPoint) -> None:
        emergency = await engine.trigger(EmergencyType.THREAT, USER_ID, location)

        assert await engine.escalate_manually(emergency.emergency_id, "ops-1") is MonitorOutcome.APPLIED
        assert await engine.escalate_manually(emergency.emergency_id, "ops-1") is MonitorOutcome.ALREADY_ESCALATED

        escalated = await engine.get(emergency.emergency_id)
        assert escalated.status is EmergencyStatus.ESCALATED
        assert escalated.escalation_level == 0
        assert len(escalated.escalation_timeline) == 1

        await engine.resolve(emergency.emergency_id, "ops-1", ResolutionOutcome.HELPED)
        assert await engine.escalate_manually(emergency.emergency_id, "ops-1") is MonitorOutcome.ALREADY_TERMINAL

    async def test_manual_escalation_does_not_stop_timetable(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await engine.escalate_manually(emergency.emergency_id, "ops-1")
        await clock.advance_to(timedelta(minutes=15))
        final = await engine.get(emergency.emergency_id)
        assert final.escalation_level == 4
        assert final.emergency_services.dispatched is True

    async def test_admin_response_clears_no_response_on_rescore(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await clock.advance(120)
        resolved = (await engine.resolve(emergency.emergency_id, USER_ID, ResolutionOutcome.SAFE)).emergency
        assert resolved.false_alarm_indicators.no_response is True

        updated = await engine.record_admin_response(
            emergency.emergency_id, "ops-1", AdminAction.CONTACTED_USER, "called rider"
        )
        assert updated.admin_response.action is AdminAction.CONTACTED_USER
        assert updated.false_alarm_indicators.no_response is False

    async def test_admin_response_on_open_incident(self, engine: EmergencyEngine, location: GeoPoint) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        updated = await engine.record_admin_response(emergency.emergency_id, "ops-1", AdminAction.MONITORED)
        assert updated.admin_response.responded_by == "ops-1"
        assert updated.status is EmergencyStatus.ACTIVE
        assert updated.false_alarm_indicators.score == 0

    async def test_user_reported_adds_points(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await clock.advance(300)
        await engine.record_admin_response(emergency.emergency_id, "ops-1", AdminAction.CONTACTED_USER)
        await engine.resolve(emergency.emergency_id, "ops-1", ResolutionOutcome.FALSE_ALARM)

        reported = await engine.mark_user_reported(emergency.emergency_id)
        assert reported.user_reported is True
        assert reported.false_alarm_indicators.user_reported is True
        assert reported.false_alarm_indicators.score == 25

    async def test_rescore_requires_terminal(self, engine: EmergencyEngine, location: GeoPoint) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        with pytest.raises(IncidentNotTerminalError):
            await engine.rescore(emergency.emergency_id)


class TestTracking:
    async def test_location_updates_until_terminal(self, engine: EmergencyEngine, location: GeoPoint) -> None:
        emergency = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        moved = GeoPoint(latitude=12.98, longitude=77.6, speed=30.0)

        assert await engine.update_location(emergency.emergency_id, moved) is MonitorOutcome.APPLIED
        current = await engine.get(emergency.emergency_id)
        assert current.location == moved
        assert len(current.location_history) == 2

        await engine.resolve(emergency.emergency_id, USER_ID, ResolutionOutcome.SAFE)
        late = GeoPoint(latitude=13.0, longitude=77.7)
        assert await engine.update_location(emergency.emergency_id, late) is MonitorOutcome.ALREADY_TERMINAL
        assert len((await engine.get(emergency.emergency_id)).location_history) == 2


class TestReads:
    async def test_active_history_and_stats(
        self, engine: EmergencyEngine, clock: FakeClock, location: GeoPoint
    ) -> None:
        open_one = await engine.trigger(EmergencyType.SOS, USER_ID, location)
        await clock.advance(60)
        closed = await engine.trigger(EmergencyType.MEDICAL, USER_ID, location)
        await clock.advance(60)
        await engine.resolve(closed.emergency_id, USER_ID, ResolutionOutcome.SAFE)

        assert [e.emergency_id for e in await engine.list_active()] == [open_one.emergency_id]
        history = await engine.history_for_user(USER_ID)
        assert [e.emergency_id for e in history] == [closed.emergency_id, open_one.emergency_id]
        assert await engine.history_for_user("nobody") == []

        stats = await engine.escalation_stats()
        assert stats.total == 2
        assert stats.avg_resolution_minutes == 1.0

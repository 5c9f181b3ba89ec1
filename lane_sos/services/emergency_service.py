"""SOS engine facade used by the HTTP layer.

:class:`EmergencyEngine` composes the incident store, escalation scheduler,
notification fan-out and false-alarm scorer into the operations callers
need: trigger, resolve, operator actions, tracking updates and reads.

Resolution is the only path to a terminal status.  It runs inside the
incident's store transaction and stops monitoring before releasing the
lock, so no escalation level can slip in between the status write and the
cancellation.  Scoring follows in a separate transaction once the terminal
status is committed.
"""

from __future__ import annotations

from datetime import timedelta

import structlog
from pydantic import BaseModel

from lane_sos.errors import IncidentNotTerminalError
from lane_sos.models.emergency import AdminResponse, Emergency, GeoPoint
from lane_sos.models.enums import (
    AdminAction,
    EmergencyPriority,
    EmergencyType,
    MonitorOutcome,
    ResolutionOutcome,
)
from lane_sos.services.clock import Clock, SystemClock
from lane_sos.services.escalation import EscalationScheduler
from lane_sos.services.false_alarm import FalseAlarmScorer
from lane_sos.services.incident_store import EscalationStats, IncidentStore
from lane_sos.services.notifications import (
    NotificationFanout,
    Recipient,
    StaticRecipientDirectory,
)
from lane_sos.services.policy import EscalationPolicy

logger = structlog.get_logger(__name__)


class ResolveResult(BaseModel):
    """Outcome of :meth:`EmergencyEngine.resolve`.

    ``outcome`` is ``APPLIED`` for the call that made the incident terminal
    and ``ALREADY_TERMINAL`` for every later call.
    """

    outcome: MonitorOutcome
    emergency: Emergency


class EmergencyEngine:
    """Entry point for every SOS operation."""

    __slots__ = (
        "_clock",
        "_directory",
        "_fanout",
        "_policy",
        "_scheduler",
        "_scorer",
        "_store",
    )

    def __init__(
        self,
        store: IncidentStore,
        scheduler: EscalationScheduler,
        scorer: FalseAlarmScorer,
        fanout: NotificationFanout,
        policy: EscalationPolicy,
        *,
        directory: StaticRecipientDirectory | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._scorer = scorer
        self._fanout = fanout
        self._policy = policy
        self._directory = directory
        self._clock = clock or SystemClock()

    @property
    def scheduler(self) -> EscalationScheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # Trigger / resolve
    # ------------------------------------------------------------------

    async def trigger(
        self,
        type: EmergencyType,
        triggered_by: str,
        location: GeoPoint,
        *,
        related_ride: str | None = None,
        related_booking: str | None = None,
        contacts: list[Recipient] | None = None,
        priority: EmergencyPriority = EmergencyPriority.HIGH,
    ) -> Emergency:
        """Create an incident, alert the user's contacts and start monitoring.

        The contacts alerted at trigger time are stored on the incident, so
        an incident recovered after a restart still escalates to them.
        Without *contacts*, the ones on file for the user are used.
        """
        if self._directory is not None:
            if contacts is not None:
                self._directory.register_contacts(triggered_by, contacts)
            else:
                contacts = self._directory.contacts_on_file(triggered_by)

        initial = self._policy.initial
        emergency = await self._store.create(
            type,
            triggered_by,
            location,
            related_ride=related_ride,
            related_booking=related_booking,
            priority=priority,
            initial_action=initial.description if initial is not None else "SOS triggered",
            contacts=contacts,
        )
        emergency_id = emergency.emergency_id

        if initial is not None:
            async with self._store.transaction(emergency_id) as working:
                if not working.is_terminal:
                    records = await self._fanout.dispatch(working, initial)
                    working.log_notifications(records)

        await self._scheduler.start_monitoring(emergency_id)

        logger.warning(
            "sos.triggered",
            emergency_id=emergency_id,
            type=type,
            triggered_by=triggered_by,
            related_ride=related_ride,
        )
        return await self._store.get(emergency_id)

    async def resolve(
        self,
        emergency_id: str,
        resolved_by: str,
        outcome: ResolutionOutcome,
        notes: str | None = None,
    ) -> ResolveResult:
        """Move the incident to its terminal status exactly once."""
        applied = False
        async with self._store.transaction(emergency_id) as emergency:
            if not emergency.is_terminal:
                emergency.apply_resolution(resolved_by, outcome, self._clock.now(), notes)
                self._scheduler.stop_monitoring(emergency_id)
                applied = True

        if not applied:
            logger.info("sos.resolve_noop", emergency_id=emergency_id)
            return ResolveResult(
                outcome=MonitorOutcome.ALREADY_TERMINAL,
                emergency=await self._store.get(emergency_id),
            )

        scored = await self.rescore(emergency_id)
        logger.info(
            "sos.resolved",
            emergency_id=emergency_id,
            outcome=outcome,
            resolved_by=resolved_by,
            level=scored.escalation_level,
            false_alarm_score=scored.false_alarm_indicators.score,
        )
        return ResolveResult(outcome=MonitorOutcome.APPLIED, emergency=scored)

    async def rescore(self, emergency_id: str) -> Emergency:
        """Recompute false-alarm indicators for a terminal incident."""
        async with self._store.transaction(emergency_id) as emergency:
            if not emergency.is_terminal:
                raise IncidentNotTerminalError(emergency_id, emergency.status)
            emergency.set_indicators(await self._scorer.score(emergency))
        return await self._store.get(emergency_id)

    # ------------------------------------------------------------------
    # Operator and tracking actions
    # ------------------------------------------------------------------

    async def escalate_manually(self, emergency_id: str, operator: str) -> MonitorOutcome:
        """Flag the incident ESCALATED without touching its level."""
        async with self._store.transaction(emergency_id) as emergency:
            if emergency.is_terminal:
                return MonitorOutcome.ALREADY_TERMINAL
            if not emergency.mark_escalated():
                return MonitorOutcome.ALREADY_ESCALATED

        logger.warning("sos.manually_escalated", emergency_id=emergency_id, operator=operator)
        return MonitorOutcome.APPLIED

    async def record_admin_response(
        self,
        emergency_id: str,
        responded_by: str,
        action: AdminAction,
        notes: str | None = None,
    ) -> Emergency:
        async with self._store.transaction(emergency_id) as emergency:
            emergency.admin_response = AdminResponse(
                responded_by=responded_by,
                responded_at=self._clock.now(),
                action=action,
                notes=notes,
            )
            terminal = emergency.is_terminal

        logger.info(
            "sos.admin_responded",
            emergency_id=emergency_id,
            responded_by=responded_by,
            action=action,
        )
        if terminal:
            return await self.rescore(emergency_id)
        return await self._store.get(emergency_id)

    async def update_location(self, emergency_id: str, point: GeoPoint) -> MonitorOutcome:
        async with self._store.transaction(emergency_id) as emergency:
            if emergency.is_terminal:
                return MonitorOutcome.ALREADY_TERMINAL
            emergency.add_location(point)
        return MonitorOutcome.APPLIED

    async def mark_user_reported(self, emergency_id: str) -> Emergency:
        """Set the manual false-alarm flag; re-scores terminal incidents."""
        async with self._store.transaction(emergency_id) as emergency:
            emergency.user_reported = True
            terminal = emergency.is_terminal

        logger.info("sos.reported_false_alarm", emergency_id=emergency_id)
        if terminal:
            return await self.rescore(emergency_id)
        return await self._store.get(emergency_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, emergency_id: str) -> Emergency:
        return await self._store.get(emergency_id)

    async def list_active(self) -> list[Emergency]:
        return await self._store.list_active()

    async def history_for_user(self, user_id: str, *, days: int | None = None) -> list[Emergency]:
        since = None
        if days is not None:
            since = self._clock.now() - timedelta(days=days)
        return await self._store.list_for_user(user_id, since=since)

    async def escalation_stats(self, days: int = 30) -> EscalationStats:
        return await self._store.escalation_stats(days)

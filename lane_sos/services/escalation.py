"""Escalation scheduler: drives unresolved incidents up the policy timetable.

Each monitored incident owns exactly one :class:`asyncio.Task` that walks
the remaining policy levels in order, sleeping until each deadline
(``created_at + level.deadline``) and then firing the level.  Cancelling
that task is how monitoring stops, so resolution cancels every remaining
level at once.

Firing a level happens inside :meth:`IncidentStore.transaction`, the same
per-incident lock the resolution path writes under.  Inside the lock the
handler re-reads the incident and gives up if it is terminal or if its
session was stopped; otherwise it appends the timeline entry, advances the
level, fans out notifications and records every attempt.  The level action
runs as its own task behind :func:`asyncio.shield`: a stop request that
arrives mid-level lets that one level finish, then nothing further is
armed.

Deadlines are anchored to the persisted ``created_at``, which makes
:meth:`EscalationScheduler.recover` a matter of calling
:meth:`~EscalationScheduler.start_monitoring` again for every non-terminal
incident after a restart.  Levels whose deadline already passed fire
immediately, in order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog

from lane_sos.models.emergency import Emergency
from lane_sos.models.enums import ActorKind, EscalationAction, MonitorOutcome
from lane_sos.services.clock import Clock, SystemClock
from lane_sos.services.dispatch import DispatchService, service_type_for
from lane_sos.services.incident_store import IncidentStore
from lane_sos.services.notifications import NotificationFanout
from lane_sos.services.policy import EscalationPolicy, PolicyLevel

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")


class _MonitoringSession:
    """Registry entry for one monitored incident."""

    __slots__ = ("cancelled", "emergency_id", "inflight", "task")

    def __init__(self, emergency_id: str) -> None:
        self.emergency_id = emergency_id
        self.task: asyncio.Task[None] | None = None
        self.inflight: asyncio.Task[bool] | None = None
        self.cancelled = False

    @property
    def live(self) -> bool:
        return not self.cancelled and self.task is not None and not self.task.done()


class EscalationScheduler:
    """Per-incident deadline chains over a shared :class:`EscalationPolicy`.

    Parameters
    ----------
    store:
        Incident store; its per-incident lock is the serialisation point
        shared with the resolution path.
    policy:
        Validated escalation timetable.
    fanout:
        Notification fan-out used at every level.
    dispatcher:
        Opens the authority case and requests emergency services.
    clock:
        Time source for deadlines and timeline timestamps.
    dispatch_timeout_seconds:
        Upper bound on each dispatcher call, which runs under the incident
        lock.  A call that times out is noted on the timeline and the level
        still fires.
    """

    __slots__ = (
        "_clock",
        "_dispatch_timeout",
        "_dispatcher",
        "_fanout",
        "_policy",
        "_sessions",
        "_store",
    )

    def __init__(
        self,
        store: IncidentStore,
        policy: EscalationPolicy,
        fanout: NotificationFanout,
        dispatcher: DispatchService,
        *,
        clock: Clock | None = None,
        dispatch_timeout_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self._policy = policy
        self._fanout = fanout
        self._dispatcher = dispatcher
        self._dispatch_timeout = dispatch_timeout_seconds
        self._clock = clock or SystemClock()
        self._sessions: dict[str, _MonitoringSession] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_monitoring(self, emergency_id: str) -> MonitorOutcome:
        """Arm the deadline chain for *emergency_id*.

        Raises
        ------
        EmergencyNotFoundError
            The incident does not exist.
        PolicyConfigurationError
            A level the incident can still reach has no policy entry.
        """
        emergency = await self._store.get(emergency_id)

        if emergency.is_terminal:
            return MonitorOutcome.ALREADY_TERMINAL

        existing = self._sessions.get(emergency_id)
        if existing is not None and existing.live:
            logger.debug("escalation.already_monitoring", emergency_id=emergency_id)
            return MonitorOutcome.ALREADY_MONITORING

        for number in range(emergency.escalation_level + 1, self._policy.final_level + 1):
            self._policy.level(number)

        if emergency.escalation_level >= self._policy.final_level:
            return MonitorOutcome.ALREADY_ESCALATED

        session = _MonitoringSession(emergency_id)
        session.task = asyncio.get_running_loop().create_task(
            self._run(session),
            name=f"sos-escalation-{emergency_id}",
        )
        self._sessions[emergency_id] = session

        logger.info(
            "escalation.monitoring_started",
            emergency_id=emergency_id,
            level=emergency.escalation_level,
            created_at=emergency.created_at.isoformat(),
        )
        return MonitorOutcome.APPLIED

    def stop_monitoring(self, emergency_id: str) -> bool:
        """Cancel every pending level.  Returns True if a session was stopped.

        Synchronous so the resolution path can call it while it still holds
        the incident's lock.
        """
        session = self._sessions.pop(emergency_id, None)
        if session is None:
            return False

        session.cancelled = True
        if session.task is not None and not session.task.done():
            session.task.cancel()

        logger.info("escalation.monitoring_stopped", emergency_id=emergency_id)
        return True

    async def recover(self) -> list[str]:
        """Resume monitoring for every non-terminal incident in the store."""
        resumed: list[str] = []
        for emergency in await self._store.list_active():
            outcome = await self.start_monitoring(emergency.emergency_id)
            if outcome is MonitorOutcome.APPLIED:
                resumed.append(emergency.emergency_id)

        logger.info("escalation.recovered", count=len(resumed), emergency_ids=resumed)
        return resumed

    def active_escalations(self) -> list[str]:
        return sorted(eid for eid, session in self._sessions.items() if session.live)

    def is_monitoring(self, emergency_id: str) -> bool:
        session = self._sessions.get(emergency_id)
        return session is not None and session.live

    async def shutdown(self) -> None:
        """Cancel all deadline chains and let in-flight levels finish.

        Incidents stay non-terminal in the store and are picked up again by
        :meth:`recover` on the next start.
        """
        sessions = list(self._sessions.values())
        self._sessions.clear()

        tasks = [s.task for s in sessions if s.task is not None and not s.task.done()]
        for task in tasks:
            task.cancel()
        inflight = [s.inflight for s in sessions if s.inflight is not None]

        await asyncio.gather(*tasks, *inflight, return_exceptions=True)
        logger.info("escalation.shutdown", sessions=len(sessions))

    # ------------------------------------------------------------------
    # Deadline chain
    # ------------------------------------------------------------------

    async def _run(self, session: _MonitoringSession) -> None:
        emergency_id = session.emergency_id
        try:
            emergency = await self._store.get(emergency_id)
            for policy_level in self._policy.levels_after(emergency.escalation_level):
                due = emergency.created_at + policy_level.deadline
                delay = (due - self._clock.now()).total_seconds()
                if delay > 0:
                    await self._clock.sleep(delay)

                if session.cancelled:
                    return

                session.inflight = asyncio.ensure_future(self._fire_level(session, policy_level))
                proceed = await asyncio.shield(session.inflight)
                session.inflight = None
                if not proceed:
                    return
        except asyncio.CancelledError:
            logger.debug("escalation.chain_cancelled", emergency_id=emergency_id)
            raise
        except Exception:
            logger.error("escalation.chain_failed", emergency_id=emergency_id, exc_info=True)
        finally:
            if self._sessions.get(emergency_id) is session:
                del self._sessions[emergency_id]

    async def _fire_level(self, session: _MonitoringSession, policy_level: PolicyLevel) -> bool:
        """Apply one level.  Returns True if the chain should continue."""
        emergency_id = session.emergency_id
        level = policy_level.level
        try:
            async with self._store.transaction(emergency_id) as emergency:
                if session.cancelled or emergency.is_terminal:
                    logger.info(
                        "escalation.level_discarded",
                        emergency_id=emergency_id,
                        level=level,
                        status=emergency.status,
                    )
                    return False
                if emergency.escalation_level >= level:
                    return True

                await self._apply_level(emergency, policy_level)
        except Exception:
            logger.error(
                "escalation.level_failed",
                emergency_id=emergency_id,
                level=level,
                exc_info=True,
            )
            return False

        logger.warning(
            "escalation.level_reached",
            emergency_id=emergency_id,
            level=level,
            recipient_class=policy_level.recipient_class,
            terminal=policy_level.terminal,
        )
        return not policy_level.terminal

    @property
    def _timeout_note(self) -> str:
        return f"timed out after {self._dispatch_timeout:g}s"

    async def _call_dispatcher(
        self,
        emergency: Emergency,
        policy_level: PolicyLevel,
        call: Awaitable[_T],
    ) -> _T | None:
        """Await a dispatcher call; ``None`` if it exceeds the timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self._dispatch_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "escalation.dispatcher_timed_out",
                emergency_id=emergency.emergency_id,
                level=policy_level.level,
                action=policy_level.action,
                timeout_seconds=self._dispatch_timeout,
            )
            return None

    async def _apply_level(self, emergency: Emergency, policy_level: PolicyLevel) -> None:
        # Runs under the incident lock on a working copy; any exception
        # discards the whole level.
        now = self._clock.now()
        action = policy_level.description
        extra: dict[str, Any] = {}
        dispatch_record = None

        if policy_level.action is EscalationAction.NOTIFY_AUTHORITIES:
            case = await self._call_dispatcher(
                emergency, policy_level, self._dispatcher.open_authority_case(emergency)
            )
            if case is None:
                action = f"{action} (Case: not opened, {self._timeout_note})"
                extra["case_number"] = "pending"
            else:
                action = f"{action} (Case: {case.case_number})"
                extra["case_number"] = case.case_number
        elif policy_level.action is EscalationAction.DISPATCH_SERVICES:
            service_type = service_type_for(emergency.type)
            dispatch_record = await self._call_dispatcher(
                emergency, policy_level, self._dispatcher.dispatch(emergency, service_type)
            )
            extra["service_type"] = service_type.value
            if dispatch_record is None:
                action = f"{action} ({service_type}, request {self._timeout_note})"
                extra["case_number"] = "pending"
            else:
                action = f"{action} ({service_type})"
                extra["case_number"] = dispatch_record.case_number

        emergency.record_escalation(policy_level.level, action, ActorKind.AUTO, now)

        records = await self._fanout.dispatch(emergency, policy_level, extra)
        emergency.log_notifications(records)

        if policy_level.terminal:
            emergency.mark_escalated()
            if dispatch_record is not None:
                emergency.record_dispatch(
                    dispatch_record.service_type,
                    dispatch_record.case_number,
                    dispatch_record.dispatched_at,
                    dispatch_record.notes,
                )

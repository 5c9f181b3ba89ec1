"""Incident store: the single source of truth for Emergency records.

Design notes:
    - Every read-modify-write goes through :meth:`IncidentStore.transaction`,
      which holds a per-incident :class:`asyncio.Lock`.  The scheduler's
      "still non-terminal? then advance" check and the resolution write
      share that lock, so a resolve that lands first always wins.
    - Locks are keyed by incident id.  There is no store-wide lock, so
      unrelated emergencies never serialise behind each other.
    - Committed records are replaced wholesale, never mutated in place,
      which lets :meth:`get` hand out consistent copies without locking.
    - Each commit is written through to a :class:`SnapshotStore` so
      :meth:`load` can rebuild state after a restart.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ValidationError

from lane_sos.errors import EmergencyNotFoundError
from lane_sos.models.emergency import Emergency, GeoPoint, Recipient, new_emergency_id
from lane_sos.models.enums import (
    ActorKind,
    EmergencyPriority,
    EmergencyStatus,
    EmergencyType,
)
from lane_sos.services.clock import Clock, SystemClock
from lane_sos.services.snapshots import SnapshotStore

logger = structlog.get_logger(__name__)

_PRIORITY_RANK = {
    EmergencyPriority.CRITICAL: 3,
    EmergencyPriority.HIGH: 2,
    EmergencyPriority.MEDIUM: 1,
    EmergencyPriority.LOW: 0,
}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class IncidentHistory(BaseModel):
    """How often a user triggered SOS inside a trailing window."""

    count: int
    false_alarm_count: int


class EscalationStats(BaseModel):
    total: int
    escalated: int
    false_alarms: int
    services_dispatched: int
    avg_resolution_minutes: float | None


@runtime_checkable
class IncidentHistoryLookup(Protocol):
    """Injected into the false-alarm scorer."""

    async def count_recent_incidents(
        self,
        user_id: str,
        window_hours: int,
        *,
        as_of: datetime | None = None,
    ) -> IncidentHistory: ...


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class IncidentStore:
    """In-process Emergency store with per-incident atomic updates.

    Parameters
    ----------
    clock:
        Source of ``created_at`` / ``updated_at`` timestamps.
    snapshots:
        Optional write-through snapshot store.  When ``None`` the store
        is purely in-memory.
    """

    __slots__ = ("_clock", "_locks", "_records", "_snapshots")

    def __init__(
        self,
        clock: Clock | None = None,
        snapshots: SnapshotStore | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._snapshots = snapshots
        self._records: dict[str, Emergency] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        type: EmergencyType,
        triggered_by: str,
        location: GeoPoint,
        *,
        related_ride: str | None = None,
        related_booking: str | None = None,
        priority: EmergencyPriority = EmergencyPriority.HIGH,
        initial_action: str = "SOS triggered",
        contacts: list[Recipient] | None = None,
    ) -> Emergency:
        """Persist a new ACTIVE, level-0 incident and return a copy of it."""
        now = self._clock.now()
        emergency = Emergency(
            triggered_by=triggered_by,
            related_ride=related_ride,
            related_booking=related_booking,
            type=type,
            priority=priority,
            location=location,
            location_history=[location],
            emergency_contacts=list(contacts or []),
            created_at=now,
            updated_at=now,
            version=1,
        )
        while emergency.emergency_id in self._records:
            emergency.emergency_id = new_emergency_id(now)

        emergency.record_escalation(0, initial_action, ActorKind.USER, now)

        self._locks[emergency.emergency_id] = asyncio.Lock()
        self._records[emergency.emergency_id] = emergency
        await self._write_snapshot(emergency)

        logger.info(
            "incident_store.created",
            emergency_id=emergency.emergency_id,
            type=emergency.type,
            triggered_by=triggered_by,
        )
        return emergency.model_copy(deep=True)

    async def get(self, emergency_id: str) -> Emergency:
        record = self._records.get(emergency_id)
        if record is None:
            raise EmergencyNotFoundError(emergency_id)
        return record.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Atomic update
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def transaction(self, emergency_id: str) -> AsyncIterator[Emergency]:
        """Lock one incident and yield a working copy to mutate.

        The copy is committed when the block exits normally and differs
        from the stored record.  An exception discards it.
        """
        if emergency_id not in self._records:
            raise EmergencyNotFoundError(emergency_id)

        lock = self._locks.setdefault(emergency_id, asyncio.Lock())
        async with lock:
            current = self._records[emergency_id]
            working = current.model_copy(deep=True)
            yield working
            if working != current:
                working.version = current.version + 1
                working.updated_at = self._clock.now()
                self._records[emergency_id] = working
                await self._write_snapshot(working)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_active(self) -> list[Emergency]:
        """Non-terminal incidents, most urgent first."""
        active = [e for e in self._records.values() if not e.is_terminal]
        active.sort(
            key=lambda e: (
                _PRIORITY_RANK[e.priority],
                e.escalation_level,
                e.created_at,
            ),
            reverse=True,
        )
        return [e.model_copy(deep=True) for e in active]

    async def list_for_user(
        self, user_id: str, *, since: datetime | None = None
    ) -> list[Emergency]:
        found = [
            e for e in self._records.values()
            if e.triggered_by == user_id and (since is None or e.created_at >= since)
        ]
        found.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in found]

    async def count_recent_incidents(
        self,
        user_id: str,
        window_hours: int,
        *,
        as_of: datetime | None = None,
    ) -> IncidentHistory:
        """Incidents the user triggered in ``(as_of - window, as_of]``."""
        end = as_of or self._clock.now()
        start = end - timedelta(hours=window_hours)
        recent = [
            e for e in self._records.values()
            if e.triggered_by == user_id and start <= e.created_at <= end
        ]
        return IncidentHistory(
            count=len(recent),
            false_alarm_count=sum(1 for e in recent if e.status is EmergencyStatus.FALSE_ALARM),
        )

    async def escalation_stats(self, days: int = 30) -> EscalationStats:
        cutoff = self._clock.now() - timedelta(days=days)
        recent = [e for e in self._records.values() if e.created_at >= cutoff]
        durations = [
            (e.resolution.resolved_at - e.created_at).total_seconds() / 60
            for e in recent
            if e.resolution is not None
        ]
        return EscalationStats(
            total=len(recent),
            escalated=sum(1 for e in recent if e.escalation_level >= 3),
            false_alarms=sum(1 for e in recent if e.status is EmergencyStatus.FALSE_ALARM),
            services_dispatched=sum(1 for e in recent if e.emergency_services.dispatched),
            avg_resolution_minutes=(
                round(sum(durations) / len(durations), 2) if durations else None
            ),
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Restore every stored snapshot.  Returns the count loaded."""
        if self._snapshots is None:
            return 0

        loaded = 0
        for snapshot_id, payload in (await self._snapshots.load_all()).items():
            try:
                emergency = Emergency.model_validate(payload)
            except ValidationError:
                logger.warning("incident_store.snapshot_invalid", emergency_id=snapshot_id, exc_info=True)
                continue
            existing = self._records.get(emergency.emergency_id)
            if existing is not None and existing.version >= emergency.version:
                continue
            self._records[emergency.emergency_id] = emergency
            self._locks.setdefault(emergency.emergency_id, asyncio.Lock())
            loaded += 1

        logger.info("incident_store.loaded", count=loaded)
        return loaded

    async def _write_snapshot(self, emergency: Emergency) -> None:
        if self._snapshots is None:
            return
        try:
            await self._snapshots.save(emergency.emergency_id, emergency.model_dump(mode="json"))
        except Exception:
            logger.warning(
                "incident_store.snapshot_failed",
                emergency_id=emergency.emergency_id,
                exc_info=True,
            )

    def __len__(self) -> int:
        return len(self._records)

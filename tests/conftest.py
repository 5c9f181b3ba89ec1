"""Shared fixtures: a steppable clock and a fully wired engine.

``FakeClock`` replaces wall time so a 15-minute escalation timetable runs
instantly.  ``advance()`` wakes sleepers one deadline at a time, in order,
and lets the event loop settle after each wake-up so every level's
transaction and fan-out completes before the next deadline is released.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from lane_sos.models.emergency import GeoPoint
from lane_sos.models.enums import DeliveryStatus, NotificationChannel
from lane_sos.services.dispatch import LoggingDispatchService
from lane_sos.services.emergency_service import EmergencyEngine
from lane_sos.services.escalation import EscalationScheduler
from lane_sos.services.false_alarm import FalseAlarmScorer
from lane_sos.services.incident_store import IncidentStore
from lane_sos.services.notifications import (
    NotificationFanout,
    Recipient,
    SendResult,
    StaticRecipientDirectory,
)
from lane_sos.services.policy import EscalationPolicy

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
USER_ID = "user-1"


async def settle(rounds: int = 100) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Simulated time source implementing the ``Clock`` protocol."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._waiters: list[tuple[datetime, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        due = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._waiters, (due, next(self._seq), future))
        await future

    async def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)
        await settle()
        while self._waiters and self._waiters[0][0] <= target:
            due, _, future = heapq.heappop(self._waiters)
            self._now = max(self._now, due)
            if not future.done():
                future.set_result(None)
            await settle()
        self._now = target
        await settle()

    async def advance_to(self, elapsed: timedelta, start: datetime = T0) -> None:
        await self.advance(((start + elapsed) - self._now).total_seconds())


class RecordingGateway:
    """Gateway double that records every send.

    Addresses listed in ``failing`` report FAILED; if ``hold`` is set, sends
    to ``held_template`` block until the event is released.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.failing: set[str] = set()
        self.hold: asyncio.Event | None = None
        self.held_template: str | None = None

    async def send(self, recipient: Recipient, template: str, context: dict[str, Any]) -> SendResult:
        if self.hold is not None and template == self.held_template:
            await self.hold.wait()
        self.sent.append((recipient.address, template, dict(context)))
        if recipient.address in self.failing:
            return SendResult(status=DeliveryStatus.FAILED, error="provider rejected")
        return SendResult(status=DeliveryStatus.SENT, message_id=f"msg-{len(self.sent)}")

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]


class CountingDispatchService(LoggingDispatchService):
    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock)
        self.authority_calls = 0
        self.dispatch_calls = 0

    async def open_authority_case(self, emergency):
        self.authority_calls += 1
        return await super().open_authority_case(emergency)

    async def dispatch(self, emergency, service_type):
        self.dispatch_calls += 1
        return await super().dispatch(emergency, service_type)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def location() -> GeoPoint:
    return GeoPoint(latitude=12.9716, longitude=77.5946, accuracy=8.0, timestamp=T0)


@pytest.fixture
def contacts() -> list[Recipient]:
    return [
        Recipient(name="Asha", address="+15550001"),
        Recipient(name="Ravi", address="ravi@lane.example", channel=NotificationChannel.EMAIL),
    ]


@pytest.fixture
def store(clock: FakeClock) -> IncidentStore:
    return IncidentStore(clock=clock)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def directory(contacts: list[Recipient]) -> StaticRecipientDirectory:
    directory = StaticRecipientDirectory(
        admins=[Recipient(name="Ops Desk", address="+15550100")],
        authorities=[Recipient(name="City Police", address="+15550112")],
        dispatch=[Recipient(name="Dispatch", address="dispatch@lane.example")],
    )
    directory.register_contacts(USER_ID, contacts)
    return directory


@pytest.fixture
def policy() -> EscalationPolicy:
    return EscalationPolicy.default()


@pytest.fixture
def fanout(gateway: RecordingGateway, directory: StaticRecipientDirectory, clock: FakeClock) -> NotificationFanout:
    return NotificationFanout(gateway, directory, clock=clock, timeout_seconds=5.0)


@pytest.fixture
def dispatcher(clock: FakeClock) -> CountingDispatchService:
    return CountingDispatchService(clock)


@pytest.fixture
async def scheduler(
    store: IncidentStore,
    policy: EscalationPolicy,
    fanout: NotificationFanout,
    dispatcher: CountingDispatchService,
    clock: FakeClock,
):
    scheduler = EscalationScheduler(store, policy, fanout, dispatcher, clock=clock)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def scorer(store: IncidentStore, clock: FakeClock) -> FalseAlarmScorer:
    return FalseAlarmScorer(store, clock=clock)


@pytest.fixture
def engine(
    store: IncidentStore,
    scheduler: EscalationScheduler,
    scorer: FalseAlarmScorer,
    fanout: NotificationFanout,
    policy: EscalationPolicy,
    directory: StaticRecipientDirectory,
    clock: FakeClock,
) -> EmergencyEngine:
    return EmergencyEngine(
        store,
        scheduler,
        scorer,
        fanout,
        policy,
        directory=directory,
        clock=clock,
    )

"""Time source for the escalation engine.

All timestamps are UTC-aware.  Deadlines are computed from
:meth:`Clock.now` and waited on with :meth:`Clock.sleep`, so tests can
substitute a simulated clock and step through a 15-minute timetable
instantly.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time and ``asyncio.sleep``."""

    __slots__ = ()

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))

"""False-alarm scoring for terminal incidents.

The score is an explainable 0-100 heuristic shown to admins to prioritise
review.  It never resolves or escalates anything on its own.

Signals and weights::

    quick_resolution   resolved less than 60 s after the trigger     +30
    no_response        notifications went out, no admin responded    +20
    repeated_triggers  >= 3 incidents or >= 2 false alarms by the     +25
                       same user in the trailing 24 h
    user_reported      manual flag from the user or an operator       +25

An incident is ``flagged`` once the score reaches 50.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

import structlog

from lane_sos.models.emergency import Emergency, FalseAlarmIndicators
from lane_sos.services.clock import Clock, SystemClock

if TYPE_CHECKING:
    from config.settings import Settings
    from lane_sos.services.incident_store import IncidentHistoryLookup

logger = structlog.get_logger(__name__)

QUICK_RESOLUTION_POINTS: Final[int] = 30
NO_RESPONSE_POINTS: Final[int] = 20
REPEATED_TRIGGER_POINTS: Final[int] = 25
USER_REPORTED_POINTS: Final[int] = 25

_REPEAT_INCIDENT_COUNT: Final[int] = 3
_REPEAT_FALSE_ALARM_COUNT: Final[int] = 2


class FalseAlarmScorer:
    """Computes :class:`FalseAlarmIndicators` from an incident's recorded facts.

    Parameters
    ----------
    history:
        Lookup for the user's recent incidents.  The trailing window ends at
        the incident's ``created_at``, so a fixed record and a fixed history
        always produce the same score.
    quick_resolution_seconds:
        Resolutions faster than this count as quick.
    window_hours:
        Length of the repeated-trigger window.
    flag_threshold:
        Minimum score for ``flagged``.
    """

    __slots__ = ("_clock", "_history", "_quick_seconds", "_threshold", "_window_hours")

    def __init__(
        self,
        history: IncidentHistoryLookup,
        *,
        quick_resolution_seconds: float = 60,
        window_hours: int = 24,
        flag_threshold: int = 50,
        clock: Clock | None = None,
    ) -> None:
        self._history = history
        self._quick_seconds = quick_resolution_seconds
        self._window_hours = window_hours
        self._threshold = flag_threshold
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls,
        history: IncidentHistoryLookup,
        settings: Settings,
        clock: Clock | None = None,
    ) -> FalseAlarmScorer:
        return cls(
            history,
            quick_resolution_seconds=settings.false_alarm_quick_resolution_seconds,
            window_hours=settings.false_alarm_window_hours,
            flag_threshold=settings.false_alarm_flag_threshold,
            clock=clock,
        )

    async def score(self, emergency: Emergency) -> FalseAlarmIndicators:
        quick_resolution = False
        if emergency.resolution is not None:
            elapsed = (emergency.resolution.resolved_at - emergency.created_at).total_seconds()
            quick_resolution = elapsed < self._quick_seconds

        no_response = bool(emergency.notifications_sent) and emergency.admin_response is None

        history = await self._history.count_recent_incidents(
            emergency.triggered_by,
            self._window_hours,
            as_of=emergency.created_at,
        )
        repeated_triggers = (
            history.count >= _REPEAT_INCIDENT_COUNT
            or history.false_alarm_count >= _REPEAT_FALSE_ALARM_COUNT
        )

        score = 0
        if quick_resolution:
            score += QUICK_RESOLUTION_POINTS
        if no_response:
            score += NO_RESPONSE_POINTS
        if repeated_triggers:
            score += REPEATED_TRIGGER_POINTS
        if emergency.user_reported:
            score += USER_REPORTED_POINTS
        score = min(score, 100)

        indicators = FalseAlarmIndicators(
            quick_resolution=quick_resolution,
            no_response=no_response,
            repeated_triggers=repeated_triggers,
            user_reported=emergency.user_reported,
            score=score,
            flagged=score >= self._threshold,
            scored_at=self._clock.now(),
        )
        logger.info(
            "false_alarm.scored",
            emergency_id=emergency.emergency_id,
            score=score,
            flagged=indicators.flagged,
        )
        return indicators

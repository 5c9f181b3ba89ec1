"""Escalation policy: the static timetable that drives the scheduler.

Each level maps to a deadline measured from the moment the SOS was
triggered, the class of recipients to alert, the message template, and
the action performed.  The policy is validated once at construction; a
gap, a non-increasing deadline, or a misplaced terminal level raises
:class:`~lane_sos.errors.PolicyConfigurationError` so the engine refuses
to run rather than silently skipping a level.

Default timetable::

    level 0  at trigger  emergency contacts   initial alert
    level 1  +2 min      emergency contacts   urgent repeat
    level 2  +5 min      platform admins
    level 3  +10 min     authorities          case number logged
    level 4  +15 min     emergency services   dispatch (terminal)
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict

from lane_sos.errors import PolicyConfigurationError
from lane_sos.models.emergency import MAX_ESCALATION_LEVEL
from lane_sos.models.enums import EscalationAction, RecipientClass

if TYPE_CHECKING:
    from config.settings import Settings

logger = structlog.get_logger(__name__)


class PolicyLevel(BaseModel):
    """One row of the escalation timetable."""

    model_config = ConfigDict(frozen=True)

    level: int
    deadline: timedelta
    recipient_class: RecipientClass
    template: str
    description: str
    action: EscalationAction = EscalationAction.NOTIFY
    terminal: bool = False


def _default_levels(minutes: Sequence[float]) -> list[PolicyLevel]:
    m1, m2, m3, m4 = minutes
    return [
        PolicyLevel(
            level=1,
            deadline=timedelta(minutes=m1),
            recipient_class=RecipientClass.EMERGENCY_CONTACTS,
            template="sos_urgent_contacts",
            description=f"No response after {m1:g} minutes - Re-alerting emergency contacts",
        ),
        PolicyLevel(
            level=2,
            deadline=timedelta(minutes=m2),
            recipient_class=RecipientClass.PLATFORM_ADMINS,
            template="sos_admin_alert",
            description=f"No response after {m2:g} minutes - Alerting platform admins",
        ),
        PolicyLevel(
            level=3,
            deadline=timedelta(minutes=m3),
            recipient_class=RecipientClass.AUTHORITIES,
            template="sos_authorities",
            description=f"No response after {m3:g} minutes - Notifying authorities",
            action=EscalationAction.NOTIFY_AUTHORITIES,
        ),
        PolicyLevel(
            level=4,
            deadline=timedelta(minutes=m4),
            recipient_class=RecipientClass.EMERGENCY_SERVICES,
            template="sos_dispatch",
            description=f"No response after {m4:g} minutes - Emergency services dispatched",
            action=EscalationAction.DISPATCH_SERVICES,
            terminal=True,
        ),
    ]


INITIAL_ALERT = PolicyLevel(
    level=0,
    deadline=timedelta(0),
    recipient_class=RecipientClass.EMERGENCY_CONTACTS,
    template="sos_initial",
    description="SOS triggered - Alerting emergency contacts",
)


class EscalationPolicy:
    """Validated, read-only mapping of level -> :class:`PolicyLevel`.

    Parameters
    ----------
    levels:
        Escalation levels 1..N.  Order does not matter; they are sorted.
    initial:
        The level-0 alert sent at trigger time, or ``None`` to skip it.
    """

    __slots__ = ("_initial", "_levels")

    def __init__(
        self,
        levels: Iterable[PolicyLevel],
        initial: PolicyLevel | None = INITIAL_ALERT,
    ) -> None:
        ordered = sorted(levels, key=lambda lvl: lvl.level)
        self._validate(ordered, initial)
        self._levels: dict[int, PolicyLevel] = {lvl.level: lvl for lvl in ordered}
        self._initial = initial

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def default(cls) -> EscalationPolicy:
        return cls(_default_levels((2, 5, 10, 15)))

    @classmethod
    def from_settings(cls, settings: Settings) -> EscalationPolicy:
        policy = cls(_default_levels(settings.escalation_deadlines_minutes))
        logger.info(
            "policy.loaded",
            deadlines_minutes=list(settings.escalation_deadlines_minutes),
        )
        return policy

    @staticmethod
    def _validate(levels: list[PolicyLevel], initial: PolicyLevel | None) -> None:
        if not levels:
            raise PolicyConfigurationError("escalation policy defines no levels")

        numbers = [lvl.level for lvl in levels]
        expected = list(range(1, MAX_ESCALATION_LEVEL + 1))
        if numbers != expected:
            raise PolicyConfigurationError(
                f"escalation policy must define levels {expected}, got {numbers}"
            )

        previous = timedelta(0)
        for lvl in levels:
            if lvl.deadline <= previous:
                raise PolicyConfigurationError(
                    f"level {lvl.level} deadline {lvl.deadline} must be after {previous}"
                )
            if not lvl.template.strip():
                raise PolicyConfigurationError(f"level {lvl.level} has no message template")
            previous = lvl.deadline

        *intermediate, final = levels
        if not final.terminal:
            raise PolicyConfigurationError(f"final level {final.level} must be terminal")
        if final.action is not EscalationAction.DISPATCH_SERVICES:
            raise PolicyConfigurationError(f"final level {final.level} must dispatch services")
        for lvl in intermediate:
            if lvl.terminal:
                raise PolicyConfigurationError(f"level {lvl.level} cannot be terminal")

        if initial is not None and (initial.level != 0 or initial.terminal):
            raise PolicyConfigurationError("initial alert must be a non-terminal level 0")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def initial(self) -> PolicyLevel | None:
        return self._initial

    @property
    def final_level(self) -> int:
        return max(self._levels)

    def level(self, number: int) -> PolicyLevel:
        try:
            return self._levels[number]
        except KeyError:
            raise PolicyConfigurationError(
                f"no escalation policy entry for level {number}"
            ) from None

    def levels_after(self, current: int) -> list[PolicyLevel]:
        """Levels still to come for an incident sitting at *current*."""
        return [self._levels[n] for n in sorted(self._levels) if n > current]

    def __iter__(self):
        return iter(self._levels[n] for n in sorted(self._levels))

    def __len__(self) -> int:
        return len(self._levels)

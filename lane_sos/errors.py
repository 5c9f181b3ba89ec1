"""Exception hierarchy for the SOS escalation engine.

Configuration and not-found errors propagate to callers.  Expected race
outcomes (already resolved, already monitoring) are *returned* as
:class:`~lane_sos.models.enums.MonitorOutcome` values and never raised.
Delivery failures are absorbed into the incident's notification log.
"""

from __future__ import annotations


class EmergencyEngineError(Exception):
    """Base class for all engine errors."""


class PolicyConfigurationError(EmergencyEngineError):
    """The escalation policy is missing or malformed for a reachable level.

    Fatal and non-retryable: the engine refuses to monitor incidents
    rather than silently skipping a level.
    """


class EmergencyNotFoundError(EmergencyEngineError):
    """No incident exists with the requested id."""

    def __init__(self, emergency_id: str) -> None:
        super().__init__(f"Emergency {emergency_id!r} not found")
        self.emergency_id = emergency_id


class IncidentNotTerminalError(EmergencyEngineError):
    """Operation only allowed once the incident reached a terminal status."""

    def __init__(self, emergency_id: str, status: str) -> None:
        super().__init__(f"Emergency {emergency_id!r} is still {status}")
        self.emergency_id = emergency_id
        self.status = status


class InvalidTransitionError(EmergencyEngineError):
    """A mutation would break the incident's lifecycle invariants."""

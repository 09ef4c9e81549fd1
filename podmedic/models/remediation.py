"""Remediation state machine and action data structures."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from podmedic.models.events import EventCategory, ObjectRef


class RemediationState(StrEnum):
    """Per-object remediation state."""

    HEALTHY = "healthy"
    SUSPECT = "suspect"
    PENDING_REMEDIATION = "pending_remediation"
    COOLDOWN = "cooldown"
    REMEDIATED = "remediated"


# States an object must not be evicted from; dropping their history would
# forget an open episode or an active cooldown.
ACTIVE_STATES = frozenset(
    {
        RemediationState.SUSPECT,
        RemediationState.PENDING_REMEDIATION,
        RemediationState.COOLDOWN,
    }
)


class ActionOutcome(StrEnum):
    """Terminal result of an action executor call."""

    APPLIED = "applied"
    SIMULATED = "simulated"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionResult:
    """Returned by the action executor for every remediation attempt."""

    obj: ObjectRef
    outcome: ActionOutcome
    reason: str = ""


@dataclass(frozen=True)
class Transition:
    """One remediation state change for one object.

    The ordered list of transitions for an event sequence is the decision
    trace; dry-run and live runs must produce the same trace apart from
    ``outcome``.
    """

    obj: ObjectRef
    old_state: RemediationState
    new_state: RemediationState
    trigger: str
    at: datetime
    category: EventCategory | None = None
    outcome: ActionOutcome | None = None
    detail: str = ""

    def without_outcome(self) -> tuple[object, ...]:
        """Comparable form of the transition with the outcome tag dropped."""
        return (self.obj, self.old_state, self.new_state, self.trigger, self.category, self.detail)

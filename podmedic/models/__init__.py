"""Core data structures for podmedic."""

from podmedic.models.config import PodmedicConfig
from podmedic.models.events import (
    FAILURE_CATEGORIES,
    EventCategory,
    NormalizedEvent,
    ObjectRef,
    RawEvent,
    ResyncMarker,
    WatchEventKind,
)
from podmedic.models.remediation import (
    ActionOutcome,
    ActionResult,
    RemediationState,
    Transition,
)

__all__ = [
    "FAILURE_CATEGORIES",
    "ActionOutcome",
    "ActionResult",
    "EventCategory",
    "NormalizedEvent",
    "ObjectRef",
    "PodmedicConfig",
    "RawEvent",
    "RemediationState",
    "ResyncMarker",
    "Transition",
    "WatchEventKind",
]

"""Core event data structures and enumerations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum


class WatchEventKind(StrEnum):
    """Kind of notification delivered by a Kubernetes watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


class EventCategory(StrEnum):
    """Category assigned to an event by the classifier."""

    TRANSIENT = "transient"
    FLAPPING = "flapping"
    TERMINAL_FAILURE = "terminal_failure"
    INFORMATIONAL = "informational"
    UNKNOWN = "unknown"


# Categories that count as evidence towards a remediation.
FAILURE_CATEGORIES = frozenset({EventCategory.FLAPPING, EventCategory.TERMINAL_FAILURE})


@dataclass(frozen=True)
class ObjectRef:
    """Identity of the object an event is about (the involved object)."""

    uid: str
    kind: str
    name: str
    namespace: str

    @property
    def key(self) -> str:
        """Stable history key; the uid when known, otherwise kind/namespace/name."""
        return self.uid or f"{self.kind}/{self.namespace}/{self.name}"

    @property
    def is_valid(self) -> bool:
        return bool(self.uid or self.name)

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


UNKNOWN_OBJECT = ObjectRef(uid="", kind="", name="", namespace="")


@dataclass(frozen=True)
class RawEvent:
    """A single notification as received from the event source.

    Produced by the event source adapter; never mutated afterwards.
    ``bookmark`` is the resourceVersion used to resume the stream.
    """

    kind: WatchEventKind
    involved_object: ObjectRef
    reason: str
    message: str
    event_type: str
    bookmark: str
    count: int = 1
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    created_at: datetime | None = None
    event_uid: str = ""
    raw_object: dict[str, object] | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ResyncMarker:
    """Yielded by the watch manager after the resume bookmark expired.

    Everything after a marker was replayed from a fresh baseline, so the
    stream may repeat events that were already seen.
    """

    expired_bookmark: str
    at: datetime


@dataclass(frozen=True)
class NormalizedEvent:
    """Classifier output: one categorized observation of an object.

    ``skip_reason`` is set when the record is kept for observability only
    and must never drive a remediation decision.
    """

    obj: ObjectRef
    category: EventCategory
    reason: str
    message: str
    count: int
    age: timedelta
    observed_at: datetime
    watch_kind: WatchEventKind = WatchEventKind.ADDED
    skip_reason: str | None = None

    @property
    def is_failure(self) -> bool:
        return self.category in FAILURE_CATEGORIES

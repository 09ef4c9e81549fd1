"""Per-object rolling history shared by the classifier and the decision engine.

Memory is bounded twice: each history keeps only the last N records, and
histories with no events for ``idle_eviction`` are dropped unless the
object is in the middle of an episode or a cooldown.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from podmedic.models.events import NormalizedEvent, ObjectRef
from podmedic.models.remediation import ACTIVE_STATES, RemediationState
from podmedic.observability.logging import get_logger

_log = get_logger("classifier.history")

# Remembered (event uid, count) pairs per object, as a multiple of max_records.
_SEEN_VERSIONS_FACTOR = 4


@dataclass
class ObjectHistory:
    """Rolling state for one involved object.

    ``episode`` increments whenever a new failure streak starts.
    ``settled_episode`` is the episode that was already acted on (or whose
    action failed); the engine never acts twice on the same episode.
    """

    obj: ObjectRef
    created_at: datetime
    max_records: int = 20
    records: deque[NormalizedEvent] = field(default_factory=deque)
    first_failure_at: datetime | None = None
    last_failure_at: datetime | None = None
    consecutive_failures: int = 0
    episode: int = 0
    settled_episode: int | None = None
    last_remediation_at: datetime | None = None
    last_seen_at: datetime | None = None
    duplicates_folded: int = 0
    state: RemediationState = RemediationState.HEALTHY
    state_since: datetime | None = None
    _seen_versions: dict[tuple[str, int], None] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.records = deque(self.records, maxlen=self.max_records)
        if self.last_seen_at is None:
            self.last_seen_at = self.created_at
        if self.state_since is None:
            self.state_since = self.created_at

    @property
    def last_record(self) -> NormalizedEvent | None:
        return self.records[-1] if self.records else None

    def append(self, event: NormalizedEvent) -> None:
        self.records.append(event)

    def has_seen(self, version: tuple[str, int]) -> bool:
        return version in self._seen_versions

    def mark_seen(self, version: tuple[str, int]) -> None:
        self._seen_versions[version] = None
        limit = self.max_records * _SEEN_VERSIONS_FACTOR
        while len(self._seen_versions) > limit:
            del self._seen_versions[next(iter(self._seen_versions))]

    def reset_failures(self) -> None:
        self.consecutive_failures = 0
        self.first_failure_at = None
        self.last_failure_at = None

    @property
    def episode_settled(self) -> bool:
        return self.settled_episode is not None and self.settled_episode == self.episode


class HistoryStore:
    """Histories keyed by object identity, confined to one pipeline."""

    def __init__(
        self,
        max_records: int = 20,
        idle_eviction: timedelta = timedelta(hours=1),
    ) -> None:
        self._max_records = max_records
        self._idle_eviction = idle_eviction
        self._histories: dict[str, ObjectHistory] = {}

    def __len__(self) -> int:
        return len(self._histories)

    def __iter__(self) -> Iterator[ObjectHistory]:
        return iter(list(self._histories.values()))

    def get(self, obj: ObjectRef) -> ObjectHistory | None:
        return self._histories.get(obj.key)

    def get_or_create(self, obj: ObjectRef, now: datetime) -> ObjectHistory:
        history = self._histories.get(obj.key)
        if history is None:
            history = ObjectHistory(obj=obj, created_at=now, max_records=self._max_records)
            self._histories[obj.key] = history
        return history

    def evict_idle(self, now: datetime) -> list[ObjectRef]:
        """Drop idle histories that hold no open episode or cooldown."""
        evicted: list[ObjectRef] = []
        for key, history in list(self._histories.items()):
            if history.state in ACTIVE_STATES:
                continue
            last_seen = history.last_seen_at or history.created_at
            if now - last_seen >= self._idle_eviction:
                del self._histories[key]
                evicted.append(history.obj)
        if evicted:
            _log.debug("histories_evicted", count=len(evicted), remaining=len(self._histories))
        return evicted

"""Event classifier.

Normalizes raw watch events, assigns each one a category from a data-driven
reason table and keeps the per-object failure counters up to date.

``classify`` never raises.  A payload that cannot be normalized becomes an
``unknown`` record marked ``malformed`` so one bad event cannot stop the
watch.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta

from podmedic.classifier.history import ObjectHistory
from podmedic.models.config import DEFAULT_REASON_CATEGORIES, ClassifierConfig
from podmedic.models.events import (
    UNKNOWN_OBJECT,
    EventCategory,
    NormalizedEvent,
    ObjectRef,
    RawEvent,
    ResyncMarker,
    WatchEventKind,
)
from podmedic.observability.logging import get_logger

_log = get_logger("classifier")

_NORMAL_EVENT_TYPE = "Normal"

SKIP_STALE = "stale"
SKIP_DUPLICATE = "duplicate"
SKIP_MALFORMED = "malformed"
SKIP_EVENT_DELETED = "event_deleted"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class EventClassifier:
    """Turns RawEvents into NormalizedEvents and updates ObjectHistory.

    Args:
        reason_categories: Reason -> category lookup table.
        freshness_window:  ADDED events created earlier than this are stale.
        coalesce_window:   Maximum gap between two records of one failure streak.
        clock:             Injectable UTC clock, for tests.
    """

    def __init__(
        self,
        reason_categories: Mapping[str, EventCategory] | None = None,
        freshness_window: timedelta = timedelta(minutes=5),
        coalesce_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._table = dict(DEFAULT_REASON_CATEGORIES if reason_categories is None else reason_categories)
        self._freshness_window = freshness_window
        self._coalesce_window = coalesce_window
        self._clock = clock
        self._last_resync_at: datetime | None = None

    @classmethod
    def from_config(
        cls,
        config: ClassifierConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> EventClassifier:
        return cls(
            reason_categories=config.reason_categories,
            freshness_window=config.freshness_window,
            coalesce_window=config.coalesce_window,
            clock=clock,
        )

    @property
    def last_resync_at(self) -> datetime | None:
        return self._last_resync_at

    def categorize(self, raw: RawEvent) -> EventCategory:
        if raw.event_type == _NORMAL_EVENT_TYPE:
            return EventCategory.INFORMATIONAL
        return self._table.get(raw.reason, EventCategory.UNKNOWN)

    def mark_resync(self, marker: ResyncMarker) -> None:
        """Record a resync boundary; histories are kept as they are."""
        self._last_resync_at = marker.at
        _log.info(
            "watch_resync_boundary",
            expired_bookmark=marker.expired_bookmark,
            at=marker.at.isoformat(),
        )

    def classify(self, raw: RawEvent, history: ObjectHistory | None) -> NormalizedEvent:
        now = self._clock()
        try:
            event = self._normalize(raw, history, now)
        except Exception as exc:  # noqa: BLE001
            _log.warning(
                "event_malformed",
                error=str(exc),
                bookmark=getattr(raw, "bookmark", ""),
            )
            event = self._malformed(raw, now)

        _log.info(
            "event_classified",
            object=str(event.obj),
            uid=event.obj.uid,
            category=event.category.value,
            reason=event.reason,
            count=event.count,
            watch_kind=event.watch_kind.value,
            age_seconds=int(event.age.total_seconds()),
            skip_reason=event.skip_reason,
            consecutive_failures=history.consecutive_failures if history is not None else None,
        )
        return event

    # ------------------------------------------------------------------

    def _normalize(self, raw: RawEvent, history: ObjectHistory | None, now: datetime) -> NormalizedEvent:
        if history is None or not raw.involved_object.is_valid:
            return self._malformed(raw, now)

        seen_at = raw.last_seen or raw.created_at or now
        event = NormalizedEvent(
            obj=raw.involved_object,
            category=self.categorize(raw),
            reason=raw.reason,
            message=raw.message,
            count=raw.count,
            age=max(now - seen_at, timedelta(0)),
            observed_at=now,
            watch_kind=raw.kind,
        )

        if raw.kind == WatchEventKind.ADDED and raw.created_at is not None:
            if now - raw.created_at > self._freshness_window:
                return _with_skip(event, SKIP_STALE)

        if raw.kind == WatchEventKind.DELETED:
            # The Event object expired; that is not a new occurrence.
            return _with_skip(event, SKIP_EVENT_DELETED)

        history.last_seen_at = now
        if raw.event_uid:
            version = (raw.event_uid, raw.count)
            if history.has_seen(version):
                history.duplicates_folded += 1
                return _with_skip(event, SKIP_DUPLICATE)
            history.mark_seen(version)

        self._update_counters(history, event, now)
        history.append(event)
        return event

    def _update_counters(self, history: ObjectHistory, event: NormalizedEvent, now: datetime) -> None:
        if event.category == EventCategory.INFORMATIONAL:
            history.reset_failures()
            return
        if not event.is_failure:
            return

        prev = history.last_record
        chained = (
            history.consecutive_failures > 0
            and prev is not None
            and prev.category != EventCategory.INFORMATIONAL
            and now - prev.observed_at <= self._coalesce_window
        )
        if chained:
            history.consecutive_failures += 1
        else:
            history.consecutive_failures = 1
            history.episode += 1
            history.first_failure_at = now
        history.last_failure_at = now

    def _malformed(self, raw: object, now: datetime) -> NormalizedEvent:
        obj = getattr(raw, "involved_object", UNKNOWN_OBJECT)
        kind = getattr(raw, "kind", WatchEventKind.ERROR)
        return NormalizedEvent(
            obj=obj if isinstance(obj, ObjectRef) else UNKNOWN_OBJECT,
            category=EventCategory.UNKNOWN,
            reason=str(getattr(raw, "reason", "") or ""),
            message=str(getattr(raw, "message", "") or ""),
            count=0,
            age=timedelta(0),
            observed_at=now,
            watch_kind=kind if isinstance(kind, WatchEventKind) else WatchEventKind.ERROR,
            skip_reason=SKIP_MALFORMED,
        )


def _with_skip(event: NormalizedEvent, reason: str) -> NormalizedEvent:
    return replace(event, skip_reason=reason)

"""Resumable watch manager.

Wraps an event source adapter and turns a sequence of short-lived
subscriptions into one long-lived stream:

* every reconnect resumes from the cursor's last bookmark,
* an expired bookmark resets the cursor to a fresh baseline and yields a
  ``ResyncMarker``,
* transport failures back off exponentially with jitter, capped.

Duplicate deliveries after a reconnect are passed through untouched; the
classifier folds them into its per-object counters.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime

from tenacity import RetryCallState, wait_exponential, wait_random

from podmedic.collector.source import (
    BookmarkExpiredError,
    EventSourceAdapter,
    StreamError,
)
from podmedic.models.config import BackoffConfig
from podmedic.models.events import RawEvent, ResyncMarker, WatchEventKind
from podmedic.observability.logging import get_logger

_log = get_logger("collector.watcher")

# A stream that closes cleanly this fast without delivering anything is
# treated like a failure so a misbehaving source cannot cause a hot loop.
_MIN_HEALTHY_STREAM_SECONDS = 1.0


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class WatchCursor:
    """Resume position of one watch pipeline.

    Owned by a single ResumableWatcher; kept in memory only, so a process
    restart starts again from the configured bookmark.
    """

    bookmark: str = ""
    connected_at: datetime | None = None
    resyncs: int = 0

    def advance(self, bookmark: str) -> None:
        if bookmark:
            self.bookmark = bookmark

    def reset(self) -> str:
        """Drop the bookmark so the next subscription starts from a baseline."""
        expired = self.bookmark
        self.bookmark = ""
        self.resyncs += 1
        return expired


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with proportional jitter and a hard ceiling.

    The delay comes from tenacity's ``wait_exponential``; ``jitter`` spreads
    it by up to that fraction either way through ``wait_random``.
    """

    base_seconds: float = 1.0
    cap_seconds: float = 60.0
    jitter: float = 0.2

    @classmethod
    def from_config(cls, config: BackoffConfig) -> BackoffPolicy:
        return cls(
            base_seconds=config.base_seconds,
            cap_seconds=config.cap_seconds,
            jitter=config.jitter,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect ``attempt`` (1-based)."""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})  # type: ignore[arg-type]
        state.attempt_number = max(attempt, 1)
        raw = wait_exponential(multiplier=self.base_seconds, max=self.cap_seconds)(state)
        spread = raw * self.jitter
        jittered = raw - spread + wait_random(0, 2 * spread)(state)
        return max(0.0, min(self.cap_seconds, jittered))


class ResumableWatcher:
    """Gap-tolerant event stream for one namespace.

    Args:
        source:          Event source adapter to subscribe through.
        namespace:       Namespace to watch; ``""`` watches all namespaces.
        cursor:          Resume position, advanced after each delivered event.
        backoff:         Reconnect delay policy.
        timeout_seconds: Server-side lifetime of a single subscription.
        sleep:           Injectable sleep, for tests.
        clock:           Injectable UTC clock, for tests.
    """

    def __init__(
        self,
        source: EventSourceAdapter,
        namespace: str,
        cursor: WatchCursor,
        backoff: BackoffPolicy | None = None,
        timeout_seconds: int = 120,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._namespace = namespace
        self._cursor = cursor
        self._backoff = backoff or BackoffPolicy()
        self._timeout = timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self._reconnects = 0

    @property
    def cursor(self) -> WatchCursor:
        return self._cursor

    @property
    def reconnects(self) -> int:
        return self._reconnects

    async def events(self) -> AsyncIterator[RawEvent | ResyncMarker]:
        """Yield events forever; only SourceFatalError (or a bug) ends the stream."""
        attempt = 0
        ns = self._namespace or "*"
        while True:
            started = self._clock()
            delivered = 0
            try:
                stream = self._source.subscribe(self._namespace, self._cursor.bookmark, self._timeout)
                async with aclosing(stream):
                    async for event in stream:
                        if delivered == 0:
                            self._cursor.connected_at = self._clock()
                        delivered += 1
                        attempt = 0
                        if event.kind == WatchEventKind.BOOKMARK:
                            self._cursor.advance(event.bookmark)
                            continue
                        yield event
                        self._cursor.advance(event.bookmark)
            except BookmarkExpiredError as exc:
                expired = self._cursor.reset()
                self._reconnects += 1
                _log.warning(
                    "watch_bookmark_expired",
                    namespace=ns,
                    bookmark=expired,
                    error=str(exc),
                )
                yield ResyncMarker(expired_bookmark=expired, at=self._clock())
                continue
            except StreamError as exc:
                attempt += 1
                self._reconnects += 1
                delay = self._backoff.delay(attempt)
                _log.warning(
                    "watch_stream_error",
                    namespace=ns,
                    error=str(exc),
                    attempt=attempt,
                    retry_in_seconds=round(delay, 3),
                    bookmark=self._cursor.bookmark,
                )
                await self._sleep(delay)
                continue

            self._reconnects += 1
            lived = (self._clock() - started).total_seconds()
            if delivered == 0 and lived < _MIN_HEALTHY_STREAM_SECONDS:
                attempt += 1
                delay = self._backoff.delay(attempt)
                _log.warning(
                    "watch_stream_closed_early",
                    namespace=ns,
                    attempt=attempt,
                    retry_in_seconds=round(delay, 3),
                )
                await self._sleep(delay)
            else:
                _log.debug(
                    "watch_stream_closed",
                    namespace=ns,
                    delivered=delivered,
                    bookmark=self._cursor.bookmark,
                )

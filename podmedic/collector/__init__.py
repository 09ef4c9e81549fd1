"""Collector package for podmedic.

Provides the Kubernetes event source and the resumable watch manager that
feed raw events into a remediation pipeline.

Submodules
----------
source  -- KubernetesEventSource: one v1.Event watch subscription, error translation.
watcher -- ResumableWatcher: reconnect from bookmark, exponential back-off, resync.
"""

from podmedic.collector.source import (
    BookmarkExpiredError,
    EventSourceAdapter,
    KubernetesEventSource,
    SourceFatalError,
    StreamError,
    parse_watch_event,
)
from podmedic.collector.watcher import BackoffPolicy, ResumableWatcher, WatchCursor

__all__ = [
    "BackoffPolicy",
    "BookmarkExpiredError",
    "EventSourceAdapter",
    "KubernetesEventSource",
    "ResumableWatcher",
    "SourceFatalError",
    "StreamError",
    "WatchCursor",
    "parse_watch_event",
]

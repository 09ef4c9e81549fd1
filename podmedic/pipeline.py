"""Per-namespace remediation pipeline.

One pipeline owns one watch cursor, one history store, one classifier and
one engine.  Events flow strictly in arrival order:

    ResumableWatcher -> EventClassifier -> RemediationEngine -> ActionExecutor

A sweeper task on the same event loop applies time-driven transitions
(cooldown expiry, suspect timeout) and evicts idle histories.  Only the
rate limiter and the executor are shared between pipelines.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import aclosing
from datetime import UTC, datetime

from podmedic.classifier.classifier import EventClassifier
from podmedic.classifier.history import HistoryStore
from podmedic.collector.source import EventSourceAdapter
from podmedic.collector.watcher import BackoffPolicy, ResumableWatcher, WatchCursor
from podmedic.models.config import PodmedicConfig
from podmedic.models.events import RawEvent, ResyncMarker
from podmedic.models.remediation import Transition
from podmedic.observability.logging import bind_pipeline, get_logger
from podmedic.remediation.engine import RemediationEngine
from podmedic.remediation.executor import ActionExecutor
from podmedic.remediation.ratelimit import RemediationRateLimiter
from podmedic.remediation.safety import SafetyChecker, StatusLookup

_log = get_logger("pipeline")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class NamespacePipeline:
    """Watch -> classify -> decide -> act, for one namespace."""

    def __init__(
        self,
        namespace: str,
        watcher: ResumableWatcher,
        classifier: EventClassifier,
        store: HistoryStore,
        engine: RemediationEngine,
        sweep_interval_seconds: float = 15,
        dry_run: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.namespace = namespace
        self._watcher = watcher
        self._classifier = classifier
        self._store = store
        self._engine = engine
        self._sweep_interval = sweep_interval_seconds
        self._dry_run = dry_run
        self._clock = clock
        self.events_processed = 0

    @property
    def store(self) -> HistoryStore:
        return self._store

    @property
    def cursor(self) -> WatchCursor:
        return self._watcher.cursor

    @property
    def reconnects(self) -> int:
        return self._watcher.reconnects

    async def handle(self, item: RawEvent | ResyncMarker) -> list[Transition]:
        """Classify one stream item and feed it to the engine."""
        if isinstance(item, ResyncMarker):
            self._classifier.mark_resync(item)
            return []

        obj = item.involved_object
        history = self._store.get_or_create(obj, self._clock()) if obj.is_valid else None
        transitions: list[Transition] = []
        if history is not None:
            # an elapsed cooldown must settle before the new event is chained into the episode
            transitions.extend(self._engine.tick(history))
        event = self._classifier.classify(item, history)
        if history is not None:
            transitions.extend(await self._engine.process(event, history))
        self.events_processed += 1
        return transitions

    def sweep(self) -> list[Transition]:
        """Apply elapsed-time transitions to every object, then evict idle ones."""
        transitions: list[Transition] = []
        for history in self._store:
            transitions.extend(self._engine.tick(history))
        self._store.evict_idle(self._clock())
        return transitions

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    async def run(self) -> None:
        """Process the namespace's event stream until cancelled or a fatal error."""
        bind_pipeline(self.namespace, self._dry_run)
        _log.info(
            "pipeline_started",
            namespace=self.namespace or "*",
            bookmark=self._watcher.cursor.bookmark,
        )
        sweeper = asyncio.create_task(self._sweep_loop(), name=f"sweeper-{self.namespace or 'all'}")
        try:
            async with aclosing(self._watcher.events()) as events:
                async for item in events:
                    await self.handle(item)
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            _log.info(
                "pipeline_stopped",
                namespace=self.namespace or "*",
                events_processed=self.events_processed,
                tracked_objects=len(self._store),
                reconnects=self._watcher.reconnects,
                bookmark=self._watcher.cursor.bookmark,
            )


def build_pipeline(
    namespace: str,
    config: PodmedicConfig,
    source: EventSourceAdapter,
    executor: ActionExecutor,
    lookup: StatusLookup,
    rate_limiter: RemediationRateLimiter,
    clock: Callable[[], datetime] = _utcnow,
) -> NamespacePipeline:
    """Wire a pipeline for ``namespace`` from the configuration snapshot."""
    watcher = ResumableWatcher(
        source=source,
        namespace=namespace,
        cursor=WatchCursor(bookmark=config.watch.start_bookmark),
        backoff=BackoffPolicy.from_config(config.watch.backoff),
        timeout_seconds=config.watch.timeout_seconds,
        clock=clock,
    )
    safety = SafetyChecker(
        lookup=lookup,
        cooldown=config.remediation.cooldown,
        rate_limiter=rate_limiter,
    )
    return NamespacePipeline(
        namespace=namespace,
        watcher=watcher,
        classifier=EventClassifier.from_config(config.classifier, clock=clock),
        store=HistoryStore(
            max_records=config.classifier.history_size,
            idle_eviction=config.classifier.idle_eviction,
        ),
        engine=RemediationEngine.from_config(config.remediation, executor, safety, clock=clock),
        sweep_interval_seconds=config.remediation.sweep_interval_seconds,
        dry_run=config.remediation.dry_run,
        clock=clock,
    )

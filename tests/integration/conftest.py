"""Shared fixtures for podmedic integration tests.

Wires complete namespace pipelines through ``build_pipeline`` with in-memory
cluster fakes, so tests exercise watch -> classify -> decide -> act without a
Kubernetes cluster.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass

import pytest

from podmedic.models.config import BackoffConfig, PodmedicConfig, RemediationConfig, WatchConfig
from podmedic.models.events import RawEvent
from podmedic.pipeline import NamespacePipeline, build_pipeline
from podmedic.remediation.executor import ActionExecutor
from podmedic.remediation.ratelimit import RemediationRateLimiter

from ..conftest import FakeClock, FakeDeleter, FakeLookup, ScriptedSource

# Short enough that reconnect tests finish quickly on a real event loop.
FAST_BACKOFF = BackoffConfig(base_seconds=0.001, cap_seconds=0.01, jitter=0.0)


@dataclass
class PipelineRig:
    """A pipeline together with the fakes it talks to."""

    pipeline: NamespacePipeline
    source: ScriptedSource
    lookup: FakeLookup
    deleter: FakeDeleter
    clock: FakeClock
    rate_limiter: RemediationRateLimiter


def make_config(namespace: str = "default", dry_run: bool = False, threshold: int = 3) -> PodmedicConfig:
    base = PodmedicConfig()
    return dataclasses.replace(
        base,
        watch=WatchConfig(namespaces=(namespace,), backoff=FAST_BACKOFF),
        remediation=RemediationConfig(dry_run=dry_run, flapping_threshold=threshold),
    )


RigFactory = Callable[..., PipelineRig]


@pytest.fixture
def make_rig(clock: FakeClock) -> RigFactory:
    """Factory fixture: build a PipelineRig, optionally sharing a rate limiter."""

    def _make(
        sessions: list[list[RawEvent | BaseException]] | None = None,
        namespace: str = "default",
        dry_run: bool = False,
        lookup: FakeLookup | None = None,
        deleter: FakeDeleter | None = None,
        rate_limiter: RemediationRateLimiter | None = None,
    ) -> PipelineRig:
        config = make_config(namespace=namespace, dry_run=dry_run)
        source = ScriptedSource(sessions or [])
        lookup = lookup or FakeLookup()
        deleter = deleter or FakeDeleter()
        limiter = rate_limiter or RemediationRateLimiter(
            max_actions=config.remediation.max_actions,
            window=config.remediation.rate_window,
        )
        pipeline = build_pipeline(
            namespace=namespace,
            config=config,
            source=source,
            executor=ActionExecutor(deleter, dry_run=dry_run),
            lookup=lookup,
            rate_limiter=limiter,
            clock=clock,
        )
        return PipelineRig(
            pipeline=pipeline,
            source=source,
            lookup=lookup,
            deleter=deleter,
            clock=clock,
            rate_limiter=limiter,
        )

    return _make


async def run_until_processed(pipeline: NamespacePipeline, count: int, timeout: float = 5.0) -> None:
    """Run ``pipeline`` until it has handled ``count`` events, then cancel it."""
    task = asyncio.create_task(pipeline.run())

    async def _wait() -> None:
        while pipeline.events_processed < count:
            if task.done():
                task.result()
            await asyncio.sleep(0.001)

    try:
        await asyncio.wait_for(_wait(), timeout=timeout)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

"""Shared fakes and factories for podmedic tests.

Every Kubernetes collaborator (event source, pod lookup, pod deleter) has a
small in-memory fake here so tests can drive the whole pipeline without a
cluster.  Time is controlled through FakeClock.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest

from podmedic.models.events import ObjectRef, RawEvent, WatchEventKind
from podmedic.remediation.executor import ActionError, DeleteStatus
from podmedic.remediation.safety import ObjectStatus, OwnerReference

TS = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)

POD_A = ObjectRef(uid="uid-pod-a", kind="Pod", name="pod-a", namespace="default")
POD_B = ObjectRef(uid="uid-pod-b", kind="Pod", name="pod-b", namespace="default")

RS_OWNER = OwnerReference(kind="ReplicaSet", name="web-7d9c5", uid="uid-rs", controller=True)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime = TS) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Event factories
# ---------------------------------------------------------------------------


def make_raw_event(
    reason: str = "FailedCreatePodSandBox",
    obj: ObjectRef = POD_A,
    event_type: str = "Warning",
    kind: WatchEventKind = WatchEventKind.ADDED,
    bookmark: str = "100",
    count: int = 1,
    created_at: datetime | None = None,
    event_uid: str = "",
    message: str = "",
) -> RawEvent:
    """Create a RawEvent with sensible defaults for testing."""
    return RawEvent(
        kind=kind,
        involved_object=obj,
        reason=reason,
        message=message or f"{reason} for {obj.name}",
        event_type=event_type,
        bookmark=bookmark,
        count=count,
        first_seen=created_at or TS,
        last_seen=created_at or TS,
        created_at=created_at or TS,
        event_uid=event_uid,
    )


def raw_event_dict(
    reason: str = "FailedCreatePodSandBox",
    name: str = "pod-a",
    uid: str = "uid-pod-a",
    namespace: str = "default",
    event_type: str = "Warning",
    resource_version: str = "100",
    count: int = 1,
    created: str = "2026-03-02T12:00:00Z",
) -> dict[str, object]:
    """Create a core/v1 Event as it appears in a watch's ``raw_object``."""
    return {
        "kind": "Event",
        "apiVersion": "v1",
        "metadata": {
            "name": f"{name}.17f3a",
            "namespace": namespace,
            "uid": f"event-{name}-{resource_version}",
            "resourceVersion": resource_version,
            "creationTimestamp": created,
        },
        "involvedObject": {
            "kind": "Pod",
            "namespace": namespace,
            "name": name,
            "uid": uid,
        },
        "reason": reason,
        "message": "Failed to create pod sandbox: rpc error",
        "type": event_type,
        "count": count,
        "firstTimestamp": created,
        "lastTimestamp": created,
    }


# ---------------------------------------------------------------------------
# Cluster fakes
# ---------------------------------------------------------------------------


def pod_status(
    uid: str = "uid-pod-a",
    phase: str = "Pending",
    ready: bool = False,
    owned: bool = True,
) -> ObjectStatus:
    return ObjectStatus(
        uid=uid,
        phase=phase,
        ready=ready,
        owner_references=(RS_OWNER,) if owned else (),
    )


class FakeLookup:
    """StatusLookup returning a fixed status per object key."""

    def __init__(self, statuses: dict[str, ObjectStatus | None] | None = None, error: Exception | None = None) -> None:
        self.statuses = statuses if statuses is not None else {POD_A.key: pod_status()}
        self.error = error
        self.calls: list[ObjectRef] = []

    async def get_status(self, obj: ObjectRef) -> ObjectStatus | None:
        self.calls.append(obj)
        if self.error is not None:
            raise self.error
        return self.statuses.get(obj.key)


class FakeDeleter:
    """PodDeleter that records calls and returns or raises a scripted result."""

    def __init__(self, status: DeleteStatus = DeleteStatus.DELETED, error: ActionError | None = None) -> None:
        self.status = status
        self.error = error
        self.calls: list[ObjectRef] = []

    async def delete(self, obj: ObjectRef) -> DeleteStatus:
        self.calls.append(obj)
        if self.error is not None:
            raise self.error
        return self.status


class ScriptedSource:
    """Event source that plays one scripted session per subscribe() call.

    A session is a list of RawEvents; an exception instance in the list is
    raised at that point.  When the script runs out the subscription blocks
    until cancelled.
    """

    def __init__(self, sessions: list[list[RawEvent | BaseException]]) -> None:
        self._sessions = list(sessions)
        self.bookmarks: list[str] = []

    async def subscribe(
        self,
        namespace: str,
        resume_bookmark: str,
        timeout_seconds: int,
    ) -> AsyncIterator[RawEvent]:
        self.bookmarks.append(resume_bookmark)
        if not self._sessions:
            await asyncio.Event().wait()
            return
        for item in self._sessions.pop(0):
            if isinstance(item, BaseException):
                raise item
            yield item


async def take(stream: AsyncIterator[object], n: int) -> list[object]:
    """Collect the first ``n`` items of an async generator, then close it."""
    items: list[object] = []
    async for item in stream:
        items.append(item)
        if len(items) == n:
            break
    await stream.aclose()  # type: ignore[attr-defined]
    return items


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

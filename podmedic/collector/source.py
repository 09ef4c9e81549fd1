"""Event source adapter over the Kubernetes watch API.

``KubernetesEventSource.subscribe`` opens one watch on ``v1.Event`` objects
and yields ``RawEvent`` instances until the server closes the stream or the
timeout window ends.  Failures are translated into the three error types the
resumable watcher understands:

    BookmarkExpiredError -- HTTP 410; the resume token is too old.
    SourceFatalError     -- authentication/authorization failure; retrying
                            cannot help.
    StreamError          -- anything else on the transport; retry later.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol

import aiohttp
from kubernetes_asyncio import watch  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from podmedic.models.events import UNKNOWN_OBJECT, ObjectRef, RawEvent, WatchEventKind
from podmedic.observability.logging import get_logger

_log = get_logger("collector.source")

_HTTP_GONE = 410
_FATAL_STATUSES = frozenset({401, 403})
# Added on top of the server-side timeout so the client never gives up first.
_CLIENT_TIMEOUT_SLACK = 10


class StreamError(Exception):
    """Recoverable failure of a single watch connection."""


class BookmarkExpiredError(StreamError):
    """The resume bookmark is no longer valid on the server."""

    def __init__(self, bookmark: str, detail: str = "") -> None:
        super().__init__(f"bookmark {bookmark!r} expired: {detail}")
        self.bookmark = bookmark


class SourceFatalError(Exception):
    """The source rejected the subscription in a way retrying cannot fix."""


class EventSourceAdapter(Protocol):
    """Anything that can stream raw events for a namespace from a bookmark."""

    def subscribe(
        self,
        namespace: str,
        resume_bookmark: str,
        timeout_seconds: int,
    ) -> AsyncIterator[RawEvent]: ...


def _parse_time(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_watch_event(event_type: str, raw_object: object) -> RawEvent:
    """Build a RawEvent from a watch notification's type and raw JSON object.

    Never raises: unknown kinds and non-dict payloads produce a RawEvent with
    an empty identity that the classifier degrades to ``unknown``.
    """
    try:
        kind = WatchEventKind(str(event_type).upper())
    except ValueError:
        kind = WatchEventKind.ERROR

    obj = _as_dict(raw_object)
    metadata = _as_dict(obj.get("metadata"))
    involved = _as_dict(obj.get("involvedObject"))
    series = _as_dict(obj.get("series"))

    if involved:
        ref = ObjectRef(
            uid=str(involved.get("uid") or ""),
            kind=str(involved.get("kind") or ""),
            name=str(involved.get("name") or ""),
            namespace=str(involved.get("namespace") or metadata.get("namespace") or ""),
        )
    else:
        ref = UNKNOWN_OBJECT

    count = obj.get("count") or series.get("count") or 1
    try:
        count = int(count)
    except (TypeError, ValueError):
        count = 1

    return RawEvent(
        kind=kind,
        involved_object=ref,
        reason=str(obj.get("reason") or ""),
        message=str(obj.get("message") or ""),
        event_type=str(obj.get("type") or ""),
        bookmark=str(metadata.get("resourceVersion") or ""),
        count=count,
        first_seen=_parse_time(obj.get("firstTimestamp") or obj.get("eventTime")),
        last_seen=_parse_time(obj.get("lastTimestamp") or series.get("lastObservedTime")),
        created_at=_parse_time(metadata.get("creationTimestamp")),
        event_uid=str(metadata.get("uid") or ""),
        raw_object=obj or None,
    )


def _status_code(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None


def _raise_for_status(status: int | None, detail: str, bookmark: str) -> None:
    if status == _HTTP_GONE:
        raise BookmarkExpiredError(bookmark, detail)
    if status in _FATAL_STATUSES:
        raise SourceFatalError(f"watch rejected with HTTP {status}: {detail}")
    raise StreamError(f"watch failed with HTTP {status}: {detail}")


class KubernetesEventSource:
    """Streams core/v1 Events through kubernetes-asyncio.

    Args:
        core_v1: A ``kubernetes_asyncio.client.CoreV1Api`` instance.
    """

    def __init__(self, core_v1: Any) -> None:
        self._core_v1 = core_v1

    async def subscribe(
        self,
        namespace: str,
        resume_bookmark: str,
        timeout_seconds: int,
    ) -> AsyncIterator[RawEvent]:
        kwargs: dict[str, Any] = {
            "timeout_seconds": timeout_seconds,
            "allow_watch_bookmarks": True,
            "_request_timeout": timeout_seconds + _CLIENT_TIMEOUT_SLACK,
        }
        if resume_bookmark:
            kwargs["resource_version"] = resume_bookmark

        if namespace:
            func = self._core_v1.list_namespaced_event
            args: tuple[str, ...] = (namespace,)
        else:
            func = self._core_v1.list_event_for_all_namespaces
            args = ()

        _log.debug("watch_subscribe", namespace=namespace or "*", bookmark=resume_bookmark)
        try:
            async with watch.Watch().stream(func, *args, **kwargs) as stream:
                async for item in stream:
                    if not isinstance(item, dict):
                        # kubernetes_asyncio hands back the raw line when it is not JSON
                        _log.warning(
                            "watch_payload_undecodable",
                            namespace=namespace or "*",
                            payload=str(item)[:200],
                        )
                        yield parse_watch_event(WatchEventKind.ERROR, None)
                        continue
                    event_type = str(item.get("type", ""))
                    raw_object = item.get("raw_object")
                    if event_type.upper() == WatchEventKind.ERROR:
                        status = _as_dict(raw_object).get("code")
                        message = str(_as_dict(raw_object).get("message", ""))
                        _raise_for_status(_status_code(status), message, resume_bookmark)
                    yield parse_watch_event(event_type, raw_object)
        except ApiException as exc:
            _raise_for_status(exc.status, str(exc.reason), resume_bookmark)
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise StreamError(f"watch transport error: {exc!r}") from exc
        except (StreamError, SourceFatalError):
            raise
        except Exception as exc:  # noqa: BLE001
            # Watch.unmarshal_event raises a bare Exception for a line without 'type' or 'object'.
            raise StreamError(f"watch decode error: {exc!r}") from exc

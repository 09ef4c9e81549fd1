"""Safety checks that gate every remediation action.

All checks must pass before the executor is called.  Any doubt fails
closed: a lookup error is a failed check, never a pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import aiohttp
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from podmedic.classifier.history import ObjectHistory
from podmedic.models.events import ObjectRef
from podmedic.observability.logging import get_logger
from podmedic.remediation.ratelimit import RemediationRateLimiter

_log = get_logger("remediation.safety")

_SUPPORTED_KIND = "Pod"


@dataclass(frozen=True)
class OwnerReference:
    kind: str
    name: str
    uid: str = ""
    controller: bool = False


@dataclass(frozen=True)
class ObjectStatus:
    """Live state of the involved object at decision time."""

    uid: str
    phase: str
    ready: bool
    owner_references: tuple[OwnerReference, ...] = ()

    @property
    def controller(self) -> OwnerReference | None:
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None


class StatusLookupError(Exception):
    """The live state of an object could not be determined."""


class StatusLookup(Protocol):
    async def get_status(self, obj: ObjectRef) -> ObjectStatus | None:
        """Return the object's live state, or None if it no longer exists."""
        ...


def pod_status_from_model(pod: Any) -> ObjectStatus:
    """Build an ObjectStatus from a kubernetes-asyncio ``V1Pod``."""
    metadata = pod.metadata
    status = pod.status
    owners = tuple(
        OwnerReference(
            kind=ref.kind or "",
            name=ref.name or "",
            uid=ref.uid or "",
            controller=bool(ref.controller),
        )
        for ref in (metadata.owner_references or [])
    )
    ready = any(
        cond.type == "Ready" and cond.status == "True" for cond in ((status.conditions if status else None) or [])
    )
    return ObjectStatus(
        uid=metadata.uid or "",
        phase=(status.phase if status else None) or "",
        ready=ready,
        owner_references=owners,
    )


class KubernetesPodLookup:
    """Reads the current pod through ``CoreV1Api.read_namespaced_pod``."""

    def __init__(self, core_v1: Any) -> None:
        self._core_v1 = core_v1

    async def get_status(self, obj: ObjectRef) -> ObjectStatus | None:
        try:
            pod = await self._core_v1.read_namespaced_pod(obj.name, obj.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise StatusLookupError(f"http_{exc.status}: {exc.reason}") from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise StatusLookupError(f"transport_error: {exc!r}") from exc
        return pod_status_from_model(pod)


@dataclass(frozen=True)
class SafetyVerdict:
    """Outcome of the safety checks.

    ``vanished`` means the failing object generation no longer exists, so
    there is nothing left to remediate.
    """

    passed: bool
    reason: str = ""
    vanished: bool = False


class SafetyChecker:
    """Runs every safety check for one pending remediation.

    Args:
        lookup:       Live status source for the involved object.
        cooldown:     Minimum time between two actions on one object.
        rate_limiter: Process-wide action budget; consulted last so a slot
                      is only consumed when everything else passed.
    """

    def __init__(
        self,
        lookup: StatusLookup,
        cooldown: timedelta,
        rate_limiter: RemediationRateLimiter | None = None,
    ) -> None:
        self._lookup = lookup
        self._cooldown = cooldown
        self._rate_limiter = rate_limiter

    async def check(self, history: ObjectHistory, now: datetime) -> SafetyVerdict:
        obj = history.obj
        if obj.kind != _SUPPORTED_KIND:
            return SafetyVerdict(passed=False, reason=f"unsupported_kind:{obj.kind or '<none>'}")

        try:
            status = await self._lookup.get_status(obj)
        except StatusLookupError as exc:
            _log.warning("status_lookup_failed", object=str(obj), error=str(exc))
            return SafetyVerdict(passed=False, reason="status_lookup_failed")

        if status is None:
            return SafetyVerdict(passed=False, reason="object_not_found", vanished=True)
        if obj.uid and status.uid and status.uid != obj.uid:
            return SafetyVerdict(passed=False, reason="object_replaced", vanished=True)
        if status.controller is None:
            return SafetyVerdict(passed=False, reason="no_controller_owner")
        if status.phase == "Succeeded":
            return SafetyVerdict(passed=False, reason="phase_succeeded")
        if status.phase == "Running" and status.ready:
            return SafetyVerdict(passed=False, reason="running_and_ready")
        if history.last_remediation_at is not None and now - history.last_remediation_at < self._cooldown:
            return SafetyVerdict(passed=False, reason="remediated_within_cooldown")
        if self._rate_limiter is not None and not self._rate_limiter.try_acquire(now):
            return SafetyVerdict(passed=False, reason="rate_limited")
        return SafetyVerdict(passed=True)

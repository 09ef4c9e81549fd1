"""Action executor: deletes a stuck pod, or records that it would have.

The contract ends when the API server accepts the delete.  Recreation is
the owning controller's job and is never verified here.
"""

from __future__ import annotations

from collections import OrderedDict
from enum import StrEnum
from typing import Any, Protocol

import aiohttp
from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from podmedic.models.events import ObjectRef
from podmedic.models.remediation import ActionOutcome, ActionResult
from podmedic.observability.logging import get_logger

_log = get_logger("remediation.executor")

_MAX_REMEMBERED = 4096


class DeleteStatus(StrEnum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"


class ActionError(Exception):
    """The cluster refused or failed the action; not retried."""

    def __init__(self, reason: str, status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status


class PodDeleter(Protocol):
    async def delete(self, obj: ObjectRef) -> DeleteStatus: ...


class KubernetesPodDeleter:
    """Deletes pods through ``CoreV1Api.delete_namespaced_pod``.

    The delete carries a uid precondition, so a pod that was already
    recreated under the same name is never touched.
    """

    def __init__(self, core_v1: Any) -> None:
        self._core_v1 = core_v1

    async def delete(self, obj: ObjectRef) -> DeleteStatus:
        preconditions = k8s_client.V1Preconditions(uid=obj.uid) if obj.uid else None
        body = k8s_client.V1DeleteOptions(preconditions=preconditions)
        try:
            await self._core_v1.delete_namespaced_pod(obj.name, obj.namespace, body=body)
        except ApiException as exc:
            # 409: uid precondition failed, the generation we meant is gone
            if exc.status in (404, 409):
                return DeleteStatus.NOT_FOUND
            raise ActionError(f"http_{exc.status}: {exc.reason}", status=exc.status) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ActionError(f"transport_error: {exc!r}") from exc
        return DeleteStatus.DELETED


class ActionExecutor:
    """Performs, or simulates, the remediation delete.

    Idempotent per object uid: once a generation was deleted, later
    triggers for it return ``applied`` without another API call.

    Args:
        deleter: Cluster action API; may be None in dry-run mode.
        dry_run: Log the intended delete instead of performing it.
    """

    def __init__(self, deleter: PodDeleter | None, dry_run: bool = False) -> None:
        if deleter is None and not dry_run:
            raise ValueError("a deleter is required unless dry_run is set")
        self._deleter = deleter
        self._dry_run = dry_run
        self._applied: OrderedDict[str, None] = OrderedDict()

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def _remember(self, obj: ObjectRef) -> None:
        self._applied[obj.key] = None
        self._applied.move_to_end(obj.key)
        while len(self._applied) > _MAX_REMEMBERED:
            self._applied.popitem(last=False)

    async def execute(self, obj: ObjectRef) -> ActionResult:
        if self._dry_run:
            _log.info(
                "remediation_simulated",
                action="delete_pod",
                object=str(obj),
                uid=obj.uid,
                message=f"[DRY-RUN] would delete pod {obj.namespace}/{obj.name}",
            )
            return ActionResult(obj=obj, outcome=ActionOutcome.SIMULATED)

        if obj.key in self._applied:
            _log.info("remediation_already_applied", object=str(obj), uid=obj.uid)
            return ActionResult(obj=obj, outcome=ActionOutcome.APPLIED, reason="already_applied")

        assert self._deleter is not None
        try:
            status = await self._deleter.delete(obj)
        except ActionError as exc:
            _log.error(
                "remediation_failed",
                action="delete_pod",
                object=str(obj),
                uid=obj.uid,
                reason=exc.reason,
            )
            return ActionResult(obj=obj, outcome=ActionOutcome.FAILED, reason=exc.reason)

        self._remember(obj)
        reason = "already_gone" if status == DeleteStatus.NOT_FOUND else ""
        _log.info(
            "remediation_applied",
            action="delete_pod",
            object=str(obj),
            uid=obj.uid,
            already_gone=status == DeleteStatus.NOT_FOUND,
        )
        return ActionResult(obj=obj, outcome=ActionOutcome.APPLIED, reason=reason)

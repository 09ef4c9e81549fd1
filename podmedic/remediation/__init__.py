"""Remediation package: decision engine, safety gate, rate limiter and executor.

Exports:
    RemediationEngine      -- Per-object state machine.
    SafetyChecker          -- Checks that must all pass before acting.
    RemediationRateLimiter -- Process-wide action budget shared by pipelines.
    ActionExecutor         -- Deletes (or simulates deleting) a pod.
"""

from podmedic.remediation.engine import RemediationEngine
from podmedic.remediation.executor import (
    ActionError,
    ActionExecutor,
    DeleteStatus,
    KubernetesPodDeleter,
    PodDeleter,
)
from podmedic.remediation.ratelimit import RemediationRateLimiter
from podmedic.remediation.safety import (
    KubernetesPodLookup,
    ObjectStatus,
    OwnerReference,
    SafetyChecker,
    SafetyVerdict,
    StatusLookup,
    StatusLookupError,
)

__all__ = [
    "ActionError",
    "ActionExecutor",
    "DeleteStatus",
    "KubernetesPodDeleter",
    "KubernetesPodLookup",
    "ObjectStatus",
    "OwnerReference",
    "PodDeleter",
    "RemediationEngine",
    "RemediationRateLimiter",
    "SafetyChecker",
    "SafetyVerdict",
    "StatusLookup",
    "StatusLookupError",
]

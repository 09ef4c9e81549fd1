"""Configuration data structures.

The loaded configuration is an immutable snapshot: every dataclass here is
frozen and nothing re-reads the environment after startup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from podmedic.models.events import EventCategory

DEFAULT_REASON_CATEGORIES: dict[str, EventCategory] = {
    "Failed": EventCategory.TERMINAL_FAILURE,
    "BackOff": EventCategory.FLAPPING,
    "FailedCreatePodSandBox": EventCategory.TERMINAL_FAILURE,
    "NetworkNotReady": EventCategory.TRANSIENT,
}


@dataclass(frozen=True)
class BackoffConfig:
    """Reconnect backoff parameters."""

    base_seconds: float = 1.0
    cap_seconds: float = 60.0
    jitter: float = 0.2  # fraction of the computed delay, 0..1


@dataclass(frozen=True)
class WatchConfig:
    """Event watch configuration."""

    namespaces: tuple[str, ...] = ("",)  # "" watches every namespace
    start_bookmark: str = ""
    timeout_seconds: int = 120
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass(frozen=True)
class ClassifierConfig:
    """Event classifier configuration."""

    reason_categories: dict[str, EventCategory] = field(
        default_factory=lambda: dict(DEFAULT_REASON_CATEGORIES)
    )
    freshness_window: timedelta = timedelta(minutes=5)
    coalesce_window: timedelta = timedelta(minutes=5)
    history_size: int = 20
    idle_eviction: timedelta = timedelta(hours=1)


@dataclass(frozen=True)
class RemediationConfig:
    """Remediation decision engine configuration."""

    dry_run: bool = False
    flapping_threshold: int = 3
    cooldown: timedelta = timedelta(minutes=10)
    suspect_timeout: timedelta = timedelta(minutes=10)
    max_actions: int = 10
    rate_window: timedelta = timedelta(minutes=1)
    sweep_interval_seconds: int = 15


@dataclass(frozen=True)
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass(frozen=True)
class PodmedicConfig:
    """Top-level podmedic configuration."""

    watch: WatchConfig = field(default_factory=WatchConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    remediation: RemediationConfig = field(default_factory=RemediationConfig)
    log: LogConfig = field(default_factory=LogConfig)

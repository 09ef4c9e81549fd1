"""Configuration loading from environment variables.

Every value is validated here.  An invalid value raises ``ValueError`` and
the application refuses to start; nothing downstream re-validates.
"""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from pathlib import Path

from podmedic.models.config import (
    DEFAULT_REASON_CATEGORIES,
    BackoffConfig,
    ClassifierConfig,
    LogConfig,
    PodmedicConfig,
    RemediationConfig,
    WatchConfig,
)
from podmedic.models.events import EventCategory

_DURATION_RE = re.compile(r"^([0-9]+)(s|m|h|d)$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"PODMEDIC_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower()).strip().lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no", ""):
        return False
    raise ValueError(f"Invalid boolean for PODMEDIC_{key}: {val!r}")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = _env(key, str(default))
    try:
        val = int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for PODMEDIC_{key}: {raw!r}") from None
    if min_val is not None and val < min_val:
        raise ValueError(f"PODMEDIC_{key} must be >= {min_val}, got {val}")
    if max_val is not None and val > max_val:
        raise ValueError(f"PODMEDIC_{key} must be <= {max_val}, got {val}")
    return val


def _env_float(key: str, default: float) -> float:
    raw = _env(key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid number for PODMEDIC_{key}: {raw!r}") from None


def _env_duration(key: str, default: str) -> timedelta:
    return parse_duration(_env(key, default))


def parse_duration(value: str) -> timedelta:
    """Parse ``<int>(s|m|h|d)`` into a timedelta."""
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid duration format: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _parse_category(reason: str, value: object) -> EventCategory:
    try:
        return EventCategory(str(value).strip().lower())
    except ValueError:
        valid = sorted(c.value for c in EventCategory)
        raise ValueError(f"Invalid category {value!r} for reason {reason!r}. Must be one of {valid}") from None


def parse_reason_categories(value: str) -> dict[str, EventCategory]:
    """Parse ``Reason=category,Reason2=category2`` into a lookup table."""
    table: dict[str, EventCategory] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        reason, sep, category = item.partition("=")
        if not sep or not reason.strip():
            raise ValueError(f"Invalid reason mapping {item!r}, expected Reason=category")
        table[reason.strip()] = _parse_category(reason.strip(), category)
    return table


def load_reason_table_file(path: str) -> dict[str, EventCategory]:
    """Load a JSON object mapping event reasons to category names."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Cannot read reason table {path!r}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Reason table {path!r} must be a JSON object")
    return {str(reason): _parse_category(str(reason), category) for reason, category in data.items()}


def _load_reason_categories() -> dict[str, EventCategory]:
    # Precedence: built-in defaults < table file < inline overrides
    table = dict(DEFAULT_REASON_CATEGORIES)
    table_file = _env("REASON_TABLE_FILE", "")
    if table_file:
        table.update(load_reason_table_file(table_file))
    table.update(parse_reason_categories(_env("REASON_CATEGORIES", "")))
    return table


def _parse_namespaces(value: str) -> tuple[str, ...]:
    names = tuple(dict.fromkeys(ns.strip() for ns in value.split(",") if ns.strip()))
    return names or ("",)


def _load_backoff() -> BackoffConfig:
    base = _env_float("BACKOFF_BASE", 1.0)
    cap = _env_float("BACKOFF_CAP", 60.0)
    jitter = _env_float("BACKOFF_JITTER", 0.2)
    if base <= 0:
        raise ValueError(f"PODMEDIC_BACKOFF_BASE must be > 0, got {base}")
    if cap < base:
        raise ValueError(f"PODMEDIC_BACKOFF_CAP ({cap}) must be >= PODMEDIC_BACKOFF_BASE ({base})")
    if not 0.0 <= jitter <= 1.0:
        raise ValueError(f"PODMEDIC_BACKOFF_JITTER must be within [0, 1], got {jitter}")
    return BackoffConfig(base_seconds=base, cap_seconds=cap, jitter=jitter)


def validate_config(config: PodmedicConfig) -> PodmedicConfig:
    """Cross-field checks that apply to any assembled configuration."""
    if config.classifier.idle_eviction < config.remediation.cooldown:
        raise ValueError(
            "PODMEDIC_IDLE_EVICTION must not be shorter than PODMEDIC_COOLDOWN; "
            "evicting history during a cooldown would allow a second action"
        )
    if config.remediation.flapping_threshold < 1:
        raise ValueError("PODMEDIC_FLAPPING_THRESHOLD must be >= 1")
    _validate_log_level(config.log.level)
    return config


def load_config() -> PodmedicConfig:
    """Load configuration from PODMEDIC_* environment variables."""
    config = PodmedicConfig(
        watch=WatchConfig(
            namespaces=_parse_namespaces(_env("NAMESPACES", "")),
            start_bookmark=_env("START_BOOKMARK", ""),
            timeout_seconds=_env_int("WATCH_TIMEOUT", 120, min_val=1, max_val=3600),
            backoff=_load_backoff(),
        ),
        classifier=ClassifierConfig(
            reason_categories=_load_reason_categories(),
            freshness_window=_env_duration("FRESHNESS_WINDOW", "5m"),
            coalesce_window=_env_duration("COALESCE_WINDOW", "5m"),
            history_size=_env_int("HISTORY_SIZE", 20, min_val=1, max_val=1000),
            idle_eviction=_env_duration("IDLE_EVICTION", "1h"),
        ),
        remediation=RemediationConfig(
            dry_run=_env_bool("DRY_RUN", False),
            flapping_threshold=_env_int("FLAPPING_THRESHOLD", 3, min_val=1),
            cooldown=_env_duration("COOLDOWN", "10m"),
            suspect_timeout=_env_duration("SUSPECT_TIMEOUT", "10m"),
            max_actions=_env_int("MAX_ACTIONS", 10, min_val=1),
            rate_window=_env_duration("RATE_WINDOW", "1m"),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL", 15, min_val=1, max_val=3600),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
    return validate_config(config)

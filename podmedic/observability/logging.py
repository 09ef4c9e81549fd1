"""Structured logging for podmedic.

Every classified event and every remediation state transition is written as
one JSON line on stderr.  That stream is the only output podmedic produces,
so field names here are part of its external contract.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]


def bind_pipeline(namespace: str, dry_run: bool) -> None:
    """Tag every log line emitted from the current task with its pipeline.

    asyncio tasks copy the context on creation, so a pipeline task calling
    this at its start does not leak the binding into sibling pipelines.
    """
    structlog.contextvars.bind_contextvars(
        pipeline=namespace or "*",
        dry_run=dry_run,
    )

"""Process-wide remediation rate limiter.

The only state shared between namespace pipelines.  All pipelines run on one
event loop and ``try_acquire`` never awaits, so no lock is needed.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta

from podmedic.observability.logging import get_logger

_log = get_logger("remediation.ratelimit")


class RemediationRateLimiter:
    """Sliding-window cap on remediation actions across the whole process.

    Args:
        max_actions: Actions allowed within any ``window``.
        window:      Length of the sliding window.
    """

    def __init__(self, max_actions: int = 10, window: timedelta = timedelta(minutes=1)) -> None:
        if max_actions < 1:
            raise ValueError("max_actions must be >= 1")
        self._max_actions = max_actions
        self._window = window
        self._granted: deque[datetime] = deque()

    def _expire(self, now: datetime) -> None:
        while self._granted and now - self._granted[0] >= self._window:
            self._granted.popleft()

    def try_acquire(self, now: datetime) -> bool:
        """Take one slot if the window has room; return whether it was granted."""
        self._expire(now)
        if len(self._granted) >= self._max_actions:
            _log.warning(
                "remediation_rate_limited",
                max_actions=self._max_actions,
                window_seconds=int(self._window.total_seconds()),
                retry_after_seconds=int((self._window - (now - self._granted[0])).total_seconds()),
            )
            return False
        self._granted.append(now)
        return True

    def in_window(self, now: datetime) -> int:
        self._expire(now)
        return len(self._granted)

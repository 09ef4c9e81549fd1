"""Remediation decision engine.

A per-object state machine driven by classified events and elapsed time:

    healthy --failure--> suspect --threshold--> pending_remediation
    pending_remediation --checks pass--> cooldown --elapsed--> healthy
    pending_remediation --checks fail / action failed / cancelled--> healthy
    pending_remediation --object gone or replaced--> remediated
    suspect --informational / timeout--> healthy

Each object acts at most once per failure episode and at most once per
cooldown window.  An evaluation interrupted by cancellation ends in
``healthy`` without acting.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from podmedic.classifier.history import ObjectHistory
from podmedic.models.config import RemediationConfig
from podmedic.models.events import EventCategory, NormalizedEvent
from podmedic.models.remediation import ActionOutcome, RemediationState, Transition
from podmedic.observability.logging import get_logger
from podmedic.remediation.executor import ActionExecutor
from podmedic.remediation.safety import SafetyChecker

_log = get_logger("remediation.engine")

State = RemediationState


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class RemediationEngine:
    """Decides per object whether and when to remediate.

    Args:
        executor:        Performs (or simulates) the action.
        safety:          Gate evaluated in ``pending_remediation``.
        threshold:       Consecutive failures needed to leave ``suspect``.
        cooldown:        Suppression window after an action.
        suspect_timeout: Time without a repeat after which ``suspect`` expires.
        clock:           Injectable UTC clock, for tests.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        safety: SafetyChecker,
        threshold: int = 3,
        cooldown: timedelta = timedelta(minutes=10),
        suspect_timeout: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self._executor = executor
        self._safety = safety
        self._threshold = threshold
        self._cooldown = cooldown
        self._suspect_timeout = suspect_timeout
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: RemediationConfig,
        executor: ActionExecutor,
        safety: SafetyChecker,
        clock: Callable[[], datetime] = _utcnow,
    ) -> RemediationEngine:
        return cls(
            executor=executor,
            safety=safety,
            threshold=config.flapping_threshold,
            cooldown=config.cooldown,
            suspect_timeout=config.suspect_timeout,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Elapsed-time transitions
    # ------------------------------------------------------------------

    def tick(self, history: ObjectHistory) -> list[Transition]:
        """Apply cooldown expiry and suspect timeout for one object."""
        now = self._clock()
        if history.state == State.COOLDOWN:
            started = history.last_remediation_at or history.state_since or now
            if now - started >= self._cooldown:
                history.reset_failures()
                return [self._move(history, State.HEALTHY, "cooldown_elapsed", now)]
        elif history.state == State.SUSPECT:
            last = history.last_failure_at or history.state_since or now
            if now - last > self._suspect_timeout:
                history.reset_failures()
                return [self._move(history, State.HEALTHY, "suspect_timeout", now)]
        return []

    # ------------------------------------------------------------------
    # Event-driven transitions
    # ------------------------------------------------------------------

    async def process(self, event: NormalizedEvent, history: ObjectHistory) -> list[Transition]:
        """Feed one classified event for ``history.obj``; return the transitions taken."""
        if event.skip_reason is not None:
            return []

        transitions = self.tick(history)
        now = self._clock()
        state = history.state

        if state == State.REMEDIATED:
            _log.debug("event_ignored", object=str(history.obj), reason="object_remediated")
            return transitions

        if state == State.COOLDOWN:
            if event.is_failure:
                self._log_suppressed(history, "cooldown_active")
            return transitions

        if state == State.HEALTHY:
            if not event.is_failure:
                return transitions
            if history.episode_settled:
                self._log_suppressed(history, "episode_already_handled")
                return transitions
            transitions.append(self._move(history, State.SUSPECT, "failure_observed", now, event.category))
        elif state == State.SUSPECT:
            if event.category == EventCategory.INFORMATIONAL:
                history.reset_failures()
                transitions.append(self._move(history, State.HEALTHY, "recovered", now, event.category))
                return transitions
            if not event.is_failure:
                return transitions
            if history.consecutive_failures < self._threshold:
                transitions.append(self._move(history, State.SUSPECT, "failure_repeated", now, event.category))
                return transitions
        else:
            # pending_remediation is only held across an await inside _remediate
            return transitions

        if history.consecutive_failures >= self._threshold:
            transitions.extend(await self._remediate(history, event, now))
        return transitions

    async def _remediate(self, history: ObjectHistory, event: NormalizedEvent, now: datetime) -> list[Transition]:
        transitions = [
            self._move(
                history,
                State.PENDING_REMEDIATION,
                "threshold_reached",
                now,
                event.category,
                detail=f"consecutive_failures={history.consecutive_failures}",
            )
        ]
        try:
            verdict = await self._safety.check(history, now)
            if verdict.vanished:
                history.settled_episode = history.episode
                transitions.append(
                    self._move(history, State.REMEDIATED, "object_gone", now, event.category, detail=verdict.reason)
                )
                return transitions
            if not verdict.passed:
                self._log_suppressed(history, verdict.reason)
                history.reset_failures()
                transitions.append(
                    self._move(history, State.HEALTHY, "safety_check_failed", now, event.category, detail=verdict.reason)
                )
                return transitions
            result = await self._executor.execute(history.obj)
        except asyncio.CancelledError:
            self._move(history, State.HEALTHY, "cancelled", self._clock(), event.category)
            raise

        history.settled_episode = history.episode
        if result.outcome == ActionOutcome.FAILED:
            transitions.append(
                self._move(
                    history,
                    State.HEALTHY,
                    "action_failed",
                    now,
                    event.category,
                    outcome=result.outcome,
                    detail=result.reason,
                )
            )
            return transitions

        history.last_remediation_at = now
        transitions.append(
            self._move(history, State.COOLDOWN, "action_emitted", now, event.category, outcome=result.outcome)
        )
        return transitions

    # ------------------------------------------------------------------

    def _move(
        self,
        history: ObjectHistory,
        new_state: RemediationState,
        trigger: str,
        now: datetime,
        category: EventCategory | None = None,
        outcome: ActionOutcome | None = None,
        detail: str = "",
    ) -> Transition:
        transition = Transition(
            obj=history.obj,
            old_state=history.state,
            new_state=new_state,
            trigger=trigger,
            at=now,
            category=category,
            outcome=outcome,
            detail=detail,
        )
        history.state = new_state
        history.state_since = now
        _log.info(
            "state_transition",
            object=str(history.obj),
            uid=history.obj.uid,
            old_state=transition.old_state.value,
            new_state=new_state.value,
            trigger=trigger,
            category=category.value if category else None,
            outcome=outcome.value if outcome else None,
            detail=detail or None,
            consecutive_failures=history.consecutive_failures,
            episode=history.episode,
        )
        return transition

    def _log_suppressed(self, history: ObjectHistory, reason: str) -> None:
        _log.info(
            "remediation_suppressed",
            object=str(history.obj),
            uid=history.obj.uid,
            reason=reason,
            state=history.state.value,
            consecutive_failures=history.consecutive_failures,
        )

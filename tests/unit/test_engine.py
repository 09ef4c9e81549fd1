"""Tests for the remediation decision engine.

Drives the state machine through the classifier, the way a pipeline does,
and verifies the transition trace, the executor calls and the at-most-once
guarantees.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from podmedic.classifier.classifier import EventClassifier
from podmedic.classifier.history import ObjectHistory
from podmedic.models.events import ObjectRef
from podmedic.models.remediation import ActionOutcome, RemediationState, Transition
from podmedic.remediation.engine import RemediationEngine
from podmedic.remediation.executor import ActionError, ActionExecutor
from podmedic.remediation.ratelimit import RemediationRateLimiter
from podmedic.remediation.safety import ObjectStatus, SafetyChecker

from ..conftest import POD_A, FakeClock, FakeDeleter, FakeLookup, make_raw_event, pod_status

S = RemediationState
COOLDOWN = timedelta(minutes=10)


class _Harness:
    """Classifier + engine + one object history, sharing a fake clock."""

    def __init__(
        self,
        clock: FakeClock,
        lookup: FakeLookup | None = None,
        deleter: FakeDeleter | None = None,
        dry_run: bool = False,
        threshold: int = 3,
        rate_limiter: RemediationRateLimiter | None = None,
        obj: ObjectRef = POD_A,
    ) -> None:
        self.clock = clock
        self.lookup = lookup or FakeLookup()
        self.deleter = deleter or FakeDeleter()
        self.classifier = EventClassifier(clock=clock)
        self.engine = RemediationEngine(
            executor=ActionExecutor(self.deleter, dry_run=dry_run),
            safety=SafetyChecker(self.lookup, COOLDOWN, rate_limiter),
            threshold=threshold,
            cooldown=COOLDOWN,
            suspect_timeout=timedelta(minutes=10),
            clock=clock,
        )
        self.history = ObjectHistory(obj=obj, created_at=clock())
        self.obj = obj
        self._seq = 0

    async def feed(self, reason: str = "FailedCreatePodSandBox", event_type: str = "Warning") -> list[Transition]:
        self._seq += 1
        raw = make_raw_event(
            reason=reason,
            obj=self.obj,
            event_type=event_type,
            created_at=self.clock(),
            event_uid=f"ev-{self._seq}",
        )
        event = self.classifier.classify(raw, self.history)
        return await self.engine.process(event, self.history)

    async def fail(self, times: int, every_seconds: float = 10) -> list[Transition]:
        transitions: list[Transition] = []
        for i in range(times):
            if i:
                self.clock.advance(seconds=every_seconds)
            transitions.extend(await self.feed())
        return transitions


def _path(transitions: list[Transition]) -> list[tuple[RemediationState, RemediationState, str]]:
    return [(t.old_state, t.new_state, t.trigger) for t in transitions]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestThresholdToAction:
    async def test_three_failures_remediate_once(self, clock: FakeClock) -> None:
        h = _Harness(clock)

        transitions = await h.fail(3)

        assert _path(transitions) == [
            (S.HEALTHY, S.SUSPECT, "failure_observed"),
            (S.SUSPECT, S.SUSPECT, "failure_repeated"),
            (S.SUSPECT, S.PENDING_REMEDIATION, "threshold_reached"),
            (S.PENDING_REMEDIATION, S.COOLDOWN, "action_emitted"),
        ]
        assert transitions[-1].outcome == ActionOutcome.APPLIED
        assert h.deleter.calls == [POD_A]
        assert h.history.last_remediation_at == clock()

    async def test_below_threshold_stays_suspect(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.fail(2)
        assert h.history.state == S.SUSPECT
        assert h.deleter.calls == []

    async def test_threshold_one_acts_on_first_failure(self, clock: FakeClock) -> None:
        h = _Harness(clock, threshold=1)
        transitions = await h.feed()
        assert [t.new_state for t in transitions] == [S.SUSPECT, S.PENDING_REMEDIATION, S.COOLDOWN]

    async def test_non_failure_events_do_not_transition(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        assert await h.feed(reason="NetworkNotReady") == []
        assert await h.feed(reason="Scheduled", event_type="Normal") == []
        assert await h.feed(reason="SomethingNew") == []
        assert h.history.state == S.HEALTHY

    def test_rejects_zero_threshold(self, clock: FakeClock) -> None:
        with pytest.raises(ValueError):
            _Harness(clock, threshold=0)


# ---------------------------------------------------------------------------
# Suspect exits
# ---------------------------------------------------------------------------


class TestSuspect:
    async def test_informational_recovers(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.fail(2)
        transitions = await h.feed(reason="Started", event_type="Normal")
        assert _path(transitions) == [(S.SUSPECT, S.HEALTHY, "recovered")]
        assert h.history.consecutive_failures == 0

    async def test_suspect_times_out_without_repeat(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.fail(1)
        clock.advance(minutes=11)
        transitions = h.engine.tick(h.history)
        assert _path(transitions) == [(S.SUSPECT, S.HEALTHY, "suspect_timeout")]
        assert h.history.consecutive_failures == 0

    async def test_tick_keeps_fresh_suspect(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.fail(1)
        clock.advance(minutes=5)
        assert h.engine.tick(h.history) == []


# ---------------------------------------------------------------------------
# Safety outcomes
# ---------------------------------------------------------------------------


class TestSafetyOutcomes:
    async def test_missing_owner_suppresses(self, clock: FakeClock) -> None:
        h = _Harness(clock, lookup=FakeLookup(statuses={POD_A.key: pod_status(owned=False)}))

        transitions = await h.fail(3)

        assert _path(transitions)[-2:] == [
            (S.SUSPECT, S.PENDING_REMEDIATION, "threshold_reached"),
            (S.PENDING_REMEDIATION, S.HEALTHY, "safety_check_failed"),
        ]
        assert transitions[-1].detail == "no_controller_owner"
        assert h.deleter.calls == []
        assert h.history.consecutive_failures == 0

    async def test_failed_check_allows_new_episode(self, clock: FakeClock) -> None:
        lookup = FakeLookup(statuses={POD_A.key: pod_status(owned=False)})
        h = _Harness(clock, lookup=lookup)
        await h.fail(3)

        lookup.statuses[POD_A.key] = pod_status()
        clock.advance(seconds=10)
        transitions = await h.fail(3)

        assert transitions[-1].new_state == S.COOLDOWN
        assert h.deleter.calls == [POD_A]

    async def test_vanished_pod_is_remediated(self, clock: FakeClock) -> None:
        h = _Harness(clock, lookup=FakeLookup(statuses={}))

        transitions = await h.fail(3)

        assert _path(transitions)[-1] == (S.PENDING_REMEDIATION, S.REMEDIATED, "object_gone")
        assert h.deleter.calls == []
        assert await h.fail(5) == []
        assert h.history.state == S.REMEDIATED

    async def test_rate_limited_is_a_failed_check(self, clock: FakeClock) -> None:
        limiter = RemediationRateLimiter(max_actions=1, window=timedelta(minutes=1))
        limiter.try_acquire(clock())
        h = _Harness(clock, rate_limiter=limiter)

        transitions = await h.fail(3)

        assert transitions[-1].trigger == "safety_check_failed"
        assert transitions[-1].detail == "rate_limited"
        assert h.deleter.calls == []


# ---------------------------------------------------------------------------
# At-most-once
# ---------------------------------------------------------------------------


class TestAtMostOnce:
    async def test_failures_during_cooldown_are_suppressed(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.fail(3)

        assert await h.fail(10, every_seconds=30) == []
        assert h.deleter.calls == [POD_A]
        assert h.history.state == S.COOLDOWN

    async def test_cooldown_elapses_to_healthy(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        await h.fail(3)
        clock.advance(minutes=10)

        transitions = h.engine.tick(h.history)

        assert _path(transitions) == [(S.COOLDOWN, S.HEALTHY, "cooldown_elapsed")]
        assert h.history.consecutive_failures == 0

    async def test_new_episode_after_cooldown_acts_again(self, clock: FakeClock) -> None:
        lookup = FakeLookup()
        h = _Harness(clock, lookup=lookup)
        await h.fail(3)
        clock.advance(minutes=11)
        h.engine.tick(h.history)

        await h.fail(3)

        assert h.deleter.calls == [POD_A]  # same uid: executor is idempotent
        assert h.history.state == S.COOLDOWN
        assert h.history.episode == 2

    async def test_failed_action_blocks_episode(self, clock: FakeClock) -> None:
        deleter = FakeDeleter(error=ActionError("http_500: Internal", status=500))
        h = _Harness(clock, deleter=deleter)

        transitions = await h.fail(3)

        assert _path(transitions)[-1] == (S.PENDING_REMEDIATION, S.HEALTHY, "action_failed")
        assert transitions[-1].outcome == ActionOutcome.FAILED
        assert h.history.episode_settled

        deleter.error = None
        assert await h.fail(5) == []
        assert len(deleter.calls) == 1

    async def test_blocked_episode_reopens_after_recovery(self, clock: FakeClock) -> None:
        deleter = FakeDeleter(error=ActionError("http_500: Internal", status=500))
        h = _Harness(clock, deleter=deleter)
        await h.fail(3)
        await h.feed(reason="Started", event_type="Normal")

        deleter.error = None
        transitions = await h.fail(3)

        assert transitions[-1].new_state == S.COOLDOWN
        assert len(deleter.calls) == 2

    async def test_skipped_events_never_transition(self, clock: FakeClock) -> None:
        h = _Harness(clock)
        stale = make_raw_event(created_at=clock() - timedelta(hours=1))
        for _ in range(5):
            event = h.classifier.classify(stale, h.history)
            assert await h.engine.process(event, h.history) == []
        assert h.history.state == S.HEALTHY


# ---------------------------------------------------------------------------
# Dry-run parity and cancellation
# ---------------------------------------------------------------------------


class TestDryRun:
    async def test_trace_matches_live_run(self) -> None:
        async def run(dry_run: bool) -> list[Transition]:
            h = _Harness(FakeClock(), dry_run=dry_run)
            trace = await h.fail(3)
            trace += await h.fail(2)
            h.clock.advance(minutes=11)
            trace += h.engine.tick(h.history)
            trace += await h.fail(3)
            return trace

        live, dry = await run(False), await run(True)

        assert [t.without_outcome() for t in live] == [t.without_outcome() for t in dry]
        assert {t.outcome for t in dry if t.outcome} == {ActionOutcome.SIMULATED}
        assert {t.outcome for t in live if t.outcome} == {ActionOutcome.APPLIED}


class _BlockingLookup(FakeLookup):
    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()

    async def get_status(self, obj: ObjectRef) -> ObjectStatus | None:
        self.entered.set()
        await asyncio.Event().wait()
        return None


class TestCancellation:
    async def test_cancel_mid_evaluation_fails_closed(self, clock: FakeClock) -> None:
        lookup = _BlockingLookup()
        h = _Harness(clock, lookup=lookup)
        await h.fail(2)
        clock.advance(seconds=10)

        task = asyncio.create_task(h.feed())
        await lookup.entered.wait()
        assert h.history.state == S.PENDING_REMEDIATION
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert h.history.state == S.HEALTHY
        assert h.deleter.calls == []


# ---------------------------------------------------------------------------
# Property: never two actions in one episode or one cooldown window
# ---------------------------------------------------------------------------

_step = st.tuples(
    st.sampled_from(["fail", "fail", "fail", "info", "transient", "tick"]),
    st.integers(min_value=0, max_value=400),
)


@settings(max_examples=60, deadline=None)
@given(steps=st.lists(_step, min_size=1, max_size=40))
def test_at_most_one_action_per_episode_and_cooldown(steps: list[tuple[str, int]]) -> None:
    async def scenario() -> list[tuple[object, int]]:
        h = _Harness(FakeClock(), dry_run=True)
        actions: list[tuple[object, int]] = []
        for kind, gap in steps:
            h.clock.advance(seconds=gap)
            if kind == "tick":
                transitions = h.engine.tick(h.history)
            elif kind == "info":
                transitions = await h.feed(reason="Started", event_type="Normal")
            elif kind == "transient":
                transitions = await h.feed(reason="NetworkNotReady")
            else:
                transitions = await h.feed()
            for t in transitions:
                if t.new_state == S.COOLDOWN:
                    actions.append((t.at, h.history.episode))
        return actions

    actions = asyncio.run(scenario())

    episodes = [episode for _, episode in actions]
    assert len(episodes) == len(set(episodes))
    for (earlier, _), (later, _) in zip(actions, actions[1:], strict=False):
        assert later - earlier >= COOLDOWN  # type: ignore[operator]

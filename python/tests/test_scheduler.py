"""Tests for facet_core.orchestration.scheduler (groups, cache, deadline ladder, crisis path)."""

import asyncio
import dataclasses
import time

import pytest
from unittest.mock import AsyncMock, patch

from facet_core.caching import CacheContext, CacheHierarchy, build_key
from facet_core.caching.tiers import Prediction
from facet_core.config import Settings
from facet_core.exceptions import TaskExecutionError
from facet_core.models import Request, StepType, TaskKind, TaskOutput
from facet_core.monitoring import SLAMonitor
from facet_core.orchestration import TaskScheduler, task_influence
from facet_core.planning import ExecutionPlanner
from facet_core.responses import (
    CRISIS_RESPONSE,
    FALLBACK_RESPONSE,
    FAST_CRISIS_FALLBACK_RESPONSE,
    FAST_FALLBACK_RESPONSE,
)
from facet_core.risk import RiskLevel, RiskScorer
from facet_core.tasks import KeywordTaskBody

E, M, P, S, R = (
    TaskKind.EMOTION_ANALYZER,
    TaskKind.MEMORY_MANAGER,
    TaskKind.PROGRESS_TRACKER,
    TaskKind.SUPPORT_ADVISOR,
    TaskKind.RISK_RESPONDER,
)

SIMPLE = "I'm feeling pretty good today"
SUPPORTIVE = "I've been feeling really anxious about my exams lately and can't sleep"
CRISIS = "I want to hurt myself right now"


class FailingBody:
    """Keyword bodies, except for the kinds told to fail."""

    def __init__(self, fail=(), error=None):
        self.fail = set(fail)
        self.error = error
        self.inner = KeywordTaskBody()

    async def run(self, task_input):
        if task_input.kind in self.fail:
            raise self.error or TaskExecutionError("boom", task_id=task_input.kind.value)
        return await self.inner.run(task_input)


class SlowBody:
    def __init__(self, delay):
        self.delay = delay
        self.inner = KeywordTaskBody()

    async def run(self, task_input):
        await asyncio.sleep(self.delay)
        return await self.inner.run(task_input)


class BadShapeBody:
    async def run(self, task_input):
        return TaskOutput(payload={"unexpected": True}, confidence=0.9)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def planner(settings):
    return ExecutionPlanner(RiskScorer(), settings)


@pytest.fixture
def cache(settings):
    return CacheHierarchy(settings)


@pytest.fixture
def monitor(settings):
    return SLAMonitor(settings)


def _scheduler(body, cache, monitor, settings, **kwargs):
    return TaskScheduler(body, cache, monitor, settings, **kwargs)


@pytest.fixture
def scheduler(cache, monitor, settings):
    return _scheduler(KeywordTaskBody(), cache, monitor, settings)


def _request(message, **kwargs):
    return Request(message=message, user_id="user-1", **kwargs)


class TestInfluence:
    def test_risk_weight_depends_on_crisis(self):
        assert task_influence(R, crisis=True) == 1.0
        assert task_influence(R, crisis=False) == 0.6

    def test_fixed_weights(self):
        assert task_influence(S, crisis=False) == 0.9
        assert task_influence(P, crisis=True) == 0.5


class TestExecution:
    async def test_simple_plan(self, scheduler, planner):
        request = _request(SIMPLE)
        outcome = await scheduler.execute(planner.plan(request), request)

        assert [r.task_id for r in outcome.results] == [E]
        result = outcome.results[0]
        assert result.success
        assert result.payload["primary_emotion"] == "joy"
        assert result.influence_weight == 0.8
        assert result.end_offset_ms >= result.start_offset_ms
        assert outcome.fallback_response is None
        assert outcome.warning_flags == ()
        assert not outcome.degraded
        assert [s.step_type for s in outcome.steps] == [
            StepType.PLANNED, StepType.TASK_STARTED, StepType.TASK_COMPLETED,
        ]

    async def test_supportive_plan_runs_groups_in_order(self, scheduler, planner):
        request = _request(SUPPORTIVE)
        outcome = await scheduler.execute(planner.plan(request), request)

        assert [r.task_id for r in outcome.results] == [E, M, S]
        assert all(r.success for r in outcome.results)
        assert outcome.group_sizes == (2, 1)
        assert outcome.parallel_ms > 0
        support = outcome.results[2]
        first_group_end = max(r.end_offset_ms for r in outcome.results[:2])
        assert support.start_offset_ms >= first_group_end
        assert "anxious" in support.payload["response"]

    async def test_offsets_measured_from_arrival(self, scheduler, planner):
        request = _request(SIMPLE)
        started = time.perf_counter() - 0.05
        outcome = await scheduler.execute(planner.plan(request), request, started_at=started)
        assert outcome.results[0].start_offset_ms >= 50
        assert outcome.total_ms >= 50

    async def test_starts_monitor_session(self, scheduler, planner, monitor):
        request = _request(SIMPLE)
        await scheduler.execute(planner.plan(request), request)
        assert monitor.is_active(request.request_id)


class TestCaching:
    async def test_second_run_hits_cache(self, scheduler, planner):
        first = _request(SIMPLE)
        await scheduler.execute(planner.plan(first), first)

        second = _request(SIMPLE)
        outcome = await scheduler.execute(planner.plan(second), second)

        result = outcome.results[0]
        assert result.cached is True
        assert result.success
        assert "cache:local" in result.insights
        assert StepType.CACHE_HIT in [s.step_type for s in outcome.steps]

    async def test_cache_is_per_user(self, scheduler, planner):
        first = _request(SIMPLE)
        await scheduler.execute(planner.plan(first), first)

        other = Request(message=SIMPLE, user_id="user-2")
        outcome = await scheduler.execute(planner.plan(other), other)
        assert outcome.results[0].cached is False

    async def test_crisis_results_are_never_cached(self, scheduler, planner, cache):
        request = _request(CRISIS)
        await scheduler.execute(planner.plan(request), request)
        await scheduler.drain(timeout=5)
        assert len(cache.local) == 0


class TestPredictiveHints:
    JOY = {
        "payload": {"primary_emotion": "joy", "valence": 0.85, "arousal": 0.6, "dominance": 0.65},
        "confidence": 0.9,
    }

    def _predict_joy(self, cache):
        cache.predictive.put("user-1", E.value, Prediction(
            value=self.JOY,
            expires_at=time.time() + 60,
            predicted_tasks=frozenset({E.value}),
            confidence=0.9,
        ))

    async def test_hint_does_not_replace_the_body(self, scheduler, planner, cache):
        self._predict_joy(cache)
        request = _request("I feel so sad")
        outcome = await scheduler.execute(planner.plan(request), request)

        result = {r.task_id: r for r in outcome.results}[E]
        assert result.cached is False
        assert result.payload["primary_emotion"] == "sadness"

    async def test_hint_stands_in_when_body_fails(self, cache, monitor, settings, planner):
        self._predict_joy(cache)
        scheduler = _scheduler(FailingBody(fail={E}), cache, monitor, settings)
        request = _request("I feel so sad")
        outcome = await scheduler.execute(planner.plan(request), request)

        result = {r.task_id: r for r in outcome.results}[E]
        assert result.success is True
        assert result.cached is True
        assert "cache:predictive" in result.insights
        assert result.confidence == pytest.approx(0.9 * 0.8)


class TestFailures:
    async def test_failed_task_flags_agent_error(self, cache, monitor, settings, planner):
        scheduler = _scheduler(FailingBody(fail={M}), cache, monitor, settings)
        request = _request(SUPPORTIVE)
        outcome = await scheduler.execute(planner.plan(request), request)

        by_kind = {r.task_id: r for r in outcome.results}
        assert by_kind[M].success is False
        assert by_kind[M].error == "boom"
        assert by_kind[M].confidence == 0.0
        # dependents still run with whatever prerequisites succeeded
        assert by_kind[S].success is True
        assert "agent_error" in outcome.warning_flags
        assert outcome.fallback_response is None

    async def test_plain_exception_message_is_kept(self, cache, monitor, settings, planner):
        scheduler = _scheduler(FailingBody(fail={E}, error=RuntimeError("kaput")), cache, monitor, settings)
        request = _request(SIMPLE)
        outcome = await scheduler.execute(planner.plan(request), request)
        assert outcome.results[0].error == "kaput"

    async def test_all_failed_returns_fallback(self, cache, monitor, settings, planner):
        scheduler = _scheduler(FailingBody(fail=set(TaskKind)), cache, monitor, settings)
        request = _request(SUPPORTIVE)
        outcome = await scheduler.execute(planner.plan(request), request)

        assert outcome.fallback_response == FALLBACK_RESPONSE
        assert "system_error" in outcome.warning_flags
        assert outcome.successful == ()
        assert outcome.steps[-1].step_type == StepType.FALLBACK

    async def test_malformed_output_is_a_failure(self, cache, monitor, settings, planner):
        scheduler = _scheduler(BadShapeBody(), cache, monitor, settings)
        request = _request(SIMPLE)
        outcome = await scheduler.execute(planner.plan(request), request)
        assert outcome.results[0].success is False
        assert "missing" in outcome.results[0].error


class TestDeadlines:
    async def test_timeout_marks_failure_and_keeps_task_running(self, cache, monitor, settings, planner):
        scheduler = _scheduler(SlowBody(0.3), cache, monitor, settings)
        request = _request(SIMPLE)
        plan = dataclasses.replace(planner.plan(request), deadline_ms=100)

        outcome = await scheduler.execute(plan, request)

        result = outcome.results[0]
        assert result.success is False
        assert "exceeded" in result.error
        assert result.duration_ms < 300
        assert outcome.fallback_response == FALLBACK_RESPONSE
        assert scheduler.background_count == 1

        await scheduler.drain(timeout=5)
        assert scheduler.background_count == 0
        key = build_key(E.value, request.normalized_message, request.user_id)
        assert await cache.get(key, CacheContext(user_id="user-1", task_id=E.value)) is not None

    async def test_stalled_cache_lookup_stays_within_budget(self, scheduler, planner, cache):
        async def stalled_lookup(key, ctx):
            await asyncio.sleep(3)

        request = _request(SIMPLE)
        plan = dataclasses.replace(planner.plan(request), deadline_ms=300)
        started = time.perf_counter()
        with patch.object(cache, "lookup", side_effect=stalled_lookup):
            outcome = await scheduler.execute(plan, request, started_at=started)

        assert (time.perf_counter() - started) * 1000 < 1000
        assert outcome.results[0].task_id == E
        await scheduler.drain(timeout=5)

    async def test_ladder_drops_then_collapses(self, scheduler, planner):
        request = _request(SUPPORTIVE)
        plan = dataclasses.replace(planner.plan(request), deadline_ms=100, droppable=frozenset({M}))

        outcome = await scheduler.execute(plan, request)

        degraded_steps = [s for s in outcome.steps if s.step_type == StepType.DEGRADED]
        assert [s.detail["action"] for s in degraded_steps] == ["drop_optional", "collapse"]
        assert outcome.dropped == (M, E)
        assert [r.task_id for r in outcome.results] == [S]
        assert outcome.results[0].success
        assert outcome.degraded
        assert "deadline_degraded" in outcome.warning_flags
        assert outcome.fallback_response is None

    async def test_collapse_without_droppable(self, scheduler, planner):
        request = _request(SUPPORTIVE)
        plan = dataclasses.replace(planner.plan(request), deadline_ms=100)

        outcome = await scheduler.execute(plan, request)

        assert [r.task_id for r in outcome.results] == [S]
        assert set(outcome.dropped) == {E, M}

    async def test_abandon_near_deadline(self, scheduler, planner):
        request = _request(SUPPORTIVE)
        plan = dataclasses.replace(planner.plan(request), deadline_ms=200)

        outcome = await scheduler.execute(plan, request, started_at=time.perf_counter() - 0.19)

        assert outcome.results == ()
        assert outcome.fallback_response == FAST_FALLBACK_RESPONSE
        assert outcome.degraded
        assert {"deadline_degraded", "fast_fallback_response"} <= set(outcome.warning_flags)
        assert "system_error" not in outcome.warning_flags
        assert outcome.steps[-1].detail["abandoned"] == ["emotion_analyzer", "memory_manager", "support_advisor"]

    @pytest.mark.parametrize("level", [RiskLevel.HIGH, RiskLevel.CRITICAL])
    async def test_abandon_with_high_risk_uses_safety_fallback(self, scheduler, planner, level):
        request = _request(SUPPORTIVE)
        plan = planner.plan(request)
        plan = dataclasses.replace(
            plan,
            deadline_ms=200,
            risk=dataclasses.replace(plan.risk, level=level),
        )

        outcome = await scheduler.execute(plan, request, started_at=time.perf_counter() - 0.19)
        assert outcome.fallback_response == FAST_CRISIS_FALLBACK_RESPONSE


class TestCrisis:
    async def test_crisis_reply_is_immediate(self, cache, monitor, settings, planner):
        callback = AsyncMock()
        scheduler = _scheduler(SlowBody(0.05), cache, monitor, settings, background_callback=callback)
        request = _request(CRISIS)

        outcome = await scheduler.execute(planner.plan(request), request)

        assert outcome.fallback_response == CRISIS_RESPONSE
        assert outcome.results == ()
        assert {"crisis_protocol", "professional_referral"} <= set(outcome.warning_flags)
        assert outcome.steps[-1].step_type == StepType.CRISIS_RESPONSE
        assert outcome.total_ms < 50
        callback.assert_not_awaited()

        await scheduler.drain(timeout=5)
        assert callback.await_count == 2
        kinds = [c.args[1].task_id for c in callback.await_args_list]
        assert kinds == [R, S]
        assert all(c.args[0] is request for c in callback.await_args_list)

    async def test_callback_errors_are_contained(self, cache, monitor, settings, planner, caplog):
        callback = AsyncMock(side_effect=RuntimeError("sink down"))
        scheduler = _scheduler(KeywordTaskBody(), cache, monitor, settings, background_callback=callback)
        request = _request(CRISIS)

        await scheduler.execute(planner.plan(request), request)
        await scheduler.drain(timeout=5)

        assert callback.await_count == 2
        assert "Background callback failed" in caplog.text
        assert scheduler.background_count == 0

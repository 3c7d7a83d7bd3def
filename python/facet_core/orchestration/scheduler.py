"""Deadline-aware task scheduler.

Walks an ``ExecutionPlan`` group by group.  Within a group every task is
launched at once and the group is awaited with a single gathered wait.
Before each group the SLA monitor is asked whether the remaining budget
still fits; if not, the degradation ladder is applied:

1. drop tasks the plan marked droppable
2. collapse whatever is left into one best-effort task
3. past 90% of the deadline, abandon the rest and return the fixed fallback

Crisis plans skip the ladder: the canned safety reply is returned at once
and the plan's tasks run in the background.

The scheduler never raises for task, cache or deadline faults; they end up
as failed ``TaskResult`` objects, warning flags and log steps.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from facet_core.caching.hierarchy import CacheContext, CacheHierarchy, build_key
from facet_core.caching.tiers import CacheTier
from facet_core.config.settings import Settings
from facet_core.exceptions import MalformedTaskOutputError, TaskTimeoutError
from facet_core.models import (
    ExecutionStep,
    Request,
    StepType,
    TaskInput,
    TaskKind,
    TaskOutput,
    TaskResult,
)
from facet_core.monitoring.sla_monitor import RETURN_FALLBACK, SLAMonitor
from facet_core.planning.planner import ExecutionPlan
from facet_core.responses import (
    CRISIS_RESPONSE,
    FALLBACK_RESPONSE,
    FAST_CRISIS_FALLBACK_RESPONSE,
    FAST_FALLBACK_RESPONSE,
)
from facet_core.risk.scorer import RiskLevel
from facet_core.scheduling.task_graph import TaskGraph
from facet_core.tasks.bodies import TaskBody, validate_output

logger = logging.getLogger(__name__)

ABANDON_FRACTION = 0.9
MIN_SUB_TIMEOUT_MS = 25.0
PREDICTED_CONFIDENCE_FACTOR = 0.8

BackgroundCallback = Callable[[Request, TaskResult], Awaitable[None]]


def task_influence(kind: TaskKind, crisis: bool) -> float:
    """Weight of a task's output in the synthesized answer."""
    if kind == TaskKind.RISK_RESPONDER:
        return 1.0 if crisis else 0.6
    return {
        TaskKind.EMOTION_ANALYZER: 0.8,
        TaskKind.MEMORY_MANAGER: 0.7,
        TaskKind.SUPPORT_ADVISOR: 0.9,
        TaskKind.PROGRESS_TRACKER: 0.5,
    }[kind]


class LadderAction(str, Enum):
    PROCEED = "proceed"
    DROP_OPTIONAL = "drop_optional"
    COLLAPSE = "collapse"
    ABANDON = "abandon"


# ── Value objects ────────────────────────────────────────────────────


class StepLog:
    """Append-only orchestration log for one request."""

    def __init__(self, started_at: float) -> None:
        self._started_at = started_at
        self._steps: List[ExecutionStep] = []

    def append(self, step_type: StepType, task_id: Optional[TaskKind] = None, **detail) -> ExecutionStep:
        step = ExecutionStep(step_type, (time.perf_counter() - self._started_at) * 1000, task_id, detail)
        self._steps.append(step)
        return step

    @property
    def entries(self) -> Tuple[ExecutionStep, ...]:
        return tuple(self._steps)

    def __len__(self) -> int:
        return len(self._steps)


@dataclass(frozen=True)
class ScheduleOutcome:
    """Everything the synthesizer needs from one scheduled plan."""

    results: Tuple[TaskResult, ...]
    steps: Tuple[ExecutionStep, ...]
    warning_flags: Tuple[str, ...]
    fallback_response: Optional[str] = None
    degraded: bool = False
    dropped: Tuple[TaskKind, ...] = ()
    group_sizes: Tuple[int, ...] = ()
    scheduling_overhead_ms: float = 0.0
    parallel_ms: float = 0.0
    total_ms: float = 0.0
    background: Tuple[asyncio.Task, ...] = field(default_factory=tuple)

    @property
    def successful(self) -> Tuple[TaskResult, ...]:
        return tuple(r for r in self.results if r.success)


@dataclass
class _RunState:
    """Mutable bookkeeping private to one ``execute`` call."""

    request: Request
    plan: ExecutionPlan
    started_at: float
    graph: TaskGraph[TaskKind]
    pending: List[List[TaskKind]]
    steps: StepLog
    results: List[TaskResult] = field(default_factory=list)
    completed: Dict[TaskKind, TaskResult] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    dropped: List[TaskKind] = field(default_factory=list)
    dropped_optional: bool = False
    collapsed: bool = False
    group_sizes: List[int] = field(default_factory=list)
    group_wall_ms: float = 0.0
    parallel_ms: float = 0.0

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000

    def flag(self, name: str) -> None:
        if name not in self.flags:
            self.flags.append(name)

    def remaining_tasks(self) -> List[TaskKind]:
        return [t for group in self.pending for t in group]


# ── Scheduler ────────────────────────────────────────────────────────


class TaskScheduler:
    """Runs execution plans against their deadline."""

    def __init__(
        self,
        body: TaskBody,
        cache: CacheHierarchy,
        monitor: SLAMonitor,
        settings: Settings,
        background_callback: Optional[BackgroundCallback] = None,
    ) -> None:
        self.body = body
        self.cache = cache
        self.monitor = monitor
        self.settings = settings
        self.background_callback = background_callback
        self._background: Set[asyncio.Task] = set()

    async def execute(
        self,
        plan: ExecutionPlan,
        request: Request,
        started_at: Optional[float] = None,
    ) -> ScheduleOutcome:
        """Run *plan* for *request*.

        *started_at* is the ``time.perf_counter()`` value of request arrival;
        offsets and the deadline are measured from it.
        """
        started_at = started_at if started_at is not None else time.perf_counter()
        if not self.monitor.is_active(request.request_id):
            self.monitor.start(request.request_id, plan.scenario.value)

        state = _RunState(
            request=request,
            plan=plan,
            started_at=started_at,
            graph=plan.graph(),
            pending=[list(g) for g in plan.parallel_groups],
            steps=StepLog(started_at),
        )
        state.steps.append(
            StepType.PLANNED,
            strategy=plan.strategy.value,
            deadline_ms=plan.deadline_ms,
            tasks=[t.value for t in plan.tasks],
        )

        if plan.is_crisis:
            return self._execute_crisis(state)

        fallback: Optional[str] = None
        abandoned_run = False
        while state.pending:
            action = self._next_action(state)
            if action == LadderAction.DROP_OPTIONAL:
                self._drop_optional(state)
                continue
            if action == LadderAction.COLLAPSE:
                self._collapse(state)
                continue
            if action == LadderAction.ABANDON:
                abandoned = state.remaining_tasks()
                state.pending.clear()
                state.flag("deadline_degraded")
                state.flag("fast_fallback_response")
                state.steps.append(
                    StepType.FALLBACK,
                    reason="deadline",
                    abandoned=[t.value for t in abandoned],
                )
                fallback = (
                    FAST_CRISIS_FALLBACK_RESPONSE
                    if plan.risk.level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
                    else FAST_FALLBACK_RESPONSE
                )
                abandoned_run = True
                logger.warning(
                    "Request %s abandoned %d task(s) at %.0fms of %.0fms",
                    request.request_id, len(abandoned), state.elapsed_ms(), plan.deadline_ms,
                )
                break

            group = [t for t in state.pending.pop(0) if t not in state.dropped]
            if group:
                await self._run_group(state, group)

        if fallback is None and not any(r.success for r in state.results):
            fallback = FALLBACK_RESPONSE
            state.flag("system_error")
            state.steps.append(StepType.FALLBACK, reason="no_successful_tasks")
            logger.error("Request %s: no task succeeded; returning fallback", request.request_id)

        total_ms = state.elapsed_ms()
        return ScheduleOutcome(
            results=tuple(state.results),
            steps=state.steps.entries,
            warning_flags=tuple(state.flags),
            fallback_response=fallback,
            degraded=state.dropped_optional or state.collapsed or abandoned_run,
            dropped=tuple(state.dropped),
            group_sizes=tuple(state.group_sizes),
            scheduling_overhead_ms=max(0.0, total_ms - state.group_wall_ms),
            parallel_ms=state.parallel_ms,
            total_ms=total_ms,
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for background work (crisis follow-ups, late tasks) to settle."""
        if self._background:
            await asyncio.wait(set(self._background), timeout=timeout)

    @property
    def background_count(self) -> int:
        return len(self._background)

    # ── Degradation ladder ───────────────────────────────────────────

    def _next_action(self, state: _RunState) -> LadderAction:
        elapsed = state.elapsed_ms()
        deadline = state.plan.deadline_ms
        remaining = deadline - elapsed
        group = state.pending[0]
        upcoming = max((self.monitor.expected_duration_ms(t.value) for t in group), default=0.0)

        prediction = self.monitor.predict(state.request.request_id, upcoming_ms=upcoming)
        if prediction.likely and remaining - upcoming > 0:
            return LadderAction.PROCEED

        if elapsed >= deadline * ABANDON_FRACTION or RETURN_FALLBACK in prediction.recommended_actions:
            return LadderAction.ABANDON
        if not state.dropped_optional and any(t in state.plan.droppable for t in state.remaining_tasks()):
            return LadderAction.DROP_OPTIONAL
        if not state.collapsed and len(state.remaining_tasks()) > 1:
            return LadderAction.COLLAPSE
        return LadderAction.PROCEED

    def _drop_optional(self, state: _RunState) -> None:
        doomed = [t for t in state.remaining_tasks() if t in state.plan.droppable]
        state.dropped_optional = True
        self._remove(state, doomed)
        state.flag("deadline_degraded")
        state.steps.append(StepType.DEGRADED, action=LadderAction.DROP_OPTIONAL.value,
                           tasks=[t.value for t in doomed])
        logger.info("Request %s dropped optional tasks %s", state.request.request_id, [t.value for t in doomed])

    def _collapse(self, state: _RunState) -> None:
        remaining = state.remaining_tasks()
        best = TaskKind.SUPPORT_ADVISOR if TaskKind.SUPPORT_ADVISOR in remaining else remaining[0]
        self._remove(state, [t for t in remaining if t != best])
        state.pending = [[best]]
        state.collapsed = True
        state.flag("deadline_degraded")
        state.steps.append(StepType.DEGRADED, action=LadderAction.COLLAPSE.value, task=best.value)
        logger.info("Request %s collapsed remaining work into %s", state.request.request_id, best.value)

    @staticmethod
    def _remove(state: _RunState, tasks: List[TaskKind]) -> None:
        state.dropped.extend(t for t in tasks if t not in state.dropped)
        state.graph = state.graph.without(tasks)
        state.pending = [[t for t in g if t not in tasks] for g in state.pending]
        state.pending = [g for g in state.pending if g]

    # ── Running tasks ────────────────────────────────────────────────

    async def _run_group(self, state: _RunState, group: List[TaskKind]) -> None:
        remaining_ms = state.plan.deadline_ms - state.elapsed_ms()
        groups_left = len(state.pending) + 1
        sub_timeout_ms = max(MIN_SUB_TIMEOUT_MS, remaining_ms / groups_left)

        group_started = time.perf_counter()
        results = await asyncio.gather(*(self._run_task(state, kind, sub_timeout_ms) for kind in group))
        wall_ms = (time.perf_counter() - group_started) * 1000

        state.group_sizes.append(len(group))
        state.group_wall_ms += wall_ms
        if len(group) > 1:
            state.parallel_ms += wall_ms

        for result in results:
            state.results.append(result)
            state.completed[result.task_id] = result
            if not result.success:
                state.flag("agent_error")

    async def _run_task(self, state: _RunState, kind: TaskKind, sub_timeout_ms: float) -> TaskResult:
        request, plan = state.request, state.plan
        start_ms = state.elapsed_ms()
        weight = task_influence(kind, plan.is_crisis)
        key = build_key(kind.value, request.normalized_message, request.user_id)
        lookup_ctx = CacheContext(user_id=request.user_id, task_id=kind.value, risk_level=plan.risk.level.value)

        # Predictive entries are hints: the body still runs, the hint only
        # stands in when the body cannot deliver
        hint: Optional[TaskOutput] = None
        cached = await self._bounded_lookup(kind, key, lookup_ctx, sub_timeout_ms)
        if cached is not None:
            output, tier = cached
            if tier != CacheTier.PREDICTIVE:
                return self._from_cache(state, kind, start_ms, weight, output, tier)
            hint = output

        budget_ms = sub_timeout_ms - (state.elapsed_ms() - start_ms)
        if hint is not None and budget_ms < MIN_SUB_TIMEOUT_MS:
            return self._from_cache(state, kind, start_ms, weight, hint, CacheTier.PREDICTIVE)
        budget_ms = max(MIN_SUB_TIMEOUT_MS, budget_ms)

        task_input = TaskInput(
            kind=kind,
            message=request.message,
            user_id=request.user_id,
            prior={
                dep: state.completed[dep].payload
                for dep in state.graph.prerequisites(kind)
                if dep in state.completed and state.completed[dep].success
            },
            risk_summary=plan.risk.summary(),
        )
        state.steps.append(StepType.TASK_STARTED, kind, timeout_ms=round(budget_ms, 1))

        job = asyncio.ensure_future(self._run_body(task_input, key, plan))
        done, _ = await asyncio.wait({job}, timeout=budget_ms / 1000)

        if not done:
            # Left running so its cache write still lands; result is excluded
            self._track_background(job, request, kind)
            error = TaskTimeoutError(kind.value, budget_ms)
            state.steps.append(StepType.TASK_FAILED, kind, error=error.message, timeout=True)
            logger.warning("Request %s: %s", request.request_id, error.message)
            if hint is not None:
                return self._from_cache(state, kind, start_ms, weight, hint, CacheTier.PREDICTIVE)
            return self._failed_task(state, kind, start_ms, weight, error.message)

        exc = job.exception()
        if exc is not None:
            message = getattr(exc, "message", None) or str(exc)
            state.steps.append(StepType.TASK_FAILED, kind, error=message)
            logger.warning("Request %s: task %s failed: %s", request.request_id, kind.value, message)
            if hint is not None:
                return self._from_cache(state, kind, start_ms, weight, hint, CacheTier.PREDICTIVE)
            return self._failed_task(state, kind, start_ms, weight, message)

        output: TaskOutput = job.result()
        end_ms = state.elapsed_ms()
        self.monitor.record_task(request.request_id, kind.value, start_ms, end_ms - start_ms)
        state.steps.append(StepType.TASK_COMPLETED, kind, confidence=output.confidence)
        return TaskResult(
            task_id=kind,
            start_offset_ms=start_ms,
            end_offset_ms=end_ms,
            payload=output.payload,
            confidence=output.confidence,
            success=True,
            influence_weight=weight,
            reasoning=output.reasoning,
            insights=output.insights,
        )

    def _from_cache(
        self,
        state: _RunState,
        kind: TaskKind,
        start_ms: float,
        weight: float,
        output: TaskOutput,
        tier: CacheTier,
    ) -> TaskResult:
        end_ms = state.elapsed_ms()
        self.monitor.record_task(state.request.request_id, kind.value, start_ms, end_ms - start_ms)
        state.steps.append(StepType.CACHE_HIT, kind, tier=tier.value)
        return TaskResult(
            task_id=kind,
            start_offset_ms=start_ms,
            end_offset_ms=end_ms,
            payload=output.payload,
            confidence=output.confidence,
            success=True,
            influence_weight=weight,
            cached=True,
            reasoning=output.reasoning,
            insights=output.insights,
        )

    def _failed_task(
        self, state: _RunState, kind: TaskKind, start_ms: float, weight: float, error: str
    ) -> TaskResult:
        end_ms = state.elapsed_ms()
        self.monitor.record_task(state.request.request_id, kind.value, start_ms, end_ms - start_ms)
        return self._failed(kind, start_ms, end_ms, weight, error)

    async def _run_body(self, task_input: TaskInput, key: str, plan: ExecutionPlan) -> TaskOutput:
        """Run the body, validate it and write the result back to the cache."""
        output = validate_output(task_input.kind, await self.body.run(task_input))
        ctx = CacheContext(
            user_id=task_input.user_id,
            task_id=task_input.kind.value,
            confidence=output.confidence,
            risk_level=plan.risk.level.value,
            sensitive=plan.is_crisis,
        )
        await self.cache.set(key, _cache_value(output), ctx)
        return output

    async def _bounded_lookup(
        self, kind: TaskKind, key: str, ctx: CacheContext, timeout_ms: float
    ) -> Optional[Tuple[TaskOutput, CacheTier]]:
        try:
            return await asyncio.wait_for(self._cached_output(kind, key, ctx), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("Cache lookup for %s exceeded %.0fms; treating as miss", key, timeout_ms)
            return None

    async def _cached_output(
        self, kind: TaskKind, key: str, ctx: CacheContext
    ) -> Optional[Tuple[TaskOutput, CacheTier]]:
        lookup = await self.cache.lookup(key, ctx)
        if lookup is None or not isinstance(lookup.value, dict):
            return None
        value = lookup.value
        confidence = float(value.get("confidence", lookup.confidence))
        if lookup.tier == CacheTier.PREDICTIVE:
            confidence *= PREDICTED_CONFIDENCE_FACTOR
        try:
            output = validate_output(kind, TaskOutput(
                payload=value.get("payload") or {},
                confidence=confidence,
                reasoning=str(value.get("reasoning", "")),
                insights=tuple(value.get("insights") or ()) + (f"cache:{lookup.tier.value}",),
            ))
        except MalformedTaskOutputError:
            logger.debug("Ignoring malformed cached value for %s", key)
            return None
        return output, lookup.tier

    @staticmethod
    def _failed(kind: TaskKind, start_ms: float, end_ms: float, weight: float, error: str) -> TaskResult:
        return TaskResult(
            task_id=kind,
            start_offset_ms=start_ms,
            end_offset_ms=end_ms,
            payload={},
            confidence=0.0,
            success=False,
            influence_weight=weight,
            error=error,
        )

    # ── Crisis path ──────────────────────────────────────────────────

    def _execute_crisis(self, state: _RunState) -> ScheduleOutcome:
        request = state.request
        state.flag("crisis_protocol")
        state.flag("professional_referral")
        state.steps.append(
            StepType.CRISIS_RESPONSE,
            aggregate=state.plan.risk.aggregate,
            immediacy=state.plan.risk.immediacy,
        )
        follow_up = asyncio.ensure_future(self._crisis_follow_up(state))
        self._background.add(follow_up)
        follow_up.add_done_callback(self._background.discard)
        logger.warning("Crisis response sent for request %s; follow-up running in background", request.request_id)

        total_ms = state.elapsed_ms()
        return ScheduleOutcome(
            results=(),
            steps=state.steps.entries,
            warning_flags=tuple(state.flags),
            fallback_response=CRISIS_RESPONSE,
            group_sizes=(),
            scheduling_overhead_ms=total_ms,
            total_ms=total_ms,
            background=(follow_up,),
        )

    async def _crisis_follow_up(self, state: _RunState) -> None:
        """Run the crisis plan's tasks after the immediate reply went out."""
        for group in list(state.pending):
            await self._run_group(state, group)
        for result in state.results:
            if self.background_callback is not None:
                try:
                    await self.background_callback(state.request, result)
                except Exception:
                    logger.exception("Background callback failed for %s", state.request.request_id)
        logger.info(
            "Crisis follow-up for %s finished: %d/%d tasks succeeded",
            state.request.request_id, sum(r.success for r in state.results), len(state.results),
        )

    def _track_background(self, job: asyncio.Future, request: Request, kind: TaskKind) -> None:
        self._background.add(job)

        def _done(fut: asyncio.Future) -> None:
            self._background.discard(fut)
            if fut.cancelled():
                return
            if fut.exception() is not None:
                logger.debug("Late task %s for %s failed: %s", kind.value, request.request_id, fut.exception())
            else:
                logger.debug("Late task %s for %s finished after its budget", kind.value, request.request_id)

        job.add_done_callback(_done)


def _cache_value(output: TaskOutput) -> Dict[str, object]:
    return {
        "payload": output.payload,
        "confidence": output.confidence,
        "reasoning": output.reasoning,
        "insights": list(output.insights),
    }

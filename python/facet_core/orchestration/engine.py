"""Orchestration engine.

Single entry point for one inbound message::

    score risk → (invalidate on critical) → plan → schedule → synthesize

The engine owns the SLA session of each request and never raises for
internal faults; the worst case is the fixed fallback reply flagged with
``system_error``.  Only malformed inbound data (``InvalidRequestError``)
propagates.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Mapping, Optional, Union

from facet_core.caching.hierarchy import PLAN_TASK_ID, CacheContext, CacheHierarchy, build_key
from facet_core.config.settings import Settings
from facet_core.exceptions import InvalidRequestError
from facet_core.models import Request, Scenario, Transparency, UrgencyHint
from facet_core.monitoring.sla_monitor import SLAMonitor
from facet_core.orchestration.scheduler import TaskScheduler
from facet_core.orchestration.synthesizer import ResponseSynthesizer, SynthesizedResponse
from facet_core.planning.planner import Complexity, ExecutionPlan, ExecutionPlanner
from facet_core.responses import FALLBACK_RESPONSE
from facet_core.risk.scorer import RiskScore, RiskScorer, fallback_score

logger = logging.getLogger(__name__)


class OrchestrationEngine:
    """Wires scorer, planner, scheduler, cache, monitor and synthesizer together."""

    def __init__(
        self,
        scorer: RiskScorer,
        planner: ExecutionPlanner,
        scheduler: TaskScheduler,
        synthesizer: ResponseSynthesizer,
        cache: CacheHierarchy,
        monitor: SLAMonitor,
        settings: Settings,
    ) -> None:
        self.scorer = scorer
        self.planner = planner
        self.scheduler = scheduler
        self.synthesizer = synthesizer
        self.cache = cache
        self.monitor = monitor
        self.settings = settings
        self._requests_handled = 0
        self._fallbacks = 0

    async def respond(self, request: Union[Request, Mapping[str, Any]]) -> Dict[str, Any]:
        """Answer one message.

        Raises:
            InvalidRequestError: if *request* is a mapping that fails validation.
        """
        started = time.perf_counter()
        if not isinstance(request, Request):
            request = Request.from_dict(request, Transparency(self.settings.default_transparency))

        self._requests_handled += 1
        self.monitor.start(request.request_id, _provisional_scenario(request).value)
        try:
            return await self._respond(request, started)
        except InvalidRequestError:
            raise
        except Exception:
            logger.exception("Orchestration failed for request %s", request.request_id)
            self._fallbacks += 1
            if self.monitor.is_active(request.request_id):
                self.monitor.complete(request.request_id)
            return self._fallback(request).to_dict()

    async def _respond(self, request: Request, started: float) -> Dict[str, Any]:
        risk = self._score(request)
        if risk.is_critical:
            await self.cache.invalidate_risk_transition(request.user_id)

        plan = await self._plan(request, risk)
        self.monitor.assign_scenario(request.request_id, plan.scenario.value)

        outcome = await self.scheduler.execute(plan, request, started_at=started)
        response = self.synthesizer.synthesize(request, plan, outcome, started_at=started)
        record = self.monitor.complete(request.request_id)

        if outcome.fallback_response is not None and not plan.is_crisis:
            self._fallbacks += 1
        logger.info(
            "Request %s answered via %s in %.0fms (target %.0fms, flags=%s)",
            request.request_id, plan.strategy.value, record.total_ms, record.target_ms,
            ",".join(response.warning_flags) or "-",
        )
        return response.to_dict()

    def _score(self, request: Request) -> RiskScore:
        try:
            return self.scorer.score(
                request.message,
                cultural_context=request.cultural_context,
                history=request.risk_history,
            )
        except Exception:
            logger.exception("Risk scoring failed for %s; using conservative score", request.request_id)
            return fallback_score()

    async def _plan(self, request: Request, risk: RiskScore) -> ExecutionPlan:
        """Plan with a cached complexity class when one is available.

        The cache is bypassed entirely on the crisis path so a stale
        classification can never suppress a fresh safety check.
        """
        crisis = risk.is_critical or request.urgency_hint == UrgencyHint.CRISIS
        key = build_key(PLAN_TASK_ID, request.normalized_message, request.user_id)
        hint: Optional[Complexity] = None
        if not crisis:
            context = CacheContext(user_id=request.user_id, task_id=PLAN_TASK_ID, risk_level=risk.level.value)
            cached = await self.cache.get(key, context)
            if isinstance(cached, dict) and cached.get("complexity") in {c.value for c in Complexity}:
                hint = Complexity(cached["complexity"])

        plan = self.planner.plan(request, risk=risk, complexity_hint=hint)

        if hint is None and plan.complexity is not None:
            await self.cache.set(
                key,
                {"complexity": plan.complexity.value, "signals": list(plan.signals)},
                CacheContext(
                    user_id=request.user_id,
                    task_id=PLAN_TASK_ID,
                    confidence=risk.confidence,
                    risk_level=risk.level.value,
                ),
            )
        return plan

    def _fallback(self, request: Request) -> SynthesizedResponse:
        return SynthesizedResponse(
            content=FALLBACK_RESPONSE,
            conversation_id=request.conversation_id,
            confidence=0.0,
            agreement=1.0,
            warning_flags=["system_error"],
            risk_assessment=fallback_score().summary(),
        )

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "requests_handled": self._requests_handled,
            "fallbacks": self._fallbacks,
            "background_tasks": self.scheduler.background_count,
        }


def _provisional_scenario(request: Request) -> Scenario:
    if request.urgency_hint == UrgencyHint.CRISIS:
        return Scenario.CRISIS
    return Scenario.SUPPORTIVE


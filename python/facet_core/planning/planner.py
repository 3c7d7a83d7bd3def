"""Execution planner.

Turns a request into a static ``ExecutionPlan``: which tasks run, which of
them may run together, and the deadline.  Risk scoring always happens first
and a critical score (or a ``crisis`` urgency hint) short-circuits normal
planning into the fixed crisis plan.

The planner never executes anything.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from facet_core.config.settings import Settings
from facet_core.logging_setup import track_performance
from facet_core.models import Request, Scenario, SpeedPreference, TaskKind, UrgencyHint
from facet_core.risk.scorer import RiskLevel, RiskScore, RiskScorer
from facet_core.scheduling.task_graph import TaskGraph

logger = logging.getLogger(__name__)


# ── Enums / value objects ────────────────────────────────────────────


class Complexity(str, Enum):
    SIMPLE = "simple"
    SUPPORTIVE = "supportive"
    DEEP = "deep"


class PlanStrategy(str, Enum):
    CRISIS_PRIORITY = "crisis_priority"
    SINGLE_TASK = "single_task"
    PARALLEL_SUPPORT = "parallel_support"
    DEEP_ANALYSIS = "deep_analysis"


@dataclass(frozen=True)
class PlanTemplate:
    """Canned task layout for one complexity class."""

    strategy: PlanStrategy
    scenario: Scenario
    groups: Tuple[Tuple[TaskKind, ...], ...]
    dependencies: Mapping[TaskKind, FrozenSet[TaskKind]]
    optional: FrozenSet[TaskKind] = frozenset()


E, M, P, S, R = (
    TaskKind.EMOTION_ANALYZER,
    TaskKind.MEMORY_MANAGER,
    TaskKind.PROGRESS_TRACKER,
    TaskKind.SUPPORT_ADVISOR,
    TaskKind.RISK_RESPONDER,
)

CRISIS_TEMPLATE = PlanTemplate(
    strategy=PlanStrategy.CRISIS_PRIORITY,
    scenario=Scenario.CRISIS,
    groups=((R,), (S,)),
    dependencies={S: frozenset({R})},
)

TEMPLATES: Dict[Complexity, PlanTemplate] = {
    Complexity.SIMPLE: PlanTemplate(
        strategy=PlanStrategy.SINGLE_TASK,
        scenario=Scenario.SIMPLE,
        groups=((E,),),
        dependencies={},
    ),
    Complexity.SUPPORTIVE: PlanTemplate(
        strategy=PlanStrategy.PARALLEL_SUPPORT,
        scenario=Scenario.SUPPORTIVE,
        groups=((E, M), (S,)),
        dependencies={S: frozenset({E, M})},
        optional=frozenset({M}),
    ),
    Complexity.DEEP: PlanTemplate(
        strategy=PlanStrategy.DEEP_ANALYSIS,
        scenario=Scenario.DEEP,
        groups=((E, M, P), (S,)),
        dependencies={S: frozenset({M})},
        optional=frozenset({P}),
    ),
}


@dataclass(frozen=True)
class ExecutionPlan:
    """The task set, dependencies, parallel groups and deadline for one request.

    Created once by the planner; read-only thereafter.
    """

    tasks: Tuple[TaskKind, ...]
    dependencies: Mapping[TaskKind, FrozenSet[TaskKind]]
    parallel_groups: Tuple[Tuple[TaskKind, ...], ...]
    strategy: PlanStrategy
    deadline_ms: float
    scenario: Scenario
    complexity: Optional[Complexity]
    risk: RiskScore
    droppable: FrozenSet[TaskKind] = frozenset()
    planning_ms: float = 0.0
    signals: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_crisis(self) -> bool:
        return self.strategy == PlanStrategy.CRISIS_PRIORITY

    def graph(self) -> TaskGraph[TaskKind]:
        return TaskGraph(self.tasks, self.dependencies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "scenario": self.scenario.value,
            "complexity": self.complexity.value if self.complexity else None,
            "tasks": [t.value for t in self.tasks],
            "dependencies": self.graph().to_dict(),
            "parallelGroups": [[t.value for t in g] for g in self.parallel_groups],
            "deadlineMs": self.deadline_ms,
            "droppable": sorted(t.value for t in self.droppable),
            "signals": list(self.signals),
        }


# ── Complexity heuristics ────────────────────────────────────────────

EMOTIONAL_MARKERS = (
    "feel", "feeling", "emotion", "sad", "happy", "angry", "anxious",
    "depressed", "stressed", "overwhelmed", "excited", "worried",
)
THERAPY_MARKERS = (
    "therapy", "counseling", "trauma", "relationship", "family", "work",
    "coping", "strategy", "technique", "exercise",
)
PROGRESS_MARKERS = (
    "been working on", "making progress", "goal", "goals", "exercises you suggested",
    "techniques", "getting better", "improvement", "progress",
)
MULTI_TOPIC_MARKERS = ("also", "on top of that", "another thing", "and then", "besides")


def _marker_pattern(markers: Tuple[str, ...]) -> re.Pattern:
    alternation = "|".join(re.escape(m) for m in sorted(markers, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternation})\b")


_EMOTIONAL = _marker_pattern(EMOTIONAL_MARKERS)
_THERAPY = _marker_pattern(THERAPY_MARKERS)
_PROGRESS = _marker_pattern(PROGRESS_MARKERS)
_MULTI_TOPIC = _marker_pattern(MULTI_TOPIC_MARKERS)
_SENTENCE_END = re.compile(r"[.!?]+(?:\s|$)")


def classify_complexity(request: Request, risk: RiskScore) -> Tuple[Complexity, Tuple[str, ...]]:
    """Classify a message as simple, supportive or deep.

    Escalating a class takes at least two independent signals.  Returns the
    class plus the names of the signals that fired.
    """
    text = request.normalized_message
    emotional = len(_EMOTIONAL.findall(text))
    therapy = len(_THERAPY.findall(text))
    progress = len(_PROGRESS.findall(text))
    sentences = len(_SENTENCE_END.findall(request.message.strip() + " "))
    multi_topic = bool(_MULTI_TOPIC.search(text)) or sentences >= 4

    supportive_signals = {
        "medium_length": len(text) >= 50,
        "emotional_language": emotional >= 1,
        "risk_present": risk.level not in (RiskLevel.NONE,),
        "elevated_urgency": request.urgency_hint == UrgencyHint.ELEVATED,
    }
    deep_signals = {
        "long_message": len(text) > 200,
        "dense_emotion": emotional >= 3,
        "progress_language": progress >= 1,
        "therapy_topics": therapy >= 2,
        "multi_topic": multi_topic,
    }

    fired_deep = tuple(name for name, on in deep_signals.items() if on)
    fired_supportive = tuple(name for name, on in supportive_signals.items() if on)
    fired = fired_supportive + fired_deep

    if len(fired_deep) >= 2:
        return Complexity.DEEP, fired
    if len(fired) >= 2:
        return Complexity.SUPPORTIVE, fired
    return Complexity.SIMPLE, fired


# ── Planner ──────────────────────────────────────────────────────────


class ExecutionPlanner:
    """Builds execution plans.  Stateless apart from its collaborators."""

    def __init__(self, scorer: RiskScorer, settings: Settings) -> None:
        self.scorer = scorer
        self.settings = settings

    @track_performance(operation="plan")
    def plan(
        self,
        request: Request,
        risk: Optional[RiskScore] = None,
        complexity_hint: Optional[Complexity] = None,
    ) -> ExecutionPlan:
        """Build the plan for *request*.

        *risk* may be passed when the caller already scored the message.
        *complexity_hint* (e.g. a cached classification) is ignored whenever
        the crisis override applies.
        """
        started = time.perf_counter()
        if risk is None:
            risk = self.scorer.score(
                request.message,
                cultural_context=request.cultural_context,
                history=request.risk_history,
            )

        if risk.is_critical or request.urgency_hint == UrgencyHint.CRISIS:
            logger.warning(
                "Crisis override for request %s (risk=%s, urgency=%s)",
                request.request_id, risk.level.value, request.urgency_hint.value,
            )
            return self._build(
                CRISIS_TEMPLATE,
                deadline_ms=self.settings.plan_crisis_deadline_ms,
                complexity=None,
                risk=risk,
                droppable=frozenset(),
                signals=("crisis_override",),
                started=started,
            )

        if complexity_hint is not None:
            complexity, signals = complexity_hint, ("cached_classification",)
        else:
            complexity, signals = classify_complexity(request, risk)

        template = TEMPLATES[complexity]
        deadline = float(self.settings.plan_deadlines[template.scenario.value])
        droppable: FrozenSet[TaskKind] = frozenset()
        if request.preferences.speed == SpeedPreference.FAST:
            deadline *= self.settings.fast_deadline_factor
            droppable = template.optional

        plan = self._build(
            template,
            deadline_ms=deadline,
            complexity=complexity,
            risk=risk,
            droppable=droppable,
            signals=signals,
            started=started,
        )
        logger.debug(
            "Planned %s for request %s: %d tasks, %.0fms deadline",
            plan.strategy.value, request.request_id, len(plan.tasks), plan.deadline_ms,
        )
        return plan

    @staticmethod
    def _build(
        template: PlanTemplate,
        *,
        deadline_ms: float,
        complexity: Optional[Complexity],
        risk: RiskScore,
        droppable: FrozenSet[TaskKind],
        signals: Tuple[str, ...],
        started: float,
    ) -> ExecutionPlan:
        tasks: List[TaskKind] = [t for group in template.groups for t in group]
        graph = TaskGraph(tasks, template.dependencies)
        graph.validate()
        graph.validate_groups(template.groups)

        return ExecutionPlan(
            tasks=tuple(tasks),
            dependencies=dict(template.dependencies),
            parallel_groups=template.groups,
            strategy=template.strategy,
            deadline_ms=round(deadline_ms, 1),
            scenario=template.scenario,
            complexity=complexity,
            risk=risk,
            droppable=droppable,
            planning_ms=(time.perf_counter() - started) * 1000,
            signals=signals,
        )

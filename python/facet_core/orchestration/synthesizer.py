"""Response synthesizer.

Merges the scheduler's ``TaskResult`` list into the outbound reply: picks
the content, weighs confidences by each task's influence weight and builds
the optional orchestration trace.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from facet_core.models import ExecutionStep, Request, StepType, TaskKind, TaskResult, Transparency
from facet_core.orchestration.scheduler import ScheduleOutcome
from facet_core.planning.planner import ExecutionPlan
from facet_core.responses import FALLBACK_RESPONSE, emotion_template
from facet_core.risk.scorer import RiskLevel

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
AGREEMENT_BONUS = 0.1


class ExecutionPattern(str, Enum):
    SERIAL = "serial"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


@dataclass
class SynthesizedResponse:
    content: str
    conversation_id: str
    confidence: float
    agreement: float
    warning_flags: List[str]
    risk_assessment: Dict[str, Any]
    orchestration: Optional[Dict[str, Any]] = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    steps: Tuple[ExecutionStep, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "content": self.content,
            "messageId": self.message_id,
            "conversationId": self.conversation_id,
            "metadata": {
                "responseConfidence": round(self.confidence, 3),
                "riskAssessment": self.risk_assessment,
                "warningFlags": list(self.warning_flags),
            },
        }
        if self.orchestration is not None:
            data["orchestration"] = self.orchestration
        return data


def weighted_confidence(results: Sequence[TaskResult]) -> float:
    total_weight = sum(r.influence_weight for r in results)
    if not total_weight:
        return 0.0
    return sum(r.confidence * r.influence_weight for r in results) / total_weight


def agreement_score(results: Sequence[TaskResult]) -> float:
    if len(results) < 2:
        return 1.0
    mean = sum(r.confidence for r in results) / len(results)
    return min(mean + AGREEMENT_BONUS, 1.0)


def execution_pattern(group_sizes: Sequence[int]) -> str:
    if not group_sizes or all(size == 1 for size in group_sizes):
        return ExecutionPattern.SERIAL.value
    if len(group_sizes) == 1:
        return ExecutionPattern.PARALLEL.value
    return ExecutionPattern.HYBRID.value


class ResponseSynthesizer:
    """Turns a schedule outcome into the outbound reply."""

    def synthesize(
        self,
        request: Request,
        plan: ExecutionPlan,
        outcome: ScheduleOutcome,
        started_at: Optional[float] = None,
    ) -> SynthesizedResponse:
        synth_started = time.perf_counter()
        successful = list(outcome.successful)
        flags = list(outcome.warning_flags)

        content = self._content(plan, outcome, successful)
        if plan.risk.level in (RiskLevel.HIGH, RiskLevel.CRITICAL) and "professional_referral" not in flags:
            flags.append("professional_referral")

        if successful and outcome.fallback_response is None:
            confidence = weighted_confidence(successful)
        elif plan.is_crisis:
            confidence = plan.risk.confidence
        else:
            confidence = FALLBACK_CONFIDENCE
        agreement = agreement_score(successful)

        synthesis_ms = (time.perf_counter() - synth_started) * 1000
        total_ms = (time.perf_counter() - started_at) * 1000 if started_at is not None else outcome.total_ms
        steps = outcome.steps + (ExecutionStep(
            StepType.SYNTHESIZED,
            total_ms,
            detail={"sources": [r.task_id.value for r in successful]},
        ),)

        orchestration = None
        transparency = request.preferences.transparency
        if transparency != Transparency.MINIMAL:
            orchestration = self._orchestration_block(
                plan, outcome, confidence, agreement, synthesis_ms, total_ms, steps,
                detailed=transparency == Transparency.DETAILED,
            )

        logger.debug(
            "Synthesized reply for %s from %d result(s), confidence %.2f",
            request.request_id, len(successful), confidence,
        )
        return SynthesizedResponse(
            content=content,
            conversation_id=request.conversation_id,
            confidence=confidence,
            agreement=agreement,
            warning_flags=flags,
            risk_assessment=plan.risk.summary(),
            orchestration=orchestration,
            steps=steps,
        )

    @staticmethod
    def _content(plan: ExecutionPlan, outcome: ScheduleOutcome, successful: List[TaskResult]) -> str:
        if outcome.fallback_response is not None:
            return outcome.fallback_response

        by_kind = {r.task_id: r for r in successful}
        risk = by_kind.get(TaskKind.RISK_RESPONDER)
        if risk and risk.payload.get("response") and plan.risk.level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return str(risk.payload["response"])

        texts = [
            r for r in successful
            if isinstance(r.payload.get("response"), str) and r.payload["response"].strip()
        ]
        if texts:
            best = max(texts, key=lambda r: r.influence_weight * r.confidence)
            return best.payload["response"]

        emotion = by_kind.get(TaskKind.EMOTION_ANALYZER)
        if emotion:
            return emotion_template(str(emotion.payload.get("primary_emotion", "neutral")))
        return FALLBACK_RESPONSE

    @staticmethod
    def _orchestration_block(
        plan: ExecutionPlan,
        outcome: ScheduleOutcome,
        confidence: float,
        agreement: float,
        synthesis_ms: float,
        total_ms: float,
        steps: Tuple[ExecutionStep, ...],
        detailed: bool,
    ) -> Dict[str, Any]:
        group_sizes = outcome.group_sizes or tuple(len(g) for g in plan.parallel_groups)
        adaptations: List[str] = []
        if any(size > 1 for size in group_sizes):
            adaptations.append("parallel_processing_enabled")
        if plan.is_crisis:
            adaptations.append("crisis_priority_activated")
        if outcome.degraded:
            adaptations.append("degraded_execution")

        block: Dict[str, Any] = {
            "strategy": plan.strategy.value,
            "executionPattern": execution_pattern(group_sizes),
            "taskResults": [r.to_dict() for r in outcome.results],
            "timing": {
                "planningMs": round(plan.planning_ms, 2),
                "schedulingOverheadMs": round(outcome.scheduling_overhead_ms, 2),
                "parallelMs": round(outcome.parallel_ms, 2),
                "synthesisMs": round(synthesis_ms, 2),
                "totalMs": round(total_ms, 2),
            },
            "confidence": {"overall": round(confidence, 3), "agreement": round(agreement, 3)},
            "adaptations": adaptations,
        }
        if detailed:
            block["plan"] = plan.to_dict()
            block["steps"] = [s.to_dict() for s in steps]
            block["dropped"] = [t.value for t in outcome.dropped]
        return block

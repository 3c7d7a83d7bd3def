"""Scheduling, synthesis and the engine that ties them together."""

from facet_core.orchestration.engine import OrchestrationEngine
from facet_core.orchestration.scheduler import ScheduleOutcome, TaskScheduler, task_influence
from facet_core.orchestration.synthesizer import ResponseSynthesizer, SynthesizedResponse

__all__ = [
    "OrchestrationEngine",
    "ResponseSynthesizer",
    "ScheduleOutcome",
    "SynthesizedResponse",
    "TaskScheduler",
    "task_influence",
]

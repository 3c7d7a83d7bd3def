"""Execution planning."""

from facet_core.planning.planner import (
    Complexity,
    ExecutionPlan,
    ExecutionPlanner,
    PlanStrategy,
    PlanTemplate,
    classify_complexity,
)

__all__ = [
    "Complexity",
    "ExecutionPlan",
    "ExecutionPlanner",
    "PlanStrategy",
    "PlanTemplate",
    "classify_complexity",
]

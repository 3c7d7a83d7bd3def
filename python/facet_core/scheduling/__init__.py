"""Dependency graph helpers for execution plans."""

from facet_core.scheduling.task_graph import TaskGraph

__all__ = ["TaskGraph"]

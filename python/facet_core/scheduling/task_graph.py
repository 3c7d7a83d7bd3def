"""DAG helpers for execution plans.

Standalone module with no dependency on the scheduler.  Pure Python.

Provides:
- Cycle detection (DFS, reports the full cycle path)
- Topological ordering via Kahn's algorithm (execution waves)
- Parallel-group validation (no task shares a group with a prerequisite)
- Downstream lookup used when a task is dropped or fails
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, FrozenSet, Generic, Hashable, Iterable, List, Mapping, Optional, Set, TypeVar

from facet_core.exceptions import CycleDetectedError, InvalidGroupError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


class TaskGraph(Generic[T]):
    """Immutable dependency graph over an ordered task list.

    ``order`` fixes the tie-break inside a wave; ``dependencies`` maps each
    task to the tasks it needs.  Prerequisites that are not in ``order``
    are ignored with a warning.
    """

    def __init__(self, order: Iterable[T], dependencies: Optional[Mapping[T, Iterable[T]]] = None) -> None:
        self._order: List[T] = list(dict.fromkeys(order))
        known = set(self._order)
        deps = dependencies or {}

        # Forward edges: task → tasks it depends ON
        self._dependencies: Dict[T, FrozenSet[T]] = {}
        # Reverse edges: task → tasks that depend on IT
        self._dependents: Dict[T, Set[T]] = {t: set() for t in self._order}

        for task in self._order:
            needed = set()
            for dep in deps.get(task, ()):
                if dep not in known:
                    logger.warning("Dependency %s of %s is not part of the plan; ignoring", dep, task)
                    continue
                needed.add(dep)
            self._dependencies[task] = frozenset(needed)
            for dep in needed:
                self._dependents[dep].add(task)

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def tasks(self) -> List[T]:
        return list(self._order)

    def prerequisites(self, task: T) -> FrozenSet[T]:
        return self._dependencies.get(task, frozenset())

    def find_cycle(self) -> Optional[List[T]]:
        """Return a cycle as a path ``[a, b, ..., a]`` or ``None``."""
        white, grey, black = 0, 1, 2
        colour: Dict[T, int] = {t: white for t in self._order}

        for root in self._order:
            if colour[root] != white:
                continue
            stack: List[tuple[T, List[T]]] = [(root, [root])]
            while stack:
                node, path = stack[-1]
                if colour[node] == white:
                    colour[node] = grey
                pending = [d for d in self._ordered(self._dependencies[node]) if colour[d] != black]
                advanced = False
                for dep in pending:
                    if colour[dep] == grey:
                        start = path.index(dep) if dep in path else 0
                        return path[start:] + [dep]
                    if colour[dep] == white:
                        stack.append((dep, path + [dep]))
                        advanced = True
                        break
                if not advanced:
                    colour[node] = black
                    stack.pop()
        return None

    def validate(self) -> None:
        """Raise ``CycleDetectedError`` if the graph is not a DAG."""
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleDetectedError([str(getattr(t, "value", t)) for t in cycle])

    def validate_groups(self, groups: Iterable[Iterable[T]]) -> None:
        """Every task in a group must have its prerequisites outside that group."""
        for group in groups:
            members = set(group)
            for task in members:
                clash = self._dependencies.get(task, frozenset()) & members
                if clash:
                    dep = self._ordered(clash)[0]
                    raise InvalidGroupError(str(getattr(task, "value", task)), str(getattr(dep, "value", dep)))

    def get_execution_waves(self) -> List[List[T]]:
        """Kahn's algorithm producing parallel execution waves.

        Each wave contains tasks whose dependencies are fully satisfied by
        prior waves, in plan order.
        """
        self.validate()
        in_degree = {t: len(self._dependencies[t]) for t in self._order}
        current = [t for t in self._order if in_degree[t] == 0]
        waves: List[List[T]] = []

        while current:
            waves.append(current)
            nxt: List[T] = []
            for task in current:
                for dependent in self._dependents[task]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        nxt.append(dependent)
            current = self._ordered(nxt)
        return waves

    def get_downstream(self, task: T) -> Set[T]:
        """BFS to find all transitive dependents of *task*."""
        result: Set[T] = set()
        queue: deque[T] = deque(self._dependents.get(task, set()))
        while queue:
            nid = queue.popleft()
            if nid in result:
                continue
            result.add(nid)
            queue.extend(self._dependents.get(nid, set()))
        return result

    def without(self, dropped: Iterable[T]) -> "TaskGraph[T]":
        """Return a copy with *dropped* tasks removed (edges to them vanish)."""
        gone = set(dropped)
        order = [t for t in self._order if t not in gone]
        deps = {t: [d for d in self._dependencies[t] if d not in gone] for t in order}
        return TaskGraph(order, deps)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            str(getattr(t, "value", t)): sorted(str(getattr(d, "value", d)) for d in self._dependencies[t])
            for t in self._order
        }

    # ── Internal helpers ─────────────────────────────────────────────

    def _ordered(self, tasks: Iterable[T]) -> List[T]:
        position = {t: i for i, t in enumerate(self._order)}
        return sorted(tasks, key=lambda t: position.get(t, len(position)))

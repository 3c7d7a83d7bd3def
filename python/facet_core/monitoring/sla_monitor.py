"""SLA monitor.

Per-request timing ledger plus a bounded rolling history of completed
requests.  Every statistic is recomputed from the stored ``SLARecord``
objects; there are no running counters to drift out of sync.

Thread-safe: a single lock guards the active-session map and the history,
so concurrent completions append-then-trim safely.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from facet_core.config.settings import Settings

logger = logging.getLogger(__name__)

ENABLE_FAST_PATH = "enable_fast_path"
SKIP_OPTIONAL_TASKS = "skip_optional_tasks"
RETURN_FALLBACK = "return_fallback"

SLOW_TASK_MS = 1000.0
OVERTIME_ALERT_MS = 1000.0
OVERHEAD_ALERT_MS = 500.0
HEALTHY_COMPLIANCE = 95.0
LOW_COMPLIANCE_ALERT = 90.0
HIGH_LOAD_SESSIONS = 10

# Used by predict() before a task kind has any history
DEFAULT_TASK_ESTIMATE_MS = 400.0


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskTiming:
    task_id: str
    start_offset_ms: float
    duration_ms: float


@dataclass(frozen=True)
class SLARecord:
    """One completed request.  Compliance is fixed at creation."""

    request_id: str
    scenario: str
    target_ms: float
    start_time: float
    end_time: float
    task_timings: Tuple[TaskTiming, ...]
    compliance: bool

    @property
    def total_ms(self) -> float:
        return (self.end_time - self.start_time) * 1000

    @property
    def overhead_ms(self) -> float:
        """Time not spent inside any task body."""
        return max(0.0, self.total_ms - sum(t.duration_ms for t in self.task_timings))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scenario": self.scenario,
            "target_ms": self.target_ms,
            "total_ms": round(self.total_ms, 2),
            "overhead_ms": round(self.overhead_ms, 2),
            "compliance": self.compliance,
            "tasks": [
                {"task_id": t.task_id, "start_offset_ms": t.start_offset_ms, "duration_ms": t.duration_ms}
                for t in self.task_timings
            ],
        }


@dataclass(frozen=True)
class SLAPrediction:
    likely: bool
    elapsed_ms: float
    remaining_ms: float
    recommended_actions: Tuple[str, ...] = ()


@dataclass
class ScenarioStats:
    requests: int = 0
    compliant: int = 0
    average_ms: float = 0.0
    violations: int = 0

    @property
    def compliance(self) -> float:
        return 100.0 if self.requests == 0 else self.compliant / self.requests * 100


@dataclass
class SLAStatistics:
    total_requests: int
    compliant_requests: int
    overall_compliance: float
    average_response_ms: float
    average_overhead_ms: float
    per_scenario: Dict[str, ScenarioStats] = field(default_factory=dict)
    slow_tasks: List[Tuple[str, float]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "compliant_requests": self.compliant_requests,
            "overall_compliance": round(self.overall_compliance, 2),
            "average_response_ms": round(self.average_response_ms, 2),
            "average_overhead_ms": round(self.average_overhead_ms, 2),
            "per_scenario": {
                name: {
                    "requests": s.requests,
                    "compliance": round(s.compliance, 2),
                    "average_ms": round(s.average_ms, 2),
                    "violations": s.violations,
                }
                for name, s in self.per_scenario.items()
            },
            "slow_tasks": [{"task_id": t, "average_ms": round(ms, 2)} for t, ms in self.slow_tasks],
        }


@dataclass
class _ActiveSession:
    scenario: str
    target_ms: float
    start_time: float
    timings: List[TaskTiming] = field(default_factory=list)


# ── Monitor ──────────────────────────────────────────────────────────


class SLAMonitor:
    """Tracks deadline compliance per request."""

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._active: Dict[str, _ActiveSession] = {}
        self._history: Deque[SLARecord] = deque(maxlen=settings.sla_history_size)

    # ── Ledger ───────────────────────────────────────────────────────

    def start(self, request_id: str, scenario: str, target_ms: Optional[float] = None) -> None:
        target = target_ms if target_ms is not None else self.settings.sla_targets.get(
            scenario, self.settings.sla_supportive_ms
        )
        with self._lock:
            self._active[request_id] = _ActiveSession(scenario, float(target), self._clock())
        logger.debug("SLA tracking started for %s (%s, %.0fms)", request_id, scenario, target)

    def assign_scenario(self, request_id: str, scenario: str, target_ms: Optional[float] = None) -> None:
        """Re-target an active session once its scenario is known.

        The start time is kept, so work done before classification still
        counts against the new target.

        Raises:
            ValueError: if *request_id* is not active.
        """
        target = target_ms if target_ms is not None else self.settings.sla_targets.get(
            scenario, self.settings.sla_supportive_ms
        )
        with self._lock:
            session = self._active.get(request_id)
            if session is None:
                raise ValueError(f"No active SLA session for request {request_id!r}")
            session.scenario = scenario
            session.target_ms = float(target)

    def record_task(self, request_id: str, task_id: str, start_offset_ms: float, duration_ms: float) -> None:
        """Add one task timing.  Timings for finished requests are ignored."""
        with self._lock:
            session = self._active.get(request_id)
            if session is None:
                logger.debug("Ignoring timing for %s/%s: request not active", request_id, task_id)
                return
            session.timings.append(TaskTiming(task_id, start_offset_ms, duration_ms))

    def complete(self, request_id: str) -> SLARecord:
        """Finalize and store the record.

        Raises:
            ValueError: if *request_id* was never started or already completed.
        """
        end = self._clock()
        with self._lock:
            session = self._active.pop(request_id, None)
            if session is None:
                raise ValueError(f"No active SLA session for request {request_id!r}")
            record = SLARecord(
                request_id=request_id,
                scenario=session.scenario,
                target_ms=session.target_ms,
                start_time=session.start_time,
                end_time=end,
                task_timings=tuple(session.timings),
                compliance=(end - session.start_time) * 1000 <= session.target_ms,
            )
            self._history.append(record)

        if not record.compliance:
            logger.warning(
                "SLA violation: %s took %.0fms (target %.0fms, %s)",
                request_id, record.total_ms, record.target_ms, record.scenario,
            )
        return record

    def predict(self, request_id: str, upcoming_ms: float = 0.0) -> SLAPrediction:
        """Predict whether *request_id* will meet its target.

        *upcoming_ms* is the expected cost of the next unit of work; it must
        still fit before the safety buffer.

        Raises:
            ValueError: if *request_id* is not active.
        """
        now = self._clock()
        with self._lock:
            session = self._active.get(request_id)
            if session is None:
                raise ValueError(f"No active SLA session for request {request_id!r}")
            target, started = session.target_ms, session.start_time

        elapsed = (now - started) * 1000
        remaining = target - elapsed
        likely = remaining - upcoming_ms > self.settings.sla_safety_buffer_ms

        actions: List[str] = []
        if not likely:
            actions.append(ENABLE_FAST_PATH)
            if elapsed > target * 0.8:
                actions.append(SKIP_OPTIONAL_TASKS)
            if elapsed > target * 0.9:
                actions.append(RETURN_FALLBACK)
        return SLAPrediction(likely, elapsed, remaining, tuple(actions))

    def is_active(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._active

    def expected_duration_ms(self, task_id: str) -> float:
        """Mean recorded duration for *task_id*, or a default estimate."""
        durations = [t.duration_ms for r in self._snapshot() for t in r.task_timings if t.task_id == task_id]
        if not durations:
            return DEFAULT_TASK_ESTIMATE_MS
        return sum(durations) / len(durations)

    # ── Statistics ───────────────────────────────────────────────────

    def records(self, timeframe_hours: Optional[float] = 24.0) -> List[SLARecord]:
        records = self._snapshot()
        if timeframe_hours is None:
            return records
        cutoff = self._clock() - timeframe_hours * 3600
        return [r for r in records if r.end_time >= cutoff]

    def statistics(self, timeframe_hours: Optional[float] = 24.0) -> SLAStatistics:
        return compute_statistics(self.records(timeframe_hours))

    def optimization_recommendations(self, timeframe_hours: Optional[float] = 24.0) -> List[Dict[str, Any]]:
        records = self.records(timeframe_hours)
        stats = compute_statistics(records)
        recommendations: List[Dict[str, Any]] = []

        for scenario in stats.per_scenario:
            overtime = [r.total_ms - r.target_ms for r in records if r.scenario == scenario and not r.compliance]
            if overtime and sum(overtime) / len(overtime) > OVERTIME_ALERT_MS:
                recommendations.append({
                    "action": f"optimize_{scenario}_scenario",
                    "reason": f"average overtime {sum(overtime) / len(overtime):.0f}ms",
                })

        if stats.average_overhead_ms > OVERHEAD_ALERT_MS:
            recommendations.append({
                "action": "reduce_orchestration_overhead",
                "reason": f"average overhead {stats.average_overhead_ms:.0f}ms",
            })

        for task_id, avg in stats.slow_tasks:
            recommendations.append({
                "action": f"optimize_task_{task_id}",
                "reason": f"average duration {avg:.0f}ms",
            })
        return recommendations

    def is_system_healthy(self) -> bool:
        """At least 95% compliance over the last hour."""
        return self.statistics(timeframe_hours=1).overall_compliance >= HEALTHY_COMPLIANCE

    def dashboard(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            active = {rid: (s.scenario, s.target_ms, s.start_time) for rid, s in self._active.items()}

        recent = self.statistics(timeframe_hours=0.25)
        alerts: List[Dict[str, Any]] = []
        if recent.total_requests and recent.overall_compliance < LOW_COMPLIANCE_ALERT:
            alerts.append({
                "type": "low_sla_compliance",
                "severity": "warning",
                "message": f"Compliance {recent.overall_compliance:.1f}% over the last 15 minutes",
            })
        if len(active) > HIGH_LOAD_SESSIONS:
            alerts.append({
                "type": "high_concurrent_load",
                "severity": "info",
                "message": f"{len(active)} requests in flight",
            })
        for rid, (scenario, target, started) in active.items():
            elapsed = (now - started) * 1000
            if elapsed > target * 2:
                alerts.append({
                    "type": f"stuck_session_{rid}",
                    "severity": "error",
                    "message": f"{scenario} request running for {elapsed:.0f}ms",
                })

        return {
            "active_sessions": len(active),
            "recent_compliance": round(recent.overall_compliance, 2),
            "recent_requests": recent.total_requests,
            "alerts": alerts,
        }

    def _snapshot(self) -> List[SLARecord]:
        with self._lock:
            return list(self._history)


def compute_statistics(records: List[SLARecord]) -> SLAStatistics:
    """Aggregate compliance figures from *records* alone."""
    if not records:
        return SLAStatistics(0, 0, 100.0, 0.0, 0.0)

    per_scenario: Dict[str, ScenarioStats] = {}
    totals: Dict[str, List[float]] = {}
    for r in records:
        stats = per_scenario.setdefault(r.scenario, ScenarioStats())
        stats.requests += 1
        stats.compliant += int(r.compliance)
        stats.violations += int(not r.compliance)
        totals.setdefault(r.scenario, []).append(r.total_ms)
    for scenario, values in totals.items():
        per_scenario[scenario].average_ms = sum(values) / len(values)

    task_durations: Dict[str, List[float]] = {}
    for r in records:
        for t in r.task_timings:
            task_durations.setdefault(t.task_id, []).append(t.duration_ms)
    slow = [
        (task_id, sum(d) / len(d))
        for task_id, d in task_durations.items()
        if sum(d) / len(d) > SLOW_TASK_MS
    ]
    slow.sort(key=lambda item: item[1], reverse=True)

    compliant = sum(1 for r in records if r.compliance)
    return SLAStatistics(
        total_requests=len(records),
        compliant_requests=compliant,
        overall_compliance=compliant / len(records) * 100,
        average_response_ms=sum(r.total_ms for r in records) / len(records),
        average_overhead_ms=sum(r.overhead_ms for r in records) / len(records),
        per_scenario=per_scenario,
        slow_tasks=slow,
    )

"""SLA monitoring."""

from facet_core.monitoring.sla_monitor import (
    ENABLE_FAST_PATH,
    RETURN_FALLBACK,
    SKIP_OPTIONAL_TASKS,
    SLAMonitor,
    SLAPrediction,
    SLARecord,
    SLAStatistics,
    TaskTiming,
    compute_statistics,
)

__all__ = [
    "ENABLE_FAST_PATH",
    "RETURN_FALLBACK",
    "SKIP_OPTIONAL_TASKS",
    "SLAMonitor",
    "SLAPrediction",
    "SLARecord",
    "SLAStatistics",
    "TaskTiming",
    "compute_statistics",
]

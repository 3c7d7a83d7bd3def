"""
Error system for the FACET orchestration engine.

Provides:
- ``FacetException`` base with category, severity and a serialisable context
- Domain exceptions for planning, task execution, caching and text generation
- Circuit breaker used around remote collaborators (text generation, shared store)

Most of these never reach a caller: risk scoring, task and cache faults are
recovered where they happen and only show up as warning flags on a response.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Safety or system failure
    ERROR = "error"            # Operation failed, response degraded
    WARNING = "warning"        # Recovered locally, flagged on the response
    INFO = "info"


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Inbound request rejected
    PLANNING = "planning"               # Plan could not be built or is invalid
    TASK = "task"                       # Task body failed or returned garbage
    TIMEOUT = "timeout"                 # Sub-timeout or deadline exceeded
    TEXT_GENERATION = "text_generation" # Remote text-generation collaborator
    INTERNAL = "internal"


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing, rejecting calls
    HALF_OPEN = "half_open"    # Testing recovery


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = True
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
        }


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5        # Failures before opening
    recovery_timeout_sec: float = 60  # Time to wait before trying recovery
    success_threshold: int = 3        # Successes in half-open before closing


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker metrics."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    last_failure_time: Optional[datetime] = None


# ============================================================================
# Exception Hierarchy
# ============================================================================

class FacetException(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        http_status: int = 500,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.http_status = http_status
        self.context = ErrorContext(
            severity=severity,
            category=category,
            message=message,
            details=self.details,
            is_recoverable=is_recoverable,
            http_status=http_status,
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(FacetException):
    """Input validation failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 422)
        super().__init__(message, **kwargs)


class InvalidRequestError(ValidationError):
    """Inbound request does not match the accepted shape."""


# ============================================================================
# Planning Errors
# ============================================================================

class PlanningError(FacetException):
    """An execution plan could not be built."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.PLANNING)
        super().__init__(message, **kwargs)


class CycleDetectedError(PlanningError):
    """Raised when a dependency map contains a cycle."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        path = " -> ".join(cycle)
        super().__init__(f"Dependency cycle detected: {path}", details={"cycle": cycle})


class InvalidGroupError(PlanningError):
    """Raised when a parallel group contains a task and one of its prerequisites."""

    def __init__(self, task_id: str, prerequisite: str) -> None:
        self.task_id = task_id
        self.prerequisite = prerequisite
        super().__init__(
            f"Task {task_id!r} shares a parallel group with its prerequisite {prerequisite!r}",
            details={"task_id": task_id, "prerequisite": prerequisite},
        )


# ============================================================================
# Task Errors
# ============================================================================

class TaskError(FacetException):
    """Base class for task body failures."""

    def __init__(self, message: str, task_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TASK)
        details = kwargs.pop("details", {}) or {}
        if task_id:
            details["task_id"] = task_id
        self.task_id = task_id
        super().__init__(message, details=details, **kwargs)


class TaskExecutionError(TaskError):
    """Task body raised while running."""


class TaskTimeoutError(TaskError):
    """Task body exceeded its sub-timeout."""

    def __init__(self, task_id: str, timeout_ms: float):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Task {task_id} exceeded its {timeout_ms:.0f}ms budget",
            task_id=task_id,
            category=ErrorCategory.TIMEOUT,
            details={"timeout_ms": timeout_ms},
        )


class MalformedTaskOutputError(TaskError):
    """Task body returned output that could not be parsed."""


# ============================================================================
# Text Generation Errors
# ============================================================================

class TextGenerationError(FacetException):
    """Remote text-generation call failed."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TEXT_GENERATION)
        details = kwargs.pop("details", {}) or {}
        if status is not None:
            details["status"] = status
        self.status = status
        super().__init__(message, details=details, **kwargs)


class CircuitOpenError(FacetException):
    """Call rejected because the circuit breaker is open."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Circuit breaker '{name}' is open",
            category=ErrorCategory.TEXT_GENERATION,
            severity=ErrorSeverity.WARNING,
            http_status=503,
        )


# ============================================================================
# Circuit Breaker
# ============================================================================

class CircuitBreaker:
    """Circuit breaker pattern implementation."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState.CLOSED
        self.metrics = CircuitBreakerMetrics()
        self.last_state_change = datetime.now(timezone.utc)
        self._consecutive_failures = 0
        self._half_open_successes = 0

    def record_success(self) -> None:
        self.metrics.successful_requests += 1
        self.metrics.total_requests += 1
        self._consecutive_failures = 0

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.config.success_threshold:
                self._close()

    def record_failure(self) -> None:
        self.metrics.failed_requests += 1
        self.metrics.total_requests += 1
        self.metrics.last_failure_time = datetime.now(timezone.utc)
        self._consecutive_failures += 1

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._open()
        elif self.state == CircuitBreakerState.CLOSED:
            if self._consecutive_failures >= self.config.failure_threshold:
                self._open()

    def record_rejection(self) -> None:
        self.metrics.rejected_requests += 1
        self.metrics.total_requests += 1

    def can_execute(self) -> bool:
        """Check if a call may go through."""
        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.OPEN:
            time_since_open = datetime.now(timezone.utc) - self.last_state_change
            if time_since_open.total_seconds() > self.config.recovery_timeout_sec:
                self._half_open()
                return True
            return False

        # HALF_OPEN - allow probe
        return True

    def _open(self) -> None:
        self.state = CircuitBreakerState.OPEN
        self.last_state_change = datetime.now(timezone.utc)
        self._consecutive_failures = 0
        logger.warning(f"Circuit breaker '{self.name}' opened")

    def _close(self) -> None:
        self.state = CircuitBreakerState.CLOSED
        self.last_state_change = datetime.now(timezone.utc)
        self._half_open_successes = 0
        logger.info(f"Circuit breaker '{self.name}' closed")

    def _half_open(self) -> None:
        self.state = CircuitBreakerState.HALF_OPEN
        self.last_state_change = datetime.now(timezone.utc)
        self._half_open_successes = 0
        logger.info(f"Circuit breaker '{self.name}' half-open (testing recovery)")

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "metrics": {
                "total_requests": self.metrics.total_requests,
                "successful_requests": self.metrics.successful_requests,
                "failed_requests": self.metrics.failed_requests,
                "rejected_requests": self.metrics.rejected_requests,
            },
        }

"""Tests for facet_core.exceptions (error hierarchy + circuit breaker)."""

from datetime import timedelta

from facet_core.exceptions import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitOpenError,
    CycleDetectedError,
    ErrorCategory,
    FacetException,
    InvalidRequestError,
    TaskError,
    TaskTimeoutError,
    TextGenerationError,
)


class TestHierarchy:
    def test_str_carries_error_id_and_category(self):
        exc = FacetException("something broke")
        assert str(exc).startswith(f"[{exc.context.error_id}] internal:")
        assert exc.message == "something broke"

    def test_invalid_request_is_422(self):
        exc = InvalidRequestError("bad")
        assert exc.http_status == 422
        assert exc.category == ErrorCategory.VALIDATION
        data = exc.to_dict()
        assert data["http_status"] == 422
        assert data["category"] == "validation"

    def test_task_error_records_task_id(self):
        exc = TaskError("failed", task_id="memory_manager", details={"attempt": 1})
        assert exc.details == {"attempt": 1, "task_id": "memory_manager"}

    def test_timeout_error(self):
        exc = TaskTimeoutError("support_advisor", 412.6)
        assert exc.category == ErrorCategory.TIMEOUT
        assert exc.message == "Task support_advisor exceeded its 413ms budget"
        assert exc.details["timeout_ms"] == 412.6

    def test_cycle_error(self):
        exc = CycleDetectedError(["a", "b", "a"])
        assert "a -> b -> a" in exc.message
        assert exc.category == ErrorCategory.PLANNING

    def test_text_generation_status(self):
        exc = TextGenerationError("bad gateway", status=502)
        assert exc.status == 502
        assert exc.details["status"] == 502

    def test_circuit_open_is_503(self):
        assert CircuitOpenError("x").http_status == 503


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=3))
        for _ in range(2):
            breaker.record_failure()
        assert breaker.can_execute() is True
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN
        assert breaker.can_execute() is False

    def test_half_open_after_recovery_timeout(self):
        breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=1, recovery_timeout_sec=10))
        breaker.record_failure()
        breaker.last_state_change -= timedelta(seconds=11)
        assert breaker.can_execute() is True
        assert breaker.state == CircuitBreakerState.HALF_OPEN

    def test_half_open_closes_after_successes(self):
        breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=1, success_threshold=2))
        breaker.record_failure()
        breaker._half_open()
        breaker.record_success()
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitBreakerState.CLOSED

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=5))
        breaker._half_open()
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN

    def test_status(self):
        breaker = CircuitBreaker("t")
        breaker.record_success()
        breaker.record_rejection()
        status = breaker.get_status()
        assert status["state"] == "closed"
        assert status["metrics"]["total_requests"] == 2
        assert status["metrics"]["rejected_requests"] == 1

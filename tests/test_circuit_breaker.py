"""Tests for the per-provider circuit breaker.

Tests the public interface: check(), record_success(), record_failure()
and call(). Validates state transitions:
  CLOSED -> OPEN (after threshold failures)
  OPEN -> HALF_OPEN (after cooldown)
  HALF_OPEN -> CLOSED (on success)
  HALF_OPEN -> OPEN (on failure)
"""

import threading
import time

import pytest

from longform.exceptions import CircuitOpenError
from longform.services.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    breaker_states,
    get_breaker,
)


class TestCircuitBreakerStates:
    def test_starts_closed(self):
        cb = CircuitBreaker("openai")
        assert cb.state == CircuitState.CLOSED

    def test_stays_closed_under_threshold(self):
        cb = CircuitBreaker("openai", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

    def test_opens_at_threshold(self):
        cb = CircuitBreaker("openai", failure_threshold=3)
        for _ in range(3):
            cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_open_blocks_calls(self):
        cb = CircuitBreaker("openai", failure_threshold=1, cooldown_seconds=60)
        cb.record_failure()
        with pytest.raises(CircuitOpenError) as exc_info:
            cb.check()
        assert exc_info.value.provider_id == "openai"
        assert exc_info.value.retry_after > 0
        assert exc_info.value.status_code == 503

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker("openai", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1

    def test_open_transitions_to_half_open_after_cooldown(self):
        cb = CircuitBreaker("openai", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        time.sleep(0.02)
        cb.check()
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_closes_on_success(self):
        cb = CircuitBreaker("openai", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        cb.record_success()
        assert cb.state == CircuitState.CLOSED

    def test_half_open_reopens_on_failure(self):
        cb = CircuitBreaker("openai", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_half_open_admits_one_trial_call(self):
        cb = CircuitBreaker("openai", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        with pytest.raises(CircuitOpenError):
            cb.check()
        cb.record_success()
        cb.check()
        cb.check()

    def test_failed_trial_restarts_cooldown(self):
        cb = CircuitBreaker("openai", failure_threshold=5, cooldown_seconds=0.05)
        for _ in range(5):
            cb.record_failure()
        time.sleep(0.06)
        cb.check()
        cb.record_failure()
        with pytest.raises(CircuitOpenError) as exc_info:
            cb.check()
        assert exc_info.value.retry_after > 0.03


class TestRegistry:
    def test_get_breaker_creates_new(self):
        b = get_breaker("anthropic")
        assert b.provider == "anthropic"
        assert b.state == CircuitState.CLOSED

    def test_get_breaker_returns_same_instance(self):
        assert get_breaker("anthropic") is get_breaker("anthropic")

    def test_providers_are_isolated(self):
        for _ in range(3):
            get_breaker("deepseek").record_failure()
        assert get_breaker("deepseek").state == CircuitState.OPEN
        assert get_breaker("grok").state == CircuitState.CLOSED

    def test_thresholds_apply_on_creation(self):
        breaker = get_breaker("strict", failure_threshold=1)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert get_breaker("strict", failure_threshold=10) is breaker

    def test_breaker_states_snapshot(self):
        get_breaker("openai").record_failure()
        get_breaker("anthropic")
        states = breaker_states()
        assert list(states) == ["anthropic", "openai"]
        assert states["openai"] == {
            "state": "closed", "consecutive_failures": 1, "retry_after_seconds": 0,
        }


class TestCall:
    def test_success_returns_result(self):
        assert get_breaker("openai").call(lambda: 42, timeout=5) == 42

    def test_timeout_raises_and_records_failure(self):
        release = threading.Event()

        def slow():
            release.wait(5)

        try:
            with pytest.raises(TimeoutError):
                get_breaker("slow").call(slow, timeout=0.05)
        finally:
            release.set()
        assert get_breaker("slow").failure_count == 1

    def test_exception_propagates_and_records_failure(self):
        def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            get_breaker("failing").call(failing, timeout=5)
        assert get_breaker("failing").failure_count == 1

    def test_blocked_by_open_circuit(self):
        breaker = get_breaker("blocked")
        for _ in range(3):
            breaker.record_failure()

        calls = []
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: calls.append(1), timeout=5)
        assert calls == []

"""Tests for circuit breaker implementation."""

import threading
from unittest.mock import Mock

import pytest

from charflow.circuit_breaker import (CircuitBreaker, CircuitBreakerConfig,
                                      CircuitBreakerMetrics, CircuitState)
from charflow.events import CollectingSink
from charflow.exceptions import CircuitOpenError, SubmissionError


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker(
        name="bsub",
        config=CircuitBreakerConfig(failure_threshold=3, recovery_timeout=30.0),
        clock=fake_clock,
    )


def trip(breaker, times):
    failing = Mock(side_effect=SubmissionError("bsub exited 255"))
    for _ in range(times):
        with pytest.raises(SubmissionError):
            breaker.call(failing)


class TestCircuitBreakerConfig:
    """Tests for CircuitBreakerConfig."""

    def test_default_config(self):
        """Test default configuration values."""
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.recovery_timeout == 60.0
        assert config.expected_exception == Exception

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)


class TestCircuitBreakerMetrics:
    """Tests for CircuitBreakerMetrics."""

    def test_initial_metrics(self):
        """Test initial metrics values."""
        metrics = CircuitBreakerMetrics()
        assert metrics.total_calls == 0
        assert metrics.rejected_calls == 0
        assert metrics.last_failure_time is None

    def test_record_state_transition(self):
        metrics = CircuitBreakerMetrics()
        metrics.record_state_transition(CircuitState.CLOSED, CircuitState.OPEN)
        metrics.record_state_transition(CircuitState.CLOSED, CircuitState.OPEN)
        assert metrics.to_dict()["state_transitions"] == {"closed_to_open": 2}


class TestClosedState:
    """Tests for the CLOSED state."""

    def test_successful_call(self, breaker):
        """Test a successful call passes through and resets the count."""
        trip(breaker, 2)
        assert breaker.call(lambda: "12345") == "12345"
        assert breaker.failure_count == 0
        assert breaker.get_state() == CircuitState.CLOSED

    def test_passes_arguments(self, breaker):
        func = Mock(return_value="ok")
        breaker.call(func, "job", queue="char")
        func.assert_called_once_with("job", queue="char")

    def test_opens_at_threshold(self, breaker):
        """Test consecutive failures open the circuit."""
        trip(breaker, 2)
        assert breaker.get_state() == CircuitState.CLOSED
        trip(breaker, 1)
        assert breaker.get_state() == CircuitState.OPEN

    def test_unexpected_exception_not_counted(self, fake_clock):
        breaker = CircuitBreaker(
            "bsub",
            CircuitBreakerConfig(failure_threshold=1, expected_exception=SubmissionError),
            clock=fake_clock,
        )
        with pytest.raises(KeyError):
            breaker.call(Mock(side_effect=KeyError("x")))
        assert breaker.get_state() == CircuitState.CLOSED


class TestOpenState:
    """Tests for the OPEN state."""

    def test_rejects_without_invoking(self, breaker):
        trip(breaker, 3)
        func = Mock()
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(func)
        func.assert_not_called()
        assert exc_info.value.retry_after == pytest.approx(30.0)
        assert breaker.get_metrics().rejected_calls == 1
        assert not breaker.is_available()

    def test_available_after_recovery_timeout(self, breaker, fake_clock):
        trip(breaker, 3)
        fake_clock.advance(29.9)
        assert not breaker.is_available()
        fake_clock.advance(0.1)
        assert breaker.is_available()
        # is_available has no side effects
        assert breaker.get_state() == CircuitState.OPEN


class TestHalfOpenState:
    """Tests for the single probe after the recovery timeout."""

    def test_probe_success_closes(self, breaker, fake_clock):
        trip(breaker, 3)
        fake_clock.advance(30)
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_probe_failure_reopens_and_resets_timer(self, breaker, fake_clock):
        trip(breaker, 3)
        fake_clock.advance(30)
        trip(breaker, 1)
        assert breaker.get_state() == CircuitState.OPEN
        fake_clock.advance(29)
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "ok")

    def test_single_flight_probe(self, breaker, fake_clock):
        """Test concurrent callers are rejected while the probe is in flight."""
        trip(breaker, 3)
        fake_clock.advance(30)
        entered = threading.Event()
        finish = threading.Event()
        calls = []

        def slow_probe():
            calls.append("probe")
            entered.set()
            finish.wait(5)
            return "ok"

        prober = threading.Thread(target=lambda: breaker.call(slow_probe))
        prober.start()
        assert entered.wait(5)

        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert not breaker.is_available()
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: calls.append("other"))

        finish.set()
        prober.join(5)
        assert calls == ["probe"]
        assert breaker.get_state() == CircuitState.CLOSED

    def test_aborted_probe_returns_to_open(self, fake_clock):
        breaker = CircuitBreaker(
            "bsub",
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout=10, expected_exception=SubmissionError),
            clock=fake_clock,
        )
        trip(breaker, 1)
        fake_clock.advance(10)
        with pytest.raises(KeyError):
            breaker.call(Mock(side_effect=KeyError("x")))
        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.call(lambda: "ok") == "ok"


class TestObservability:
    """Tests for events, reset and serialization."""

    def test_sink_receives_state_changes(self, fake_clock):
        sink = CollectingSink()
        breaker = CircuitBreaker(
            "bsub", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=5), sink=sink, clock=fake_clock
        )
        trip(breaker, 1)
        fake_clock.advance(5)
        breaker.call(lambda: None)
        assert [(e.from_state, e.to_state) for e in sink.circuit_events] == [
            ("closed", "open"),
            ("open", "half_open"),
            ("half_open", "closed"),
        ]

    def test_reset(self, breaker):
        trip(breaker, 3)
        breaker.reset()
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.is_available()

    def test_to_dict(self, breaker):
        trip(breaker, 1)
        data = breaker.to_dict()
        assert data["name"] == "bsub"
        assert data["state"] == "closed"
        assert data["failure_count"] == 1
        assert data["metrics"]["failed_calls"] == 1

"""Circuit Breaker Pattern Implementation.

Guards calls to an unreliable external system (the batch-queue
submission tool). After ``failure_threshold`` consecutive failures the
breaker opens and rejects every call without invoking it until
``recovery_timeout`` has elapsed; then exactly one probe call is let
through, and its outcome closes or re-opens the breaker.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .events import CircuitEvent, ObservabilitySink
from .exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Single probe in flight


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds
    expected_exception: type = Exception

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_transitions: Dict[str, int] = field(default_factory=dict)
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None

    def record_success(self):
        self.total_calls += 1
        self.successful_calls += 1
        self.last_success_time = datetime.now()

    def record_failure(self):
        self.total_calls += 1
        self.failed_calls += 1
        self.last_failure_time = datetime.now()

    def record_rejection(self):
        self.total_calls += 1
        self.rejected_calls += 1

    def record_state_transition(self, from_state: CircuitState, to_state: CircuitState):
        key = f"{from_state.value}_to_{to_state.value}"
        self.state_transitions[key] = self.state_transitions.get(key, 0) + 1

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
            "state_transitions": self.state_transitions.copy(),
        }


class CircuitBreaker:
    """Circuit breaker for fault tolerance.

    States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Threshold reached, reject all calls until the recovery timeout
    - HALF_OPEN: One probe call in flight; concurrent callers are rejected

    The wrapped call itself runs outside the lock, so concurrent callers
    in CLOSED are not serialized behind a slow submission. Only the state
    bookkeeping is locked, which makes the probe single-flight.

    Example:
        breaker = CircuitBreaker(
            name="bsub",
            config=CircuitBreakerConfig(failure_threshold=3, recovery_timeout=30.0)
        )

        try:
            handle = breaker.call(backend.submit, job)
        except CircuitOpenError:
            # Defer the job until the queue recovers
            ...
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        sink: Optional[ObservabilitySink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Identifier for this circuit breaker
            config: Configuration settings
            sink: Optional receiver of open/close events
            clock: Monotonic time source (seconds)
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.metrics = CircuitBreakerMetrics()
        self._sink = sink
        self._clock = clock
        self._probe_in_flight = False
        self._lock = threading.RLock()

        logger.info(
            f"Circuit breaker '{name}' initialized: "
            f"failure_threshold={self.config.failure_threshold}, "
            f"recovery_timeout={self.config.recovery_timeout}s"
        )

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection.

        Args:
            func: Function to execute
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result of func execution

        Raises:
            CircuitOpenError: If circuit is open or a probe is already in flight
            Exception: Any exception raised by func
        """
        probing = self._before_call()
        try:
            result = func(*args, **kwargs)
        except self.config.expected_exception:
            self._on_failure(probing)
            raise
        except BaseException:
            # Not a counted failure; give the probe slot back
            if probing:
                self._abort_probe()
            raise
        self._on_success(probing)
        return result

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True if this call is the probe."""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return False

            if self.state == CircuitState.OPEN:
                remaining = self._remaining_cooldown()
                if remaining > 0:
                    self.metrics.record_rejection()
                    logger.debug(f"Circuit breaker '{self.name}' is OPEN, rejecting call")
                    raise CircuitOpenError(self.name, remaining)
                self._transition_to(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                logger.info(
                    f"Circuit breaker '{self.name}' probing after "
                    f"{self.config.recovery_timeout}s recovery timeout"
                )
                return True

            # HALF_OPEN: someone else holds the probe
            self.metrics.record_rejection()
            raise CircuitOpenError(self.name, 0.0)

    def _on_success(self, probing: bool):
        with self._lock:
            self.metrics.record_success()
            self.failure_count = 0
            if probing:
                self._probe_in_flight = False
                self._transition_to(CircuitState.CLOSED)
                logger.info(f"Circuit breaker '{self.name}' recovered, transitioning to CLOSED")

    def _on_failure(self, probing: bool):
        with self._lock:
            self.metrics.record_failure()
            self.failure_count += 1
            if probing:
                self._probe_in_flight = False
                self.last_failure_time = self._clock()
                self._transition_to(CircuitState.OPEN)
                logger.error(
                    f"Circuit breaker '{self.name}' probe failed, transitioning to OPEN"
                )
                return

            logger.warning(
                f"Circuit breaker '{self.name}' failure: "
                f"{self.failure_count}/{self.config.failure_threshold}"
            )
            if self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self.last_failure_time = self._clock()
                self._transition_to(CircuitState.OPEN)
                logger.error(
                    f"Circuit breaker '{self.name}' threshold exceeded, transitioning to OPEN"
                )

    def _abort_probe(self):
        with self._lock:
            self._probe_in_flight = False
            # Back to OPEN with the old timestamp, so the next call probes again
            self._transition_to(CircuitState.OPEN)

    def _remaining_cooldown(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return self.config.recovery_timeout - (self._clock() - self.last_failure_time)

    def _transition_to(self, new_state: CircuitState):
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self.metrics.record_state_transition(old_state, new_state)

        logger.info(
            f"Circuit breaker '{self.name}' state transition: "
            f"{old_state.value} -> {new_state.value}"
        )

        if self._sink is not None:
            try:
                self._sink.on_circuit_event(
                    CircuitEvent(self.name, old_state.value, new_state.value, self.failure_count)
                )
            except Exception:
                logger.exception(f"Circuit breaker '{self.name}': observability sink failed")

    def reset(self):
        """Manually reset circuit breaker to CLOSED state."""
        with self._lock:
            logger.info(f"Manually resetting circuit breaker '{self.name}'")
            self.failure_count = 0
            self._probe_in_flight = False
            self._transition_to(CircuitState.CLOSED)

    def get_state(self) -> CircuitState:
        """Get current circuit breaker state."""
        with self._lock:
            return self.state

    def get_metrics(self) -> CircuitBreakerMetrics:
        """Get circuit breaker metrics."""
        with self._lock:
            return self.metrics

    def is_available(self) -> bool:
        """Check, without side effects, whether a call would be let through."""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.HALF_OPEN:
                return False
            return self._remaining_cooldown() <= 0

    def to_dict(self) -> dict:
        """Serialize circuit breaker state for reports."""
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "recovery_timeout": self.config.recovery_timeout,
                },
                "metrics": self.metrics.to_dict(),
            }

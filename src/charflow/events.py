"""Observability sinks for job transitions and circuit breaker changes.

The orchestrator core only calls the ``ObservabilitySink`` protocol; the
sinks here cover the common cases:

- LoggingSink: one log line per event
- CollectingSink: keeps events in memory (reports, tests, dashboards)
- CompositeSink: fans out to several sinks

Example:
    sink = CompositeSink([LoggingSink(), CollectingSink()])
    registry = JobRegistry(sink=sink)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Protocol, Sequence

from .models import JobState, JobTransition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitEvent:
    """Circuit breaker state change."""

    name: str
    from_state: str
    to_state: str
    failure_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ObservabilitySink(Protocol):
    """Receiver for orchestration events."""

    def on_transition(self, event: JobTransition) -> None: ...

    def on_circuit_event(self, event: CircuitEvent) -> None: ...


class LoggingSink:
    """Writes every event to the ``charflow.events`` logger."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def on_transition(self, event: JobTransition) -> None:
        level = logging.WARNING if event.to_state == JobState.FAILED else self.level
        detail = f" ({event.detail})" if event.detail else ""
        logger.log(
            level,
            f"Job {event.job_id}: {event.from_state.value} -> {event.to_state.value}"
            f" [retries={event.retry_count}]{detail}",
        )

    def on_circuit_event(self, event: CircuitEvent) -> None:
        level = logging.ERROR if event.to_state == "open" else self.level
        logger.log(
            level,
            f"Circuit breaker '{event.name}': {event.from_state} -> {event.to_state} "
            f"(failures={event.failure_count})",
        )


class CollectingSink:
    """Keeps events in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.transitions: List[JobTransition] = []
        self.circuit_events: List[CircuitEvent] = []

    def on_transition(self, event: JobTransition) -> None:
        with self._lock:
            self.transitions.append(event)

    def on_circuit_event(self, event: CircuitEvent) -> None:
        with self._lock:
            self.circuit_events.append(event)

    def history(self, job_id: str) -> List[JobState]:
        """States a job has entered, in order."""
        with self._lock:
            return [t.to_state for t in self.transitions if t.job_id == job_id]


class CompositeSink:
    """Forwards each event to every wrapped sink.

    A sink that raises is logged and skipped so the others still receive
    the event.
    """

    def __init__(self, sinks: Sequence[ObservabilitySink]):
        self.sinks = list(sinks)

    def on_transition(self, event: JobTransition) -> None:
        for sink in self.sinks:
            try:
                sink.on_transition(event)
            except Exception:
                logger.exception(f"Observability sink {sink!r} failed on transition event")

    def on_circuit_event(self, event: CircuitEvent) -> None:
        for sink in self.sinks:
            try:
                sink.on_circuit_event(event)
            except Exception:
                logger.exception(f"Observability sink {sink!r} failed on circuit event")

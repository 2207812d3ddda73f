"""Job data model and lifecycle state machine.

Defines the job states, the legal transitions between them and the
``Job`` record owned by the job registry. Resource demands and pool
capacities are plain ``{dimension: units}`` mappings.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

ResourceVector = Dict[str, float]


class JobState(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# RUNNING -> PENDING is the deferral path taken when the circuit breaker
# rejects a submission; FAILED -> PENDING is the job-level retry path.
VALID_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.READY, JobState.CANCELLED}),
    JobState.READY: frozenset({JobState.RUNNING, JobState.CANCELLED}),
    JobState.RUNNING: frozenset(
        {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED, JobState.PENDING}
    ),
    JobState.FAILED: frozenset({JobState.PENDING}),
    JobState.COMPLETED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

FINISHED_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


def can_transit(src: JobState, dst: JobState) -> bool:
    return dst in VALID_TRANSITIONS[src]


@dataclass
class Job:
    """A single characterization job and its mutable run state.

    Attributes:
        id: Unique job identifier
        name: Human-readable name
        dependencies: Ids of jobs that must be COMPLETED before this one runs
        resource_demand: Units consumed per resource dimension while RUNNING
        priority: Admission priority, higher is admitted first
        max_retries: Retry ceiling shared by submission retries and re-runs
        estimated_duration: Optional duration hint (seconds) for critical path reports
        command: Command line handed to the submission backend
        metadata: Free-form labels (PVT corner, stage, library)
        state: Current lifecycle state
        retry_count: Retries consumed so far
        submit_time: Set when the job enters RUNNING
        completion_time: Set when the job enters COMPLETED, FAILED or CANCELLED
        last_error: Last failure detail, cleared on success
        handle: Submission handle returned by the backend
        not_before: Monotonic time before which a re-queued job stays PENDING
        sequence: Registration order, used as admission tie-break
    """

    id: str
    name: str = ""
    dependencies: FrozenSet[str] = field(default_factory=frozenset)
    resource_demand: ResourceVector = field(default_factory=dict)
    priority: int = 0
    max_retries: int = 0
    estimated_duration: Optional[float] = None
    command: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    state: JobState = JobState.PENDING
    retry_count: int = 0
    submit_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    last_error: Optional[str] = None
    handle: Optional[str] = None
    not_before: Optional[float] = None
    sequence: int = 0

    def __post_init__(self):
        if not self.id:
            raise ValueError("Job id must be a non-empty string")
        if not self.name:
            self.name = self.id
        self.dependencies = frozenset(self.dependencies)
        self.resource_demand = {k: float(v) for k, v in self.resource_demand.items()}
        if any(v < 0 for v in self.resource_demand.values()):
            raise ValueError(f"Job '{self.id}' declares a negative resource demand")
        if self.max_retries < 0:
            raise ValueError(f"Job '{self.id}' max_retries must be >= 0")

    @property
    def is_finished(self) -> bool:
        """True for COMPLETED, CANCELLED, and FAILED with no retries left."""
        if self.state == JobState.FAILED:
            return self.retry_count >= self.max_retries
        return self.state in FINISHED_STATES

    @property
    def retries_remaining(self) -> int:
        return max(self.max_retries - self.retry_count, 0)

    def snapshot(self) -> "Job":
        """Return a detached copy safe to hand outside the registry."""
        return copy.deepcopy(self)

    def to_state_dict(self) -> Dict[str, Any]:
        """Serialize the mutable run state for persistence."""
        return {
            "state": self.state.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "submit_time": self.submit_time.isoformat() if self.submit_time else None,
            "completion_time": self.completion_time.isoformat() if self.completion_time else None,
            "handle": self.handle,
        }


@dataclass(frozen=True)
class JobTransition:
    """State-transition event delivered to observability sinks."""

    job_id: str
    from_state: JobState
    to_state: JobState
    detail: Optional[str]
    timestamp: datetime
    retry_count: int = 0


def add_vectors(a: Mapping[str, float], b: Mapping[str, float]) -> ResourceVector:
    result = dict(a)
    for dim, units in b.items():
        result[dim] = result.get(dim, 0.0) + units
    return result


def subtract_vectors(a: Mapping[str, float], b: Mapping[str, float]) -> ResourceVector:
    result = dict(a)
    for dim, units in b.items():
        result[dim] = result.get(dim, 0.0) - units
    return result

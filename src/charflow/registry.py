"""Job Registry - single owner of job definitions and run state.

Every state change goes through ``transition``/``try_transition`` (or the
narrower helpers built on them), all serialized by one re-entrant lock.
Readers receive detached snapshots, never the live ``Job`` objects.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .events import ObservabilitySink
from .exceptions import (DuplicateJobError, InvalidDependencyError,
                         InvalidTransitionError, TransitionError)
from .models import Job, JobState, JobTransition, can_transit
from .resolver import detect_cycles

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """Thread-safe store of jobs and their lifecycle state.

    Example:
        registry = JobRegistry()
        registry.register_all([
            Job(id="copy", resource_demand={"cpu": 1}),
            Job(id="run", dependencies={"copy"}, resource_demand={"cpu": 8}),
        ])
        registry.transition("copy", JobState.READY)
        ready = registry.snapshot_ready()
    """

    def __init__(
        self,
        sink: Optional[ObservabilitySink] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()
        self._sequence = 0
        self._sink = sink
        self._now = now

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, job: Job) -> None:
        """Register a single job; see ``register_all``."""
        self.register_all([job])

    def register_all(self, jobs: Iterable[Job]) -> None:
        """Atomically register a batch of jobs.

        The batch is validated against the existing graph plus the batch
        itself before anything is inserted, so a rejected batch leaves the
        registry unchanged.

        Raises:
            DuplicateJobError: An id exists already or twice in the batch
            InvalidDependencyError: Unknown dependency, self-dependency or cycle
        """
        batch = list(jobs)
        with self._lock:
            seen = set()
            for job in batch:
                if job.id in self._jobs or job.id in seen:
                    raise DuplicateJobError(job.id)
                seen.add(job.id)

            known = set(self._jobs) | seen
            for job in batch:
                if job.id in job.dependencies:
                    raise InvalidDependencyError(
                        f"Job '{job.id}' depends on itself", job_id=job.id, cycle=[job.id, job.id]
                    )
                unknown = sorted(job.dependencies - known)
                if unknown:
                    raise InvalidDependencyError(
                        f"Job '{job.id}' depends on unknown job(s): {', '.join(unknown)}",
                        job_id=job.id,
                    )

            graph = {job_id: existing.dependencies for job_id, existing in self._jobs.items()}
            graph.update({job.id: job.dependencies for job in batch})
            cycle = detect_cycles(graph)
            if cycle:
                raise InvalidDependencyError(
                    f"Dependency cycle detected: {' -> '.join(cycle)}", job_id=cycle[0], cycle=cycle
                )

            for job in batch:
                stored = job.snapshot()
                stored.state = JobState.PENDING
                stored.sequence = self._sequence
                self._sequence += 1
                self._jobs[stored.id] = stored

        logger.info(f"[Registry] Registered {len(batch)} job(s), {len(self._jobs)} total")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, job_id: str, new_state: JobState, detail: Optional[str] = None) -> Job:
        """Move a job to ``new_state`` under the state machine.

        Args:
            job_id: Job to transition
            new_state: Target state
            detail: Reason; required when entering FAILED, stored as ``last_error``

        Returns:
            Snapshot of the job after the transition

        Raises:
            KeyError: Unknown job id
            InvalidTransitionError: The state machine forbids the change
        """
        with self._lock:
            job = self._get(job_id)
            self._apply(job, new_state, detail)
            return job.snapshot()

    def try_transition(
        self,
        job_id: str,
        expected: JobState,
        new_state: JobState,
        detail: Optional[str] = None,
    ) -> bool:
        """Compare-and-set transition.

        Returns False without side effects when the job is no longer in
        ``expected`` (e.g. it was cancelled after a snapshot was taken).
        """
        with self._lock:
            job = self._get(job_id)
            if job.state != expected:
                return False
            self._apply(job, new_state, detail)
            return True

    def record_retry(self, job_id: str, error: str) -> int:
        """Consume one retry of a RUNNING job's budget.

        Returns:
            The new retry count
        """
        with self._lock:
            job = self._get(job_id)
            if job.state != JobState.RUNNING:
                raise InvalidTransitionError(job_id, job.state, job.state, "retry outside RUNNING")
            if job.retry_count >= job.max_retries:
                raise TransitionError(f"Job '{job_id}' has no retries left")
            job.retry_count += 1
            job.last_error = error
            return job.retry_count

    def fail(self, job_id: str, error: str, requeue_after: Optional[float] = None) -> Optional[Job]:
        """Fail a RUNNING job and, if budget remains, re-queue it.

        Both transitions happen under one lock acquisition so no reader
        sees a retryable job sitting in FAILED.

        Args:
            job_id: Job that failed
            error: Failure detail (non-empty)
            requeue_after: Monotonic time before which the re-queued job is
                           not promoted; None promotes on the next cycle

        Returns:
            Snapshot after the update (PENDING if re-queued, else FAILED), or None
            when the job already left RUNNING (e.g. it was cancelled)
        """
        with self._lock:
            job = self._get(job_id)
            if job.state != JobState.RUNNING:
                return None
            self._apply(job, JobState.FAILED, error)
            if job.retry_count < job.max_retries:
                job.retry_count += 1
                job.not_before = requeue_after
                self._apply(
                    job,
                    JobState.PENDING,
                    f"retry {job.retry_count}/{job.max_retries}",
                )
            return job.snapshot()

    def set_handle(self, job_id: str, handle: Optional[str]) -> None:
        with self._lock:
            self._get(job_id).handle = handle

    def cancel(self, job_id: str, detail: str = "cancelled") -> bool:
        """Cancel a PENDING or READY job immediately.

        Returns:
            True if the job was cancelled, False if it is RUNNING (the caller
            must signal the in-flight submission instead)

        Raises:
            InvalidTransitionError: The job already finished
        """
        with self._lock:
            job = self._get(job_id)
            if job.state == JobState.RUNNING:
                return False
            self._apply(job, JobState.CANCELLED, detail)
            return True

    def _apply(self, job: Job, new_state: JobState, detail: Optional[str]) -> None:
        old_state = job.state
        if not can_transit(old_state, new_state):
            raise InvalidTransitionError(job.id, old_state, new_state)
        if new_state == JobState.FAILED and not detail:
            raise InvalidTransitionError(
                job.id, old_state, new_state, "a failure must carry an error detail"
            )
        if new_state == JobState.READY:
            not_done = [
                dep for dep in job.dependencies if self._jobs[dep].state != JobState.COMPLETED
            ]
            if not_done:
                raise InvalidTransitionError(
                    job.id, old_state, new_state, f"dependencies not completed: {', '.join(sorted(not_done))}"
                )

        now = self._now()
        job.state = new_state
        if new_state == JobState.RUNNING:
            job.submit_time = now
            job.completion_time = None
            job.not_before = None
        elif new_state == JobState.COMPLETED:
            job.completion_time = now
            job.last_error = None
        elif new_state in (JobState.FAILED, JobState.CANCELLED):
            job.completion_time = now
            if new_state == JobState.FAILED:
                job.last_error = detail
        elif new_state == JobState.PENDING:
            job.completion_time = None
            job.handle = None
            if old_state == JobState.RUNNING:
                job.last_error = detail or job.last_error

        self._notify(JobTransition(job.id, old_state, new_state, detail, now, job.retry_count))

    def _notify(self, event: JobTransition) -> None:
        if self._sink is None:
            return
        try:
            self._sink.on_transition(event)
        except Exception:
            logger.exception(f"[Registry] Observability sink failed for job {event.job_id}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._get(job_id).snapshot()

    def snapshot(self) -> List[Job]:
        """Point-in-time copy of every job, in registration order."""
        with self._lock:
            return [job.snapshot() for job in sorted(self._jobs.values(), key=lambda j: j.sequence)]

    def snapshot_ready(self) -> List[Job]:
        """Point-in-time copy of the READY jobs.

        Jobs may stop being READY right after this returns; callers
        re-validate with ``try_transition``.
        """
        return [job for job in self.snapshot() if job.state == JobState.READY]

    def statistics(self) -> Dict[str, int]:
        """Number of jobs per state, every state included."""
        with self._lock:
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
            return counts

    def all_finished(self) -> bool:
        with self._lock:
            return all(job.is_finished for job in self._jobs.values())

    def dependents_of(self, job_id: str) -> List[str]:
        with self._lock:
            return sorted(j.id for j in self._jobs.values() if job_id in j.dependencies)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _get(self, job_id: str) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"Unknown job '{job_id}'") from None

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Serialize run state as ``{job_id: {state, retry_count, last_error, ...}}``."""
        with self._lock:
            return {job.id: job.to_state_dict() for job in self._jobs.values()}

    def restore(self, snapshot: Mapping[str, Mapping[str, Any]]) -> List[str]:
        """Re-apply a persisted snapshot to the registered definitions.

        Bypasses the state machine: the snapshot is trusted as the last
        known state. Jobs caught READY or RUNNING are put back to PENDING,
        since their submission did not survive the restart. Entries for
        unknown job ids are ignored.

        Returns:
            Ids whose state was restored
        """
        restored = []
        with self._lock:
            for job_id, data in snapshot.items():
                job = self._jobs.get(job_id)
                if job is None:
                    logger.warning(f"[Registry] Snapshot entry for unknown job '{job_id}' ignored")
                    continue
                state = JobState(data.get("state", JobState.PENDING.value))
                job.retry_count = min(int(data.get("retry_count", 0)), job.max_retries)
                job.last_error = data.get("last_error")
                job.submit_time = _parse_time(data.get("submit_time"))
                job.completion_time = _parse_time(data.get("completion_time"))
                if state in (JobState.READY, JobState.RUNNING):
                    job.last_error = f"interrupted while {state.value}; resubmitting after restart"
                    job.handle = None
                    state = JobState.PENDING
                elif state == JobState.FAILED and job.retry_count < job.max_retries:
                    state = JobState.PENDING
                else:
                    job.handle = data.get("handle")
                job.state = state
                restored.append(job_id)
        logger.info(f"[Registry] Restored state for {len(restored)} job(s)")
        return restored


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None

"""Job Manager - the orchestration poll loop.

Each cycle of ``JobManager.run``:

1. collects finished submissions, releases their resources and records
   COMPLETED / FAILED (re-queued while retries remain) / CANCELLED, or
   defers the job back to PENDING when the circuit breaker rejected it
2. asks the dependency resolver to promote newly eligible jobs to READY
3. admits READY jobs into the resource pool in priority order
4. moves each admitted job to RUNNING and dispatches its submission
   (retry policy around circuit breaker around the backend) on an
   execution slot, without waiting for it

The loop ends when every job is finished, or raises ``DeadlockDetected``
when nothing is READY or RUNNING and the remaining PENDING jobs can never
become READY.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .backends import (RunStatus, StatusPoller, SubmissionBackend,
                       SubmissionResult, cancel_submission)
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .config import Settings, get_settings
from .config_loader import RunPlan
from .events import ObservabilitySink
from .exceptions import (CircuitOpenError, ConfigurationError,
                         DeadlockDetected, InvalidTransitionError,
                         describe_error)
from .models import Job, JobState
from .persistence import FileBasedRegistryPersistence
from .registry import JobRegistry
from .resolver import DependencyResolver
from .resource_executor import ResourceBoundedExecutor, ResourcePool
from .retry_policy import RetryConfig, RetryPolicy

logger = logging.getLogger(__name__)


class OutcomeKind(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"


@dataclass
class JobOutcome:
    """Result of one dispatched submission, produced on an execution slot."""

    job_id: str
    kind: OutcomeKind
    detail: str = ""
    error: Optional[BaseException] = None

    def describe(self) -> str:
        if self.error is not None:
            return describe_error(self.error)
        return self.detail or self.kind.value


@dataclass
class _InFlight:
    job: Job
    future: Future
    cancel_event: threading.Event


@dataclass
class RunReport:
    """Summary of a finished (or deadlocked) run."""

    statistics: Dict[str, int]
    failed: Dict[str, str] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    cycles: int = 0
    elapsed_seconds: float = 0.0
    breaker: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.statistics.values())

    @property
    def succeeded(self) -> bool:
        return self.statistics.get(JobState.COMPLETED.value, 0) == self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statistics": dict(self.statistics),
            "failed": dict(self.failed),
            "cancelled": list(self.cancelled),
            "blocked": list(self.blocked),
            "cycles": self.cycles,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "breaker": self.breaker,
        }


class JobManager:
    """Drives registered jobs to completion against a submission backend.

    Example:
        registry = JobRegistry(sink=LoggingSink())
        registry.register_all(plan.jobs)
        with JobManager(registry, BatchQueueBackend(queue="char"), settings=settings) as manager:
            report = manager.run()
    """

    def __init__(
        self,
        registry: JobRegistry,
        backend: SubmissionBackend,
        poller: Optional[StatusPoller] = None,
        settings: Optional[Settings] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[ResourceBoundedExecutor] = None,
        resolver: Optional[DependencyResolver] = None,
        persistence: Optional[FileBasedRegistryPersistence] = None,
        sink: Optional[ObservabilitySink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the job manager.

        Args:
            registry: Registry holding the jobs to run
            backend: Submission backend (batch-queue client)
            poller: Status poller; defaults to ``backend`` when it can poll
            settings: Orchestrator settings; defaults to ``get_settings()``
            breaker: Circuit breaker around submissions
            retry_policy: Retry policy for submissions and status polls
            executor: Resource-bounded executor
            resolver: Dependency resolver
            persistence: Optional registry snapshot persistence
            sink: Receiver of circuit breaker events for the default breaker
            clock: Monotonic time source shared by breaker, resolver and backoff
        """
        self.settings = settings or get_settings()
        self.registry = registry
        self.backend = backend
        if poller is None:
            if not isinstance(backend, StatusPoller):
                raise ConfigurationError("A status poller is required when the backend cannot poll")
            poller = backend
        self.poller = poller
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(
            name="submission",
            config=CircuitBreakerConfig(
                failure_threshold=self.settings.failure_threshold,
                recovery_timeout=self.settings.recovery_timeout,
            ),
            sink=sink,
            clock=clock,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            RetryConfig(
                max_retries=self.settings.max_retries,
                base_delay=self.settings.base_delay,
                max_delay=self.settings.max_delay,
                jitter=self.settings.jitter,
            )
        )
        self.executor = executor or ResourceBoundedExecutor(
            ResourcePool(self.settings.capacity),
            max_workers=self.settings.max_workers,
            starvation_threshold=self.settings.starvation_threshold,
        )
        self.resolver = resolver or DependencyResolver(clock=clock)
        self.persistence = persistence

        self._inflight: Dict[str, _InFlight] = {}
        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._cycles = 0
        self._breaker_hold_logged = False

    @classmethod
    def from_plan(
        cls,
        plan: RunPlan,
        backend: SubmissionBackend,
        settings: Optional[Settings] = None,
        sink: Optional[ObservabilitySink] = None,
        **kwargs,
    ) -> "JobManager":
        """Build a registry from a run plan and a manager around it.

        The plan's capacity, when given, replaces ``settings.capacity``.
        """
        settings = settings or get_settings()
        if plan.capacity is not None:
            settings = settings.model_copy(update={"capacity": dict(plan.capacity)})
        registry = JobRegistry(sink=sink)
        registry.register_all(plan.jobs)
        return cls(registry, backend, settings=settings, sink=sink, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        """Run the poll loop until every job is finished.

        Returns:
            RunReport of the finished run

        Raises:
            CapacityError: Some job can never fit the resource pool
            DeadlockDetected: PENDING jobs remain that can never become READY
        """
        self.validate()
        started = self._clock()
        logger.info(
            f"[JobManager] Starting run: {len(self.registry)} job(s), "
            f"capacity={self.executor.pool.capacity}, slots={self.executor.max_workers}"
        )
        try:
            while True:
                self._cycles += 1
                changed = self._collect_finished()
                if self.settings.cascade_failures:
                    changed += self._cascade_cancellations()
                changed += len(self.resolver.promote_ready(self.registry))
                changed += self._dispatch_ready()
                if changed:
                    self._persist()

                if self.registry.all_finished() and not self._inflight:
                    break

                stats = self.registry.statistics()
                idle = (
                    not self._inflight
                    and stats[JobState.READY.value] == 0
                    and stats[JobState.RUNNING.value] == 0
                )
                if idle and not self.resolver.waiting_on_backoff(self.registry):
                    blocked = [job.id for job in self.registry.snapshot() if not job.is_finished]
                    report = self._report(started, blocked)
                    logger.error(
                        f"[JobManager] Deadlock: {len(blocked)} job(s) can never run: "
                        f"{', '.join(blocked)}"
                    )
                    raise DeadlockDetected(blocked, report)

                self._wait_for_progress()
        finally:
            self._persist()

        report = self._report(started, [])
        logger.info(
            f"[JobManager] Run finished after {report.cycles} cycle(s) in "
            f"{report.elapsed_seconds:.1f}s: {report.statistics}"
        )
        return report

    def validate(self) -> None:
        """Check every job's demand against total capacity.

        Raises:
            CapacityError: A demand can never be admitted
        """
        for job in self.registry.snapshot():
            self.executor.pool.validate(job.id, job.resource_demand)

    def cancel(self, job_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel a job.

        PENDING and READY jobs are cancelled immediately. For a RUNNING job
        the cancel is passed to its submission; the job stays RUNNING until
        the submission returns and is then recorded CANCELLED whatever the
        result.

        Returns:
            True once the job is cancelled or the cancel has been signalled

        Raises:
            InvalidTransitionError: The job already finished
        """
        with self._lock:
            entry = self._inflight.get(job_id)
            if entry is not None:
                logger.info(f"[JobManager] Cancel requested for running job {job_id}")
                entry.cancel_event.set()
                return True
            cancelled = self.registry.cancel(job_id, reason)
        self._wakeup.set()
        return cancelled

    def close(self) -> None:
        """Signal in-flight submissions to stop and release the slots."""
        with self._lock:
            for entry in self._inflight.values():
                entry.cancel_event.set()
        self.executor.shutdown(wait=True)

    def __enter__(self) -> "JobManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Loop steps
    # ------------------------------------------------------------------

    def _dispatch_ready(self) -> int:
        if not self.breaker.is_available():
            if not self._breaker_hold_logged:
                logger.warning(
                    f"[JobManager] Circuit breaker '{self.breaker.name}' open, holding READY jobs"
                )
                self._breaker_hold_logged = True
            return 0
        self._breaker_hold_logged = False

        ready = self.registry.snapshot_ready()
        if not ready:
            return 0

        dispatched = 0
        for job in self.executor.admit(ready):
            with self._lock:
                # Re-validate: the job may have been cancelled since the snapshot
                if not self.registry.try_transition(
                    job.id, JobState.READY, JobState.RUNNING, detail="admitted"
                ):
                    self.executor.release(job)
                    continue
                running = self.registry.get(job.id)
                cancel_event = threading.Event()
                try:
                    future = self.executor.submit(self._execute, running, cancel_event)
                except RuntimeError as e:
                    self.executor.release(job)
                    self.registry.fail(job.id, f"could not dispatch: {describe_error(e)}")
                    logger.error(f"[JobManager] Dispatch of {job.id} failed: {e}")
                    continue
                self._inflight[job.id] = _InFlight(running, future, cancel_event)
                dispatched += 1
                logger.info(
                    f"[JobManager] Dispatched {job.id} (priority={job.priority}, "
                    f"demand={job.resource_demand}, attempt {running.retry_count + 1})"
                )
        return dispatched

    def _collect_finished(self) -> int:
        with self._lock:
            done = [job_id for job_id, entry in self._inflight.items() if entry.future.done()]
            for job_id in done:
                entry = self._inflight.pop(job_id)
                try:
                    try:
                        outcome = entry.future.result()
                    except Exception as e:
                        outcome = JobOutcome(job_id, OutcomeKind.FAILED, error=e)
                    self._apply_outcome(entry, outcome)
                finally:
                    self.executor.release(entry.job)
        return len(done)

    def _apply_outcome(self, entry: _InFlight, outcome: JobOutcome) -> None:
        job_id = entry.job.id
        if entry.cancel_event.is_set() or outcome.kind == OutcomeKind.CANCELLED:
            applied = self.registry.try_transition(
                job_id, JobState.RUNNING, JobState.CANCELLED, "cancelled while running"
            )
        elif outcome.kind == OutcomeKind.COMPLETED:
            applied = self.registry.try_transition(
                job_id, JobState.RUNNING, JobState.COMPLETED, outcome.detail or None
            )
        elif outcome.kind == OutcomeKind.DEFERRED:
            applied = self.registry.try_transition(
                job_id, JobState.RUNNING, JobState.PENDING, outcome.describe()
            )
        else:
            current = self.registry.get(job_id)
            requeue_after = self._clock() + self.retry_policy.compute_delay(current.retry_count)
            after = self.registry.fail(job_id, outcome.describe(), requeue_after=requeue_after)
            applied = after is not None
            if after is not None and after.state == JobState.FAILED:
                logger.error(
                    f"[JobManager] Job {job_id} failed permanently after "
                    f"{after.retry_count + 1} attempt(s): {after.last_error}"
                )

        if not applied:
            state = self.registry.get(job_id).state
            logger.warning(
                f"[JobManager] Job {job_id} left RUNNING ({state.value}) before its "
                f"submission returned; dropping {outcome.kind.value} outcome"
            )

    def _cascade_cancellations(self) -> int:
        blocked = self.resolver.blocked_jobs(self.registry)
        if not blocked:
            return 0
        jobs = {job.id: job for job in self.registry.snapshot()}
        cancelled = 0
        for job_id in sorted(blocked, key=lambda j: jobs[j].sequence):
            upstream = sorted(
                dep for dep in jobs[job_id].dependencies
                if dep in blocked or jobs[dep].state == JobState.CANCELLED
                or (jobs[dep].state == JobState.FAILED and jobs[dep].is_finished)
            )
            if self.registry.try_transition(
                job_id,
                JobState.PENDING,
                JobState.CANCELLED,
                detail=f"upstream job(s) did not complete: {', '.join(upstream)}",
            ):
                cancelled += 1
        if cancelled:
            logger.warning(f"[JobManager] Cancelled {cancelled} job(s) blocked by failed upstream jobs")
        return cancelled

    def _wait_for_progress(self) -> None:
        with self._lock:
            futures = [entry.future for entry in self._inflight.values()]
        if futures:
            wait(futures, timeout=self.settings.poll_interval, return_when=FIRST_COMPLETED)
        else:
            self._wakeup.wait(self.settings.poll_interval)
        self._wakeup.clear()

    # ------------------------------------------------------------------
    # Execution slot side
    # ------------------------------------------------------------------

    def _execute(self, job: Job, cancel_event: threading.Event) -> JobOutcome:
        """Submit one job and follow it to a final status."""

        def submit_once() -> SubmissionResult:
            return self.breaker.call(self.backend.submit, job)

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            try:
                self.registry.record_retry(job.id, describe_error(error))
            except InvalidTransitionError:
                # Left RUNNING behind our back; stop resubmitting.
                logger.info(f"[JobManager] Not resubmitting {job.id}: no longer RUNNING")
                cancel_event.set()
                return
            logger.info(f"[JobManager] Resubmitting {job.id} in {delay:.1f}s (retry {attempt})")

        try:
            result = self.retry_policy.execute(
                submit_once,
                max_retries=job.retries_remaining,
                operation_name=f"submit {job.id}",
                on_retry=on_retry,
                cancel_event=cancel_event,
            )
        except CircuitOpenError as e:
            return JobOutcome(job.id, OutcomeKind.DEFERRED, error=e)
        except Exception as e:
            if cancel_event.is_set():
                return JobOutcome(job.id, OutcomeKind.CANCELLED, error=e)
            return JobOutcome(job.id, OutcomeKind.FAILED, error=e)

        self.registry.set_handle(job.id, result.handle)
        logger.info(f"[JobManager] Submitted {job.id} as {result.handle}")
        return self._await_completion(job, result.handle, cancel_event)

    def _await_completion(self, job: Job, handle: str, cancel_event: threading.Event) -> JobOutcome:
        cancel_sent = False
        while True:
            if cancel_event.is_set() and not cancel_sent:
                cancel_sent = True
                if not cancel_submission(self.backend, handle):
                    logger.warning(
                        f"[JobManager] Backend could not cancel {job.id} ({handle}); "
                        f"waiting for it to finish"
                    )

            try:
                report = self.retry_policy.execute(
                    lambda: self.poller.poll_status(handle),
                    operation_name=f"poll {job.id}",
                )
            except Exception as e:
                kind = OutcomeKind.CANCELLED if cancel_sent else OutcomeKind.FAILED
                return JobOutcome(job.id, kind, error=e)

            if report.finished:
                if cancel_sent:
                    return JobOutcome(job.id, OutcomeKind.CANCELLED, report.detail)
                if report.status == RunStatus.COMPLETED:
                    return JobOutcome(job.id, OutcomeKind.COMPLETED, report.detail)
                return JobOutcome(
                    job.id,
                    OutcomeKind.FAILED,
                    report.detail or f"submission {handle} reported failure",
                )

            if cancel_sent:
                time.sleep(self.settings.status_poll_interval)
            else:
                cancel_event.wait(self.settings.status_poll_interval)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save(self.registry)
        except OSError as e:
            logger.error(f"[JobManager] Could not save registry snapshot: {e}")

    def _report(self, started: float, blocked: List[str]) -> RunReport:
        jobs = self.registry.snapshot()
        return RunReport(
            statistics=self.registry.statistics(),
            failed={j.id: j.last_error or "" for j in jobs if j.state == JobState.FAILED},
            cancelled=[j.id for j in jobs if j.state == JobState.CANCELLED],
            blocked=list(blocked),
            cycles=self._cycles,
            elapsed_seconds=self._clock() - started,
            breaker=self.breaker.to_dict(),
        )

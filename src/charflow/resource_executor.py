"""Resource-bounded admission and execution.

- ResourcePool: atomic reserve/release accounting against a fixed capacity
  vector; ``allocated`` never exceeds ``capacity`` on any dimension
- ResourceBoundedExecutor: priority-ordered, first-fit admission of READY
  jobs into the pool plus a bounded thread pool of execution slots
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .exceptions import CapacityError
from .models import Job, ResourceVector, add_vectors, subtract_vectors

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class ResourcePool:
    """Fixed-capacity resource accounting.

    Example:
        pool = ResourcePool({"cpu": 64, "memory_gb": 256})
        if pool.try_reserve("run_ss", {"cpu": 8}):
            try:
                ...
            finally:
                pool.release("run_ss")
    """

    def __init__(self, capacity: Mapping[str, float]):
        if any(units < 0 for units in capacity.values()):
            raise CapacityError("Resource capacity must be non-negative")
        self.capacity: ResourceVector = {dim: float(units) for dim, units in capacity.items()}
        self._allocated: ResourceVector = {dim: 0.0 for dim in self.capacity}
        self._reservations: Dict[str, ResourceVector] = {}
        self._lock = threading.Lock()

    def validate(self, job_id: str, demand: Mapping[str, float]) -> None:
        """Reject demands that could never be admitted, even into an empty pool.

        Raises:
            CapacityError: Unknown dimension or demand above capacity
        """
        unknown = sorted(set(demand) - set(self.capacity))
        if unknown:
            raise CapacityError(
                f"Job '{job_id}' demands unknown resource(s): {', '.join(unknown)}"
            )
        too_big = sorted(dim for dim, units in demand.items() if units > self.capacity[dim] + _EPSILON)
        if too_big:
            detail = ", ".join(f"{d}={demand[d]:g}>{self.capacity[d]:g}" for d in too_big)
            raise CapacityError(f"Job '{job_id}' demand exceeds total capacity: {detail}")

    def try_reserve(self, job_id: str, demand: Mapping[str, float]) -> bool:
        """Reserve ``demand`` for ``job_id`` if it fits on every dimension.

        Returns False with no side effects when any dimension would overflow.
        """
        with self._lock:
            if job_id in self._reservations:
                raise CapacityError(f"Job '{job_id}' already holds a reservation")
            for dim, units in demand.items():
                if dim not in self.capacity:
                    return False
                if self._allocated[dim] + units > self.capacity[dim] + _EPSILON:
                    return False
            self._reservations[job_id] = dict(demand)
            self._allocated = add_vectors(self._allocated, demand)
            return True

    def release(self, job_id: str) -> ResourceVector:
        """Return a job's reservation to the pool.

        Raises:
            CapacityError: The job holds no reservation (double release)
        """
        with self._lock:
            demand = self._reservations.pop(job_id, None)
            if demand is None:
                raise CapacityError(f"Job '{job_id}' holds no reservation to release")
            self._allocated = {
                dim: max(units, 0.0) for dim, units in subtract_vectors(self._allocated, demand).items()
            }
            return demand

    @property
    def allocated(self) -> ResourceVector:
        with self._lock:
            return dict(self._allocated)

    @property
    def available(self) -> ResourceVector:
        with self._lock:
            return subtract_vectors(self.capacity, self._allocated)

    def holds(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._reservations


class ResourceBoundedExecutor:
    """Admits jobs against a ResourcePool and runs them on bounded slots.

    Admission is greedy: candidates are ordered by descending priority,
    then registration order, and the pool is filled first-fit, so a
    smaller lower-priority job may start while a larger higher-priority
    one waits. With ``starvation_threshold=N``, a job postponed for more
    than N admission rounds jumps ahead of every other candidate, and
    while such a job does not fit nothing else is admitted, so capacity
    drains towards it.
    """

    def __init__(
        self,
        pool: ResourcePool,
        max_workers: int = 4,
        starvation_threshold: Optional[int] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.pool = pool
        self.max_workers = max_workers
        self.starvation_threshold = starvation_threshold
        self._postponed: Dict[str, int] = {}
        self._in_flight = 0
        self._slots_lock = threading.Lock()
        self._threads: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def try_admit(self, job: Job) -> bool:
        """Reserve the job's demand if it fits; no partial reservation."""
        return self.pool.try_reserve(job.id, job.resource_demand)

    def release(self, job: Job) -> None:
        """Release an admitted job's demand. Call exactly once per admission."""
        self.pool.release(job.id)

    @contextmanager
    def admitted(self, job: Job) -> Iterator[bool]:
        """Scoped admission: yields whether the job was admitted and
        releases on exit if it was."""
        ok = self.try_admit(job)
        try:
            yield ok
        finally:
            if ok:
                self.release(job)

    def is_starving(self, job_id: str) -> bool:
        if self.starvation_threshold is None:
            return False
        return self._postponed.get(job_id, 0) > self.starvation_threshold

    def order_candidates(self, candidates: Sequence[Job]) -> List[Job]:
        """Starving jobs first, then priority descending, then registration order."""
        return sorted(
            candidates,
            key=lambda j: (0 if self.is_starving(j.id) else 1, -j.priority, j.sequence),
        )

    def admit(self, candidates: Sequence[Job]) -> List[Job]:
        """Admit as many candidates as capacity and free slots allow.

        Returns:
            Admitted jobs, in admission order; each holds a reservation
        """
        admitted: List[Job] = []
        free_slots = self.free_slots
        hold = False
        for job in self.order_candidates(candidates):
            if hold or len(admitted) >= free_slots or not self.try_admit(job):
                if self.is_starving(job.id) and not hold:
                    logger.info(f"[Executor] Holding capacity for starving job {job.id}")
                    hold = True
                self._postponed[job.id] = self._postponed.get(job.id, 0) + 1
                continue
            self._postponed.pop(job.id, None)
            admitted.append(job)

        candidate_ids = {job.id for job in candidates}
        for job_id in list(self._postponed):
            if job_id not in candidate_ids:
                del self._postponed[job_id]
        return admitted

    # ------------------------------------------------------------------
    # Execution slots
    # ------------------------------------------------------------------

    @property
    def free_slots(self) -> int:
        with self._slots_lock:
            return self.max_workers - self._in_flight

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Run ``fn`` on an execution slot."""
        if self._threads is None:
            self._threads = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="charflow-job"
            )
        with self._slots_lock:
            self._in_flight += 1
        try:
            future = self._threads.submit(fn, *args, **kwargs)
        except BaseException:
            with self._slots_lock:
                self._in_flight -= 1
            raise
        future.add_done_callback(self._slot_done)
        return future

    def _slot_done(self, _future: Future) -> None:
        with self._slots_lock:
            self._in_flight -= 1

    def shutdown(self, wait: bool = True) -> None:
        if self._threads is not None:
            self._threads.shutdown(wait=wait)
            self._threads = None

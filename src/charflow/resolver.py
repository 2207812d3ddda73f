"""Dependency resolution over the job graph.

Pure functions over a registry's dependency graph:

- detect_cycles(): white/gray/black depth-first search, run at registration
- DependencyResolver.promote_ready(): PENDING -> READY once every
  dependency is COMPLETED (idempotent)
- DependencyResolver.blocked_jobs(): PENDING jobs that can never run
  because an upstream job ended FAILED or CANCELLED
- critical_path(): longest dependency chain weighted by duration hints
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .exceptions import InvalidDependencyError
from .models import Job, JobState

if TYPE_CHECKING:
    from .registry import JobRegistry

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


def detect_cycles(graph: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """Find a dependency cycle using graph coloring.

    Args:
        graph: Mapping of job id to the ids it depends on. Ids that only
               appear as dependencies are treated as leaves.

    Returns:
        The cycle as a list of ids with the first id repeated at the end
        (e.g. ``["a", "b", "c", "a"]``), or None when the graph is acyclic.
    """
    color: Dict[str, int] = {node: WHITE for node in graph}

    for root in sorted(graph):
        if color[root] != WHITE:
            continue
        # Iterative DFS; each frame is (node, iterator over its dependencies)
        path: List[str] = [root]
        color[root] = GRAY
        stack = [(root, iter(sorted(graph.get(root, ()))))]
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                state = color.get(child, BLACK)
                if state == GRAY:
                    return path[path.index(child):] + [child]
                if state == WHITE:
                    color[child] = GRAY
                    path.append(child)
                    stack.append((child, iter(sorted(graph.get(child, ())))))
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                path.pop()
                stack.pop()
    return None


def topological_order(jobs: Iterable[Job]) -> List[Job]:
    """Order jobs so every job follows its dependencies (Kahn's algorithm).

    Ties are broken by registration order.
    """
    by_id = {job.id: job for job in jobs}
    indegree = {job_id: 0 for job_id in by_id}
    dependents: Dict[str, List[str]] = {job_id: [] for job_id in by_id}
    for job in by_id.values():
        for dep in job.dependencies:
            if dep in by_id:
                indegree[job.id] += 1
                dependents[dep].append(job.id)

    queue = deque(sorted((j for j in indegree if indegree[j] == 0), key=lambda j: by_id[j].sequence))
    ordered: List[Job] = []
    while queue:
        job_id = queue.popleft()
        ordered.append(by_id[job_id])
        for child in sorted(dependents[job_id], key=lambda j: by_id[j].sequence):
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if len(ordered) != len(by_id):
        cycle = detect_cycles({j.id: j.dependencies for j in by_id.values()})
        raise InvalidDependencyError(
            f"Dependency cycle detected: {' -> '.join(cycle or [])}", cycle=cycle
        )
    return ordered


def critical_path(jobs: Iterable[Job]) -> Tuple[List[str], float]:
    """Compute the longest dependency chain.

    Each job weighs its ``estimated_duration`` hint; jobs without a hint
    weigh 1.0, so a plan with no hints yields the unit-cost longest path.

    Returns:
        (job ids from first to last, total weight)
    """
    ordered = topological_order(jobs)
    if not ordered:
        return [], 0.0

    def weight(job: Job) -> float:
        return float(job.estimated_duration) if job.estimated_duration is not None else 1.0

    by_id = {job.id: job for job in ordered}
    best: Dict[str, float] = {}
    previous: Dict[str, Optional[str]] = {}
    for job in ordered:
        best_dep, best_cost = None, 0.0
        for dep in sorted(job.dependencies, key=lambda d: by_id[d].sequence if d in by_id else 0):
            if dep in best and best[dep] > best_cost:
                best_dep, best_cost = dep, best[dep]
        best[job.id] = best_cost + weight(job)
        previous[job.id] = best_dep

    end = max(ordered, key=lambda j: (best[j.id], -j.sequence)).id
    path = []
    node: Optional[str] = end
    while node is not None:
        path.append(node)
        node = previous[node]
    path.reverse()
    return path, best[end]


class DependencyResolver:
    """Promotes PENDING jobs whose dependencies have all COMPLETED.

    Holds no job state of its own; every read goes through the registry
    snapshot and every mutation through ``JobRegistry.try_transition``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock

    def promote_ready(self, registry: "JobRegistry") -> List[str]:
        """Promote newly eligible jobs to READY.

        Jobs re-queued after a failure stay PENDING until their backoff
        (``not_before``) has elapsed. Re-running on an unchanged graph
        promotes nothing.

        Returns:
            Ids promoted during this call, in registration order.
        """
        jobs = {job.id: job for job in registry.snapshot()}
        now = self._clock()
        promoted: List[str] = []
        for job in sorted(jobs.values(), key=lambda j: j.sequence):
            if job.state != JobState.PENDING:
                continue
            if job.not_before is not None and job.not_before > now:
                continue
            if all(jobs[dep].state == JobState.COMPLETED for dep in job.dependencies):
                if registry.try_transition(
                    job.id, JobState.PENDING, JobState.READY, detail="dependencies satisfied"
                ):
                    promoted.append(job.id)
        if promoted:
            logger.debug(f"[Resolver] Promoted to READY: {', '.join(promoted)}")
        return promoted

    def blocked_jobs(self, registry: "JobRegistry") -> Set[str]:
        """PENDING jobs that can never become READY.

        A job is blocked when some dependency is CANCELLED, is FAILED with
        no retries left, or is itself blocked.
        """
        jobs = {job.id: job for job in registry.snapshot()}
        memo: Dict[str, bool] = {}

        def dead(job_id: str) -> bool:
            if job_id in memo:
                return memo[job_id]
            job = jobs[job_id]
            if job.state == JobState.CANCELLED or (job.state == JobState.FAILED and job.is_finished):
                result = True
            elif job.state == JobState.PENDING:
                result = any(dead(dep) for dep in job.dependencies)
            else:
                result = False
            memo[job_id] = result
            return result

        return {
            job.id
            for job in jobs.values()
            if job.state == JobState.PENDING and any(dead(dep) for dep in job.dependencies)
        }

    def waiting_on_backoff(self, registry: "JobRegistry") -> Set[str]:
        """PENDING jobs held back only by their retry backoff."""
        now = self._clock()
        return {
            job.id
            for job in registry.snapshot()
            if job.state == JobState.PENDING and job.not_before is not None and job.not_before > now
        }

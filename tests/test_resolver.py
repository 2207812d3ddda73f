"""Tests for dependency resolution."""

import pytest

from charflow.exceptions import InvalidDependencyError
from charflow.models import Job, JobState
from charflow.registry import JobRegistry
from charflow.resolver import (DependencyResolver, critical_path,
                               detect_cycles, topological_order)


class TestDetectCycles:
    """Tests for graph-coloring cycle detection."""

    def test_acyclic(self):
        assert detect_cycles({"a": [], "b": ["a"], "c": ["a", "b"]}) is None

    def test_three_cycle(self):
        cycle = detect_cycles({"a": ["b"], "b": ["c"], "c": ["a"]})
        assert cycle == ["a", "b", "c", "a"]

    def test_self_loop(self):
        assert detect_cycles({"a": ["a"]}) == ["a", "a"]

    def test_cycle_off_the_root(self):
        cycle = detect_cycles({"root": ["x"], "x": ["y"], "y": ["x"]})
        assert cycle == ["x", "y", "x"]

    def test_deep_chain_does_not_recurse(self):
        """Test a long chain is handled without hitting the recursion limit."""
        graph = {f"j{i}": [f"j{i - 1}"] if i else [] for i in range(5000)}
        assert detect_cycles(graph) is None


class TestPromoteReady:
    """Tests for DependencyResolver.promote_ready."""

    def test_promotes_roots_then_dependents(self):
        registry = JobRegistry()
        registry.register_all([Job(id="a"), Job(id="b", dependencies={"a"})])
        resolver = DependencyResolver()

        assert resolver.promote_ready(registry) == ["a"]
        assert registry.get("b").state == JobState.PENDING

        registry.transition("a", JobState.RUNNING)
        registry.transition("a", JobState.COMPLETED)
        assert resolver.promote_ready(registry) == ["b"]

    def test_idempotent(self):
        registry = JobRegistry()
        registry.register_all([Job(id="a"), Job(id="b")])
        resolver = DependencyResolver()
        resolver.promote_ready(registry)
        assert resolver.promote_ready(registry) == []

    def test_respects_backoff(self, fake_clock):
        """Test a re-queued job stays PENDING until its backoff elapses."""
        registry = JobRegistry()
        registry.register(Job(id="a", max_retries=1))
        registry.transition("a", JobState.READY)
        registry.transition("a", JobState.RUNNING)
        registry.fail("a", "exit 1", requeue_after=fake_clock() + 5)
        resolver = DependencyResolver(clock=fake_clock)

        assert resolver.promote_ready(registry) == []
        assert resolver.waiting_on_backoff(registry) == {"a"}
        fake_clock.advance(5)
        assert resolver.promote_ready(registry) == ["a"]


class TestBlockedJobs:
    """Tests for DependencyResolver.blocked_jobs."""

    def test_cancelled_upstream_blocks_transitively(self):
        registry = JobRegistry()
        registry.register_all([
            Job(id="a"),
            Job(id="b", dependencies={"a"}),
            Job(id="c", dependencies={"b"}),
            Job(id="d"),
        ])
        registry.cancel("a")
        assert DependencyResolver().blocked_jobs(registry) == {"b", "c"}

    def test_failed_with_budget_does_not_block(self):
        registry = JobRegistry()
        registry.register_all([Job(id="a", max_retries=1), Job(id="b", dependencies={"a"})])
        registry.transition("a", JobState.READY)
        registry.transition("a", JobState.RUNNING)
        registry.transition("a", JobState.FAILED, "exit 1")
        assert DependencyResolver().blocked_jobs(registry) == set()


class TestCriticalPath:
    """Tests for critical path reporting."""

    def test_unit_cost_without_hints(self):
        jobs = [
            Job(id="a", sequence=0),
            Job(id="b", dependencies={"a"}, sequence=1),
            Job(id="c", dependencies={"b"}, sequence=2),
            Job(id="d", dependencies={"a"}, sequence=3),
        ]
        assert critical_path(jobs) == (["a", "b", "c"], 3.0)

    def test_weighted_by_duration_hint(self):
        jobs = [
            Job(id="a", estimated_duration=10, sequence=0),
            Job(id="b", dependencies={"a"}, estimated_duration=5, sequence=1),
            Job(id="c", dependencies={"a"}, estimated_duration=60, sequence=2),
            Job(id="d", dependencies={"b", "c"}, estimated_duration=1, sequence=3),
        ]
        path, total = critical_path(jobs)
        assert path == ["a", "c", "d"]
        assert total == pytest.approx(71.0)

    def test_empty(self):
        assert critical_path([]) == ([], 0.0)

    def test_topological_order_rejects_cycles(self):
        jobs = [Job(id="a", dependencies={"b"}), Job(id="b", dependencies={"a"})]
        with pytest.raises(InvalidDependencyError):
            topological_order(jobs)

    def test_topological_order(self):
        jobs = [Job(id="b", dependencies={"a"}, sequence=0), Job(id="a", sequence=1)]
        assert [j.id for j in topological_order(jobs)] == ["a", "b"]

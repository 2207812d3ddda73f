"""Pytest configuration and fixtures for charflow tests"""

import logging
import sys
import threading
from pathlib import Path

import pytest

# Ensure src directory is in Python path before any imports
project_root = Path(__file__).resolve().parent.parent
src_path = project_root / "src"

if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from charflow.backends import RunStatus, StatusReport, SubmissionResult  # noqa: E402
from charflow.config import Settings  # noqa: E402
from charflow.exceptions import SubmissionError  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend:
    """In-memory batch queue with scripted failures.

    Args:
        submit_failures: job id -> number of submissions rejected before one succeeds
        run_failures: job id -> number of accepted runs that end FAILED
        gated: job ids that stay RUNNING until ``release(job_id)`` is called
    """

    def __init__(self, submit_failures=None, run_failures=None, gated=()):
        self.submit_failures = dict(submit_failures or {})
        self.run_failures = dict(run_failures or {})
        self.gates = {job_id: threading.Event() for job_id in gated}
        self.submissions = []
        self.finished = []
        self.cancelled = []
        self.active = 0
        self.peak_active = 0
        self.overlaps = []
        self._runs = {}
        self._lock = threading.Lock()

    def submit(self, job):
        with self._lock:
            self.submissions.append(job.id)
            if self.submit_failures.get(job.id, 0) > 0:
                self.submit_failures[job.id] -= 1
                raise SubmissionError(f"bsub rejected {job.id}", returncode=255)
            fail = self.run_failures.get(job.id, 0) > 0
            if fail:
                self.run_failures[job.id] -= 1
            handle = f"{job.id}#{len(self.submissions)}"
            self._runs[handle] = (job.id, fail)
            running = [job_id for job_id, _ in self._runs.values()]
            if len(running) > 1:
                self.overlaps.append(sorted(running))
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        return SubmissionResult(handle=handle)

    def poll_status(self, handle):
        with self._lock:
            job_id, fail = self._runs[handle]
            gate = self.gates.get(job_id)
            killed = handle in self.cancelled
            if gate is not None and not gate.is_set() and not killed:
                return StatusReport(RunStatus.RUNNING)
            del self._runs[handle]
            self.active -= 1
            self.finished.append(job_id)
        if killed:
            return StatusReport(RunStatus.FAILED, "killed")
        if fail:
            return StatusReport(RunStatus.FAILED, f"{job_id} exited 1")
        return StatusReport(RunStatus.COMPLETED, "exit 0")

    def cancel(self, handle):
        with self._lock:
            self.cancelled.append(handle)

    def release(self, job_id):
        self.gates[job_id].set()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fast_settings():
    """Settings with no backoff and millisecond polling."""
    return Settings(
        failure_threshold=5,
        recovery_timeout=60.0,
        base_delay=0.0,
        max_delay=0.0,
        max_retries=3,
        poll_interval=0.005,
        status_poll_interval=0.005,
        max_workers=4,
        capacity={"cpu": 4},
    )


@pytest.fixture
def make_backend():
    """Factory for ScriptedBackend instances with per-test scripts."""
    return ScriptedBackend


@pytest.fixture(autouse=True)
def restore_charflow_logger():
    """Undo configure_logging() calls made by a test."""
    logger = logging.getLogger("charflow")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate

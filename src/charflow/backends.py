"""Submission backends and status pollers.

The orchestrator core depends only on the ``SubmissionBackend`` and
``StatusPoller`` protocols. Two adapters are provided:

- LocalProcessBackend: runs ``job.command`` as a local subprocess
- BatchQueueBackend: LSF-style batch queue driven through its CLI tools
  (``bsub`` / ``bjobs`` / ``bkill`` by default)

Both raise ``SubmissionError`` when the underlying tool fails.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from typing import IO, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .exceptions import SubmissionError
from .models import Job

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Status reported by a poller for a submitted job."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of a successful submission."""

    handle: str
    detail: str = ""


@dataclass(frozen=True)
class StatusReport:
    """One status observation of a submitted job."""

    status: RunStatus
    detail: str = ""

    @property
    def finished(self) -> bool:
        return self.status != RunStatus.RUNNING


@runtime_checkable
class SubmissionBackend(Protocol):
    def submit(self, job: Job) -> SubmissionResult: ...


@runtime_checkable
class StatusPoller(Protocol):
    def poll_status(self, handle: str) -> StatusReport: ...


def cancel_submission(backend: object, handle: str) -> bool:
    """Best-effort cancel through an optional ``cancel(handle)`` method.

    Returns:
        True if the backend supports cancellation and accepted the request
    """
    cancel = getattr(backend, "cancel", None)
    if cancel is None:
        return False
    try:
        cancel(handle)
        return True
    except (SubmissionError, OSError) as e:
        logger.warning(f"Cancel of submission {handle} failed: {e}")
        return False


class LocalProcessBackend:
    """Runs each job's command as a child process of the orchestrator.

    Useful for workstation runs and for exercising a plan without a
    cluster. A non-zero exit status is reported as FAILED.
    """

    def __init__(self, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.cwd = cwd
        self.env = env
        self._processes: Dict[str, subprocess.Popen] = {}
        self._stderr: Dict[str, IO[str]] = {}
        self._lock = threading.Lock()

    def submit(self, job: Job) -> SubmissionResult:
        if not job.command:
            raise SubmissionError(f"Job '{job.id}' has no command")
        errors = tempfile.TemporaryFile(mode="w+", encoding="utf-8")
        try:
            proc = subprocess.Popen(
                shlex.split(job.command),
                cwd=self.cwd,
                env=self.env,
                stdout=subprocess.DEVNULL,
                stderr=errors,
                text=True,
            )
        except OSError as e:
            errors.close()
            raise SubmissionError(f"Failed to start job '{job.id}': {e}") from e
        handle = str(proc.pid)
        with self._lock:
            self._processes[handle] = proc
            self._stderr[handle] = errors
        logger.debug(f"Started local process {handle} for job {job.id}")
        return SubmissionResult(handle=handle, detail=f"pid {handle}")

    def poll_status(self, handle: str) -> StatusReport:
        with self._lock:
            proc = self._processes.get(handle)
        if proc is None:
            raise SubmissionError(f"Unknown local process handle {handle}")
        returncode = proc.poll()
        if returncode is None:
            return StatusReport(RunStatus.RUNNING)
        with self._lock:
            self._processes.pop(handle, None)
            errors = self._stderr.pop(handle, None)
        stderr = ""
        if errors is not None:
            errors.seek(0)
            stderr = errors.read()
            errors.close()
        if returncode == 0:
            return StatusReport(RunStatus.COMPLETED, "exit 0")
        tail = stderr.strip().splitlines()[-1:] if stderr.strip() else []
        return StatusReport(RunStatus.FAILED, f"exit {returncode}" + (f": {tail[0]}" if tail else ""))

    def cancel(self, handle: str) -> None:
        with self._lock:
            proc = self._processes.get(handle)
        if proc is not None and proc.poll() is None:
            proc.terminate()


# bjobs STAT values
_LSF_RUNNING = {"PEND", "RUN", "PSUSP", "USUSP", "SSUSP", "WAIT", "PROV"}
_LSF_DONE = {"DONE"}
_LSF_FAILED = {"EXIT", "ZOMBI"}


class BatchQueueBackend:
    """Adapter for an LSF-style batch queue driven by its command-line tools.

    Submission runs ``<submit_cmd> -J <name> [-q queue] [-n cpu]
    [-R rusage[mem=N]] <command>`` and parses the queue job id from output
    like ``Job <12345> is submitted to queue <normal>.``

    Example:
        backend = BatchQueueBackend(queue="char")
        result = backend.submit(job)
        report = backend.poll_status(result.handle)
    """

    JOB_ID_PATTERN = re.compile(r"Job <(\d+)>")

    def __init__(
        self,
        queue: Optional[str] = None,
        submit_cmd: Sequence[str] = ("bsub",),
        status_cmd: Sequence[str] = ("bjobs", "-noheader", "-o", "stat"),
        cancel_cmd: Sequence[str] = ("bkill",),
        cpu_resource: str = "cpu",
        memory_resource: str = "memory_gb",
        timeout: float = 60.0,
    ):
        self.queue = queue
        self.submit_cmd = list(submit_cmd)
        self.status_cmd = list(status_cmd)
        self.cancel_cmd = list(cancel_cmd)
        self.cpu_resource = cpu_resource
        self.memory_resource = memory_resource
        self.timeout = timeout

    def build_submit_command(self, job: Job) -> List[str]:
        if not job.command:
            raise SubmissionError(f"Job '{job.id}' has no command")
        cmd = self.submit_cmd + ["-J", job.name]
        if self.queue:
            cmd += ["-q", self.queue]
        cpu = job.resource_demand.get(self.cpu_resource)
        if cpu:
            cmd += ["-n", str(int(cpu))]
        mem = job.resource_demand.get(self.memory_resource)
        if mem:
            cmd += ["-R", f"rusage[mem={int(mem * 1024)}]"]
        return cmd + shlex.split(job.command)

    def submit(self, job: Job) -> SubmissionResult:
        output = self._run(self.build_submit_command(job), f"submit job '{job.id}'")
        match = self.JOB_ID_PATTERN.search(output)
        if not match:
            raise SubmissionError(
                f"Could not parse batch job id for '{job.id}' from: {output.strip()!r}",
                output=output,
            )
        return SubmissionResult(handle=match.group(1), detail=output.strip())

    def poll_status(self, handle: str) -> StatusReport:
        output = self._run(self.status_cmd + [handle], f"query batch job {handle}")
        stat = output.strip().split()[0] if output.strip() else ""
        if stat in _LSF_RUNNING:
            return StatusReport(RunStatus.RUNNING, stat)
        if stat in _LSF_DONE:
            return StatusReport(RunStatus.COMPLETED, stat)
        if stat in _LSF_FAILED:
            return StatusReport(RunStatus.FAILED, f"batch job {handle} ended {stat}")
        raise SubmissionError(f"Unrecognized status {stat!r} for batch job {handle}", output=output)

    def cancel(self, handle: str) -> None:
        self._run(self.cancel_cmd + [handle], f"cancel batch job {handle}")

    def _run(self, cmd: List[str], what: str) -> str:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except subprocess.TimeoutExpired as e:
            raise SubmissionError(f"Timed out after {self.timeout}s trying to {what}") from e
        except OSError as e:
            raise SubmissionError(f"Could not {what}: {e}") from e
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise SubmissionError(
                f"Failed to {what}: exit {result.returncode}: {output.strip()}",
                returncode=result.returncode,
                output=output,
            )
        return output

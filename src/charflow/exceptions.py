"""Custom exceptions for the charflow orchestrator."""

from typing import Iterable, List, Optional


class CharflowError(Exception):
    """Base exception for all charflow errors."""

    pass


class RegistrationError(CharflowError):
    """Base exception for rejected job registrations."""

    pass


class DuplicateJobError(RegistrationError):
    """Exception raised when a job id is already registered."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' is already registered")
        self.job_id = job_id


class InvalidDependencyError(RegistrationError):
    """Exception raised for unknown, self-referencing or cyclic dependencies."""

    def __init__(self, message: str, job_id: str = None, cycle: Optional[List[str]] = None):
        """
        Initialize dependency error.

        Args:
            message: Error message
            job_id: Job whose dependency set is invalid
            cycle: Job ids forming the detected cycle, first id repeated at the end
        """
        super().__init__(message)
        self.job_id = job_id
        self.cycle = cycle or []


class TransitionError(CharflowError):
    """Base exception for illegal job state changes."""

    pass


class InvalidTransitionError(TransitionError):
    """Exception raised when the state machine forbids a transition."""

    def __init__(self, job_id: str, from_state, to_state, reason: str = ""):
        message = f"Job '{job_id}': illegal transition {from_state.value} -> {to_state.value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state


class CircuitOpenError(CharflowError):
    """Raised when a circuit breaker is open and rejects calls."""

    def __init__(self, name: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit breaker '{name}' is open (retry after {max(retry_after, 0.0):.1f}s)"
        )
        self.name = name
        self.retry_after = retry_after


class SubmissionError(CharflowError):
    """Exception raised when the batch queue rejects or fails a submission."""

    def __init__(self, message: str, returncode: int = None, output: str = ""):
        """
        Initialize submission error.

        Args:
            message: Error message
            returncode: Optional exit code of the submission tool
            output: Optional captured tool output
        """
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class RetryExhaustedError(CharflowError):
    """Raised after a retried operation failed on every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class CapacityError(CharflowError):
    """Raised when a resource demand can never be satisfied by the pool."""

    pass


class ConfigurationError(CharflowError):
    """Raised for malformed run plans or settings."""

    pass


class DeadlockDetected(CharflowError):
    """Raised by the job manager when no further progress is possible."""

    def __init__(self, blocked: Iterable[str], report=None):
        self.blocked = sorted(blocked)
        self.report = report
        super().__init__(
            f"No progress possible: {len(self.blocked)} job(s) permanently blocked: "
            f"{', '.join(self.blocked)}"
        )


def describe_error(exc: BaseException) -> str:
    """Render an exception and its cause chain as a single line.

    Example:
        RetryExhaustedError: submit a failed after 3 attempt(s): ...
        <- caused by SubmissionError: bsub exited with 255
    """
    parts = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        message = str(current)
        parts.append(f"{type(current).__name__}: {message}" if message else type(current).__name__)
        current = current.__cause__ or current.__context__
    return " <- caused by ".join(parts)

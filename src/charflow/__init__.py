"""charflow - job orchestration core for library characterization runs.

Registers characterization jobs with their dependencies and resource
demands, then drives them through a batch queue: dependency resolution,
resource-bounded admission, circuit breaker and retry around submission.
"""

from .backends import (BatchQueueBackend, LocalProcessBackend, RunStatus,
                       StatusReport, SubmissionResult)
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .config import Settings, get_settings
from .config_loader import RunPlan, load_plan
from .events import CollectingSink, CompositeSink, LoggingSink
from .exceptions import (CapacityError, CharflowError, CircuitOpenError,
                         ConfigurationError, DeadlockDetected,
                         DuplicateJobError, InvalidDependencyError,
                         InvalidTransitionError, RegistrationError,
                         RetryExhaustedError, SubmissionError,
                         TransitionError)
from .job_manager import JobManager, RunReport
from .models import Job, JobState
from .persistence import FileBasedRegistryPersistence
from .registry import JobRegistry
from .resolver import DependencyResolver, critical_path, detect_cycles
from .resource_executor import ResourceBoundedExecutor, ResourcePool
from .retry_policy import RetryConfig, RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "BatchQueueBackend",
    "CapacityError",
    "CharflowError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CollectingSink",
    "CompositeSink",
    "ConfigurationError",
    "DeadlockDetected",
    "DependencyResolver",
    "DuplicateJobError",
    "FileBasedRegistryPersistence",
    "InvalidDependencyError",
    "InvalidTransitionError",
    "Job",
    "JobManager",
    "JobRegistry",
    "JobState",
    "LocalProcessBackend",
    "LoggingSink",
    "RegistrationError",
    "ResourceBoundedExecutor",
    "ResourcePool",
    "RetryConfig",
    "RetryExhaustedError",
    "RetryPolicy",
    "RunPlan",
    "RunReport",
    "RunStatus",
    "Settings",
    "StatusReport",
    "SubmissionError",
    "SubmissionResult",
    "TransitionError",
    "critical_path",
    "detect_cycles",
    "get_settings",
    "load_plan",
]

"""Run-plan loader.

Loads the jobs of a characterization run and the resource capacity from
a YAML plan:

    capacity: {cpu: 64, memory_gb: 256}
    defaults: {max_retries: 2, priority: 0}
    jobs:
      - id: copy_tt
        command: "char_tool copy --corner tt"
        resources: {cpu: 1}
      - id: run_tt
        depends_on: [copy_tt]
        command: "char_tool run --corner tt"
        resources: {cpu: 16, memory_gb: 64}
        priority: 5
        estimated_duration: 7200
        metadata: {corner: tt_0p80v_25c, stage: run}
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError
from .models import Job

logger = logging.getLogger(__name__)


class JobDefaults(BaseModel):
    """Values applied to every job that does not set them."""

    max_retries: Optional[int] = Field(default=None, ge=0)
    priority: int = 0
    resources: Dict[str, float] = Field(default_factory=dict)


class JobSpec(BaseModel):
    """One job entry of a plan."""

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    command: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    resources: Optional[Dict[str, float]] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = Field(default=None, ge=0)
    estimated_duration: Optional[float] = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PlanSpec(BaseModel):
    """Top-level plan document."""

    capacity: Optional[Dict[str, float]] = None
    defaults: JobDefaults = Field(default_factory=JobDefaults)
    jobs: List[JobSpec] = Field(default_factory=list)


@dataclass
class RunPlan:
    """Jobs and capacity ready to hand to the orchestrator."""

    jobs: List[Job] = field(default_factory=list)
    capacity: Optional[Dict[str, float]] = None
    source: Optional[Path] = None


def build_plan(data: Dict[str, Any], default_max_retries: int = 0, source: Optional[Path] = None) -> RunPlan:
    """Build a RunPlan from an already-parsed plan document.

    Args:
        data: Parsed YAML/JSON mapping
        default_max_retries: Retry ceiling for jobs and defaults that set none
        source: Origin of the document, for error messages

    Raises:
        ConfigurationError: The document does not describe a valid plan
    """
    where = f" in {source}" if source else ""
    try:
        spec = PlanSpec.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid run plan{where}: {e}") from e

    defaults = spec.defaults
    jobs = []
    for entry in spec.jobs:
        max_retries = entry.max_retries
        if max_retries is None:
            max_retries = defaults.max_retries if defaults.max_retries is not None else default_max_retries
        try:
            jobs.append(
                Job(
                    id=entry.id,
                    name=entry.name or entry.id,
                    command=entry.command,
                    dependencies=frozenset(entry.depends_on),
                    resource_demand=dict(entry.resources if entry.resources is not None else defaults.resources),
                    priority=entry.priority if entry.priority is not None else defaults.priority,
                    max_retries=max_retries,
                    estimated_duration=entry.estimated_duration,
                    metadata=dict(entry.metadata),
                )
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid job '{entry.id}'{where}: {e}") from e

    return RunPlan(jobs=jobs, capacity=spec.capacity, source=source)


def load_plan(path: Union[str, Path], default_max_retries: int = 0) -> RunPlan:
    """Load a run plan from a YAML file.

    Raises:
        ConfigurationError: Missing file, YAML syntax error or invalid plan
    """
    plan_path = Path(path)
    if not plan_path.exists():
        raise ConfigurationError(f"Run plan {plan_path} not found")

    try:
        with open(plan_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed YAML in {plan_path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"Run plan {plan_path} must be a mapping at the top level")

    plan = build_plan(data, default_max_retries=default_max_retries, source=plan_path)
    logger.info(f"Loaded {len(plan.jobs)} job(s) from {plan_path}")
    return plan

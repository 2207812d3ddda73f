"""charflow command-line interface.

Commands:
    - charflow validate PLAN
    - charflow critical-path PLAN
    - charflow run PLAN [--backend local|lsf] [--state-file F] [--resume]
    - charflow status STATE_FILE

Exit codes of ``run``: 0 all jobs completed, 1 some job failed or was
cancelled, 2 deadlock, 3 configuration error.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from .backends import BatchQueueBackend, LocalProcessBackend
from .config import Settings
from .config_loader import RunPlan, load_plan
from .events import LoggingSink
from .exceptions import (CapacityError, ConfigurationError, DeadlockDetected,
                         RegistrationError)
from .job_manager import JobManager, RunReport
from .logging_config import configure_logging
from .models import JobState
from .persistence import FileBasedRegistryPersistence
from .registry import JobRegistry
from .resolver import critical_path
from .resource_executor import ResourcePool

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEADLOCK = 2
EXIT_CONFIG = 3


def _load_settings(**overrides) -> Settings:
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e


def _load_registry(plan_path: str, settings: Settings) -> tuple[RunPlan, JobRegistry]:
    plan = load_plan(plan_path, default_max_retries=settings.max_retries)
    registry = JobRegistry()
    registry.register_all(plan.jobs)
    return plan, registry


def _echo_report(report: RunReport, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return
    counts = ", ".join(f"{state}={count}" for state, count in report.statistics.items() if count)
    click.echo(f"Jobs: {counts or 'none'}")
    for job_id, error in report.failed.items():
        click.echo(f"  FAILED {job_id}: {error}")
    if report.cancelled:
        click.echo(f"  Cancelled: {', '.join(report.cancelled)}")
    if report.blocked:
        click.echo(f"  Blocked: {', '.join(report.blocked)}")
    click.echo(f"Finished in {report.elapsed_seconds:.1f}s over {report.cycles} cycle(s)")


@click.group()
@click.version_option(package_name="charflow", prog_name="charflow")
def cli() -> None:
    """charflow - orchestrate library characterization jobs.

    Run `charflow <command> --help` for command-specific help.
    """
    pass


@cli.command()
@click.argument("plan_path", type=click.Path(dir_okay=False))
@click.pass_context
def validate(ctx: click.Context, plan_path: str) -> None:
    """Check a run plan: schema, dependencies and resource demands."""
    try:
        settings = _load_settings()
        plan, registry = _load_registry(plan_path, settings)
        pool = ResourcePool(plan.capacity if plan.capacity is not None else settings.capacity)
        for job in registry.snapshot():
            pool.validate(job.id, job.resource_demand)
    except (ConfigurationError, RegistrationError, CapacityError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    click.echo(f"Plan OK: {len(registry)} job(s), capacity {pool.capacity}")


@cli.command("critical-path")
@click.argument("plan_path", type=click.Path(dir_okay=False))
@click.pass_context
def critical_path_command(ctx: click.Context, plan_path: str) -> None:
    """Print the longest dependency chain of a run plan."""
    try:
        _, registry = _load_registry(plan_path, _load_settings())
    except (ConfigurationError, RegistrationError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    path, total = critical_path(registry.snapshot())
    if not path:
        click.echo("Plan has no jobs")
        return
    click.echo(" -> ".join(path))
    click.echo(f"Estimated length: {total:g}")


@cli.command("run")
@click.argument("plan_path", type=click.Path(dir_okay=False))
@click.option(
    "--backend",
    "backend_name",
    type=click.Choice(["local", "lsf"]),
    default="local",
    show_default=True,
    help="Where jobs are submitted",
)
@click.option("--queue", default=None, help="Batch queue name (lsf backend)")
@click.option("--state-file", type=click.Path(dir_okay=False), default=None, help="Registry snapshot file")
@click.option("--resume", is_flag=True, help="Restore job states from the snapshot file first")
@click.option("--max-workers", type=int, default=None, help="Concurrent execution slots")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR or CRITICAL")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
@click.pass_context
def run_command(
    ctx: click.Context,
    plan_path: str,
    backend_name: str,
    queue: Optional[str],
    state_file: Optional[str],
    resume: bool,
    max_workers: Optional[int],
    log_level: Optional[str],
    as_json: bool,
) -> None:
    """Run every job of a plan to completion."""
    try:
        settings = _load_settings(max_workers=max_workers, log_level=log_level, state_file=state_file)
        configure_logging(
            log_level=settings.log_level,
            log_dir=Path(settings.log_dir) if settings.log_dir else None,
            log_to_file=settings.log_dir is not None,
        )
        plan = load_plan(plan_path, default_max_retries=settings.max_retries)
        persistence = FileBasedRegistryPersistence(settings.state_file) if settings.state_file else None
        if resume and persistence is None:
            raise ConfigurationError("--resume needs --state-file (or CHARFLOW_STATE_FILE)")

        if backend_name == "lsf":
            backend = BatchQueueBackend(queue=queue)
        else:
            backend = LocalProcessBackend()
        manager = JobManager.from_plan(
            plan, backend, settings=settings, sink=LoggingSink(), persistence=persistence
        )
        if resume:
            persistence.restore(manager.registry)
    except (ConfigurationError, RegistrationError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)

    try:
        with manager:
            report = manager.run()
    except CapacityError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    except DeadlockDetected as e:
        click.echo(f"Deadlock: {e}", err=True)
        if e.report is not None:
            _echo_report(e.report, as_json)
        ctx.exit(EXIT_DEADLOCK)

    _echo_report(report, as_json)
    ctx.exit(EXIT_OK if report.succeeded else EXIT_FAILED)


@cli.command()
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def status(ctx: click.Context, state_file: str) -> None:
    """Summarize a registry snapshot written by `charflow run`."""
    try:
        jobs = FileBasedRegistryPersistence(state_file).load() or {}
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)

    counts = {state.value: 0 for state in JobState}
    for job_id, data in jobs.items():
        value = data.get("state", JobState.PENDING.value)
        if value not in counts:
            click.echo(f"Error: job '{job_id}' has unknown state '{value}' in {state_file}", err=True)
            ctx.exit(EXIT_CONFIG)
        counts[value] += 1
    click.echo(", ".join(f"{state}={count}" for state, count in counts.items()))
    for job_id in sorted(jobs):
        data = jobs[job_id]
        if data.get("state") == JobState.FAILED.value:
            click.echo(f"  FAILED {job_id} (retries={data.get('retry_count', 0)}): {data.get('last_error')}")

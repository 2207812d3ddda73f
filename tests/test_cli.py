"""Tests for the charflow CLI."""

import json
import shlex
import sys
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from charflow.cli import EXIT_CONFIG, EXIT_DEADLOCK, EXIT_FAILED, EXIT_OK, cli
from charflow.exceptions import DeadlockDetected

FAST_ENV = {
    "CHARFLOW_POLL_INTERVAL": "0.01",
    "CHARFLOW_STATUS_POLL_INTERVAL": "0.01",
    "CHARFLOW_BASE_DELAY": "0",
    "CHARFLOW_MAX_DELAY": "0",
}


def python_command(code):
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def write_plan(path, jobs, capacity=None):
    lines = []
    if capacity is not None:
        lines.append(f"capacity: {json.dumps(capacity)}")
    lines.append("jobs:")
    for job in jobs:
        lines.append(f"  - {json.dumps(job)}")
    path.write_text("\n".join(lines) + "\n")
    return str(path)


@pytest.fixture
def runner():
    return CliRunner(env=FAST_ENV)


@pytest.fixture
def good_plan(tmp_path):
    return write_plan(
        tmp_path / "plan.yaml",
        [
            {"id": "copy", "command": python_command("pass"), "resources": {"cpu": 1}},
            {"id": "run", "command": python_command("pass"), "depends_on": ["copy"], "resources": {"cpu": 2}},
        ],
        capacity={"cpu": 2},
    )


class TestValidate:
    """Tests for `charflow validate`."""

    def test_valid_plan(self, runner, good_plan):
        result = runner.invoke(cli, ["validate", good_plan])
        assert result.exit_code == EXIT_OK
        assert "Plan OK: 2 job(s)" in result.output

    def test_cycle(self, runner, tmp_path):
        plan = write_plan(
            tmp_path / "plan.yaml",
            [{"id": "a", "depends_on": ["b"]}, {"id": "b", "depends_on": ["a"]}],
        )
        result = runner.invoke(cli, ["validate", plan])
        assert result.exit_code == EXIT_CONFIG
        assert "cycle" in result.output

    def test_demand_above_capacity(self, runner, tmp_path):
        plan = write_plan(tmp_path / "plan.yaml", [{"id": "a", "resources": {"cpu": 8}}], capacity={"cpu": 4})
        result = runner.invoke(cli, ["validate", plan])
        assert result.exit_code == EXIT_CONFIG
        assert "exceeds total capacity" in result.output

    def test_missing_plan(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate", str(tmp_path / "missing.yaml")])
        assert result.exit_code == EXIT_CONFIG


class TestCriticalPath:
    """Tests for `charflow critical-path`."""

    def test_prints_chain(self, runner, tmp_path):
        plan = write_plan(
            tmp_path / "plan.yaml",
            [
                {"id": "copy", "estimated_duration": 60},
                {"id": "run", "depends_on": ["copy"], "estimated_duration": 3600},
                {"id": "report", "depends_on": ["copy"], "estimated_duration": 10},
            ],
        )
        result = runner.invoke(cli, ["critical-path", plan])
        assert result.exit_code == EXIT_OK
        assert "copy -> run" in result.output
        assert "Estimated length: 3660" in result.output


class TestRun:
    """Tests for `charflow run`."""

    def test_successful_run(self, runner, good_plan, tmp_path):
        state = tmp_path / "state.json"
        result = runner.invoke(cli, ["run", good_plan, "--state-file", str(state), "--log-level", "warning"])
        assert result.exit_code == EXIT_OK, result.output
        assert "completed=2" in result.output
        assert json.loads(state.read_text())["jobs"]["run"]["state"] == "completed"

    def test_failed_job_exit_code(self, runner, tmp_path):
        plan = write_plan(
            tmp_path / "plan.yaml",
            [{"id": "bad", "command": python_command("import sys; sys.exit(2)")}],
        )
        result = runner.invoke(cli, ["run", plan, "--json", "--log-level", "error"])
        assert result.exit_code == EXIT_FAILED
        assert '"bad": "exit 2"' in result.output

    def test_resume_requires_state_file(self, runner, good_plan):
        result = runner.invoke(cli, ["run", good_plan, "--resume"])
        assert result.exit_code == EXIT_CONFIG
        assert "--resume needs --state-file" in result.output

    def test_deadlock_exit_code(self, runner, good_plan):
        with patch("charflow.cli.JobManager.run", side_effect=DeadlockDetected(["run"])):
            result = runner.invoke(cli, ["run", good_plan])
        assert result.exit_code == EXIT_DEADLOCK
        assert "Deadlock" in result.output

    def test_resume_skips_completed_jobs(self, runner, good_plan, tmp_path):
        state = tmp_path / "state.json"
        state.write_text(json.dumps({
            "version": 1,
            "jobs": {"copy": {"state": "completed", "retry_count": 0}},
        }))
        result = runner.invoke(cli, ["run", good_plan, "--state-file", str(state), "--resume"])
        assert result.exit_code == EXIT_OK, result.output
        assert json.loads(state.read_text())["jobs"]["copy"]["submit_time"] is None


class TestStatus:
    """Tests for `charflow status`."""

    def test_summarizes_snapshot(self, runner, tmp_path):
        state = tmp_path / "state.json"
        state.write_text(json.dumps({
            "version": 1,
            "jobs": {
                "copy": {"state": "completed", "retry_count": 0},
                "run": {"state": "failed", "retry_count": 2, "last_error": "exit 1"},
            },
        }))
        result = runner.invoke(cli, ["status", str(state)])
        assert result.exit_code == EXIT_OK
        assert "completed=1" in result.output
        assert "FAILED run (retries=2): exit 1" in result.output

    def test_not_a_snapshot(self, runner, tmp_path):
        state = tmp_path / "state.json"
        state.write_text("[]")
        result = runner.invoke(cli, ["status", str(state)])
        assert result.exit_code == EXIT_CONFIG

    def test_unknown_state(self, runner, tmp_path):
        state = tmp_path / "state.json"
        state.write_text(json.dumps({"version": 1, "jobs": {"copy": {"state": "exploded"}}}))
        result = runner.invoke(cli, ["status", str(state)])
        assert result.exit_code == EXIT_CONFIG
        assert "unknown state 'exploded'" in result.output

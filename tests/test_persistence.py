"""Tests for registry snapshot persistence."""

import json

import pytest

from charflow.models import Job, JobState
from charflow.persistence import SNAPSHOT_VERSION, FileBasedRegistryPersistence
from charflow.registry import JobRegistry


def plan_registry():
    registry = JobRegistry()
    registry.register_all([
        Job(id="copy", max_retries=1),
        Job(id="run", dependencies={"copy"}, max_retries=1),
    ])
    return registry


class TestFileBasedRegistryPersistence:
    """Tests for save/load/restore."""

    def test_save_writes_versioned_document(self, tmp_path):
        path = tmp_path / "runs" / "state.json"
        persistence = FileBasedRegistryPersistence(str(path))
        persistence.save(plan_registry())

        document = json.loads(path.read_text())
        assert document["version"] == SNAPSHOT_VERSION
        assert set(document["jobs"]) == {"copy", "run"}
        assert document["jobs"]["copy"]["state"] == "pending"
        assert list(tmp_path.joinpath("runs").iterdir()) == [path]

    def test_load_missing(self, tmp_path):
        assert FileBasedRegistryPersistence(str(tmp_path / "none.json")).load() is None

    def test_load_rejects_foreign_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps(["not", "a", "snapshot"]))
        with pytest.raises(ValueError):
            FileBasedRegistryPersistence(str(path)).load()

    def test_resume_after_restart(self, tmp_path):
        """Test completed work survives and in-flight work is resubmitted."""
        path = tmp_path / "state.json"
        before = plan_registry()
        before.transition("copy", JobState.READY)
        before.transition("copy", JobState.RUNNING)
        before.transition("copy", JobState.COMPLETED)
        before.transition("run", JobState.READY)
        before.transition("run", JobState.RUNNING)
        FileBasedRegistryPersistence(str(path)).save(before)

        after = plan_registry()
        assert FileBasedRegistryPersistence(str(path)).restore(after) == 2
        assert after.get("copy").state == JobState.COMPLETED
        assert after.get("copy").completion_time is not None
        assert after.get("run").state == JobState.PENDING

    def test_restore_without_snapshot(self, tmp_path):
        registry = plan_registry()
        assert FileBasedRegistryPersistence(str(tmp_path / "none.json")).restore(registry) == 0

    def test_clear(self, tmp_path):
        path = tmp_path / "state.json"
        persistence = FileBasedRegistryPersistence(str(path))
        persistence.save(plan_registry())
        persistence.clear()
        assert not path.exists()

"""File-based persistence of the job registry snapshot.

Stores ``{job_id: {state, retry_count, last_error, timestamps}}`` as JSON
so an interrupted run can resume after a process restart.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .registry import JobRegistry

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class FileBasedRegistryPersistence:
    """Saves and restores registry snapshots to a local JSON file.

    Writes go to a temporary file in the same directory followed by an
    atomic rename, so a crash mid-write leaves the previous snapshot intact.

    Example:
        persistence = FileBasedRegistryPersistence("runs/lib_v2/state.json")
        persistence.save(registry)

        # After restart, with the same plan registered again:
        persistence.restore(registry)
    """

    def __init__(self, file_path: str):
        """
        Args:
            file_path: Path to the JSON snapshot file
        """
        self.file_path = Path(file_path)
        self._ensure_persistence_dir()

    def _ensure_persistence_dir(self):
        if self.file_path.parent != Path("."):
            self.file_path.parent.mkdir(parents=True, exist_ok=True)

    def save(self, registry: JobRegistry) -> None:
        """Write the registry's current snapshot.

        Raises:
            OSError: The snapshot could not be written
        """
        document = {
            "version": SNAPSHOT_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "jobs": registry.to_snapshot(),
        }
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.file_path.name}.", dir=str(self.file_path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved snapshot of {len(document['jobs'])} job(s) to {self.file_path}")

    def load(self) -> Optional[Dict[str, Dict[str, Any]]]:
        """Read the job snapshot mapping, or None when no snapshot exists.

        Raises:
            ValueError: The file is not a charflow snapshot
        """
        if not self.file_path.exists():
            logger.debug(f"No snapshot at {self.file_path}, starting fresh")
            return None
        with open(self.file_path, "r", encoding="utf-8") as f:
            document = json.load(f)
        if not isinstance(document, dict) or not isinstance(document.get("jobs"), dict):
            raise ValueError(f"{self.file_path} is not a job registry snapshot")
        return document["jobs"]

    def restore(self, registry: JobRegistry) -> int:
        """Apply the stored snapshot to ``registry``.

        Returns:
            Number of jobs whose state was restored
        """
        snapshot = self.load()
        if snapshot is None:
            return 0
        restored = registry.restore(snapshot)
        logger.info(f"Resumed {len(restored)} job(s) from {self.file_path}")
        return len(restored)

    def clear(self) -> None:
        if self.file_path.exists():
            self.file_path.unlink()

"""YAML file backlog.

Lets the CLI run against a plain backlog file instead of a tracker:

    tasks:
      - key: WEB-1
        title: Add login endpoint
        status: not_started
        complexity: 6
        metadata:
          depends_on: [WEB-0]

Every update is written back to the file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from triad.core.exceptions import ConfigError
from triad.core.models import BacklogTask
from triad.workers.memory import InMemoryBacklog

logger = logging.getLogger("triad.workers.file_backlog")


def load_backlog_tasks(path: Path) -> list[BacklogTask]:
    """Parse a backlog YAML file.

    Raises:
        ConfigError: If the file is missing, not YAML, or a task is invalid.
    """
    if not path.exists():
        raise ConfigError(f"Backlog file not found: {path}")
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    raw_tasks = data.get("tasks", []) if isinstance(data, dict) else data
    if not isinstance(raw_tasks, list):
        raise ConfigError(f"{path}: 'tasks' must be a list")
    tasks: list[BacklogTask] = []
    for index, raw in enumerate(raw_tasks):
        try:
            tasks.append(BacklogTask(**raw))
        except (TypeError, ValidationError) as exc:
            raise ConfigError(f"{path}: invalid task #{index + 1}: {exc}") from exc
    return tasks


class FileBacklog(InMemoryBacklog):
    """InMemoryBacklog persisted to a YAML file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(load_backlog_tasks(self.path))
        logger.info("Loaded %d backlog task(s) from %s", len(self._tasks), self.path)

    def update_task(
        self,
        key: str,
        status: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[BacklogTask]:
        updated = super().update_task(key, status=status, metadata=metadata)
        if updated is not None:
            self.save()
        return updated

    def cleanup_expired_locks(self) -> list[str]:
        released = super().cleanup_expired_locks()
        if released:
            self.save()
        return released

    def save(self) -> None:
        tasks = [task.model_dump(mode="json", exclude_none=True) for task in self._tasks.values()]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump({"tasks": tasks}, f, sort_keys=False)
        tmp.replace(self.path)

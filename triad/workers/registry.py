"""YAML worker registry.

The user manages a registry file listing the workers the selector may pick:

    agents:
      - agent_id: claude-strong
        capabilities: [code_write, code_review, qa_interpretation]
        rating: 9
        reasoning_rating: 9
        best_usage: backend api work
        cost_per_million: 15
        max_complexity: 10
        health: healthy

The file is re-read on every call so edits apply to the next selection.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from triad.core.exceptions import ConfigError
from triad.core.models import AgentHealth, Candidate
from triad.workers.base import WorkerRegistry

logger = logging.getLogger("triad.workers.registry")


class FileWorkerRegistry(WorkerRegistry):
    """Worker registry backed by a YAML file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def list_candidates(self) -> list[Candidate]:
        """Parse the registry file.

        Raises:
            ConfigError: If the file is missing, not YAML, or an entry is invalid.
        """
        if not self.path.exists():
            raise ConfigError(f"Worker registry not found: {self.path}")
        with open(self.path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {self.path}: {exc}") from exc

        entries = data.get("agents", []) if isinstance(data, dict) else []
        candidates: list[Candidate] = []
        for index, raw in enumerate(entries):
            try:
                candidates.append(Candidate(**raw))
            except (TypeError, ValidationError) as exc:
                raise ConfigError(f"{self.path}: invalid agent #{index + 1}: {exc}") from exc
        logger.debug("Loaded %d agent(s) from %s", len(candidates), self.path)
        return candidates

    def get_health(self) -> dict[str, AgentHealth]:
        return {c.agent_id: c.health for c in self.list_candidates()}

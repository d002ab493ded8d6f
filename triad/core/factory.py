"""Component factory for Triad.

Creates and wires the file-backed collaborators (backlog, worker registry,
command phase workers), the job state store and the lesson memory, so the
CLI gets a ready-to-run CycleScheduler.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from triad.core.config import AppConfig, load_config
from triad.core.exceptions import ConfigError
from triad.core.models import Phase
from triad.memory.lesson_store import LessonStore
from triad.orchestrator.loop import CycleScheduler
from triad.state.store import JobStateStore
from triad.workers.base import PhaseWorker
from triad.workers.command import CommandPhaseWorker
from triad.workers.file_backlog import FileBacklog
from triad.workers.registry import FileWorkerRegistry

logger = logging.getLogger("triad.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The scheduler owns the collaborators and closes them when the job ends;
    the bundle keeps references for callers that need them afterwards.
    """

    config: AppConfig
    store: JobStateStore
    backlog: FileBacklog
    registry: FileWorkerRegistry
    workers: dict[Phase, PhaseWorker]
    lesson_store: LessonStore
    scheduler: CycleScheduler


class ComponentFactory:
    """Factory for creating and wiring Triad components.

    Usage:
        bundle = ComponentFactory.create(
            backlog_path=Path("backlog.yaml"),
            registry_path=Path("agents.yaml"),
        )
        with bundle.scheduler as scheduler:
            result = scheduler.run(JobRequest(task_keys=["WEB-1"]))
    """

    @staticmethod
    def create_store(config: AppConfig) -> JobStateStore:
        return JobStateStore(Path(config.state.state_dir))

    @staticmethod
    def create_workers(config: AppConfig, backlog: Optional[FileBacklog] = None) -> dict[Phase, PhaseWorker]:
        """Build one CommandPhaseWorker per phase from the ``workers`` config section.

        Raises:
            ConfigError: If a phase has no command template or an invalid one.
        """
        templates = {
            Phase.PRODUCE: config.workers.produce,
            Phase.REVIEW: config.workers.review,
            Phase.VERIFY: config.workers.verify,
        }
        missing = [phase.value for phase, template in templates.items() if not template]
        if missing:
            raise ConfigError(f"No worker command configured for phase(s): {', '.join(missing)}")
        return {
            phase: CommandPhaseWorker(
                phase,
                template,
                timeout_seconds=config.workers.timeout_seconds,
                backlog=backlog,
            )
            for phase, template in templates.items()
        }

    @staticmethod
    def create(
        backlog_path: Path,
        registry_path: Path,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        config: Optional[AppConfig] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            backlog_path: YAML backlog file.
            registry_path: YAML worker registry file.
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            config: Preloaded config; skips the YAML cascade when given.
            progress_callback: Receives progress lines from the scheduler.

        Returns:
            ComponentBundle with a scheduler ready to run.
        """
        logger.info("Initializing components...")
        config = config or load_config(config_dir=config_dir, env=env)

        store = ComponentFactory.create_store(config)
        backlog = FileBacklog(backlog_path)
        registry = FileWorkerRegistry(registry_path)
        workers = ComponentFactory.create_workers(config, backlog=backlog)
        lesson_store = LessonStore(store.state_dir / "memory")
        logger.info("State directory: %s", store.state_dir)

        scheduler = CycleScheduler(
            store=store,
            task_selector=backlog,
            backlog=backlog,
            registry=registry,
            workers=workers,
            config=config,
            rng=random.Random(config.selector.seed),
            lesson_store=lesson_store,
            progress_callback=progress_callback,
        )
        logger.info("All components initialized")
        return ComponentBundle(
            config=config,
            store=store,
            backlog=backlog,
            registry=registry,
            workers=workers,
            lesson_store=lesson_store,
            scheduler=scheduler,
        )

"""Shared fixtures for Triad tests.

All collaborators are the real in-memory implementations from
triad.workers.memory; state lives under pytest's tmp_path.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Callable, Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so TRIAD_* overrides are available
load_dotenv(Path(__file__).parent.parent / ".env")

from triad.core.config import AppConfig, OrchestratorConfig, SelectorConfig
from triad.core.models import BacklogTask, Candidate, Phase
from triad.memory.lesson_store import LessonStore
from triad.orchestrator.loop import CycleScheduler
from triad.state.store import JobStateStore
from triad.workers.memory import InMemoryBacklog, ListCommentSink, ScriptedPhaseWorker, StaticRegistry

ALL_CAPABILITIES = ["code_write", "code_review", "qa_interpretation"]


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config() -> AppConfig:
    """Deterministic config: no exploration, no cycle cap."""
    return AppConfig(
        orchestrator=OrchestratorConfig(max_iterations=3),
        selector=SelectorConfig(exploration_rate=0.0, seed=1),
    )


# ---------------------------------------------------------------------------
# Collaborator fixtures
# ---------------------------------------------------------------------------

def make_task(key: str, status: str = "not_started", **fields) -> BacklogTask:
    fields.setdefault("title", f"Implement {key}")
    fields.setdefault("complexity", 5)
    return BacklogTask(key=key, status=status, **fields)


@pytest.fixture
def candidates() -> list[Candidate]:
    return [
        Candidate(
            agent_id="strong",
            capabilities=list(ALL_CAPABILITIES),
            rating=9,
            reasoning_rating=9,
            best_usage="backend api work",
            cost_per_million=15,
            max_complexity=10,
        ),
        Candidate(
            agent_id="cheap",
            capabilities=list(ALL_CAPABILITIES),
            rating=6,
            reasoning_rating=5,
            best_usage="small fixes",
            cost_per_million=1,
            max_complexity=6,
        ),
    ]


@pytest.fixture
def registry(candidates) -> StaticRegistry:
    return StaticRegistry(candidates)


@pytest.fixture
def backlog() -> InMemoryBacklog:
    return InMemoryBacklog()


@pytest.fixture
def store(tmp_path) -> JobStateStore:
    return JobStateStore(tmp_path / "state")


@pytest.fixture
def lesson_store(tmp_path) -> LessonStore:
    return LessonStore(tmp_path / "state" / "memory")


@pytest.fixture
def comment_sink() -> ListCommentSink:
    return ListCommentSink()


@pytest.fixture
def workers(backlog) -> dict[Phase, ScriptedPhaseWorker]:
    return {phase: ScriptedPhaseWorker(phase, backlog=backlog) for phase in Phase}


@pytest.fixture
def make_scheduler(
    store, backlog, registry, workers, app_config, lesson_store, comment_sink
) -> Callable[..., CycleScheduler]:
    """Build a CycleScheduler over the shared fixtures; keyword overrides win."""

    def _make(
        config: Optional[AppConfig] = None,
        rng: Optional[random.Random] = None,
        **overrides,
    ) -> CycleScheduler:
        parts = {
            "store": store,
            "task_selector": backlog,
            "backlog": backlog,
            "registry": registry,
            "workers": workers,
            "lesson_store": lesson_store,
            "comment_sink": comment_sink,
        }
        parts.update(overrides)
        return CycleScheduler(config=config or app_config, rng=rng or random.Random(1), **parts)

    return _make

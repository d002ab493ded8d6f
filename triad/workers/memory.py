"""In-memory collaborators.

Used by tests and as the base of the file-backed collaborators: a backlog
that is both the record store and the task selector, a static worker
registry, a scripted phase worker and a list-backed comment sink.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from datetime import UTC, datetime
from typing import Any, Callable, Iterable, Optional, Union

from triad.core.models import (
    AgentHealth,
    BacklogStatus,
    BacklogTask,
    Candidate,
    Phase,
    PhaseRequest,
    PhaseResult,
    ReviewDecision,
    SelectionFilters,
    SelectionPlan,
    VerifyOutcome,
    normalize_backlog_status,
)
from triad.workers.base import (
    DEPENDS_ON,
    BacklogStore,
    CommentSink,
    PhaseWorker,
    TaskSelector,
    WorkerRegistry,
    advance_backlog,
)

logger = logging.getLogger("triad.workers.memory")

LOCK_EXPIRES_AT = "lock_expires_at"


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip())
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


class InMemoryBacklog(BacklogStore, TaskSelector):
    """Backlog records held in a dict, in insertion order.

    Task locks live in task metadata under ``lock_expires_at``; dependencies
    under ``depends_on`` (a list of task keys that must be completed first).
    """

    def __init__(self, tasks: Iterable[BacklogTask] = (), clock: Optional[Callable[[], datetime]] = None):
        self._tasks: dict[str, BacklogTask] = {}
        for task in tasks:
            self._tasks[task.key] = task.model_copy(deep=True)
        self._clock = clock or (lambda: datetime.now(UTC))
        self.updates: list[tuple[str, Optional[str], Optional[dict[str, Any]]]] = []
        self.closed = False

    def add_task(self, task: BacklogTask) -> None:
        self._tasks[task.key] = task.model_copy(deep=True)

    def all_tasks(self) -> list[BacklogTask]:
        return [task.model_copy(deep=True) for task in self._tasks.values()]

    def get_task(self, key: str) -> Optional[BacklogTask]:
        task = self._tasks.get(key)
        return task.model_copy(deep=True) if task is not None else None

    def update_task(
        self,
        key: str,
        status: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[BacklogTask]:
        task = self._tasks.get(key)
        if task is None:
            logger.warning("Update for unknown backlog task %s ignored", key)
            return None
        if status is not None:
            task.status = status
        if metadata:
            for name, value in metadata.items():
                if value is None:
                    task.metadata.pop(name, None)
                else:
                    task.metadata[name] = value
        self.updates.append((key, status, metadata))
        return task.model_copy(deep=True)

    def cleanup_expired_locks(self) -> list[str]:
        now = self._clock()
        released: list[str] = []
        for task in self._tasks.values():
            expires = _parse_time(task.metadata.get(LOCK_EXPIRES_AT))
            if expires is not None and expires <= now:
                task.metadata.pop(LOCK_EXPIRES_AT, None)
                released.append(task.key)
        return released

    def select_eligible(self, filters: SelectionFilters) -> SelectionPlan:
        """Tasks matching the filters; those with unfinished dependencies are blocked."""
        allowed = {normalize_backlog_status(s) for s in filters.status_filter}
        allowed.discard(None)
        explicit = set(filters.task_keys)
        warnings: list[str] = []

        for key in filters.task_keys:
            if key not in self._tasks:
                warnings.append(f"Task {key} not found in backlog.")

        ordered: list[BacklogTask] = []
        blocked: list[BacklogTask] = []
        for task in self._tasks.values():
            if explicit and task.key not in explicit:
                continue
            if filters.project_key and task.project_key != filters.project_key:
                continue
            if filters.epic_key and task.epic_key != filters.epic_key:
                continue
            if filters.story_key and task.story_key != filters.story_key:
                continue
            if allowed and task.normalized_status not in allowed:
                continue
            pending_deps = [
                dep for dep in task.metadata.get(DEPENDS_ON, [])
                if dep in self._tasks and self._tasks[dep].normalized_status is not BacklogStatus.COMPLETED
            ]
            if pending_deps:
                blocked.append(task.model_copy(deep=True))
            else:
                ordered.append(task.model_copy(deep=True))

        if filters.limit is not None:
            ordered = ordered[:filters.limit]
        return SelectionPlan(ordered=ordered, blocked=blocked, warnings=warnings)

    def close(self) -> None:
        self.closed = True


class StaticRegistry(WorkerRegistry):
    """Fixed list of candidates with optional health overrides."""

    def __init__(self, candidates: Iterable[Candidate] = (), health: Optional[dict[str, AgentHealth]] = None):
        self._candidates = [c.model_copy(deep=True) for c in candidates]
        self._health = dict(health or {})
        self.closed = False

    def list_candidates(self) -> list[Candidate]:
        return [c.model_copy(deep=True) for c in self._candidates]

    def get_health(self) -> dict[str, AgentHealth]:
        health = {c.agent_id: c.health for c in self._candidates}
        health.update(self._health)
        return health

    def set_health(self, agent_id: str, status: AgentHealth) -> None:
        self._health[agent_id] = status

    def close(self) -> None:
        self.closed = True


ScriptEntry = Union[PhaseResult, Exception, Callable[[PhaseRequest], PhaseResult]]


class ScriptedPhaseWorker(PhaseWorker):
    """Phase worker that replays scripted results per task.

    Each task key has a queue of entries; the last entry repeats once the
    queue is down to one. An entry may be a PhaseResult, an exception to
    raise or a callable taking the request. Tasks without a script get the
    phase's default success. When a backlog is given, a successful result
    advances the task's backlog status the way a real worker would; with
    `rewind`, a rework request also sends it back to in_progress.
    """

    def __init__(
        self,
        phase: Phase,
        scripts: Optional[dict[str, list[ScriptEntry]]] = None,
        backlog: Optional[BacklogStore] = None,
        advance_status: bool = True,
        rewind: bool = False,
    ):
        super().__init__(f"scripted-{phase.value}")
        self.phase = phase
        self.backlog = backlog
        self.advance_status = advance_status
        self.rewind = rewind
        self._scripts: dict[str, deque[ScriptEntry]] = defaultdict(deque)
        for key, entries in (scripts or {}).items():
            self._scripts[key].extend(entries)
        self.requests: list[PhaseRequest] = []
        self.closed = False

    def script(self, task_key: str, *entries: ScriptEntry) -> "ScriptedPhaseWorker":
        self._scripts[task_key].extend(entries)
        return self

    def calls_for(self, task_key: str) -> list[PhaseRequest]:
        return [r for r in self.requests if r.task_key == task_key]

    def execute(self, request: PhaseRequest) -> PhaseResult:
        self.requests.append(request)
        queue = self._scripts.get(request.task_key)
        if queue:
            entry = queue.popleft() if len(queue) > 1 else queue[0]
        else:
            entry = self.default_result()

        if isinstance(entry, Exception):
            raise entry
        result = entry(request) if callable(entry) else entry.model_copy(deep=True)

        if self.backlog is not None and self.advance_status and not request.dry_run:
            advance_backlog(self.backlog, request.task_key, self.phase, result, rewind=self.rewind)
        return result

    def default_result(self) -> PhaseResult:
        if self.phase is Phase.PRODUCE:
            return PhaseResult(tokens_used=100)
        if self.phase is Phase.REVIEW:
            return PhaseResult(decision=ReviewDecision.APPROVE, tokens_used=50)
        return PhaseResult(verify_outcome=VerifyOutcome.PASS, tokens_used=50)

    def close(self) -> None:
        self.closed = True


class ListCommentSink(CommentSink):
    """Collects comments in a list."""

    def __init__(self):
        self.comments: list[tuple[str, str, str]] = []
        self.closed = False

    def add_comment(self, task_key: str, body: str, category: str = "note") -> None:
        self.comments.append((task_key, body, category))

    def close(self) -> None:
        self.closed = True

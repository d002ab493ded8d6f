"""Collaborator interfaces for Triad.

The orchestrator only talks to the outside world through these ABCs:
phase workers, the backlog task selector, the backlog record store, the
worker registry and the optional comment sink. Every collaborator has a
close() method; the scheduler closes them all when a job ends.

Phase workers that own backlog status advancement share advance_backlog().
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from triad.core.models import (
    AgentHealth,
    BacklogStatus,
    BacklogTask,
    Candidate,
    Phase,
    PhaseRequest,
    PhaseResult,
    PhaseStatus,
    ReviewDecision,
    SelectionFilters,
    SelectionPlan,
    VerifyOutcome,
)

WORKER_ERROR = "worker_error"

# Backlog task metadata keys
DEPENDS_ON = "depends_on"
BLOCKED_REASON = "blocked_reason"


class Collaborator(ABC):
    """Anything the scheduler owns for the lifetime of a job."""

    def close(self) -> None:
        """Release resources. Default is a no-op."""


class PhaseWorker(Collaborator):
    """Base class for produce/review/verify workers.

    Every worker follows the same lifecycle:
    1. Receive a PhaseRequest (task key, attempt, agent, handoff, hints)
    2. Execute the phase
    3. Return a PhaseResult
    4. Log metrics and errors throughout

    Subclasses implement `execute()`. Callers use `run()`.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"triad.worker.{name.lower()}")
        self._metrics: dict[str, Any] = {
            "total_processed": 0,
            "total_errors": 0,
            "last_duration_seconds": 0.0,
        }

    @abstractmethod
    def execute(self, request: PhaseRequest) -> PhaseResult:
        """Run one phase attempt.

        Args:
            request: The phase request.

        Returns:
            PhaseResult with outcome, notes and phase-specific fields.
        """

    def run(self, request: PhaseRequest) -> PhaseResult:
        """Execute with lifecycle logging and metrics.

        An exception from execute() becomes a failed result with reason
        ``worker_error``, which the escalation policy retries as transient.
        """
        self.logger.info(
            "[%s] Starting: task=%s phase=%s attempt=%d agent=%s",
            self.name, request.task_key, request.phase.value, request.attempt, request.agent_id,
        )
        start = time.monotonic()
        try:
            result = self.execute(request)
        except Exception as e:
            duration = time.monotonic() - start
            self._metrics["total_errors"] += 1
            self._metrics["last_duration_seconds"] = duration
            self.logger.error("[%s] Error: %s", self.name, e, exc_info=True)
            return PhaseResult(outcome=PhaseStatus.FAILED, notes=WORKER_ERROR, summary=str(e))

        duration = time.monotonic() - start
        self._metrics["total_processed"] += 1
        self._metrics["last_duration_seconds"] = duration
        self.logger.info(
            "[%s] Complete: outcome=%s notes=%s (%.2fs)",
            self.name, result.outcome.value, result.notes, duration,
        )
        return result

    def get_metrics(self) -> dict[str, Any]:
        """Return a copy of the worker's runtime metrics."""
        return self._metrics.copy()


class TaskSelector(Collaborator):
    """Backlog query layer: which tasks are eligible, in dependency order."""

    @abstractmethod
    def select_eligible(self, filters: SelectionFilters) -> SelectionPlan:
        """Return eligible tasks in dispatch order plus dependency-blocked ones."""


class BacklogStore(Collaborator):
    """Authoritative backlog record store."""

    @abstractmethod
    def get_task(self, key: str) -> Optional[BacklogTask]:
        """Fetch one task record, or None when the key is unknown."""

    @abstractmethod
    def update_task(
        self,
        key: str,
        status: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[BacklogTask]:
        """Update status and/or merge metadata. A None metadata value deletes the key."""

    @abstractmethod
    def cleanup_expired_locks(self) -> list[str]:
        """Release expired task locks and return the released keys."""


class WorkerRegistry(Collaborator):
    """Catalogue of workers that can be dispatched."""

    @abstractmethod
    def list_candidates(self) -> list[Candidate]:
        """All registered workers."""

    def get_health(self) -> dict[str, AgentHealth]:
        """Current health per agent id. Defaults to what list_candidates reports."""
        return {c.agent_id: c.health for c in self.list_candidates()}


class CommentSink(Collaborator):
    """Optional human-visible annotations on backlog tasks."""

    @abstractmethod
    def add_comment(self, task_key: str, body: str, category: str = "note") -> None:
        """Attach a comment to a task."""


# Backlog status a successful phase leaves behind.
ADVANCE_TO: dict[Phase, BacklogStatus] = {
    Phase.PRODUCE: BacklogStatus.READY_TO_REVIEW,
    Phase.REVIEW: BacklogStatus.READY_TO_VERIFY,
    Phase.VERIFY: BacklogStatus.COMPLETED,
}


def phase_succeeded(phase: Phase, result: PhaseResult) -> bool:
    """Whether a worker should treat `result` as done for backlog purposes."""
    if result.outcome is not PhaseStatus.SUCCEEDED or result.error:
        return False
    if phase is Phase.PRODUCE:
        return not result.notes and result.tokens_used != 0
    if phase is Phase.REVIEW:
        return result.decision in (ReviewDecision.APPROVE, ReviewDecision.INFO_ONLY)
    return result.verify_outcome is VerifyOutcome.PASS


def phase_requests_rework(phase: Phase, result: PhaseResult) -> bool:
    """Review asked for changes or verify asked for a fix."""
    if result.error:
        return False
    if phase is Phase.REVIEW:
        return result.decision is ReviewDecision.CHANGES_REQUESTED
    if phase is Phase.VERIFY:
        return result.verify_outcome in (VerifyOutcome.FIX_REQUIRED, VerifyOutcome.UNCLEAR)
    return False


def advance_backlog(
    backlog: BacklogStore,
    task_key: str,
    phase: Phase,
    result: PhaseResult,
    rewind: bool = False,
) -> bool:
    """Move the task to the status a successful `phase` leaves behind.

    With `rewind`, a rework request sends the task back to in_progress so
    the next pass starts again from produce.
    """
    if phase_succeeded(phase, result):
        backlog.update_task(task_key, status=ADVANCE_TO[phase].value)
        return True
    if rewind and phase_requests_rework(phase, result):
        backlog.update_task(task_key, status=BacklogStatus.IN_PROGRESS.value)
    return False

"""Pipeline state graph for Triad tasks.

Tracks where a task is inside one pass and enforces the legal moves.
A pass flows: PENDING → PRODUCE → REVIEW → VERIFY → COMPLETED, with FAILED
reachable from every working stage. A pass that ends without a terminal
outcome returns to PENDING and the next cycle starts a new pass.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from triad.core.exceptions import InvalidTransitionError
from triad.core.models import BacklogStatus, Phase

logger = logging.getLogger("triad.orchestrator.task_router")


class Stage(str, enum.Enum):
    PENDING = "pending"
    PRODUCE = "produce"
    REVIEW = "review"
    VERIFY = "verify"
    COMPLETED = "completed"
    FAILED = "failed"


# Legal state transitions. Entry from PENDING may skip phases the backlog
# already shows as done.
VALID_TRANSITIONS: dict[Stage, set[Stage]] = {
    Stage.PENDING: {Stage.PRODUCE, Stage.REVIEW, Stage.VERIFY, Stage.COMPLETED, Stage.FAILED},
    Stage.PRODUCE: {Stage.REVIEW, Stage.PENDING, Stage.FAILED},
    Stage.REVIEW: {Stage.VERIFY, Stage.PRODUCE, Stage.PENDING, Stage.FAILED},
    Stage.VERIFY: {Stage.COMPLETED, Stage.PRODUCE, Stage.PENDING, Stage.FAILED},
    Stage.COMPLETED: set(),  # Terminal
    Stage.FAILED: set(),     # Terminal
}

PHASE_ORDER: list[Phase] = [Phase.PRODUCE, Phase.REVIEW, Phase.VERIFY]

# Backlog status a phase worker must leave behind on success.
EXPECTED_STATUS_AFTER: dict[Phase, BacklogStatus] = {
    Phase.PRODUCE: BacklogStatus.READY_TO_REVIEW,
    Phase.REVIEW: BacklogStatus.READY_TO_VERIFY,
    Phase.VERIFY: BacklogStatus.COMPLETED,
}


def stage_for(phase: Phase) -> Stage:
    return Stage(phase.value)


def first_phase_for(status: Optional[BacklogStatus]) -> Phase:
    """First phase still owed for a task in the given backlog status."""
    if status is BacklogStatus.READY_TO_REVIEW:
        return Phase.REVIEW
    if status is BacklogStatus.READY_TO_VERIFY:
        return Phase.VERIFY
    return Phase.PRODUCE


def status_reached(phase: Phase, status: Optional[BacklogStatus]) -> bool:
    """True when the backlog shows `phase` as done."""
    if status is None:
        return False
    if status is BacklogStatus.COMPLETED:
        return True
    expected = EXPECTED_STATUS_AFTER[phase]
    if expected is BacklogStatus.READY_TO_REVIEW:
        return status in (BacklogStatus.READY_TO_REVIEW, BacklogStatus.READY_TO_VERIFY)
    return status is expected


class TaskRouter:
    """Moves one task through the stages of a pass with validation.

    All stage changes go through transition() so illegal moves raise
    instead of silently corrupting progress.
    """

    def __init__(self, task_key: str, stage: Stage = Stage.PENDING):
        self.task_key = task_key
        self.stage = stage
        self.history: list[Stage] = [stage]

    def transition(self, new_stage: Stage, reason: Optional[str] = None) -> Stage:
        """Move to a new stage.

        Raises:
            InvalidTransitionError: If the move is not in VALID_TRANSITIONS.
        """
        if not self.can_transition(self.stage, new_stage):
            raise InvalidTransitionError(
                f"Invalid transition: {self.stage.value} → {new_stage.value} for task {self.task_key}"
            )
        old_stage = self.stage
        self.stage = new_stage
        self.history.append(new_stage)

        if reason:
            logger.info("Task %s: %s → %s (%s)", self.task_key, old_stage.value, new_stage.value, reason)
        else:
            logger.info("Task %s: %s → %s", self.task_key, old_stage.value, new_stage.value)
        return new_stage

    @staticmethod
    def can_transition(from_stage: Stage, to_stage: Stage) -> bool:
        return to_stage in VALID_TRANSITIONS.get(from_stage, set())

    def enter(self, phase: Phase) -> Stage:
        return self.transition(stage_for(phase))

    def mark_failed(self, reason: str) -> Stage:
        return self.transition(Stage.FAILED, reason=reason)

    def mark_completed(self, reason: str = "all phases passed") -> Stage:
        return self.transition(Stage.COMPLETED, reason=reason)

    def yield_pass(self, reason: str) -> Stage:
        """End the pass without a terminal outcome."""
        return self.transition(Stage.PENDING, reason=reason)

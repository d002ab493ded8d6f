"""All Pydantic data models for Triad.

Defines the data contracts used by the scheduler, the pipeline state machine,
the collaborator interfaces and the persisted job state. Every persisted
record and every collaborator request/response has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class JobState(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.RUNNING


class ProgressStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Phase(str, enum.Enum):
    PRODUCE = "produce"
    REVIEW = "review"
    VERIFY = "verify"


class PhaseStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReviewDecision(str, enum.Enum):
    APPROVE = "approve"
    CHANGES_REQUESTED = "changes_requested"
    BLOCK = "block"
    INFO_ONLY = "info_only"


class VerifyOutcome(str, enum.Enum):
    PASS = "pass"
    FIX_REQUIRED = "fix_required"
    INFRA_ISSUE = "infra_issue"
    UNCLEAR = "unclear"


class Retryability(str, enum.Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


class BacklogStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY_TO_REVIEW = "ready_to_review"
    READY_TO_VERIFY = "ready_to_verify"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AgentHealth(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


_BACKLOG_STATUS_ALIASES = {
    "ready_to_qa": BacklogStatus.READY_TO_VERIFY,
    "ready_for_verify": BacklogStatus.READY_TO_VERIFY,
    "ready_for_qa": BacklogStatus.READY_TO_VERIFY,
    "ready_for_review": BacklogStatus.READY_TO_REVIEW,
    "done": BacklogStatus.COMPLETED,
    "todo": BacklogStatus.NOT_STARTED,
}


def normalize_backlog_status(value: Any) -> Optional[BacklogStatus]:
    """Map a free-form backlog status to a BacklogStatus, or None if unknown."""
    if value is None:
        return None
    if isinstance(value, BacklogStatus):
        return value
    text = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if not text:
        return None
    if text in _BACKLOG_STATUS_ALIASES:
        return _BACKLOG_STATUS_ALIASES[text]
    try:
        return BacklogStatus(text)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Backlog records
# ---------------------------------------------------------------------------

class BacklogTask(BaseModel):
    """Authoritative backlog record for one work item."""
    key: str
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    status: str = BacklogStatus.NOT_STARTED.value
    project_key: Optional[str] = None
    epic_key: Optional[str] = None
    story_key: Optional[str] = None
    discipline: Optional[str] = None
    complexity: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def normalized_status(self) -> Optional[BacklogStatus]:
        return normalize_backlog_status(self.status)


class SelectionFilters(BaseModel):
    project_key: Optional[str] = None
    epic_key: Optional[str] = None
    story_key: Optional[str] = None
    task_keys: list[str] = Field(default_factory=list)
    status_filter: list[str] = Field(default_factory=list)
    limit: Optional[int] = None


class SelectionPlan(BaseModel):
    """Output of the backlog task selector."""
    ordered: list[BacklogTask] = Field(default_factory=list)
    blocked: list[BacklogTask] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Worker registry
# ---------------------------------------------------------------------------

class Candidate(BaseModel):
    """A registered worker as reported by the registry."""
    agent_id: str
    slug: Optional[str] = None
    capabilities: list[str] = Field(default_factory=list)
    health: AgentHealth = AgentHealth.HEALTHY
    rating: Optional[float] = None
    reasoning_rating: Optional[float] = None
    best_usage: Optional[str] = None
    cost_per_million: Optional[float] = None
    max_complexity: Optional[int] = None

    @property
    def name(self) -> str:
        return self.slug or self.agent_id


class AgentDecision(BaseModel):
    """Output of the agent selector: which worker runs a phase attempt, and why."""
    agent_id: str
    slug: str
    quality: float
    usage_score: float
    cost: Optional[float] = None
    max_complexity: Optional[int] = None
    rationale: str
    explored: bool = False
    notes: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Phase worker contract
# ---------------------------------------------------------------------------

class EscalationHints(BaseModel):
    avoid_agents: list[str] = Field(default_factory=list)
    force_stronger: bool = False
    force_tier: Optional[str] = None


class PhaseRequest(BaseModel):
    job_id: str
    task_key: str
    phase: Phase
    attempt: int
    agent_id: str
    handoff: str = ""
    hints: EscalationHints = Field(default_factory=EscalationHints)
    dry_run: bool = False
    rate_agents: bool = False
    status_filter: list[str] = Field(default_factory=list)


class PhaseResult(BaseModel):
    """Response of a phase worker.

    `notes` carries machine-readable reasons (tests_failed, no_changes, ...),
    optionally tagged ``guardrail:<retryable|non_retryable>:<reason>``.
    `error` is a hard (structural) error distinct from a semantic rejection.
    """
    outcome: PhaseStatus = PhaseStatus.SUCCEEDED
    notes: Optional[str] = None
    error: Optional[str] = None
    retryability: Optional[Retryability] = None
    tokens_used: Optional[int] = None
    decision: Optional[ReviewDecision] = None
    verify_outcome: Optional[VerifyOutcome] = None
    summary: Optional[str] = None
    plan: list[str] = Field(default_factory=list)
    context_notes: list[str] = Field(default_factory=list)
    rating: Optional[float] = None
    max_complexity: Optional[int] = None
    run_score: Optional[float] = None
    quality_score: Optional[float] = None


# ---------------------------------------------------------------------------
# Task progress record
# ---------------------------------------------------------------------------

class FailureRecord(BaseModel):
    phase: Phase
    agent: Optional[str] = None
    reason: str
    retryability: Retryability = Retryability.RETRYABLE
    attempt: int
    timestamp: datetime = Field(default_factory=_now)


class DecisionRecord(BaseModel):
    step: Phase
    decision: str
    timestamp: datetime = Field(default_factory=_now)


class StepOutcome(BaseModel):
    phase: Phase
    status: str  # "succeeded", "failed", "skipped"
    decision: Optional[str] = None
    reason: Optional[str] = None
    agent: Optional[str] = None
    tokens_used: int = 0
    attempt: int = 0
    timestamp: datetime = Field(default_factory=_now)


class RatingSummary(BaseModel):
    phase: Phase
    agent: str
    rating: Optional[float] = None
    max_complexity: Optional[int] = None
    run_score: Optional[float] = None
    quality_score: Optional[float] = None


class TaskProgress(BaseModel):
    """Per-task durable state owned by the pipeline state machine."""
    task_key: str
    attempts: int = 0
    status: ProgressStatus = ProgressStatus.PENDING
    last_phase: Optional[Phase] = None
    last_decision: Optional[str] = None
    last_error: Optional[str] = None
    last_escalation_reason: Optional[str] = None
    escalation_attempts: dict[str, int] = Field(default_factory=dict)
    chosen_agents: dict[Phase, str] = Field(default_factory=dict)
    failure_history: list[FailureRecord] = Field(default_factory=list)
    decision_history: list[DecisionRecord] = Field(default_factory=list)
    step_outcomes: dict[Phase, StepOutcome] = Field(default_factory=dict)
    ratings: list[RatingSummary] = Field(default_factory=list)
    escalation: dict[Phase, EscalationHints] = Field(default_factory=dict)
    cooldown_until_cycle: Optional[int] = None
    verify_feedback: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProgressStatus.COMPLETED, ProgressStatus.FAILED)

    @property
    def has_pending_feedback(self) -> bool:
        """True when the last review/verify asked for another produce pass."""
        if self.status in (ProgressStatus.COMPLETED, ProgressStatus.FAILED, ProgressStatus.SKIPPED):
            return False
        return self.last_decision in (
            ReviewDecision.CHANGES_REQUESTED.value,
            VerifyOutcome.FIX_REQUIRED.value,
            VerifyOutcome.UNCLEAR.value,
        )

    def count_failures(self, phase: Phase, reason: str) -> int:
        return sum(1 for f in self.failure_history if f.phase == phase and f.reason == reason)

    def failures_in_attempt(self, attempt: int) -> list[FailureRecord]:
        return [f for f in self.failure_history if f.attempt == attempt]

    def record_rating(self, summary: RatingSummary) -> None:
        self.ratings = [r for r in self.ratings if r.phase != summary.phase]
        self.ratings.append(summary)


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

class EscalationDecision(BaseModel):
    """Output of the escalation classifier for one phase failure."""
    rule: str
    reason: str
    retryability: Retryability = Retryability.RETRYABLE
    retry: bool = False
    cooldown: bool = False
    force_stronger: bool = False
    force_tier: Optional[str] = None
    avoid_agents: list[str] = Field(default_factory=list)
    terminal: bool = False
    terminal_reason: Optional[str] = None
    warning: Optional[str] = None

    def hints(self) -> EscalationHints:
        return EscalationHints(
            avoid_agents=list(self.avoid_agents),
            force_stronger=self.force_stronger,
            force_tier=self.force_tier,
        )


# ---------------------------------------------------------------------------
# Job records
# ---------------------------------------------------------------------------

class JobRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    command_name: str
    command_run_id: str = Field(default_factory=_new_id)
    state: JobState = JobState.RUNNING
    cycle: int = 0
    total_items: int = 0
    processed_items: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    error_summary: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class JobRequest(BaseModel):
    """Caller-supplied options for one orchestration run."""
    project_key: Optional[str] = None
    epic_key: Optional[str] = None
    story_key: Optional[str] = None
    task_keys: list[str] = Field(default_factory=list)
    status_filter: list[str] = Field(default_factory=list)
    limit: Optional[int] = None
    max_iterations: Optional[int] = None
    max_cycles: Optional[int] = None
    resume_job_id: Optional[str] = None
    dry_run: Optional[bool] = None
    rate_agents: Optional[bool] = None
    escalate_on_no_change: Optional[bool] = None
    produce_agent: Optional[str] = None
    review_agent: Optional[str] = None
    verify_agent: Optional[str] = None

    @field_validator("limit", "max_iterations", "max_cycles")
    @classmethod
    def _positive_or_none(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("must be >= 1 when set")
        return value

    def agent_override(self, phase: Phase) -> Optional[str]:
        return {
            Phase.PRODUCE: self.produce_agent,
            Phase.REVIEW: self.review_agent,
            Phase.VERIFY: self.verify_agent,
        }[phase]


class TaskSummary(BaseModel):
    task_key: str
    status: ProgressStatus
    attempts: int
    last_phase: Optional[Phase] = None
    last_decision: Optional[str] = None
    last_error: Optional[str] = None
    reason: Optional[str] = None
    chosen_agents: dict[Phase, str] = Field(default_factory=dict)
    ratings: list[RatingSummary] = Field(default_factory=list)


class JobResult(BaseModel):
    job_id: str
    command_run_id: str
    state: JobState
    cycles: int = 0
    tasks: list[TaskSummary] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)

    def task(self, task_key: str) -> Optional[TaskSummary]:
        for summary in self.tasks:
            if summary.task_key == task_key:
                return summary
        return None

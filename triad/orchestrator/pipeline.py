"""Produce → review → verify state machine for one task pass.

A pass runs the phases the backlog still owes, in order, and stops at the
first failure. Each phase attempt picks a worker through the agent
selector, writes the handoff text to the job directory, dispatches the
worker and interprets its result. Failures go through the escalation
classifier, which decides whether the task retries next cycle, cools
down, escalates to a stronger worker or fails for good. A checkpoint is
recorded after every transition.
"""

from __future__ import annotations

import enum
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from triad.core.config import OrchestratorConfig, SelectorConfig
from triad.core.exceptions import NoEligibleAgentError
from triad.core.models import (
    AgentDecision,
    BacklogStatus,
    BacklogTask,
    DecisionRecord,
    EscalationHints,
    FailureRecord,
    Phase,
    PhaseRequest,
    PhaseResult,
    PhaseStatus,
    ProgressStatus,
    RatingSummary,
    Retryability,
    ReviewDecision,
    StepOutcome,
    TaskProgress,
    VerifyOutcome,
)
from triad.memory.lesson_store import GoldenExample, Lesson, LessonStore
from triad.orchestrator.complexity import estimate_complexity, infer_discipline
from triad.orchestrator.escalation import (
    CANCELLED_IN_DB,
    COMPLETED_IN_DB,
    MALFORMED_OUTPUT,
    NO_CHANGE_REASON,
    EscalationClassifier,
    parse_failure_reason,
)
from triad.orchestrator.metrics import PhaseMetrics
from triad.orchestrator.selector import AgentSelector, SelectionRequest
from triad.orchestrator.task_router import PHASE_ORDER, TaskRouter, first_phase_for, status_reached
from triad.state.checkpoints import PhaseFinished, PhaseHeartbeat, PhaseSkipped, PhaseStarted, TaskTerminal
from triad.state.store import JobStateStore
from triad.workers.base import BacklogStore, CommentSink, PhaseWorker

logger = logging.getLogger("triad.orchestrator.pipeline")

PLACEHOLDER_KEY = "placeholder_key"
ZERO_TOKENS = "zero_tokens"
STATUS_NOT_ADVANCED = "status_not_advanced"
NO_ELIGIBLE_AGENT = "no_eligible_agent"
REVIEW_BLOCKED = "review_blocked"
REVERTED_MARKER = "reverted"
JOB_CANCELLED = "job_cancelled"


class PassOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRY = "retry"
    COOLDOWN = "cooldown"


def _noop_record(checkpoint: Any) -> None:
    return None


@dataclass
class PassContext:
    """Job-wide settings and hooks shared by every pass of a job."""
    job_id: str
    cycle: int = 1
    max_iterations: Optional[int] = None
    dry_run: bool = False
    rate_agents: bool = False
    status_filter: list[str] = field(default_factory=list)
    agent_overrides: dict[Phase, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    record: Callable[[Any], None] = _noop_record
    handoff_index: int = 0

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def next_handoff_index(self) -> int:
        self.handoff_index += 1
        return self.handoff_index


@dataclass
class PassResult:
    task_key: str
    outcome: PassOutcome
    reason: Optional[str] = None
    phases_run: list[Phase] = field(default_factory=list)
    attempted: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (PassOutcome.COMPLETED, PassOutcome.FAILED, PassOutcome.SKIPPED)


@dataclass
class _PhaseVerdict:
    """Interpretation of one phase result."""
    succeeded: bool
    decision: str
    reason: Optional[str] = None
    retryability: Optional[Retryability] = None
    structural: bool = False


class _Heartbeat:
    """Calls `beat` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, interval: float, beat: Callable[[], None], name: str = "triad-heartbeat"):
        self.interval = interval
        self._beat = beat
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._name = name

    def __enter__(self) -> "_Heartbeat":
        if self.interval > 0:
            self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
            self._thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._beat()
            except Exception:
                # keep beating after a failed write
                logger.warning("Heartbeat checkpoint failed", exc_info=True)


class TaskPipeline:
    """Runs one pass of the produce → review → verify pipeline for a task.

    Injected dependencies:
        workers: Phase worker per phase.
        backlog: Authoritative backlog store, re-read around every phase.
        selector: Picks the worker for each phase attempt.
        classifier: Retry/escalation policy for failures.
        store: Job state store (handoff files).
        metrics: Phase timing and token collector.
        lesson_store: Optional golden example / lesson memory.
        comment_sink: Optional sink for thin-context notes.
    """

    def __init__(
        self,
        workers: dict[Phase, PhaseWorker],
        backlog: BacklogStore,
        selector: AgentSelector,
        classifier: EscalationClassifier,
        store: JobStateStore,
        config: Optional[OrchestratorConfig] = None,
        selector_config: Optional[SelectorConfig] = None,
        metrics: Optional[PhaseMetrics] = None,
        lesson_store: Optional[LessonStore] = None,
        comment_sink: Optional[CommentSink] = None,
    ):
        missing = [p.value for p in PHASE_ORDER if p not in workers]
        if missing:
            raise ValueError(f"Missing phase workers: {', '.join(missing)}")
        self.workers = workers
        self.backlog = backlog
        self.selector = selector
        self.classifier = classifier
        self.store = store
        self.config = config or OrchestratorConfig()
        self.selector_config = selector_config or SelectorConfig()
        self.metrics = metrics or PhaseMetrics()
        self.lesson_store = lesson_store
        self.comment_sink = comment_sink
        self._placeholders = [re.compile(p) for p in self.config.placeholder_key_patterns]
        self._capabilities: dict[Phase, list[str]] = {
            Phase.PRODUCE: list(self.config.produce_capabilities),
            Phase.REVIEW: list(self.config.review_capabilities),
            Phase.VERIFY: list(self.config.verify_capabilities),
        }

    def is_placeholder(self, task_key: str) -> bool:
        return any(p.search(task_key) for p in self._placeholders)

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def run_pass(self, task: BacklogTask, progress: TaskProgress, context: PassContext) -> PassResult:
        """Run the phases still owed by `task`, stopping at the first failure.

        Args:
            task: Backlog record as returned by the task selector.
            progress: Durable progress record, mutated in place.
            context: Job-wide settings, warning list and checkpoint hook.

        Returns:
            PassResult describing how the pass ended.

        Raises:
            NoEligibleAgentError: Only when the registry has no agents at all.
        """
        key = task.key

        if self.is_placeholder(key):
            context.warn(f"Skipping placeholder task key {key}; it is never dispatched.")
            return self._finish_untouched(progress, ProgressStatus.SKIPPED, PLACEHOLDER_KEY, context)

        record = self.backlog.get_task(key) or task
        backlog_status = record.normalized_status

        if backlog_status is BacklogStatus.COMPLETED:
            return self._finish_untouched(progress, ProgressStatus.COMPLETED, COMPLETED_IN_DB, context)
        if backlog_status is BacklogStatus.CANCELLED:
            return self._finish_untouched(progress, ProgressStatus.SKIPPED, CANCELLED_IN_DB, context)

        progress.attempts += 1
        progress.status = ProgressStatus.IN_PROGRESS
        progress.cooldown_until_cycle = None
        attempt = progress.attempts
        router = TaskRouter(key)
        self.metrics.start_pass(key, attempt)
        logger.info("Pass %d for %s starting from backlog status %s", attempt, key, record.status)

        first = first_phase_for(backlog_status)
        phases_run: list[Phase] = []
        for phase in PHASE_ORDER[:PHASE_ORDER.index(first)]:
            self._skip_phase(progress, phase, f"backlog_status:{backlog_status.value}", attempt, context)

        for phase in PHASE_ORDER[PHASE_ORDER.index(first):]:
            if phases_run and self.store.is_cancel_requested(context.job_id):
                logger.info("Job %s cancelled; not starting %s for %s", context.job_id, phase.value, key)
                self.metrics.complete_pass(PassOutcome.RETRY.value)
                return PassResult(key, PassOutcome.RETRY, JOB_CANCELLED, phases_run, attempted=True)
            phases_run.append(phase)
            verdict, agent = self._run_phase(record, progress, phase, attempt, router, context)
            if not verdict.succeeded:
                result = self._handle_failure(progress, phase, agent, verdict, router, context)
                result.phases_run = phases_run
                self.metrics.complete_pass(result.outcome.value)
                return result
            progress.escalation.pop(phase, None)
            refreshed = self.backlog.get_task(key)
            if refreshed is not None:
                record = refreshed

        return self._complete(record, progress, router, context, phases_run)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_phase(
        self,
        record: BacklogTask,
        progress: TaskProgress,
        phase: Phase,
        attempt: int,
        router: TaskRouter,
        context: PassContext,
    ) -> tuple[_PhaseVerdict, Optional[str]]:
        router.enter(phase)
        hints = progress.escalation.get(phase, EscalationHints())

        try:
            decision = self.selector.select(SelectionRequest(
                required_capabilities=self._capabilities[phase],
                discipline=infer_discipline(record),
                complexity=estimate_complexity(record, self.selector_config.default_complexity),
                avoid_agents=hints.avoid_agents,
                force_stronger=hints.force_stronger,
                force_tier=hints.force_tier,
                preferred_agent=context.agent_overrides.get(phase),
            ))
        except NoEligibleAgentError as exc:
            if exc.empty_registry:
                raise
            context.warn(f"No eligible agent for {record.key} {phase.value}: {exc}")
            verdict = _PhaseVerdict(succeeded=False, decision="error", reason=NO_ELIGIBLE_AGENT)
            self._record_outcome(progress, phase, verdict, None, 0, attempt, context)
            return verdict, None

        for note in decision.notes:
            context.warn(f"{record.key} {phase.value}: {note}")
        progress.chosen_agents[phase] = decision.slug

        handoff = self._build_handoff(record, progress, phase, attempt, decision, hints)
        self.store.write_handoff(context.job_id, context.next_handoff_index(), record.key, phase, handoff)
        context.record(PhaseStarted(
            job_id=context.job_id,
            cycle=context.cycle,
            task_key=record.key,
            phase=phase,
            attempt=attempt,
            agent=decision.slug,
        ))

        metric = self.metrics.start_phase(record.key, phase, decision.slug, attempt)
        heartbeat = _Heartbeat(self.config.heartbeat_seconds, lambda: context.record(PhaseHeartbeat(
            job_id=context.job_id,
            cycle=context.cycle,
            task_key=record.key,
            phase=phase,
            attempt=attempt,
            agent=decision.slug,
        )))
        with heartbeat:
            result = self.workers[phase].run(PhaseRequest(
                job_id=context.job_id,
                task_key=record.key,
                phase=phase,
                attempt=attempt,
                agent_id=decision.agent_id,
                handoff=handoff,
                hints=hints,
                dry_run=context.dry_run,
                rate_agents=context.rate_agents,
                status_filter=context.status_filter,
            ))
        verdict = self._interpret(phase, result, context.dry_run)

        if verdict.succeeded and not context.dry_run:
            refreshed = self.backlog.get_task(record.key)
            status = refreshed.normalized_status if refreshed is not None else None
            if not status_reached(phase, status):
                context.warn(
                    f"Backlog status for {record.key} did not advance after {phase.value} "
                    f"(status={refreshed.status if refreshed else 'missing'}); will retry."
                )
                verdict = _PhaseVerdict(succeeded=False, decision=verdict.decision, reason=STATUS_NOT_ADVANCED)

        tokens = result.tokens_used or 0
        self.metrics.complete_phase(
            metric,
            status="succeeded" if verdict.succeeded else "failed",
            tokens_used=tokens,
            reason=verdict.reason,
        )

        if phase is Phase.VERIFY:
            if verdict.decision in (VerifyOutcome.FIX_REQUIRED.value, VerifyOutcome.UNCLEAR.value):
                progress.verify_feedback = result.summary or result.notes or verdict.decision
            elif verdict.succeeded:
                progress.verify_feedback = None

        if context.rate_agents and result.rating is not None:
            progress.record_rating(RatingSummary(
                phase=phase,
                agent=decision.slug,
                rating=result.rating,
                max_complexity=result.max_complexity,
                run_score=result.run_score,
                quality_score=result.quality_score,
            ))

        if result.context_notes and self.comment_sink is not None:
            body = "Proceeding with thin context:\n" + "\n".join(f"- {n}" for n in result.context_notes)
            self.comment_sink.add_comment(record.key, body, category="context")

        self._record_outcome(progress, phase, verdict, decision.slug, tokens, attempt, context)
        return verdict, decision.slug

    def _interpret(self, phase: Phase, result: PhaseResult, dry_run: bool) -> _PhaseVerdict:
        note, tagged = parse_failure_reason(result.notes)
        explicit = tagged or result.retryability

        if result.error:
            # Hard error: the worker could not produce a usable result.
            return _PhaseVerdict(
                succeeded=False,
                decision="error",
                reason=note if tagged else MALFORMED_OUTPUT,
                retryability=explicit,
                structural=not tagged,
            )

        if phase is Phase.PRODUCE:
            if result.outcome is PhaseStatus.FAILED:
                return _PhaseVerdict(False, "failed", note or "produce_failed", explicit)
            if tagged is not None:
                return _PhaseVerdict(False, "failed", note, explicit)
            if note == NO_CHANGE_REASON:
                return _PhaseVerdict(False, "succeeded", NO_CHANGE_REASON, explicit)
            if result.tokens_used == 0 and not dry_run:
                return _PhaseVerdict(False, "succeeded", ZERO_TOKENS, explicit)
            return _PhaseVerdict(True, "succeeded")

        if phase is Phase.REVIEW:
            decision = result.decision
            if decision is None:
                if result.outcome is PhaseStatus.FAILED:
                    return _PhaseVerdict(False, "failed", note or "review_failed", explicit)
                return _PhaseVerdict(False, "error", MALFORMED_OUTPUT, explicit, structural=True)
            if decision in (ReviewDecision.APPROVE, ReviewDecision.INFO_ONLY):
                return _PhaseVerdict(True, decision.value)
            if decision is ReviewDecision.BLOCK:
                return _PhaseVerdict(False, decision.value, note if tagged else REVIEW_BLOCKED, explicit)
            return _PhaseVerdict(False, decision.value, note if tagged else decision.value, explicit)

        outcome = result.verify_outcome
        if outcome is None:
            if result.outcome is PhaseStatus.FAILED:
                return _PhaseVerdict(False, "failed", note or "verify_failed", explicit)
            return _PhaseVerdict(False, "error", MALFORMED_OUTPUT, explicit, structural=True)
        if outcome is VerifyOutcome.PASS:
            return _PhaseVerdict(True, outcome.value)
        if outcome is VerifyOutcome.INFRA_ISSUE:
            return _PhaseVerdict(False, outcome.value, note if tagged else outcome.value, explicit)
        # unclear counts as fix_required
        reason = note if tagged else VerifyOutcome.FIX_REQUIRED.value
        return _PhaseVerdict(False, outcome.value, reason, explicit)

    def _record_outcome(
        self,
        progress: TaskProgress,
        phase: Phase,
        verdict: _PhaseVerdict,
        agent: Optional[str],
        tokens: int,
        attempt: int,
        context: PassContext,
    ) -> None:
        status = "succeeded" if verdict.succeeded else "failed"
        progress.last_phase = phase
        progress.last_decision = verdict.decision
        progress.decision_history.append(DecisionRecord(step=phase, decision=verdict.decision))
        progress.step_outcomes[phase] = StepOutcome(
            phase=phase,
            status=status,
            decision=verdict.decision,
            reason=verdict.reason,
            agent=agent,
            tokens_used=tokens,
            attempt=attempt,
        )
        context.record(PhaseFinished(
            job_id=context.job_id,
            cycle=context.cycle,
            task_key=progress.task_key,
            phase=phase,
            attempt=attempt,
            status=status,
            decision=verdict.decision,
            reason=verdict.reason,
            agent=agent,
        ))

    def _skip_phase(
        self, progress: TaskProgress, phase: Phase, reason: str, attempt: int, context: PassContext
    ) -> None:
        logger.info("Task %s: skipping %s (%s)", progress.task_key, phase.value, reason)
        progress.step_outcomes[phase] = StepOutcome(phase=phase, status="skipped", reason=reason, attempt=attempt)
        context.record(PhaseSkipped(
            job_id=context.job_id,
            cycle=context.cycle,
            task_key=progress.task_key,
            phase=phase,
            reason=reason,
        ))

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _handle_failure(
        self,
        progress: TaskProgress,
        phase: Phase,
        agent: Optional[str],
        verdict: _PhaseVerdict,
        router: TaskRouter,
        context: PassContext,
    ) -> PassResult:
        reason = verdict.reason or "unknown_failure"
        decision = self.classifier.classify(
            progress,
            phase,
            reason,
            progress.attempts,
            context.max_iterations,
            agent=agent,
            retryability=verdict.retryability,
            structural=verdict.structural,
        )
        progress.failure_history.append(FailureRecord(
            phase=phase,
            agent=agent,
            reason=reason,
            retryability=decision.retryability,
            attempt=progress.attempts,
        ))
        progress.last_error = reason
        if decision.warning:
            context.warn(decision.warning)

        if decision.terminal:
            terminal_reason = decision.terminal_reason or reason
            progress.status = ProgressStatus.FAILED
            progress.last_error = terminal_reason
            router.mark_failed(terminal_reason)
            self._record_terminal(progress, terminal_reason, context)
            return PassResult(progress.task_key, PassOutcome.FAILED, terminal_reason, attempted=True)

        hints = decision.hints()
        progress.escalation[phase] = hints
        if hints.force_stronger or hints.avoid_agents:
            progress.last_escalation_reason = reason
            progress.escalation_attempts[reason] = progress.escalation_attempts.get(reason, 0) + 1

        outcome = PassOutcome.RETRY
        if decision.cooldown:
            progress.cooldown_until_cycle = context.cycle + 1
            outcome = PassOutcome.COOLDOWN
        router.yield_pass(reason)
        return PassResult(progress.task_key, outcome, reason, attempted=True)

    def _complete(
        self,
        record: BacklogTask,
        progress: TaskProgress,
        router: TaskRouter,
        context: PassContext,
        phases_run: list[Phase],
    ) -> PassResult:
        progress.status = ProgressStatus.COMPLETED
        progress.last_error = None
        progress.escalation.clear()
        router.mark_completed()
        self.metrics.complete_pass(PassOutcome.COMPLETED.value)
        if not context.dry_run:
            self._record_memory(record, progress)
        self._record_terminal(progress, None, context)
        return PassResult(progress.task_key, PassOutcome.COMPLETED, phases_run=phases_run, attempted=True)

    def _finish_untouched(
        self, progress: TaskProgress, status: ProgressStatus, reason: str, context: PassContext
    ) -> PassResult:
        """Terminal outcome decided without dispatching any phase."""
        logger.info("Task %s: %s (%s)", progress.task_key, status.value, reason)
        progress.status = status
        progress.last_error = reason
        progress.cooldown_until_cycle = None
        self._record_terminal(progress, reason, context)
        outcome = PassOutcome.COMPLETED if status is ProgressStatus.COMPLETED else PassOutcome.SKIPPED
        return PassResult(progress.task_key, outcome, reason)

    @staticmethod
    def _record_terminal(progress: TaskProgress, reason: Optional[str], context: PassContext) -> None:
        context.record(TaskTerminal(
            job_id=context.job_id,
            cycle=context.cycle,
            task_key=progress.task_key,
            status=progress.status,
            attempts=progress.attempts,
            reason=reason,
        ))

    def _record_memory(self, record: BacklogTask, progress: TaskProgress) -> None:
        if self.lesson_store is None:
            return
        review = progress.step_outcomes.get(Phase.REVIEW)
        verify = progress.step_outcomes.get(Phase.VERIFY)
        self.lesson_store.record_golden_example(GoldenExample(
            task_key=record.key,
            intent=record.title or record.key,
            plan_summary=record.description[:500],
            review_notes=review.decision if review else None,
            qa_notes=verify.decision if verify else None,
            agents={phase.value: agent for phase, agent in progress.chosen_agents.items()},
        ))

        marker = record.metadata.get(REVERTED_MARKER)
        if not marker:
            return
        if isinstance(marker, dict):
            reason = str(marker.get("reason") or "regression")
            summary = str(marker.get("summary") or "")
        else:
            reason = str(marker) if isinstance(marker, str) else "regression"
            summary = ""
        self.lesson_store.record_lesson(Lesson(task_key=record.key, reason=reason, summary=summary))
        self.backlog.update_task(record.key, metadata={REVERTED_MARKER: None})

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    def _build_handoff(
        self,
        record: BacklogTask,
        progress: TaskProgress,
        phase: Phase,
        attempt: int,
        decision: AgentDecision,
        hints: EscalationHints,
    ) -> str:
        lines = [
            f"# {record.key}: {record.title}".rstrip(": "),
            "",
            f"Phase: {phase.value} (attempt {attempt})",
            f"Agent: {decision.slug}",
            f"Selection: {decision.rationale}",
        ]
        if record.description:
            lines += ["", "## Task", record.description]
        if hints.force_stronger or hints.avoid_agents:
            lines += ["", "## Escalation"]
            if hints.force_stronger:
                lines.append(f"- Stronger agent requested (tier: {hints.force_tier or 'strong'})")
            if hints.avoid_agents:
                lines.append(f"- Avoiding: {', '.join(hints.avoid_agents)}")
            if progress.last_escalation_reason:
                lines.append(f"- Reason: {progress.last_escalation_reason}")
        if phase is Phase.PRODUCE and progress.verify_feedback:
            lines += ["", "## Previous verification failed", progress.verify_feedback]
        if self.lesson_store is not None:
            similar = self.lesson_store.find_similar(
                f"{record.title} {record.description}", exclude_key=record.key
            )
            if similar:
                lines += ["", "## Similar completed work"]
                lines += [f"- {example.summary()}" for example in similar]
            lessons = self.lesson_store.load_lessons(record.key)
            if lessons:
                lines += ["", "## Lessons from earlier regressions"]
                lines += [f"- {lesson.reason}: {lesson.summary}".rstrip(": ") for lesson in lessons]
        return "\n".join(lines) + "\n"

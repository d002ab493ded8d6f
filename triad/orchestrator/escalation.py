"""Escalation classifier for Triad.

Interprets a phase failure reason and decides what happens next: retry
immediately, retry after a cooldown cycle, retry with a stronger worker,
or fail the task permanently.

Workers may tag a reason with an explicit retry class using the legacy
string form ``guardrail:retryable:<reason>`` / ``guardrail:non_retryable:<reason>``.
Tags are parsed once at the boundary (parse_failure_reason) and carried as a
Retryability value from then on. Untagged reasons fall back to the static
DEFAULT_CLASSIFICATION table.
"""

from __future__ import annotations

import logging
from typing import Optional

from triad.core.models import (
    BacklogStatus,
    EscalationDecision,
    FailureRecord,
    Phase,
    ProgressStatus,
    Retryability,
    TaskProgress,
)
from triad.workers.base import BLOCKED_REASON, DEPENDS_ON, BacklogStore

logger = logging.getLogger("triad.orchestrator.escalation")

GUARDRAIL_PREFIX = "guardrail:"
MAX_ITERATIONS_REACHED = "max_iterations_reached"
COMPLETED_IN_DB = "completed_in_db"
CANCELLED_IN_DB = "cancelled_in_db"
STRONG_TIER = "strong"

TESTS_FAILED = "tests_failed"
NO_CHANGE_REASON = "no_changes"
MALFORMED_OUTPUT = "malformed_output"

# Reasons whose default retry class is fixed. Unknown reasons are retryable.
DEFAULT_CLASSIFICATION: dict[str, Retryability] = {
    "scope_violation": Retryability.NON_RETRYABLE,
    "review_blocked": Retryability.NON_RETRYABLE,
    "no_eligible_agent": Retryability.NON_RETRYABLE,
    CANCELLED_IN_DB: Retryability.NON_RETRYABLE,
    TESTS_FAILED: Retryability.RETRYABLE,
    "missing_patch": Retryability.RETRYABLE,
    "patch_failed": Retryability.RETRYABLE,
    NO_CHANGE_REASON: Retryability.RETRYABLE,
    "zero_tokens": Retryability.RETRYABLE,
    "changes_requested": Retryability.RETRYABLE,
    "fix_required": Retryability.RETRYABLE,
    "unclear": Retryability.RETRYABLE,
    "infra_issue": Retryability.RETRYABLE,
    "agent_timeout": Retryability.RETRYABLE,
    "worker_error": Retryability.RETRYABLE,
    MALFORMED_OUTPUT: Retryability.RETRYABLE,
    "status_not_advanced": Retryability.RETRYABLE,
}

# Failing worker is steered away from on the next attempt.
ESCALATION_REASONS = frozenset({"missing_patch", "patch_failed", TESTS_FAILED, "agent_timeout"})

# Environment trouble: never cooled down, never escalated.
TRANSIENT_REASONS = frozenset({"infra_issue", "agent_timeout", "worker_error"})

# Backlog blocked_reason values that a new cycle may reopen.
RETRYABLE_BLOCK_REASONS = frozenset({
    "missing_patch",
    "patch_failed",
    "tests_not_configured",
    TESTS_FAILED,
    NO_CHANGE_REASON,
    "qa_infra_issue",
    "review_blocked",
})
DEPENDENCY_NOT_READY = "dependency_not_ready"
DONE_DEPENDENCY_STATUSES = frozenset({BacklogStatus.COMPLETED, BacklogStatus.CANCELLED})


def parse_failure_reason(raw: Optional[str]) -> tuple[str, Optional[Retryability]]:
    """Split a possibly guardrail-tagged reason into (reason, explicit retryability).

    >>> parse_failure_reason("guardrail:non_retryable:scope_violation")
    ('scope_violation', <Retryability.NON_RETRYABLE: 'non_retryable'>)
    >>> parse_failure_reason("tests_failed")
    ('tests_failed', None)
    """
    text = (raw or "").strip()
    if not text.lower().startswith(GUARDRAIL_PREFIX):
        return text, None
    rest = text[len(GUARDRAIL_PREFIX):]
    tag, sep, reason = rest.partition(":")
    tag = tag.strip().lower()
    if not sep:
        # "guardrail:<reason>" with no class; treat the remainder as the reason.
        return tag, None
    try:
        retryability = Retryability(tag)
    except ValueError:
        logger.warning("Unknown guardrail retry class %r in %r; using default classification", tag, text)
        return reason.strip(), None
    return reason.strip(), retryability


def default_retryability(reason: str) -> Retryability:
    return DEFAULT_CLASSIFICATION.get(reason, Retryability.RETRYABLE)


def resolve_retryability(reason: str, explicit: Optional[Retryability] = None) -> Retryability:
    """Explicit classification wins over the static default table."""
    if explicit is not None:
        return explicit
    return default_retryability(reason)


class EscalationClassifier:
    """Pure retry/escalation policy.

    classify() reads the task's failure history but never mutates it; the
    pipeline applies the returned decision.
    """

    def __init__(self, escalate_on_no_change: bool = True):
        self.escalate_on_no_change = escalate_on_no_change

    def escalation_reasons(self) -> frozenset[str]:
        if self.escalate_on_no_change:
            return ESCALATION_REASONS | {NO_CHANGE_REASON}
        return ESCALATION_REASONS

    def classify(
        self,
        progress: TaskProgress,
        phase: Phase,
        reason: str,
        attempts_so_far: int,
        max_attempts: Optional[int],
        *,
        agent: Optional[str] = None,
        retryability: Optional[Retryability] = None,
        structural: bool = False,
    ) -> EscalationDecision:
        """Decide what follows a failure of `phase` with `reason`.

        Args:
            progress: Task record. Its failure history must not yet contain
                the failure being classified.
            phase: Phase that failed.
            reason: Untagged failure reason.
            attempts_so_far: Passes made so far, including the failing one.
            max_attempts: Attempt budget, or None for unbounded.
            agent: Worker that ran the failing attempt.
            retryability: Explicit classification carried by the worker result.
            structural: True for malformed worker output (hard error).

        Returns:
            EscalationDecision naming the rule that fired.
        """
        resolved = resolve_retryability(reason, retryability)

        # 1. explicit or static non-retryable
        if resolved is Retryability.NON_RETRYABLE:
            return EscalationDecision(
                rule="non_retryable",
                reason=reason,
                retryability=resolved,
                terminal=True,
                terminal_reason=reason,
            )

        # 2. budget exhausted
        if max_attempts is not None and attempts_so_far >= max_attempts:
            return EscalationDecision(
                rule="budget_exhausted",
                reason=reason,
                retryability=resolved,
                terminal=True,
                terminal_reason=MAX_ITERATIONS_REACHED,
                warning=f"Task {progress.task_key} hit max iterations ({max_attempts}) after {reason}.",
            )

        escalating = self.escalation_reasons()
        occurrences = progress.count_failures(phase, reason) + 1
        avoid = [agent] if agent and reason in escalating else []

        # 3. identical failure on the immediately preceding attempt
        if reason not in TRANSIENT_REASONS and self._failed_same_on_previous_attempt(
            progress, reason, attempts_so_far
        ):
            return EscalationDecision(
                rule="cooldown",
                reason=reason,
                retryability=resolved,
                retry=True,
                cooldown=True,
                force_stronger=reason in escalating or structural,
                force_tier=STRONG_TIER if reason in escalating or structural else None,
                avoid_agents=avoid,
                warning=(
                    f"Task {progress.task_key} failed {phase.value} with {reason} twice in a row; "
                    "cooling down for one cycle."
                ),
            )

        # 4. first tests_failed: outrank the failing worker rather than exclude it
        if reason == TESTS_FAILED and occurrences == 1:
            return EscalationDecision(
                rule="tests_failed_escalation",
                reason=reason,
                retryability=resolved,
                retry=True,
                force_stronger=True,
                force_tier=STRONG_TIER,
                avoid_agents=[],
                warning=f"Retrying {progress.task_key} after tests_failed with stronger agent.",
            )

        # 5. structural review failure: stronger reviewer
        if structural:
            return EscalationDecision(
                rule="structural_escalation",
                reason=reason,
                retryability=resolved,
                retry=True,
                force_stronger=True,
                force_tier=STRONG_TIER,
                avoid_agents=avoid,
                warning=f"Retrying {progress.task_key} {phase.value} with stronger agent after {reason}.",
            )

        # 6. everything else retryable
        return EscalationDecision(
            rule="retry",
            reason=reason,
            retryability=resolved,
            retry=True,
            force_stronger=False,
            avoid_agents=avoid,
        )

    @staticmethod
    def _failed_same_on_previous_attempt(progress: TaskProgress, reason: str, attempts_so_far: int) -> bool:
        previous = attempts_so_far - 1
        if previous < 1:
            return False
        return any(f.reason == reason for f in progress.failures_in_attempt(previous))

    # ------------------------------------------------------------------
    # Resume-time reconciliation
    # ------------------------------------------------------------------

    def reconcile_on_resume(
        self,
        tasks: dict[str, TaskProgress],
        backlog: BacklogStore,
        max_iterations: Optional[int],
        warnings: list[str],
    ) -> list[str]:
        """Re-evaluate task records against the backlog and the current budget.

        The backlog wins on conflict: a task it shows completed is never
        downgraded locally. Failed tasks below the (possibly raised) budget
        with a retryable last failure are reopened.

        Returns:
            Keys of records that changed.
        """
        changed: list[str] = []
        for task_key, progress in tasks.items():
            if progress.status is ProgressStatus.COMPLETED:
                continue
            record = backlog.get_task(task_key)
            if record is None:
                continue
            backlog_status = record.normalized_status

            if backlog_status is BacklogStatus.COMPLETED:
                progress.status = ProgressStatus.COMPLETED
                progress.last_error = COMPLETED_IN_DB
                progress.cooldown_until_cycle = None
                warnings.append(
                    f"Task {task_key} is completed in the backlog; marking completed locally (completed_in_db)."
                )
                changed.append(task_key)
                continue

            if backlog_status is BacklogStatus.CANCELLED:
                if progress.status is not ProgressStatus.SKIPPED or progress.last_error != CANCELLED_IN_DB:
                    progress.status = ProgressStatus.SKIPPED
                    progress.last_error = CANCELLED_IN_DB
                    warnings.append(f"Task {task_key} is cancelled in the backlog; skipping (cancelled_in_db).")
                    changed.append(task_key)
                continue

            if progress.status is not ProgressStatus.FAILED:
                continue

            within_budget = max_iterations is None or progress.attempts < max_iterations
            if within_budget and self._last_failure_retryable(progress):
                progress.status = ProgressStatus.PENDING
                progress.last_error = None
                progress.cooldown_until_cycle = None
                backlog.update_task(task_key, status=BacklogStatus.IN_PROGRESS.value)
                budget = f"/{max_iterations}" if max_iterations is not None else ""
                warnings.append(f"Reopened failed task {task_key} for retry (attempts={progress.attempts}{budget}).")
                changed.append(task_key)
            elif not within_budget and progress.last_error != MAX_ITERATIONS_REACHED:
                progress.last_error = MAX_ITERATIONS_REACHED
                changed.append(task_key)
        return changed

    @staticmethod
    def _last_failure_retryable(progress: TaskProgress) -> bool:
        last: Optional[FailureRecord] = progress.failure_history[-1] if progress.failure_history else None
        if last is not None:
            return last.retryability is Retryability.RETRYABLE
        if progress.last_error in (None, MAX_ITERATIONS_REACHED):
            return True
        reason, explicit = parse_failure_reason(progress.last_error)
        return resolve_retryability(reason, explicit) is Retryability.RETRYABLE

    def reopen_blocked(
        self,
        tasks: dict[str, TaskProgress],
        backlog: BacklogStore,
        task_keys: list[str],
        max_iterations: Optional[int],
        warnings: list[str],
    ) -> list[str]:
        """Send blocked backlog tasks with a retryable blocked_reason back to in_progress.

        Looks at the explicitly requested keys plus every task this job has
        a record for. A task stays blocked when its budget is spent, when it
        was blocked for tests_failed after two such produce failures, or
        when it waits on dependencies that are not completed or cancelled.
        Reopening clears blocked_reason and makes the local record pending.

        Returns:
            Keys of reopened tasks.
        """
        reopened: list[str] = []
        for task_key in dict.fromkeys([*task_keys, *tasks]):
            progress = tasks.get(task_key)
            if progress is not None:
                if progress.status is ProgressStatus.COMPLETED:
                    continue
                if max_iterations is not None and progress.attempts >= max_iterations:
                    continue
            record = backlog.get_task(task_key)
            if record is None or record.normalized_status is not BacklogStatus.BLOCKED:
                continue
            reason = record.metadata.get(BLOCKED_REASON)
            if not isinstance(reason, str) or not reason:
                continue

            repeated = progress is not None and progress.count_failures(Phase.PRODUCE, TESTS_FAILED) >= 2
            if reason == TESTS_FAILED and repeated:
                message = f"Task {task_key} remains blocked after repeated tests_failed; skipping reopen."
                logger.warning(message)
                warnings.append(message)
                continue
            if reason == DEPENDENCY_NOT_READY:
                if not self._dependencies_done(task_key, record.metadata.get(DEPENDS_ON) or [], backlog, warnings):
                    continue
            elif reason not in RETRYABLE_BLOCK_REASONS:
                continue

            backlog.update_task(task_key, status=BacklogStatus.IN_PROGRESS.value, metadata={BLOCKED_REASON: None})
            if progress is not None:
                progress.status = ProgressStatus.PENDING
                progress.last_error = None
                progress.cooldown_until_cycle = None
            message = f"Reopened blocked task {task_key} (reason={reason}) for retry."
            logger.warning(message)
            warnings.append(message)
            reopened.append(task_key)
        return reopened

    @staticmethod
    def _dependencies_done(task_key: str, depends_on: list[str], backlog: BacklogStore, warnings: list[str]) -> bool:
        for dep_key in depends_on:
            dep = backlog.get_task(dep_key)
            if dep is None:
                message = f"Dependency {dep_key} not found for task {task_key}; treating as not ready."
                logger.warning(message)
                warnings.append(message)
                return False
            if dep.normalized_status not in DONE_DEPENDENCY_STATUSES:
                return False
        return True

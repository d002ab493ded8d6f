"""Cycle scheduler for Triad.

Runs a job as a sequence of cycles. Each cycle selects the eligible backlog
tasks, puts tasks with pending review/verify feedback first, and runs one
produce → review → verify pass per task. A failed pass never blocks the
rest of the cycle; its retry happens in a later cycle. Job state is
checkpointed after every transition so an interrupted job can be resumed.
"""

from __future__ import annotations

import logging
import random
import threading
import uuid
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from triad.core.config import AppConfig
from triad.core.exceptions import NoEligibleAgentError
from triad.core.models import (
    BacklogTask,
    JobRecord,
    JobRequest,
    JobResult,
    JobState,
    Phase,
    ProgressStatus,
    SelectionFilters,
    TaskProgress,
    TaskSummary,
)
from triad.memory.lesson_store import LessonStore
from triad.orchestrator.escalation import MAX_ITERATIONS_REACHED, EscalationClassifier
from triad.orchestrator.health_monitor import HealthMonitor
from triad.orchestrator.metrics import PhaseMetrics
from triad.orchestrator.pipeline import PassContext, TaskPipeline
from triad.orchestrator.selector import AgentSelector
from triad.state.checkpoints import CycleFinished, JobFinished, JobStarted, TaskTerminal
from triad.state.store import COMMAND_NAME, JobStateDocument, JobStateStore
from triad.workers.base import BacklogStore, CommentSink, PhaseWorker, TaskSelector, WorkerRegistry

logger = logging.getLogger("triad.orchestrator.loop")

DEPENDENCY_BLOCKED = "dependency_blocked"


@dataclass
class RunOptions:
    """A JobRequest with config defaults filled in."""
    request: JobRequest
    max_iterations: Optional[int]
    max_cycles: Optional[int]
    limit: Optional[int]
    status_filter: list[str]
    dry_run: bool
    rate_agents: bool
    escalate_on_no_change: bool
    agent_overrides: dict[Phase, str] = field(default_factory=dict)


class CycleScheduler:
    """Multi-cycle job loop: select → prioritize → one pass per task → checkpoint.

    Use as a context manager; every collaborator is closed on exit.

    Injected dependencies:
        store: Durable job records, state snapshots and checkpoints.
        task_selector: Backlog query returning eligible tasks in order.
        backlog: Authoritative backlog record store.
        registry: Worker registry used by the agent selector.
        workers: Phase worker per phase.
        config: Application configuration.
        rng: Random source for selector exploration.
        lesson_store: Optional golden example / lesson memory.
        comment_sink: Optional sink for thin-context notes.
        progress_callback: Optional callable receiving progress lines.
    """

    def __init__(
        self,
        store: JobStateStore,
        task_selector: TaskSelector,
        backlog: BacklogStore,
        registry: WorkerRegistry,
        workers: dict[Phase, PhaseWorker],
        config: Optional[AppConfig] = None,
        rng: Optional[random.Random] = None,
        lesson_store: Optional[LessonStore] = None,
        comment_sink: Optional[CommentSink] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or AppConfig()
        self.store = store
        self.task_selector = task_selector
        self.backlog = backlog
        self.registry = registry
        self.workers = workers
        self.metrics = PhaseMetrics()
        self._record_lock = threading.Lock()  # phase heartbeats record from a timer thread
        self.classifier = EscalationClassifier(self.config.orchestrator.escalate_on_no_change)
        self.selector = AgentSelector(registry, self.config.selector, rng)
        self.health_monitor = HealthMonitor(backlog, registry, store)
        self.pipeline = TaskPipeline(
            workers=workers,
            backlog=backlog,
            selector=self.selector,
            classifier=self.classifier,
            store=store,
            config=self.config.orchestrator,
            selector_config=self.config.selector,
            metrics=self.metrics,
            lesson_store=lesson_store,
            comment_sink=comment_sink,
        )
        self._progress_callback = progress_callback
        self._exit_stack = ExitStack()
        seen: set[int] = set()
        for collaborator in [store, task_selector, backlog, registry, *workers.values(), comment_sink]:
            if collaborator is None or id(collaborator) in seen:
                continue
            seen.add(id(collaborator))
            self._exit_stack.callback(collaborator.close)

    def __enter__(self) -> "CycleScheduler":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close every collaborator once, in reverse registration order."""
        self._exit_stack.close()

    def _notify(self, message: str) -> None:
        """Send a progress notification to the CLI callback, if configured."""
        if self._progress_callback is not None:
            self._progress_callback(message)

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run(self, request: JobRequest) -> JobResult:
        """Run a new job, or resume one when `request.resume_job_id` is set.

        Returns:
            JobResult with one summary per task and all warnings.

        Raises:
            ResumeError: If the job cannot be resumed.
            NoEligibleAgentError: If the worker registry is empty.
        """
        warnings: list[str] = []
        job, document, options = self._start_job(request, warnings)
        context = PassContext(
            job_id=job.id,
            cycle=document.cycle,
            max_iterations=options.max_iterations,
            dry_run=options.dry_run,
            rate_agents=options.rate_agents,
            status_filter=options.status_filter,
            agent_overrides=options.agent_overrides,
            warnings=warnings,
            record=lambda checkpoint: self._record(document, checkpoint),
            handoff_index=self._existing_handoffs(job.id),
        )

        try:
            for check in self.health_monitor.run_checks():
                if check.warning:
                    warnings.append(check.warning)
                if check.check_name == "worker_registry" and not self.registry.list_candidates():
                    raise NoEligibleAgentError(check.warning or check.message, empty_registry=True)

            for key in options.request.task_keys:
                document.tasks.setdefault(key, TaskProgress(task_key=key))
            self.store.save_state(document)

            final_state = self._run_cycles(job, document, options, context)
            if final_state is JobState.COMPLETED and any(
                p.status is ProgressStatus.FAILED for p in document.tasks.values()
            ):
                # failed tasks keep the job resumable
                final_state = JobState.FAILED
        except Exception as exc:
            logger.error("Job %s failed: %s", job.id, exc, exc_info=True)
            self._finish(job, document, JobState.FAILED, context, error=str(exc))
            raise

        summary = self._finish(job, document, final_state, context)
        self._notify(f"[DONE] Job {job.id}: {final_state.value}")
        return summary

    def _resolve(self, request: JobRequest) -> RunOptions:
        orchestrator = self.config.orchestrator
        overrides = {
            phase: agent
            for phase in Phase
            if (agent := request.agent_override(phase)) is not None
        }
        return RunOptions(
            request=request,
            max_iterations=request.max_iterations if request.max_iterations is not None else orchestrator.max_iterations,
            max_cycles=request.max_cycles if request.max_cycles is not None else orchestrator.max_cycles,
            limit=request.limit if request.limit is not None else orchestrator.limit,
            status_filter=list(request.status_filter or orchestrator.status_filter),
            dry_run=request.dry_run if request.dry_run is not None else orchestrator.dry_run,
            rate_agents=request.rate_agents if request.rate_agents is not None else orchestrator.rate_agents,
            escalate_on_no_change=(
                request.escalate_on_no_change
                if request.escalate_on_no_change is not None
                else orchestrator.escalate_on_no_change
            ),
            agent_overrides=overrides,
        )

    def _start_job(
        self, request: JobRequest, warnings: list[str]
    ) -> tuple[JobRecord, JobStateDocument, RunOptions]:
        if request.resume_job_id:
            job, manifest = self.store.validate_resume(request.resume_job_id, COMMAND_NAME)
            stored = dict(manifest.payload.get("request", {}))
            changes = request.model_dump(exclude_unset=True, exclude={"resume_job_id"})
            options = self._resolve(JobRequest(**{**stored, **changes}))
            run_id = str(uuid.uuid4())
            job = self.store.update_job(job.id, state=JobState.RUNNING, command_run_id=run_id, error_summary=None)
            document = self.store.load_state(job.id) or JobStateDocument(job_id=job.id, command_run_id=run_id)
            document.command_run_id = run_id
            self.classifier.escalate_on_no_change = options.escalate_on_no_change
            self.classifier.reconcile_on_resume(document.tasks, self.backlog, options.max_iterations, warnings)
            for message in warnings:
                logger.warning(message)
            logger.info("Resuming job %s at cycle %d (%d task records)", job.id, document.cycle, len(document.tasks))
            resumed = True
        else:
            options = self._resolve(request)
            job = self.store.create_job(
                COMMAND_NAME,
                payload={"request": request.model_dump(mode="json", exclude={"resume_job_id"})},
            )
            document = JobStateDocument(job_id=job.id, command_run_id=job.command_run_id)
            self.classifier.escalate_on_no_change = options.escalate_on_no_change
            resumed = False

        self.store.save_state(document)
        self._record(document, JobStarted(
            job_id=job.id,
            cycle=document.cycle,
            command_run_id=document.command_run_id,
            resumed=resumed,
        ))
        self._notify(f"[JOB] {'Resumed' if resumed else 'Started'} {job.id}")
        return job, document, options

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _run_cycles(
        self,
        job: JobRecord,
        document: JobStateDocument,
        options: RunOptions,
        context: PassContext,
    ) -> JobState:
        explicit = set(options.request.task_keys)
        dispatched_keys = {key for key, progress in document.tasks.items() if progress.attempts > 0}
        cycles_run = 0

        while options.max_cycles is None or cycles_run < options.max_cycles:
            if not self.health_monitor.check_cancellation(job.id).passed:
                return JobState.CANCELLED

            document.cycle += 1
            cycles_run += 1
            context.cycle = document.cycle
            self._notify(f"[CYCLE] {document.cycle}")

            if not options.dry_run:
                self.classifier.reopen_blocked(
                    document.tasks, self.backlog, options.request.task_keys, options.max_iterations, context.warnings,
                )

            plan = self.task_selector.select_eligible(SelectionFilters(
                project_key=options.request.project_key,
                epic_key=options.request.epic_key,
                story_key=options.request.story_key,
                task_keys=options.request.task_keys,
                status_filter=options.status_filter,
            ))
            for message in plan.warnings:
                context.warn(message)
            for blocked in plan.blocked:
                if blocked.key in explicit:
                    continue
                progress = document.tasks.setdefault(blocked.key, TaskProgress(task_key=blocked.key))
                if progress.status in (ProgressStatus.PENDING, ProgressStatus.IN_PROGRESS):
                    progress.status = ProgressStatus.SKIPPED
                    progress.last_error = DEPENDENCY_BLOCKED
                    context.warn(f"Task {blocked.key} blocked by dependencies; skipping this cycle.")

            queue, cooling = self._eligible(plan.ordered, document, context)
            queue = self._prioritize_feedback(queue, document)
            self.store.update_job(job.id, cycle=document.cycle, total_items=len(queue), processed_items=0)
            self.store.save_state(document)

            attempted: list[str] = []
            processed = 0
            cancelled = False
            for task in queue:
                if options.limit is not None and task.key not in dispatched_keys and len(dispatched_keys) >= options.limit:
                    logger.debug("Limit %d reached; not starting %s", options.limit, task.key)
                    continue
                if not self.health_monitor.check_cancellation(job.id).passed:
                    cancelled = True
                    break

                progress = document.tasks.setdefault(task.key, TaskProgress(task_key=task.key))
                if progress.status is ProgressStatus.SKIPPED:
                    progress.status = ProgressStatus.PENDING
                    progress.last_error = None
                if options.max_iterations is not None and progress.attempts >= options.max_iterations:
                    self._exhaust(progress, options.max_iterations, context)
                    continue

                self._notify(f"[TASK] {task.key} (attempt {progress.attempts + 1})")
                result = self.pipeline.run_pass(task, progress, context)
                if result.attempted:
                    attempted.append(task.key)
                    dispatched_keys.add(task.key)
                processed += 1
                self.store.update_job(job.id, processed_items=processed)
                self.store.save_state(document)
                self._notify(f"  {task.key}: {result.outcome.value}" + (f" ({result.reason})" if result.reason else ""))

            self._record(document, CycleFinished(job_id=job.id, cycle=document.cycle, dispatched=attempted))
            if cancelled:
                return JobState.CANCELLED

            if not attempted:
                if cooling:
                    logger.info("No tasks attempted in cycle %d; %d task(s) cooling down", document.cycle, len(cooling))
                    continue
                context.warn("No tasks attempted in this cycle; stopping to avoid infinite loop.")
                break
        else:
            logger.info("Reached max cycles (%d) for job %s", options.max_cycles, job.id)

        return JobState.COMPLETED

    def _eligible(
        self, ordered: list[BacklogTask], document: JobStateDocument, context: PassContext
    ) -> tuple[list[BacklogTask], list[str]]:
        queue: list[BacklogTask] = []
        cooling: list[str] = []
        for task in ordered:
            progress = document.tasks.get(task.key)
            if progress is not None:
                if progress.is_terminal:
                    continue
                if progress.status is ProgressStatus.SKIPPED and progress.last_error != DEPENDENCY_BLOCKED:
                    continue
                if progress.cooldown_until_cycle is not None and context.cycle <= progress.cooldown_until_cycle:
                    logger.info("Task %s cooling down until after cycle %d", task.key, progress.cooldown_until_cycle)
                    cooling.append(task.key)
                    continue
            queue.append(task)
        return queue, cooling

    @staticmethod
    def _prioritize_feedback(queue: list[BacklogTask], document: JobStateDocument) -> list[BacklogTask]:
        """Tasks whose last review/verify asked for changes go first; order is otherwise kept."""
        def has_feedback(task: BacklogTask) -> bool:
            progress = document.tasks.get(task.key)
            return progress is not None and progress.has_pending_feedback

        return [t for t in queue if has_feedback(t)] + [t for t in queue if not has_feedback(t)]

    def _exhaust(self, progress: TaskProgress, max_iterations: int, context: PassContext) -> None:
        progress.status = ProgressStatus.FAILED
        progress.last_error = MAX_ITERATIONS_REACHED
        context.warn(f"Task {progress.task_key} hit max iterations ({max_iterations}).")
        context.record(TaskTerminal(
            job_id=context.job_id,
            cycle=context.cycle,
            task_key=progress.task_key,
            status=progress.status,
            attempts=progress.attempts,
            reason=MAX_ITERATIONS_REACHED,
        ))

    # ------------------------------------------------------------------
    # Persistence and summary
    # ------------------------------------------------------------------

    def _record(self, document: JobStateDocument, checkpoint: Any) -> None:
        with self._record_lock:
            self.store.save_state(document)
            self.store.append_checkpoint(checkpoint)

    def _existing_handoffs(self, job_id: str) -> int:
        directory = self.store.handoff_dir(job_id)
        if not directory.exists():
            return 0
        return len(list(directory.glob("*.md")))

    def _finish(
        self,
        job: JobRecord,
        document: JobStateDocument,
        state: JobState,
        context: PassContext,
        error: Optional[str] = None,
    ) -> JobResult:
        summaries = [self._summarize(progress) for progress in document.tasks.values()]
        failed = [s.task_key for s in summaries if s.status is ProgressStatus.FAILED]
        skipped = [s.task_key for s in summaries if s.status is ProgressStatus.SKIPPED]
        unfinished = [s for s in summaries if s.status is not ProgressStatus.COMPLETED]

        if error is None and unfinished:
            error = f"{len(unfinished)} task(s) not fully completed"
        # a cancel that lands after the last poll still wins
        state = self.store.update_job(job.id, state=state, cycle=document.cycle, error_summary=error).state
        self._record(document, JobFinished(job_id=job.id, cycle=document.cycle, state=state, error=error))

        metrics = self.metrics.get_summary()
        logger.info(
            "Job %s %s after %d cycle(s): %d task(s), %d failed, %d skipped, %s tokens",
            job.id, state.value, document.cycle, len(summaries), len(failed), len(skipped),
            metrics.get("total_tokens", 0),
        )
        return JobResult(
            job_id=job.id,
            command_run_id=document.command_run_id,
            state=state,
            cycles=document.cycle,
            tasks=summaries,
            warnings=list(context.warnings),
            failed=failed,
            skipped=skipped,
        )

    @staticmethod
    def _summarize(progress: TaskProgress) -> TaskSummary:
        return TaskSummary(
            task_key=progress.task_key,
            status=progress.status,
            attempts=progress.attempts,
            last_phase=progress.last_phase,
            last_decision=progress.last_decision,
            last_error=progress.last_error,
            reason=describe_progress(progress),
            chosen_agents=dict(progress.chosen_agents),
            ratings=list(progress.ratings),
        )


def describe_progress(progress: TaskProgress) -> Optional[str]:
    """Human-readable reason for a task that did not complete normally."""
    if progress.status is ProgressStatus.COMPLETED:
        return progress.last_error
    if progress.status is ProgressStatus.FAILED:
        phase = f" in {progress.last_phase.value}" if progress.last_phase else ""
        return f"failed{phase} after {progress.attempts} attempt(s): {progress.last_error or 'unknown'}"
    if progress.status is ProgressStatus.SKIPPED:
        return f"skipped: {progress.last_error or 'unknown'}"
    if progress.attempts == 0:
        return "not attempted"
    if progress.cooldown_until_cycle is not None:
        return f"cooling down after {progress.last_error or 'failure'}"
    return f"pending after {progress.attempts} attempt(s): {progress.last_error or 'unknown'}"

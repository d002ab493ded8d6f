"""CLI entrypoint for Triad."""

from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from triad.core.config import AppConfig, load_config
from triad.core.exceptions import ConfigError, StateError, TriadError
from triad.core.factory import ComponentFactory
from triad.core.models import JobRequest, JobResult, ProgressStatus
from triad.orchestrator.complexity import normalize_discipline
from triad.orchestrator.selector import AgentSelector, SelectionRequest
from triad.state.store import JobStateStore
from triad.workers.registry import FileWorkerRegistry

# Most recently started job, for the interrupt hint
_active_job_id: str | None = None


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C with a resume hint instead of a bare traceback."""
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_job_id:
        click.echo(f"  Job ID: {_active_job_id}")
    click.echo(
        "\nJob state is checkpointed on disk. Resume with:\n"
        f"  triad resume {_active_job_id or '<job-id>'} --backlog ... --registry ..."
    )
    sys.exit(130)


def _setup_logging(verbose: bool = False, config_dir: Optional[Path] = None, env: Optional[str] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    try:
        config = load_config(config_dir=config_dir, env=env)
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _load_config(ctx: click.Context) -> AppConfig:
    try:
        config = load_config(config_dir=ctx.obj.get("config_dir"), env=ctx.obj.get("env"))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    state_dir = ctx.obj.get("state_dir")
    if state_dir is not None:
        config.state.state_dir = str(state_dir)
    return config


def _open_store(ctx: click.Context) -> JobStateStore:
    return JobStateStore(Path(_load_config(ctx).state.state_dir))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def _progress(message: str) -> None:
    """CLI progress callback with styled output."""
    global _active_job_id
    if message.startswith("[JOB]"):
        _active_job_id = message.split()[-1]
        click.echo(click.style(message, bold=True))
    elif message.startswith("[TASK]"):
        click.echo(click.style(message, fg="cyan"))
    elif message.startswith("[DONE]"):
        click.echo(click.style(message, fg="green", bold=True))
    elif "failed" in message or "cooldown" in message:
        click.echo(click.style(message, fg="red"))
    elif "completed" in message:
        click.echo(click.style(message, fg="green"))
    else:
        click.echo(message)


def _echo_summary(result: JobResult) -> None:
    counts = {status: 0 for status in ProgressStatus}
    for task in result.tasks:
        counts[task.status] += 1
    click.echo(
        click.style("\nJob summary:", bold=True) + "\n"
        f"  Job ID:     {result.job_id}\n"
        f"  Run ID:     {result.command_run_id}\n"
        f"  State:      {result.state.value}\n"
        f"  Cycles:     {result.cycles}\n"
        f"  Completed:  {counts[ProgressStatus.COMPLETED]}\n"
        f"  Failed:     {counts[ProgressStatus.FAILED]}\n"
        f"  Skipped:    {counts[ProgressStatus.SKIPPED]}\n"
        f"  Pending:    {counts[ProgressStatus.PENDING] + counts[ProgressStatus.IN_PROGRESS]}"
    )
    for task in result.tasks:
        if task.status is not ProgressStatus.COMPLETED and task.reason:
            click.echo(click.style(f"  {task.task_key}: {task.reason}", fg="yellow"))
    for warning in result.warnings:
        click.echo(click.style(f"  [WARN] {warning}", fg="yellow"))


def _run_job(ctx: click.Context, backlog_path: Path, registry_path: Path, request: JobRequest) -> JobResult:
    config = _load_config(ctx)
    try:
        bundle = ComponentFactory.create(
            backlog_path=backlog_path,
            registry_path=registry_path,
            config=config,
            progress_callback=_progress,
        )
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    with bundle.scheduler as scheduler:
        try:
            return scheduler.run(request)
        except TriadError as exc:
            raise click.ClickException(
                f"{exc}\n"
                "Check logs with --verbose for details."
            ) from exc


_backlog_option = click.option(
    "--backlog",
    "backlog_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the YAML backlog file.",
)
_registry_option = click.option(
    "--registry",
    "registry_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the YAML worker registry.",
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml and environment overlays.",
)
@click.option("--env", required=False, default=None, help="Config overlay name (loads <env>.yaml).")
@click.option(
    "--state-dir",
    required=False,
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Override the job state directory.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str], state_dir: Optional[Path]) -> None:
    """Triad: produce → review → verify task pipeline orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    ctx.obj["state_dir"] = state_dir
    _setup_logging(verbose=verbose, config_dir=config_dir, env=env)
    signal.signal(signal.SIGINT, _sigint_handler)


@cli.command("run")
@_backlog_option
@_registry_option
@click.option("--task", "task_keys", multiple=True, help="Task key to run (repeatable).")
@click.option("--project", "project_key", default=None, help="Only tasks of this project.")
@click.option("--epic", "epic_key", default=None, help="Only tasks of this epic.")
@click.option("--story", "story_key", default=None, help="Only tasks of this story.")
@click.option("--status", "status_filter", multiple=True, help="Backlog status to select (repeatable).")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max distinct tasks to dispatch.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None, help="Max passes per task.")
@click.option("--max-cycles", type=click.IntRange(min=1), default=None, help="Max scheduler cycles.")
@click.option("--dry-run", is_flag=True, default=False, help="Run phases without changing backlog state.")
@click.option("--rate-agents", is_flag=True, default=False, help="Ask workers to rate the agent after each phase.")
@click.option("--produce-agent", default=None, help="Force the produce agent.")
@click.option("--review-agent", default=None, help="Force the review agent.")
@click.option("--verify-agent", default=None, help="Force the verify agent.")
@click.pass_context
def run_command(
    ctx: click.Context,
    backlog_path: Path,
    registry_path: Path,
    task_keys: tuple[str, ...],
    project_key: Optional[str],
    epic_key: Optional[str],
    story_key: Optional[str],
    status_filter: tuple[str, ...],
    limit: Optional[int],
    max_iterations: Optional[int],
    max_cycles: Optional[int],
    dry_run: bool,
    rate_agents: bool,
    produce_agent: Optional[str],
    review_agent: Optional[str],
    verify_agent: Optional[str],
) -> None:
    """Start a new job over the selected backlog tasks."""
    fields: dict[str, Any] = {
        "task_keys": list(task_keys),
        "project_key": project_key,
        "epic_key": epic_key,
        "story_key": story_key,
        "status_filter": list(status_filter),
        "limit": limit,
        "max_iterations": max_iterations,
        "max_cycles": max_cycles,
        "dry_run": dry_run or None,
        "rate_agents": rate_agents or None,
        "produce_agent": produce_agent,
        "review_agent": review_agent,
        "verify_agent": verify_agent,
    }
    request = JobRequest(**{name: value for name, value in fields.items() if value not in (None, [])})
    result = _run_job(ctx, backlog_path, registry_path, request)
    _echo_summary(result)


@cli.command("resume")
@click.argument("job_id")
@_backlog_option
@_registry_option
@click.option("--max-iterations", type=click.IntRange(min=1), default=None, help="Raise the per-task pass budget.")
@click.option("--max-cycles", type=click.IntRange(min=1), default=None, help="Max scheduler cycles for this run.")
@click.pass_context
def resume_command(
    ctx: click.Context,
    job_id: str,
    backlog_path: Path,
    registry_path: Path,
    max_iterations: Optional[int],
    max_cycles: Optional[int],
) -> None:
    """Resume an interrupted or failed job from its checkpoints."""
    fields: dict[str, Any] = {"resume_job_id": job_id}
    if max_iterations is not None:
        fields["max_iterations"] = max_iterations
    if max_cycles is not None:
        fields["max_cycles"] = max_cycles
    result = _run_job(ctx, backlog_path, registry_path, JobRequest(**fields))
    _echo_summary(result)


@cli.command("cancel")
@click.argument("job_id")
@click.option("--reason", default=None, help="Reason recorded on the job.")
@click.pass_context
def cancel_command(ctx: click.Context, job_id: str, reason: Optional[str]) -> None:
    """Request cancellation; a running job stops at its next task boundary."""
    store = _open_store(ctx)
    try:
        job = store.cancel_job(job_id, reason=reason)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Job {job.id} marked {job.state.value}.")


@cli.command("jobs")
@click.pass_context
def jobs_command(ctx: click.Context) -> None:
    """List known jobs."""
    store = _open_store(ctx)
    rows = [
        {
            "job_id": job.id,
            "command": job.command_name,
            "state": job.state.value,
            "cycle": job.cycle,
            "processed_items": job.processed_items,
            "total_items": job.total_items,
            "error_summary": job.error_summary,
            "updated_at": job.updated_at.isoformat(),
        }
        for job in store.list_jobs()
    ]
    _echo_json({"jobs": rows, "count": len(rows)})


@cli.command("show")
@click.argument("job_id")
@click.pass_context
def show_command(ctx: click.Context, job_id: str) -> None:
    """Show a job record and its per-task progress."""
    store = _open_store(ctx)
    job = store.get_job(job_id)
    if job is None:
        raise click.ClickException(
            f"Job not found: {job_id}\n"
            "List available jobs with: triad jobs"
        )
    try:
        document = store.load_state(job_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    tasks = {}
    if document is not None:
        tasks = {key: progress.model_dump(mode="json") for key, progress in document.tasks.items()}
    _echo_json({"job": job.model_dump(mode="json"), "tasks": tasks})


@cli.command("checkpoints")
@click.argument("job_id")
@click.pass_context
def checkpoints_command(ctx: click.Context, job_id: str) -> None:
    """List a job's checkpoints in sequence order."""
    store = _open_store(ctx)
    try:
        checkpoints = store.list_checkpoints(job_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    for checkpoint in checkpoints:
        click.echo(f"{checkpoint.seq:06d}  cycle={checkpoint.cycle}  {checkpoint.stage}")
    click.echo(f"{len(checkpoints)} checkpoint(s)")


@cli.command("rank-agents")
@_registry_option
@click.option("--capability", "capabilities", multiple=True, help="Required capability (repeatable).")
@click.option("--discipline", default=None, help="Task discipline used for usage scoring.")
@click.option("--complexity", type=click.IntRange(min=1, max=10), default=None, help="Show the pick for this complexity.")
@click.pass_context
def rank_agents_command(
    ctx: click.Context,
    registry_path: Path,
    capabilities: tuple[str, ...],
    discipline: Optional[str],
    complexity: Optional[int],
) -> None:
    """Show how the selector scores the registered agents."""
    config = _load_config(ctx)
    selector = AgentSelector(FileWorkerRegistry(registry_path), config.selector.model_copy(update={"exploration_rate": 0.0}))
    request = SelectionRequest(
        required_capabilities=list(capabilities),
        discipline=normalize_discipline(discipline),
        complexity=complexity,
    )
    try:
        ranked = selector.rank(request)
        decision = selector.select(request) if complexity is not None else None
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    rows = [
        {
            "agent_id": scored.agent_id,
            "quality": scored.quality,
            "reasoning": scored.reasoning,
            "usage_score": scored.usage_score,
            "cost_per_million": None if scored.cost == float("inf") else scored.cost,
            "max_complexity": scored.max_complexity,
        }
        for scored in ranked
    ]
    payload: dict[str, Any] = {"agents": rows, "count": len(rows)}
    if decision is not None:
        payload["selected"] = decision.model_dump(mode="json")
    _echo_json(payload)


def main() -> None:
    """Entry point used by the `triad` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()

"""Phase workers that shell out to an external agent command.

Each phase is configured with a command template such as
``my-agent produce --task {task_key} --attempt {attempt}``. The handoff
document is written to the command's stdin and TRIAD_* environment
variables describe the request. The command prints one JSON object on
stdout, which is parsed as the phase result:

    {"outcome": "succeeded", "tokens_used": 1234, "summary": "..."}
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from triad.core.exceptions import ConfigError, WorkerError, WorkerTimeoutError
from triad.core.models import Phase, PhaseRequest, PhaseResult, PhaseStatus
from triad.workers.base import WORKER_ERROR, BacklogStore, PhaseWorker, advance_backlog

logger = logging.getLogger("triad.workers.command")

DEFAULT_TIMEOUT = 1800  # seconds
MAX_OUTPUT_BYTES = 1_048_576
AGENT_TIMEOUT = "agent_timeout"
MALFORMED_OUTPUT = "malformed_output"
TEMPLATE_FIELDS = ("task_key", "phase", "attempt", "agent_id", "job_id")


@dataclass
class ShellResult:
    """Structured result from a worker command."""
    command: str
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0


def run_command(
    command: list[str],
    stdin: str = "",
    timeout: int = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> ShellResult:
    """Run a command with timeout and output capture.

    Raises:
        WorkerTimeoutError: If the command exceeds the timeout.
        WorkerError: If the command can't be started.
    """
    cmd_str = shlex.join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%ds)", cmd_str, cwd, timeout)

    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            command,
            input=stdin,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=run_env,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("Command timed out after %ds: %s", timeout, cmd_str)
        raise WorkerTimeoutError(f"Command timed out after {timeout}s: {cmd_str}") from e
    except FileNotFoundError as e:
        raise WorkerError(f"Command not found: {e}") from e
    except OSError as e:
        raise WorkerError(f"Failed to run command: {e}") from e

    stdout = _truncate_output(result.stdout)
    stderr = _truncate_output(result.stderr)
    logger.debug(
        "Command finished: rc=%d stdout=%d chars stderr=%d chars",
        result.returncode, len(stdout), len(stderr),
    )
    return ShellResult(command=cmd_str, return_code=result.returncode, stdout=stdout, stderr=stderr)


def _truncate_output(text: str) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return text
    return encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore") + "\n... [output truncated]"


def parse_result(stdout: str) -> PhaseResult:
    """Parse the last JSON object line printed by a worker command.

    Raises:
        ValueError: If no line parses as a valid result object.
    """
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    for line in reversed(lines):
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict):
            continue
        try:
            return PhaseResult(**data)
        except ValidationError as exc:
            raise ValueError(f"invalid result object: {exc.error_count()} error(s)") from exc
    raise ValueError("no JSON result object on stdout")


def _render(template: str, **values: object) -> list[str]:
    return shlex.split(template.format(**values))


def _check_template(phase: Phase, template: str) -> None:
    """Render `template` once with sample values so bad placeholders fail at startup.

    Raises:
        ConfigError: On an unknown placeholder, a positional field, unbalanced
            braces or unbalanced quotes. Literal braces must be doubled.
    """
    sample = {name: name for name in TEMPLATE_FIELDS}
    try:
        _render(template, **sample)
    except KeyError as e:
        raise ConfigError(
            f"Unknown placeholder {e} in {phase.value} command template; "
            f"allowed: {', '.join(TEMPLATE_FIELDS)} (double literal braces)"
        ) from e
    except (AttributeError, IndexError, ValueError) as e:
        raise ConfigError(f"Invalid {phase.value} command template {template!r}: {e}") from e


class CommandPhaseWorker(PhaseWorker):
    """Runs one phase by invoking a configured command.

    Injected dependencies:
        backlog: When given, a successful phase advances the task's backlog
            status. Leave unset when the command updates the tracker itself.
    """

    def __init__(
        self,
        phase: Phase,
        template: str,
        timeout_seconds: int = DEFAULT_TIMEOUT,
        backlog: Optional[BacklogStore] = None,
        cwd: Optional[str] = None,
    ):
        super().__init__(f"command-{phase.value}")
        if not template or not template.strip():
            raise ConfigError(f"Empty command template for phase {phase.value}")
        _check_template(phase, template)
        self.phase = phase
        self.template = template
        self.timeout_seconds = timeout_seconds
        self.backlog = backlog
        self.cwd = cwd

    def build_command(self, request: PhaseRequest) -> list[str]:
        return _render(
            self.template,
            task_key=request.task_key,
            phase=request.phase.value,
            attempt=request.attempt,
            agent_id=request.agent_id,
            job_id=request.job_id,
        )

    def build_env(self, request: PhaseRequest) -> dict[str, str]:
        env = {
            "TRIAD_JOB_ID": request.job_id,
            "TRIAD_TASK_KEY": request.task_key,
            "TRIAD_PHASE": request.phase.value,
            "TRIAD_ATTEMPT": str(request.attempt),
            "TRIAD_AGENT_ID": request.agent_id,
            "TRIAD_DRY_RUN": "1" if request.dry_run else "0",
            "TRIAD_RATE_AGENTS": "1" if request.rate_agents else "0",
            "TRIAD_AVOID_AGENTS": ",".join(request.hints.avoid_agents),
            "TRIAD_FORCE_STRONGER": "1" if request.hints.force_stronger else "0",
        }
        if request.hints.force_tier:
            env["TRIAD_FORCE_TIER"] = request.hints.force_tier
        return env

    def execute(self, request: PhaseRequest) -> PhaseResult:
        command = self.build_command(request)
        try:
            shell = run_command(
                command,
                stdin=request.handoff,
                timeout=self.timeout_seconds,
                env=self.build_env(request),
                cwd=self.cwd,
            )
        except WorkerTimeoutError as e:
            return PhaseResult(outcome=PhaseStatus.FAILED, notes=AGENT_TIMEOUT, summary=str(e))

        try:
            result = parse_result(shell.stdout)
        except ValueError as e:
            if not shell.success:
                return PhaseResult(
                    outcome=PhaseStatus.FAILED,
                    notes=WORKER_ERROR,
                    summary=f"exit code {shell.return_code}: {shell.stderr.strip()[-500:]}",
                )
            return PhaseResult(outcome=PhaseStatus.FAILED, error=f"{MALFORMED_OUTPUT}: {e}")

        if not shell.success and result.outcome is PhaseStatus.SUCCEEDED:
            self.logger.warning(
                "[%s] %s exited %d but reported success; treating as failed",
                self.name, shell.command, shell.return_code,
            )
            result = result.model_copy(update={"outcome": PhaseStatus.FAILED, "notes": result.notes or WORKER_ERROR})

        if self.backlog is not None and not request.dry_run:
            advance_backlog(self.backlog, request.task_key, self.phase, result, rewind=True)
        return result

"""Tests for triad/workers/command.py — phase workers backed by shell commands."""

import pytest

from triad.core.exceptions import ConfigError, WorkerError, WorkerTimeoutError
from triad.core.models import (
    EscalationHints,
    Phase,
    PhaseRequest,
    PhaseStatus,
    ReviewDecision,
)
from triad.workers.command import (
    CommandPhaseWorker,
    ShellResult,
    _truncate_output,
    parse_result,
    run_command,
)
from triad.workers.memory import InMemoryBacklog
from tests.conftest import make_task


def _request(phase: Phase = Phase.PRODUCE, **fields) -> PhaseRequest:
    fields.setdefault("job_id", "job-1")
    fields.setdefault("task_key", "T-1")
    fields.setdefault("attempt", 1)
    fields.setdefault("agent_id", "cheap")
    return PhaseRequest(phase=phase, **fields)


def _script(tmp_path, body: str) -> str:
    path = tmp_path / "agent.sh"
    path.write_text(body)
    return str(path)


class TestShellResult:
    def test_success_property(self):
        assert ShellResult(command="true", return_code=0, stdout="", stderr="").success is True

    def test_failure_property(self):
        assert ShellResult(command="false", return_code=1, stdout="", stderr="boom").success is False


class TestRunCommand:
    def test_echo_command(self):
        result = run_command(["echo", "hello"])
        assert result.success
        assert result.stdout.strip() == "hello"
        assert result.command == "echo hello"

    def test_stdin_passed(self):
        result = run_command(["cat"], stdin="handoff text")
        assert result.stdout == "handoff text"

    def test_captures_return_code_and_stderr(self):
        result = run_command(["sh", "-c", "echo oops >&2; exit 3"])
        assert result.return_code == 3
        assert "oops" in result.stderr

    def test_env_merged(self):
        result = run_command(["sh", "-c", "echo $TRIAD_TEST_VALUE"], env={"TRIAD_TEST_VALUE": "xyz"})
        assert result.stdout.strip() == "xyz"

    def test_cwd_parameter(self, tmp_path):
        result = run_command(["pwd"], cwd=str(tmp_path))
        assert str(tmp_path) in result.stdout

    def test_timeout_raises(self):
        with pytest.raises(WorkerTimeoutError, match="timed out"):
            run_command(["sleep", "5"], timeout=1)

    def test_nonexistent_command_raises(self):
        with pytest.raises(WorkerError, match="Command not found"):
            run_command(["completely_nonexistent_binary_xyz"])

    def test_truncate_output(self):
        assert _truncate_output("short") == "short"
        assert _truncate_output("x" * 2_000_000).endswith("[output truncated]")


class TestParseResult:
    def test_last_json_line_wins(self):
        stdout = 'log line\n{"outcome": "failed", "notes": "a"}\n{"outcome": "succeeded", "tokens_used": 7}\n'
        result = parse_result(stdout)
        assert result.outcome is PhaseStatus.SUCCEEDED
        assert result.tokens_used == 7

    def test_skips_broken_lines(self):
        result = parse_result('{"decision": "approve"}\n{not json\n[1, 2]\n')
        assert result.decision is ReviewDecision.APPROVE

    def test_no_json(self):
        with pytest.raises(ValueError, match="no JSON result"):
            parse_result("all done\n")

    def test_invalid_object(self):
        with pytest.raises(ValueError, match="invalid result object"):
            parse_result('{"outcome": "exploded"}')


class TestCommandPhaseWorker:
    def test_empty_template_rejected(self):
        with pytest.raises(ConfigError, match="Empty command template"):
            CommandPhaseWorker(Phase.PRODUCE, "  ")

    @pytest.mark.parametrize("template", [
        "agent --meta '{\"task\": \"x\"}'",
        "agent {task}",
        "agent {}",
        "agent }",
        "agent {task_key.nope}",
        "agent '{task_key}",
    ])
    def test_invalid_template_rejected_at_startup(self, template):
        with pytest.raises(ConfigError, match="produce command template"):
            CommandPhaseWorker(Phase.PRODUCE, template)

    def test_doubled_braces_are_literal(self):
        worker = CommandPhaseWorker(Phase.PRODUCE, "agent --meta '{{\"task\": \"{task_key}\"}}'")
        assert worker.build_command(_request()) == ["agent", "--meta", '{"task": "T-1"}']

    def test_build_command(self):
        worker = CommandPhaseWorker(Phase.REVIEW, "agent {phase} --task {task_key} --try {attempt} --as '{agent_id}'")
        command = worker.build_command(_request(Phase.REVIEW, attempt=2, agent_id="big model"))
        assert command == ["agent", "review", "--task", "T-1", "--try", "2", "--as", "big model"]

    def test_build_env(self):
        worker = CommandPhaseWorker(Phase.PRODUCE, "agent")
        env = worker.build_env(_request(
            hints=EscalationHints(avoid_agents=["a", "b"], force_stronger=True, force_tier="strong"),
            dry_run=True,
        ))
        assert env["TRIAD_TASK_KEY"] == "T-1"
        assert env["TRIAD_DRY_RUN"] == "1"
        assert env["TRIAD_AVOID_AGENTS"] == "a,b"
        assert env["TRIAD_FORCE_STRONGER"] == "1"
        assert env["TRIAD_FORCE_TIER"] == "strong"

    def test_success_advances_backlog(self, tmp_path):
        script = _script(tmp_path, (
            'cat > "$0.handoff"\n'
            'echo "phase=$TRIAD_PHASE attempt=$TRIAD_ATTEMPT" > "$0.env"\n'
            'echo "working on $1"\n'
            'echo \'{"outcome": "succeeded", "tokens_used": 42, "summary": "done"}\'\n'
        ))
        backlog = InMemoryBacklog([make_task("T-1")])
        worker = CommandPhaseWorker(Phase.PRODUCE, f"sh {script} {{task_key}}", backlog=backlog)

        result = worker.run(_request(handoff="# T-1\n", attempt=3))

        assert result.outcome is PhaseStatus.SUCCEEDED
        assert result.tokens_used == 42
        assert backlog.get_task("T-1").status == "ready_to_review"
        assert (tmp_path / "agent.sh.handoff").read_text() == "# T-1\n"
        assert (tmp_path / "agent.sh.env").read_text().strip() == "phase=produce attempt=3"

    def test_dry_run_leaves_backlog(self, tmp_path):
        script = _script(tmp_path, 'echo \'{"tokens_used": 5}\'\n')
        backlog = InMemoryBacklog([make_task("T-1")])
        worker = CommandPhaseWorker(Phase.PRODUCE, f"sh {script}", backlog=backlog)
        worker.run(_request(dry_run=True))
        assert backlog.get_task("T-1").status == "not_started"

    def test_fix_required_rewinds_backlog(self, tmp_path):
        script = _script(tmp_path, 'echo \'{"verify_outcome": "fix_required", "summary": "2 failing"}\'\n')
        backlog = InMemoryBacklog([make_task("T-1", status="ready_to_verify")])
        worker = CommandPhaseWorker(Phase.VERIFY, f"sh {script}", backlog=backlog)

        result = worker.run(_request(Phase.VERIFY))

        assert result.summary == "2 failing"
        assert backlog.get_task("T-1").status == "in_progress"

    def test_nonzero_exit_without_result(self, tmp_path):
        script = _script(tmp_path, "echo crashed >&2\nexit 2\n")
        worker = CommandPhaseWorker(Phase.PRODUCE, f"sh {script}")
        result = worker.run(_request())
        assert result.outcome is PhaseStatus.FAILED
        assert result.notes == "worker_error"
        assert result.summary == "exit code 2: crashed"

    def test_unparseable_output_is_hard_error(self, tmp_path):
        script = _script(tmp_path, "echo 'all good, trust me'\n")
        worker = CommandPhaseWorker(Phase.REVIEW, f"sh {script}")
        result = worker.run(_request(Phase.REVIEW))
        assert result.outcome is PhaseStatus.FAILED
        assert result.error.startswith("malformed_output")

    def test_nonzero_exit_overrides_reported_success(self, tmp_path):
        script = _script(tmp_path, 'echo \'{"outcome": "succeeded", "tokens_used": 3}\'\nexit 1\n')
        backlog = InMemoryBacklog([make_task("T-1")])
        worker = CommandPhaseWorker(Phase.PRODUCE, f"sh {script}", backlog=backlog)

        result = worker.run(_request())

        assert result.outcome is PhaseStatus.FAILED
        assert result.notes == "worker_error"
        assert backlog.get_task("T-1").status == "not_started"

    def test_timeout_reported_as_agent_timeout(self):
        worker = CommandPhaseWorker(Phase.PRODUCE, "sleep 5", timeout_seconds=1)
        result = worker.run(_request())
        assert result.outcome is PhaseStatus.FAILED
        assert result.notes == "agent_timeout"

    def test_missing_binary_becomes_worker_error(self):
        worker = CommandPhaseWorker(Phase.PRODUCE, "completely_nonexistent_binary_xyz")
        result = worker.run(_request())
        assert result.notes == "worker_error"
        assert "Command not found" in result.summary
        assert worker.get_metrics()["total_errors"] == 1

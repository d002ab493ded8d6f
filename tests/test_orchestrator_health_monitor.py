"""Tests for triad/orchestrator/health_monitor.py — pre-cycle checks."""

from triad.core.models import AgentHealth, Candidate
from triad.orchestrator.health_monitor import HealthCheck, HealthMonitor
from triad.state.store import COMMAND_NAME
from triad.workers.memory import InMemoryBacklog, StaticRegistry
from tests.conftest import make_task


class TestHealthCheck:
    def test_defaults(self):
        check = HealthCheck("x", passed=True)
        assert check.message == ""
        assert check.warning is None


class TestHealthMonitor:
    def test_all_pass(self, backlog, registry, store):
        checks = HealthMonitor(backlog, registry, store).run_checks()
        assert [c.check_name for c in checks] == ["expired_locks", "worker_registry"]
        assert all(c.passed for c in checks)
        assert all(c.warning is None for c in checks)

    def test_expired_locks_reported(self, registry, store):
        backlog = InMemoryBacklog([
            make_task("T-1", metadata={"lock_expires_at": "2001-01-01T00:00:00+00:00"}),
            make_task("T-2"),
        ])
        check = HealthMonitor(backlog, registry, store).sweep_expired_locks()
        assert check.passed
        assert check.warning == "Cleared 1 expired task lock(s): T-1"

    def test_empty_registry(self, backlog, store):
        check = HealthMonitor(backlog, StaticRegistry([]), store).check_registry()
        assert not check.passed
        assert "No agents available" in check.warning

    def test_all_unreachable(self, backlog, store):
        registry = StaticRegistry(
            [Candidate(agent_id="a"), Candidate(agent_id="b")],
            health={"a": AgentHealth.UNREACHABLE, "b": AgentHealth.UNREACHABLE},
        )
        check = HealthMonitor(backlog, registry, store).check_registry()
        assert not check.passed
        assert check.message == "All 2 registered agent(s) are unreachable"

    def test_degraded_counted(self, backlog, store):
        registry = StaticRegistry(
            [Candidate(agent_id="a"), Candidate(agent_id="b", health=AgentHealth.DEGRADED)],
        )
        check = HealthMonitor(backlog, registry, store).check_registry()
        assert check.passed
        assert check.message == "2 agent(s): 1 degraded, 0 unreachable"

    def test_cancellation(self, backlog, registry, store):
        monitor = HealthMonitor(backlog, registry, store)
        job = store.create_job(COMMAND_NAME)
        assert monitor.check_cancellation(job.id).passed
        store.cancel_job(job.id)
        assert not monitor.check_cancellation(job.id).passed

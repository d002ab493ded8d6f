"""Pre-cycle hygiene for Triad jobs.

Runs at job start and at the start of each cycle to catch problems before
dispatching work.

Checks:
1. Expired task locks: released and reported
2. Worker registry: empty, or nothing reachable
3. Cancellation: the job record was marked cancelled
"""

from __future__ import annotations

import logging

from triad.core.models import AgentHealth
from triad.state.store import JobStateStore
from triad.workers.base import BacklogStore, WorkerRegistry

logger = logging.getLogger("triad.orchestrator.health_monitor")


class HealthCheck:
    """Result of a single health check."""

    def __init__(
        self,
        check_name: str,
        passed: bool,
        message: str = "",
        warning: str | None = None,
    ):
        self.check_name = check_name
        self.passed = passed
        self.message = message
        self.warning = warning


class HealthMonitor:
    """Job-level checks run before work is dispatched.

    Injected dependencies:
        backlog: Backlog store that owns task locks.
        registry: Worker registry to probe.
        store: Job state store holding the job record.
    """

    def __init__(self, backlog: BacklogStore, registry: WorkerRegistry, store: JobStateStore):
        self.backlog = backlog
        self.registry = registry
        self.store = store

    def run_checks(self) -> list[HealthCheck]:
        """Checks run once at job start."""
        checks = [self.sweep_expired_locks(), self.check_registry()]
        failed = [c for c in checks if not c.passed]
        if failed:
            logger.warning(
                "Health checks: %d/%d failed: %s",
                len(failed), len(checks),
                ", ".join(c.check_name for c in failed),
            )
        else:
            logger.debug("Health checks: all %d passed", len(checks))
        return checks

    def sweep_expired_locks(self) -> HealthCheck:
        released = self.backlog.cleanup_expired_locks()
        if not released:
            return HealthCheck("expired_locks", passed=True, message="No expired task locks")
        message = f"Cleared {len(released)} expired task lock(s): {', '.join(released)}"
        logger.warning(message)
        return HealthCheck("expired_locks", passed=True, message=message, warning=message)

    def check_registry(self) -> HealthCheck:
        candidates = self.registry.list_candidates()
        if not candidates:
            return HealthCheck(
                "worker_registry",
                passed=False,
                message="No agents registered",
                warning="No agents available; register one in the worker registry",
            )
        health = self.registry.get_health()
        statuses = [AgentHealth(health.get(c.agent_id, c.health)) for c in candidates]
        unreachable = sum(1 for s in statuses if s is AgentHealth.UNREACHABLE)
        degraded = sum(1 for s in statuses if s is AgentHealth.DEGRADED)
        if unreachable == len(statuses):
            message = f"All {unreachable} registered agent(s) are unreachable"
            return HealthCheck("worker_registry", passed=False, message=message, warning=message)
        return HealthCheck(
            "worker_registry",
            passed=True,
            message=f"{len(statuses)} agent(s): {degraded} degraded, {unreachable} unreachable",
        )

    def check_cancellation(self, job_id: str) -> HealthCheck:
        if self.store.is_cancel_requested(job_id):
            logger.info("Job %s was cancelled; stopping", job_id)
            return HealthCheck("cancellation", passed=False, message=f"Job {job_id} cancelled")
        return HealthCheck("cancellation", passed=True, message="Not cancelled")

"""Phase metrics collector for Triad.

Records one entry per phase attempt:
  {task_key, phase, agent, attempt, started_at, completed_at, duration_seconds, tokens_used, status, reason}

Used for the per-job summary (tokens, durations, slowest phase).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional

from triad.core.models import Phase

logger = logging.getLogger("triad.orchestrator.metrics")


@dataclass
class PhaseMetric:
    """Single phase attempt."""
    task_key: str
    phase: Phase
    agent: str
    attempt: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    tokens_used: int = 0
    status: str = "pending"
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class PassRecord:
    """All phase attempts of one task pass."""
    task_key: str
    attempt: int
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    phases: list[PhaseMetric] = field(default_factory=list)
    outcome: str = "in_progress"

    @property
    def total_tokens(self) -> int:
        return sum(m.tokens_used for m in self.phases)

    @property
    def total_duration(self) -> float:
        return sum(m.duration_seconds for m in self.phases)

    @property
    def slowest_phase(self) -> Optional[Phase]:
        if not self.phases:
            return None
        return max(self.phases, key=lambda m: m.duration_seconds).phase


class PhaseMetrics:
    """Collects phase timing and token usage across a job."""

    def __init__(self):
        self._passes: list[PassRecord] = []
        self._current: Optional[PassRecord] = None

    def start_pass(self, task_key: str, attempt: int) -> PassRecord:
        record = PassRecord(task_key=task_key, attempt=attempt)
        self._current = record
        self._passes.append(record)
        return record

    def start_phase(self, task_key: str, phase: Phase, agent: str, attempt: int) -> PhaseMetric:
        metric = PhaseMetric(
            task_key=task_key,
            phase=phase,
            agent=agent,
            attempt=attempt,
            started_at=datetime.now(UTC),
        )
        if self._current:
            self._current.phases.append(metric)
        return metric

    def complete_phase(
        self,
        metric: PhaseMetric,
        status: str,
        tokens_used: int = 0,
        reason: Optional[str] = None,
    ) -> None:
        metric.completed_at = datetime.now(UTC)
        metric.status = status
        metric.tokens_used = tokens_used
        metric.reason = reason
        metric.duration_seconds = (metric.completed_at - metric.started_at).total_seconds()
        logger.debug(
            "Phase %s/%s by %s: status=%s, duration=%.2fs, tokens=%d",
            metric.task_key, metric.phase.value, metric.agent, status, metric.duration_seconds, tokens_used,
        )

    def complete_pass(self, outcome: str) -> Optional[PassRecord]:
        if self._current is None:
            return None
        record = self._current
        record.completed_at = datetime.now(UTC)
        record.outcome = outcome
        self._current = None
        logger.info(
            "Pass %d for %s: outcome=%s, duration=%.2fs, tokens=%d, slowest=%s",
            record.attempt,
            record.task_key,
            outcome,
            record.total_duration,
            record.total_tokens,
            record.slowest_phase.value if record.slowest_phase else "none",
        )
        return record

    def get_passes(self, task_key: Optional[str] = None) -> list[PassRecord]:
        if task_key:
            return [p for p in self._passes if p.task_key == task_key]
        return list(self._passes)

    def get_summary(self) -> dict:
        if not self._passes:
            return {"total_passes": 0}

        outcomes: dict[str, int] = {}
        tokens_by_phase: dict[str, int] = {}
        for record in self._passes:
            outcomes[record.outcome] = outcomes.get(record.outcome, 0) + 1
            for metric in record.phases:
                tokens_by_phase[metric.phase.value] = tokens_by_phase.get(metric.phase.value, 0) + metric.tokens_used

        return {
            "total_passes": len(self._passes),
            "total_tokens": sum(r.total_tokens for r in self._passes),
            "total_duration_seconds": round(sum(r.total_duration for r in self._passes), 2),
            "tokens_by_phase": tokens_by_phase,
            "outcomes": outcomes,
        }

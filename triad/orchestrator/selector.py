"""Agent candidate selector for Triad.

Ranks the registered workers able to run a phase and picks one for each
phase attempt. Selection is tiered by task complexity, gated by each
worker's declared max complexity, and occasionally explores a weaker
candidate so its quality signal stays fresh. All randomness comes from
one injected random.Random so runs can be replayed.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from triad.core.config import SelectorConfig
from triad.core.exceptions import NoEligibleAgentError
from triad.core.models import AgentDecision, AgentHealth, Candidate
from triad.orchestrator.complexity import (
    MAX_COMPLEXITY,
    REASONING_DISCIPLINES,
    normalize_complexity,
    score_usage,
)
from triad.workers.base import WorkerRegistry

logger = logging.getLogger("triad.orchestrator.selector")

STRONG_COMPLEXITY = 9
DEFAULT_QUALITY = 5.0


class SelectionRequest(BaseModel):
    required_capabilities: list[str] = Field(default_factory=list)
    discipline: Optional[str] = None
    complexity: Optional[float] = None
    avoid_agents: list[str] = Field(default_factory=list)
    force_stronger: bool = False
    force_tier: Optional[str] = None
    preferred_agent: Optional[str] = None


@dataclass
class ScoredCandidate:
    """A candidate with its selection-time scores."""
    candidate: Candidate
    quality: float
    reasoning: float
    usage_score: float
    cost: float
    max_complexity: int

    @property
    def agent_id(self) -> str:
        return self.candidate.agent_id

    @property
    def name(self) -> str:
        return self.candidate.name

    def matches(self, ref: str) -> bool:
        return ref in (self.candidate.agent_id, self.candidate.slug)


class AgentSelector:
    """Picks the worker for one phase attempt.

    Injected dependencies:
        registry: WorkerRegistry queried fresh on every selection.
        config: SelectorConfig with exploration and penalty settings.
        rng: random.Random used for every exploration draw.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        config: Optional[SelectorConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self.config = config or SelectorConfig()
        self.rng = rng if rng is not None else random.Random(self.config.seed)

    def list_candidates(
        self,
        required_capabilities: list[str],
        discipline: Optional[str],
    ) -> list[ScoredCandidate]:
        """Score every registered worker that has the capabilities and is reachable.

        Raises:
            NoEligibleAgentError: If the registry is empty or nothing qualifies.
        """
        candidates = self.registry.list_candidates()
        if not candidates:
            raise NoEligibleAgentError(
                "No agents available; register one in the worker registry",
                required_capabilities=required_capabilities,
                empty_registry=True,
            )
        health = self.registry.get_health()

        scored: list[ScoredCandidate] = []
        for candidate in candidates:
            missing = [cap for cap in required_capabilities if cap not in candidate.capabilities]
            if missing:
                continue
            status = AgentHealth(health.get(candidate.agent_id, candidate.health))
            if status is AgentHealth.UNREACHABLE:
                continue

            rating = candidate.rating or 0.0
            reasoning = candidate.reasoning_rating if candidate.reasoning_rating is not None else rating
            if discipline in REASONING_DISCIPLINES:
                quality = reasoning or rating or DEFAULT_QUALITY
            else:
                quality = rating or reasoning or DEFAULT_QUALITY
            if status is AgentHealth.DEGRADED:
                quality -= self.config.degraded_quality_penalty

            scored.append(ScoredCandidate(
                candidate=candidate,
                quality=quality,
                reasoning=reasoning,
                usage_score=score_usage(discipline, candidate.best_usage, candidate.capabilities),
                cost=candidate.cost_per_million if candidate.cost_per_million is not None else math.inf,
                max_complexity=candidate.max_complexity if candidate.max_complexity is not None else MAX_COMPLEXITY,
            ))

        if not scored:
            raise NoEligibleAgentError(
                f"No eligible agents with capabilities {required_capabilities}",
                required_capabilities=required_capabilities,
            )
        return scored

    def select(self, request: SelectionRequest) -> AgentDecision:
        """Pick one worker for a phase attempt.

        Args:
            request: Capabilities, discipline, complexity and escalation hints.

        Returns:
            AgentDecision with the pick, its scores and a rationale.

        Raises:
            NoEligibleAgentError: If no worker can run the phase.
        """
        complexity = normalize_complexity(request.complexity, self.config.default_complexity)
        notes: list[str] = []

        pool = self.list_candidates(request.required_capabilities, request.discipline)
        pool = self._drop_avoided(pool, request.avoid_agents, notes)

        if request.preferred_agent:
            preferred = next((s for s in pool if s.matches(request.preferred_agent)), None)
            if preferred is not None:
                return self._decision(
                    preferred,
                    f"Agent {preferred.name} was requested explicitly for this phase.",
                    notes,
                )
            notes.append(f"Requested agent {request.preferred_agent} is not eligible; selecting automatically.")

        gated = self._gate(pool, complexity, notes)

        if not request.force_stronger:
            explored = self._explore(pool, gated, complexity)
            if explored is not None:
                pick, rationale = explored
                return self._decision(pick, rationale, notes, explored=True)

        effective = complexity
        if request.force_stronger and complexity < STRONG_COMPLEXITY:
            effective = STRONG_COMPLEXITY
            notes.append(
                f"Escalated to {request.force_tier or 'strong'} tier: complexity {complexity} raised to {effective}."
            )
        pick, rationale = self._choose(gated, effective, request.discipline or "other")
        return self._decision(pick, rationale, notes)

    def rank(self, request: SelectionRequest) -> list[ScoredCandidate]:
        """All eligible candidates, best quality first."""
        pool = self.list_candidates(request.required_capabilities, request.discipline)
        return sorted(pool, key=lambda s: (-s.quality, -s.usage_score, s.cost))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _drop_avoided(
        pool: list[ScoredCandidate], avoid_agents: list[str], notes: list[str]
    ) -> list[ScoredCandidate]:
        if not avoid_agents:
            return pool
        kept = [s for s in pool if not any(s.matches(ref) for ref in avoid_agents)]
        if kept:
            return kept
        notes.append(f"All eligible agents are in the avoid list ({', '.join(avoid_agents)}); ignoring it.")
        return pool

    @staticmethod
    def _gate(pool: list[ScoredCandidate], complexity: int, notes: list[str]) -> list[ScoredCandidate]:
        rated = [s for s in pool if s.max_complexity >= complexity]
        if rated:
            return rated
        relaxed = [s for s in pool if s.max_complexity >= complexity - 1]
        if relaxed:
            notes.append(f"No agent rated for complexity {complexity}; relaxed gate to {complexity - 1}.")
            return relaxed
        notes.append(
            f"No agent rated for complexity {complexity} or {complexity - 1}; using the unfiltered pool."
        )
        return pool

    def _explore(
        self,
        pool: list[ScoredCandidate],
        gated: list[ScoredCandidate],
        complexity: int,
    ) -> Optional[tuple[ScoredCandidate, str]]:
        rate = self.config.exploration_rate
        if rate <= 0 or self.rng.random() >= rate:
            return None

        stretch = [s for s in pool if s.max_complexity == complexity - 1]
        if stretch:
            pick = self.rng.choice(stretch)
            return pick, (
                f"Exploration: stretched to {pick.name} (max complexity {pick.max_complexity}) "
                f"one tier below complexity {complexity} to refresh its quality signal."
            )

        if complexity <= self.config.redeem_max_complexity and len(gated) > 1:
            ordered = sorted(gated, key=lambda s: s.quality)
            size = max(1, math.ceil(len(ordered) * self.config.redeem_fraction))
            pick = self.rng.choice(ordered[:size])
            return pick, (
                f"Exploration: redeemed low-quality agent {pick.name} (quality {pick.quality:g}) "
                f"on a complexity {complexity} task to refresh its quality signal."
            )
        return None

    def _choose(
        self, candidates: list[ScoredCandidate], complexity: int, discipline: str
    ) -> tuple[ScoredCandidate, str]:
        if complexity >= STRONG_COMPLEXITY:
            pick = sorted(
                candidates,
                key=lambda s: (-s.quality, -s.usage_score, -s.reasoning, s.cost),
            )[0]
            return pick, (
                f"Complexity {complexity}/10 requires the highest capability; "
                f"selected top-rated agent with best fit for {discipline}."
            )

        if complexity == STRONG_COMPLEXITY - 1:
            max_quality = max(s.quality for s in candidates)
            band = [s for s in candidates if s.quality >= max_quality - self.config.quality_band]
            pick = sorted(
                band or candidates,
                key=lambda s: (-s.usage_score, s.cost, -s.quality),
            )[0]
            return pick, (
                f"Complexity {complexity}/10 favors strong agents with good cost/fit balance; "
                "selected best-fit candidate."
            )

        target = complexity
        pool = [s for s in candidates if s.quality >= target] or candidates
        pick = sorted(
            pool,
            key=lambda s: (abs(s.quality - target), -s.usage_score, s.cost, s.quality),
        )[0]
        return pick, (
            f"Complexity {complexity}/10 targets a comparable tier agent; "
            "selected closest match with discipline fit and cost awareness."
        )

    @staticmethod
    def _decision(
        pick: ScoredCandidate,
        rationale: str,
        notes: list[str],
        explored: bool = False,
    ) -> AgentDecision:
        logger.info("Selected agent %s: %s", pick.name, rationale)
        for note in notes:
            logger.debug("Selection note: %s", note)
        return AgentDecision(
            agent_id=pick.agent_id,
            slug=pick.name,
            quality=pick.quality,
            usage_score=pick.usage_score,
            cost=pick.cost if math.isfinite(pick.cost) else None,
            max_complexity=pick.max_complexity,
            rationale=rationale,
            explored=explored,
            notes=list(notes),
        )

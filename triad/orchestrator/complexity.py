"""Task complexity and discipline scoring.

Estimates a 1-10 complexity score and a discipline tag for backlog tasks
whose records do not carry them, using keyword heuristics. Does NOT call
any worker; this is a fast, deterministic classifier.

The scores feed the agent selector:
- complexity drives the tiered pick and the max-complexity gate
- discipline drives the quality source and the usage-fit score
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

from triad.core.models import BacklogTask

logger = logging.getLogger("triad.orchestrator.complexity")

MIN_COMPLEXITY = 1
MAX_COMPLEXITY = 10
DEFAULT_COMPLEXITY = 5

DISCIPLINES = frozenset(
    {"backend", "frontend", "uiux", "docs", "architecture", "qa", "planning", "ops", "other"}
)

# Disciplines whose quality comes from the reasoning rating.
REASONING_DISCIPLINES = frozenset({"architecture", "planning"})

USAGE_KEYWORDS: dict[str, list[str]] = {
    "backend": ["backend", "api", "server", "db", "database"],
    "frontend": ["frontend", "ui", "ux", "web", "react", "mobile"],
    "uiux": ["ui", "ux", "design", "prototype"],
    "docs": ["doc", "documentation", "sds", "pdr", "spec"],
    "architecture": ["arch", "architecture", "system", "design"],
    "qa": ["qa", "test", "testing", "quality"],
    "planning": ["plan", "planning", "product", "pm"],
    "ops": ["ops", "devops", "infra", "deployment"],
}

# (discipline, capability) pairs worth half a usage point.
CAPABILITY_AFFINITY: list[tuple[frozenset[str], str]] = [
    (frozenset({"docs"}), "docdex_query"),
    (frozenset({"qa"}), "qa_interpretation"),
    (frozenset({"planning"}), "plan"),
    (frozenset({"backend", "frontend"}), "code_write"),
]

# Checked in order; first hit wins.
DISCIPLINE_RULES: list[tuple[str, list[str]]] = [
    ("docs", ["sds", "pdr", "documentation", "openapi", "spec"]),
    ("qa", ["qa", "test"]),
    ("architecture", ["architecture", "design"]),
    ("planning", ["refine", "create-tasks", "planning"]),
    ("frontend", ["frontend", "ui", "ux"]),
    ("backend", ["backend", "api", "database"]),
]

HIGH_COMPLEXITY_KEYWORDS = [
    "migration", "refactor", "architecture", "redesign", "distributed",
    "concurrent", "async", "security", "authentication", "encryption",
    "performance", "scaling", "integration",
]

MEDIUM_COMPLEXITY_KEYWORDS = [
    "api", "endpoint", "database", "query", "schema", "validation",
    "error handling", "configuration", "middleware", "cache",
]

LOW_COMPLEXITY_KEYWORDS = [
    "typo", "rename", "comment", "readme", "style", "format", "lint", "copy",
]


def normalize_complexity(value: Any, default: int = DEFAULT_COMPLEXITY) -> int:
    """Round and clamp a complexity value into 1..10; non-numeric gives `default`."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    # round-half-up, matching how callers score 7.5 as 8
    return max(MIN_COMPLEXITY, min(MAX_COMPLEXITY, int(math.floor(number + 0.5))))


def normalize_discipline(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    return normalized if normalized in DISCIPLINES else "other"


def infer_discipline(task: BacklogTask) -> str:
    """Discipline from the task record, else from keywords in its text."""
    declared = normalize_discipline(task.discipline)
    if declared:
        return declared
    text = f"{task.title} {task.description}".lower()
    for discipline, keywords in DISCIPLINE_RULES:
        if any(kw in text for kw in keywords):
            return discipline
    return "other"


def estimate_complexity(task: BacklogTask, default: int = DEFAULT_COMPLEXITY) -> int:
    """Complexity from the task record, else a keyword estimate around `default`."""
    if task.complexity is not None:
        return normalize_complexity(task.complexity, default)

    combined = f"{task.title} {task.description}".lower()
    word_count = len(combined.split())
    high_hits = sum(1 for kw in HIGH_COMPLEXITY_KEYWORDS if kw in combined)
    medium_hits = sum(1 for kw in MEDIUM_COMPLEXITY_KEYWORDS if kw in combined)
    low_hits = sum(1 for kw in LOW_COMPLEXITY_KEYWORDS if kw in combined)

    length_score = 0
    if word_count > 100:
        length_score = 2
    elif word_count > 50:
        length_score = 1

    score = default + (high_hits * 2) + medium_hits + length_score - (low_hits * 2)
    complexity = normalize_complexity(score, default)
    logger.debug(
        "Task '%s' complexity: %d (high=%d, med=%d, low=%d, words=%d)",
        task.key, complexity, high_hits, medium_hits, low_hits, word_count,
    )
    return complexity


def score_usage(discipline: Optional[str], best_usage: Optional[str], capabilities: list[str]) -> float:
    """Usage fit: 1 for a best-usage keyword hit plus 0.5 per capability affinity."""
    if not discipline:
        return 0.0
    usage = (best_usage or "").lower()
    score = 1.0 if any(kw in usage for kw in USAGE_KEYWORDS.get(discipline, [])) else 0.0
    caps = {c.lower() for c in capabilities}
    for disciplines, capability in CAPABILITY_AFFINITY:
        if discipline in disciplines and capability in caps:
            score += 0.5
    return score

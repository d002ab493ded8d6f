"""Tests for triad/orchestrator/complexity.py — complexity and discipline scoring."""

import pytest

from triad.core.models import BacklogTask
from triad.orchestrator.complexity import (
    estimate_complexity,
    infer_discipline,
    normalize_complexity,
    normalize_discipline,
    score_usage,
)


def _task(title: str, description: str = "", **fields) -> BacklogTask:
    return BacklogTask(key="T-1", title=title, description=description, **fields)


class TestNormalizeComplexity:
    @pytest.mark.parametrize("value, expected", [
        (7.5, 8),
        (7.49, 7),
        (0, 1),
        (-3, 1),
        (11, 10),
        ("6", 6),
    ])
    def test_round_and_clamp(self, value, expected):
        assert normalize_complexity(value) == expected

    @pytest.mark.parametrize("value", [None, "hard", float("nan"), float("inf")])
    def test_non_numeric_uses_default(self, value):
        assert normalize_complexity(value, default=4) == 4


class TestDiscipline:
    def test_declared_wins(self):
        assert infer_discipline(_task("Write the API docs", discipline="Frontend")) == "frontend"

    def test_unknown_declared_is_other(self):
        assert normalize_discipline("marketing") == "other"

    def test_blank_is_none(self):
        assert normalize_discipline("  ") is None

    def test_docs_keyword_first(self):
        assert infer_discipline(_task("Update the OpenAPI spec for tests")) == "docs"

    def test_backend_keyword(self):
        assert infer_discipline(_task("Add database index")) == "backend"

    def test_fallback_other(self):
        assert infer_discipline(_task("Tidy things")) == "other"


class TestEstimateComplexity:
    def test_record_value_used(self):
        assert estimate_complexity(_task("Fix typo", complexity=8.6)) == 9

    def test_plain_task_gets_default(self):
        assert estimate_complexity(_task("Hello"), default=5) == 5

    def test_high_keywords_raise(self):
        assert estimate_complexity(_task("Database migration", "security refactor")) > 5

    def test_low_keywords_lower(self):
        assert estimate_complexity(_task("Fix typo", "rename variable")) < 5


class TestScoreUsage:
    def test_keyword_and_affinity(self):
        assert score_usage("backend", "Backend API work", ["code_write"]) == 1.5

    def test_affinity_only(self):
        assert score_usage("qa", None, ["qa_interpretation"]) == 0.5

    def test_no_discipline(self):
        assert score_usage(None, "backend", ["code_write"]) == 0.0

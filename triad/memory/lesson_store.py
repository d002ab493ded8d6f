"""Golden examples and lessons learned.

Every task that completes all three phases is saved as a golden example so
later handoffs can point at similar past work. When a completed task is
later reverted, the regression reason is saved as a lesson. Both are JSONL
files under the memory directory; secrets are redacted before writing.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("triad.memory.lesson_store")

DEFAULT_MAX_ENTRIES = 50

REDACTION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"AKIA[0-9A-Z]{16}"), "[REDACTED_AWS_KEY]"),
    (re.compile(r"\bsk-[A-Za-z0-9]{20,}\b"), "[REDACTED_TOKEN]"),
    (re.compile(r"Bearer\s+[A-Za-z0-9._-]+", re.IGNORECASE), "Bearer [REDACTED]"),
    (
        re.compile(r"-----BEGIN [^-]+ PRIVATE KEY-----[\s\S]*?-----END [^-]+ PRIVATE KEY-----"),
        "[REDACTED_PRIVATE_KEY]",
    ),
]

_TOKEN = re.compile(r"[a-z0-9_./-]{3,}")


def redact(text: str) -> str:
    for pattern, replacement in REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    return text.strip()


def _tokens(text: str) -> set[str]:
    return set(_TOKEN.findall(text.lower()))


def _now() -> datetime:
    return datetime.now(UTC)


class GoldenExample(BaseModel):
    task_key: str
    intent: str
    plan_summary: str = ""
    review_notes: Optional[str] = None
    qa_notes: Optional[str] = None
    agents: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)

    def summary(self) -> str:
        parts = [f"{self.task_key}: {self.intent}"]
        if self.plan_summary:
            parts.append(f"plan={self.plan_summary}")
        if self.review_notes:
            parts.append(f"review={self.review_notes}")
        if self.qa_notes:
            parts.append(f"qa={self.qa_notes}")
        return " | ".join(parts)


class Lesson(BaseModel):
    task_key: str
    reason: str
    summary: str = ""
    created_at: datetime = Field(default_factory=_now)


class LessonStore:
    """JSONL-backed golden examples and lessons.

    Golden examples are capped at `max_entries` (oldest dropped first);
    lessons are append-only.
    """

    def __init__(self, memory_dir: str | Path, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.memory_dir = Path(memory_dir)
        self.max_entries = max_entries if max_entries > 0 else DEFAULT_MAX_ENTRIES

    @property
    def golden_path(self) -> Path:
        return self.memory_dir / "golden_examples.jsonl"

    @property
    def lessons_path(self) -> Path:
        return self.memory_dir / "lessons.jsonl"

    def record_golden_example(self, example: GoldenExample) -> GoldenExample:
        clean = example.model_copy(update={
            "intent": redact(example.intent),
            "plan_summary": redact(example.plan_summary),
            "review_notes": redact(example.review_notes) if example.review_notes else None,
            "qa_notes": redact(example.qa_notes) if example.qa_notes else None,
        })
        entries = [e for e in self.load_golden_examples() if e.task_key != clean.task_key]
        entries.append(clean)
        entries = entries[-self.max_entries:]
        self._write_lines(self.golden_path, [e.model_dump_json() for e in entries])
        logger.info("Saved golden example for %s", clean.task_key)
        return clean

    def load_golden_examples(self) -> list[GoldenExample]:
        return [GoldenExample(**raw) for raw in self._read_lines(self.golden_path, GoldenExample)]

    def find_similar(self, query: str, limit: int = 3, exclude_key: Optional[str] = None) -> list[GoldenExample]:
        """Golden examples ranked by token overlap with `query`."""
        query_tokens = _tokens(query)
        if not query_tokens:
            return []
        scored: list[tuple[float, GoldenExample]] = []
        for example in self.load_golden_examples():
            if example.task_key == exclude_key:
                continue
            overlap = len(query_tokens & _tokens(example.summary()))
            if overlap:
                scored.append((overlap / len(query_tokens), example))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [example for _, example in scored[:limit]]

    def record_lesson(self, lesson: Lesson) -> Lesson:
        clean = lesson.model_copy(update={"summary": redact(lesson.summary), "reason": redact(lesson.reason)})
        self.lessons_path.parent.mkdir(parents=True, exist_ok=True)
        with self.lessons_path.open("a", encoding="utf-8") as handle:
            handle.write(clean.model_dump_json() + "\n")
        logger.info("Saved lesson for %s: %s", clean.task_key, clean.reason)
        return clean

    def load_lessons(self, task_key: Optional[str] = None) -> list[Lesson]:
        lessons = [Lesson(**raw) for raw in self._read_lines(self.lessons_path, Lesson)]
        if task_key is not None:
            lessons = [lesson for lesson in lessons if lesson.task_key == task_key]
        return lessons

    @staticmethod
    def _read_lines(path: Path, model: type[BaseModel]) -> list[dict]:
        if not path.exists():
            return []
        rows: list[dict] = []
        for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
                model.model_validate(raw)
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning("Skipping malformed line %d in %s: %s", line_no, path, exc)
                continue
            rows.append(raw)
        return rows

    @staticmethod
    def _write_lines(path: Path, lines: list[str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        tmp.replace(path)

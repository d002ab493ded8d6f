"""Checkpoint records for Triad jobs.

A checkpoint is an immutable, sequence-numbered snapshot marker written after
every meaningful transition. Each record carries a `kind` discriminator and a
`schema_version`; readers reject versions they do not know instead of
coercing them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from triad.core.exceptions import SchemaVersionError, StateError
from triad.core.models import JobState, Phase, ProgressStatus

SCHEMA_VERSION = 1


def _now() -> datetime:
    return datetime.now(UTC)


class _CheckpointBase(BaseModel):
    schema_version: int = SCHEMA_VERSION
    seq: int = 0
    job_id: str
    cycle: int = 0
    timestamp: datetime = Field(default_factory=_now)


class JobStarted(_CheckpointBase):
    kind: Literal["job_started"] = "job_started"
    command_run_id: str
    resumed: bool = False

    @property
    def stage(self) -> str:
        return "resumed" if self.resumed else "started"


class PhaseStarted(_CheckpointBase):
    kind: Literal["phase_started"] = "phase_started"
    task_key: str
    phase: Phase
    attempt: int
    agent: Optional[str] = None

    @property
    def stage(self) -> str:
        return f"task:{self.task_key}:{self.phase.value}:start"


class PhaseHeartbeat(_CheckpointBase):
    kind: Literal["phase_heartbeat"] = "phase_heartbeat"
    task_key: str
    phase: Phase
    attempt: int
    agent: Optional[str] = None

    @property
    def stage(self) -> str:
        return f"task:{self.task_key}:{self.phase.value}:heartbeat"


class PhaseFinished(_CheckpointBase):
    kind: Literal["phase_finished"] = "phase_finished"
    task_key: str
    phase: Phase
    attempt: int
    status: str
    decision: Optional[str] = None
    reason: Optional[str] = None
    agent: Optional[str] = None

    @property
    def stage(self) -> str:
        return f"task:{self.task_key}:{self.phase.value}"


class PhaseSkipped(_CheckpointBase):
    kind: Literal["phase_skipped"] = "phase_skipped"
    task_key: str
    phase: Phase
    reason: str

    @property
    def stage(self) -> str:
        return f"task:{self.task_key}:{self.phase.value}:skipped"


class TaskTerminal(_CheckpointBase):
    kind: Literal["task_terminal"] = "task_terminal"
    task_key: str
    status: ProgressStatus
    attempts: int
    reason: Optional[str] = None

    @property
    def stage(self) -> str:
        return f"task:{self.task_key}:{self.status.value}"


class CycleFinished(_CheckpointBase):
    kind: Literal["cycle_finished"] = "cycle_finished"
    dispatched: list[str] = Field(default_factory=list)

    @property
    def stage(self) -> str:
        return f"cycle:{self.cycle}"


class JobFinished(_CheckpointBase):
    kind: Literal["job_finished"] = "job_finished"
    state: JobState
    error: Optional[str] = None

    @property
    def stage(self) -> str:
        return self.state.value


Checkpoint = Annotated[
    Union[
        JobStarted,
        PhaseStarted,
        PhaseHeartbeat,
        PhaseFinished,
        PhaseSkipped,
        TaskTerminal,
        CycleFinished,
        JobFinished,
    ],
    Field(discriminator="kind"),
]

_checkpoint_adapter: TypeAdapter[Checkpoint] = TypeAdapter(Checkpoint)


def parse_checkpoint(data: Any) -> Checkpoint:
    """Validate a raw checkpoint document.

    Raises:
        SchemaVersionError: If schema_version is missing or unknown.
        StateError: If the document is otherwise malformed.
    """
    if not isinstance(data, dict):
        raise StateError(f"Checkpoint must be a JSON object, got {type(data).__name__}")
    version = data.get("schema_version")
    if version != SCHEMA_VERSION:
        raise SchemaVersionError(version, SCHEMA_VERSION, source="checkpoint")
    try:
        return _checkpoint_adapter.validate_python(data)
    except ValidationError as exc:
        raise StateError(f"Malformed checkpoint: {exc}") from exc

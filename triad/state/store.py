"""Durable job state for Triad.

Layout under the state directory:

    jobs/<job_id>/job.json                      job record (state, counters)
    jobs/<job_id>/manifest.json                 resume validation
    jobs/<job_id>/<command>/state.json          task progress snapshot
    jobs/<job_id>/<command>/handoffs/*.md       text handed to workers
    jobs/<job_id>/checkpoints/NNNNNN.ckpt.json  append-only checkpoint log

Documents are written atomically (temp file + rename). Job records are
read-modified-written under a per-job file lock. Checkpoint files are
created exclusively and never rewritten.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field, ValidationError

from triad.core.exceptions import ResumeError, SchemaVersionError, StateError
from triad.core.models import JobRecord, JobState, Phase, TaskProgress
from triad.state.checkpoints import SCHEMA_VERSION, Checkpoint, parse_checkpoint

logger = logging.getLogger("triad.state.store")

COMMAND_NAME = "gateway-trio"
MANIFEST_TYPE = "gateway_trio"
CHECKPOINT_SUFFIX = ".ckpt.json"
JOB_RECORD = "job.json"
DEFAULT_LOCK_TIMEOUT = 10.0  # seconds

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]+")


class JobManifest(BaseModel):
    schema_version: int = SCHEMA_VERSION
    job_id: str
    command_name: str
    type: str = MANIFEST_TYPE
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class JobStateDocument(BaseModel):
    """Snapshot of every task progress record plus the cycle counter."""
    schema_version: int = SCHEMA_VERSION
    job_id: str
    command_run_id: str
    cycle: int = 0
    tasks: dict[str, TaskProgress] = Field(default_factory=dict)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"Corrupt JSON in {path}: {exc}") from exc


def _check_version(data: Any, source: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise StateError(f"{source} must be a JSON object")
    version = data.get("schema_version")
    if version != SCHEMA_VERSION:
        raise SchemaVersionError(version, SCHEMA_VERSION, source=source)
    return data


def safe_key(key: str) -> str:
    return _SAFE_KEY.sub("_", key).strip("_") or "task"


class JobStateStore:
    """File-backed job records, manifests, state snapshots and checkpoints."""

    def __init__(self, state_dir: str | Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.state_dir = Path(state_dir)
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def job_dir(self, job_id: str) -> Path:
        return self.state_dir / "jobs" / job_id

    def record_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / JOB_RECORD

    def manifest_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "manifest.json"

    def command_dir(self, job_id: str, command_name: str = COMMAND_NAME) -> Path:
        return self.job_dir(job_id) / command_name

    def state_path(self, job_id: str, command_name: str = COMMAND_NAME) -> Path:
        return self.command_dir(job_id, command_name) / "state.json"

    def checkpoint_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "checkpoints"

    def handoff_dir(self, job_id: str, command_name: str = COMMAND_NAME) -> Path:
        return self.command_dir(job_id, command_name) / "handoffs"

    # ------------------------------------------------------------------
    # Job records
    # ------------------------------------------------------------------

    def list_jobs(self) -> list[JobRecord]:
        jobs_root = self.state_dir / "jobs"
        if not jobs_root.exists():
            return []
        jobs = []
        for path in jobs_root.glob(f"*/{JOB_RECORD}"):
            job = self._read_record(path)
            if job is not None:
                jobs.append(job)
        return sorted(jobs, key=lambda job: job.created_at)

    def _read_record(self, path: Path) -> Optional[JobRecord]:
        data = _read_json(path)
        if data is None:
            return None
        data = _check_version(data, "job")
        try:
            return JobRecord(**{k: v for k, v in data.items() if k != "schema_version"})
        except ValidationError as exc:
            raise StateError(f"Malformed job record in {path}: {exc}") from exc

    def _write_record(self, job: JobRecord) -> None:
        _write_json_atomic(
            self.record_path(job.id),
            {"schema_version": SCHEMA_VERSION, **job.model_dump(mode="json")},
        )

    @contextmanager
    def _record_lock(self, job_id: str, create: bool = False) -> Iterator[None]:
        path = self.record_path(job_id)
        if not create and not path.exists():
            raise StateError(f"Unknown job {job_id}")
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(path) + ".lock", timeout=self.lock_timeout)
        try:
            with lock:
                yield
        except Timeout as exc:
            raise StateError(f"Timed out waiting for the record lock of job {job_id}") from exc

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self._read_record(self.record_path(job_id))

    def create_job(
        self,
        command_name: str,
        payload: Optional[dict[str, Any]] = None,
        total_items: int = 0,
    ) -> JobRecord:
        """Register a new running job and write its manifest."""
        job = JobRecord(command_name=command_name, payload=dict(payload or {}), total_items=total_items)
        with self._record_lock(job.id, create=True):
            self._write_record(job)
        self.write_manifest(JobManifest(job_id=job.id, command_name=command_name, payload=job.payload))
        logger.info("Created job %s (%s)", job.id, command_name)
        return job

    def update_job(self, job_id: str, **changes: Any) -> JobRecord:
        """Apply field changes to one job record and persist.

        The record is re-read under its file lock, so fields not named in
        `changes` keep whatever another process wrote last. A cancelled job
        stays cancelled: state and error_summary changes are dropped.

        Raises:
            StateError: If the job does not exist.
        """
        with self._record_lock(job_id):
            job = self.get_job(job_id)
            if job is None:
                raise StateError(f"Unknown job {job_id}")
            if job.state is JobState.CANCELLED and changes.get("state", JobState.CANCELLED) is not JobState.CANCELLED:
                logger.info("Job %s was cancelled; keeping cancelled instead of %s", job_id, changes["state"])
                changes = {k: v for k, v in changes.items() if k not in ("state", "error_summary")}
            updated = job.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
            job = JobRecord.model_validate(updated.model_dump())
            self._write_record(job)
            return job

    def cancel_job(self, job_id: str, reason: Optional[str] = None) -> JobRecord:
        """Request cooperative cancellation of a running job.

        Raises:
            StateError: If the job does not exist or already ended.
        """
        with self._record_lock(job_id):
            job = self.get_job(job_id)
            if job is None:
                raise StateError(f"Unknown job {job_id}")
            if job.state.is_terminal:
                raise StateError(f"Job {job_id} is already {job.state.value}")
            logger.info("Cancellation requested for job %s", job_id)
            job = job.model_copy(update={
                "state": JobState.CANCELLED,
                "error_summary": reason or "cancelled by user",
                "updated_at": datetime.now(UTC),
            })
            self._write_record(job)
            return job

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self.get_job(job_id)
        return job is not None and job.state is JobState.CANCELLED

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def write_manifest(self, manifest: JobManifest) -> None:
        _write_json_atomic(self.manifest_path(manifest.job_id), manifest.model_dump(mode="json"))

    def read_manifest(self, job_id: str) -> Optional[JobManifest]:
        data = _read_json(self.manifest_path(job_id))
        if data is None:
            return None
        data = _check_version(data, "manifest")
        try:
            return JobManifest(**data)
        except ValidationError as exc:
            raise StateError(f"Malformed manifest for job {job_id}: {exc}") from exc

    def validate_resume(self, job_id: str, command_name: str = COMMAND_NAME) -> tuple[JobRecord, JobManifest]:
        """Check that a job can be resumed by `command_name`.

        Raises:
            ResumeError: On any mismatch or a job that already ended.
        """
        job = self.get_job(job_id)
        if job is None:
            raise ResumeError(f"Job {job_id} not found")
        if job.command_name != command_name:
            raise ResumeError(f"Job {job_id} was created by {job.command_name}, not {command_name}")
        if job.state in (JobState.COMPLETED, JobState.CANCELLED):
            raise ResumeError(f"Job {job_id} is {job.state.value}; nothing to resume")

        manifest = self.read_manifest(job_id)
        if manifest is None:
            raise ResumeError(f"Job {job_id} has no manifest; cannot resume")
        if manifest.job_id != job_id:
            raise ResumeError(f"Manifest job id {manifest.job_id} does not match {job_id}")
        if manifest.command_name != command_name:
            raise ResumeError(
                f"Manifest command {manifest.command_name} does not match job command {command_name}"
            )
        return job, manifest

    # ------------------------------------------------------------------
    # State snapshot
    # ------------------------------------------------------------------

    def load_state(self, job_id: str, command_name: str = COMMAND_NAME) -> Optional[JobStateDocument]:
        data = _read_json(self.state_path(job_id, command_name))
        if data is None:
            return None
        data = _check_version(data, "state")
        try:
            return JobStateDocument(**data)
        except ValidationError as exc:
            raise StateError(f"Malformed state for job {job_id}: {exc}") from exc

    def save_state(self, document: JobStateDocument, command_name: str = COMMAND_NAME) -> Path:
        path = self.state_path(document.job_id, command_name)
        _write_json_atomic(path, document.model_dump(mode="json"))
        return path

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _checkpoint_files(self, job_id: str) -> list[Path]:
        directory = self.checkpoint_dir(job_id)
        if not directory.exists():
            return []
        return sorted(directory.glob(f"*{CHECKPOINT_SUFFIX}"))

    def next_checkpoint_seq(self, job_id: str) -> int:
        files = self._checkpoint_files(job_id)
        if not files:
            return 1
        return int(files[-1].name[: -len(CHECKPOINT_SUFFIX)]) + 1

    def append_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        """Write a checkpoint with the next free sequence number.

        A checkpoint carrying a seq already on disk raises StateError.
        """
        if checkpoint.seq <= 0:
            checkpoint = checkpoint.model_copy(update={"seq": self.next_checkpoint_seq(checkpoint.job_id)})
        path = self.checkpoint_dir(checkpoint.job_id) / f"{checkpoint.seq:06d}{CHECKPOINT_SUFFIX}"
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with path.open("x", encoding="utf-8") as handle:
                json.dump(checkpoint.model_dump(mode="json"), handle, indent=2, ensure_ascii=True)
        except FileExistsError as exc:
            raise StateError(f"Checkpoint {checkpoint.seq} already exists for job {checkpoint.job_id}") from exc
        logger.debug("Checkpoint %d for job %s: %s", checkpoint.seq, checkpoint.job_id, checkpoint.stage)
        return checkpoint

    def list_checkpoints(self, job_id: str) -> list[Checkpoint]:
        return [parse_checkpoint(_read_json(path)) for path in self._checkpoint_files(job_id)]

    # ------------------------------------------------------------------
    # Handoffs
    # ------------------------------------------------------------------

    def write_handoff(self, job_id: str, index: int, task_key: str, phase: Phase, text: str) -> Path:
        directory = self.handoff_dir(job_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{index:02d}-{safe_key(task_key)}-{phase.value}.md"
        path.write_text(text, encoding="utf-8")
        return path

    def close(self) -> None:
        """Nothing to release; present so the scheduler can close it like any collaborator."""

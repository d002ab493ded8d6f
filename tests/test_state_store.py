"""Tests for triad/state/store.py and triad/state/checkpoints.py — durable job state."""

import json

import pytest
from filelock import FileLock

from triad.core.exceptions import ResumeError, SchemaVersionError, StateError
from triad.core.models import JobState, Phase, ProgressStatus, TaskProgress
from triad.state.checkpoints import (
    CycleFinished,
    JobFinished,
    JobStarted,
    PhaseFinished,
    PhaseHeartbeat,
    PhaseStarted,
    TaskTerminal,
    parse_checkpoint,
)
from triad.state.store import COMMAND_NAME, JobManifest, JobStateDocument, JobStateStore, safe_key


class TestJobRecords:
    def test_create_writes_record_and_manifest(self, store):
        job = store.create_job(COMMAND_NAME, payload={"request": {"task_keys": ["T-1"]}})
        assert store.get_job(job.id).state is JobState.RUNNING
        data = json.loads(store.record_path(job.id).read_text())
        assert data["schema_version"] == 1
        assert data["id"] == job.id
        manifest = store.read_manifest(job.id)
        assert manifest.command_name == COMMAND_NAME
        assert manifest.payload["request"]["task_keys"] == ["T-1"]

    def test_list_jobs_in_creation_order(self, store):
        first = store.create_job(COMMAND_NAME)
        second = store.create_job(COMMAND_NAME)
        assert [job.id for job in store.list_jobs()] == [first.id, second.id]

    def test_list_jobs_empty_dir(self, store):
        assert store.list_jobs() == []

    def test_update_job(self, store):
        job = store.create_job(COMMAND_NAME)
        updated = store.update_job(job.id, cycle=3, processed_items=2)
        assert updated.cycle == 3
        assert store.get_job(job.id).processed_items == 2
        assert updated.updated_at >= job.updated_at

    def test_update_unknown_job(self, store):
        with pytest.raises(StateError, match="Unknown job"):
            store.update_job("nope", cycle=1)
        assert not store.job_dir("nope").exists()

    def test_cancel_job(self, store):
        job = store.create_job(COMMAND_NAME)
        store.cancel_job(job.id, reason="operator stop")
        assert store.is_cancel_requested(job.id)
        assert store.get_job(job.id).error_summary == "operator stop"

    def test_cancel_finished_job_rejected(self, store):
        job = store.create_job(COMMAND_NAME)
        store.update_job(job.id, state=JobState.COMPLETED)
        with pytest.raises(StateError, match="already completed"):
            store.cancel_job(job.id)

    def test_record_version_checked(self, store):
        job = store.create_job(COMMAND_NAME)
        data = json.loads(store.record_path(job.id).read_text())
        store.record_path(job.id).write_text(json.dumps({**data, "schema_version": 2}))
        with pytest.raises(SchemaVersionError):
            store.list_jobs()

    def test_corrupt_record(self, store):
        job = store.create_job(COMMAND_NAME)
        store.record_path(job.id).write_text("{not json")
        with pytest.raises(StateError, match="Corrupt JSON"):
            store.get_job(job.id)


class TestConcurrentJobWriters:
    """A runner and an operator each hold their own store on one state dir."""

    def test_cancel_survives_runner_progress_update(self, tmp_path):
        runner = JobStateStore(tmp_path / "state")
        operator = JobStateStore(tmp_path / "state")
        job = runner.create_job(COMMAND_NAME)
        runner.update_job(job.id, cycle=1, total_items=2, processed_items=0)

        operator.cancel_job(job.id, reason="operator stop")
        runner.update_job(job.id, processed_items=1)

        record = operator.get_job(job.id)
        assert record.state is JobState.CANCELLED
        assert record.processed_items == 1
        assert record.total_items == 2
        assert runner.is_cancel_requested(job.id)

    def test_cancelled_job_not_overwritten_by_final_state(self, tmp_path):
        runner = JobStateStore(tmp_path / "state")
        operator = JobStateStore(tmp_path / "state")
        job = runner.create_job(COMMAND_NAME)

        operator.cancel_job(job.id, reason="operator stop")
        record = runner.update_job(job.id, state=JobState.COMPLETED, cycle=2, error_summary=None)

        assert record.state is JobState.CANCELLED
        assert record.error_summary == "operator stop"
        assert record.cycle == 2

    def test_jobs_do_not_share_a_record_file(self, tmp_path):
        first = JobStateStore(tmp_path / "state")
        second = JobStateStore(tmp_path / "state")
        a = first.create_job(COMMAND_NAME)
        b = second.create_job(COMMAND_NAME)

        first.update_job(a.id, state=JobState.COMPLETED)
        second.update_job(b.id, processed_items=4)

        assert first.get_job(a.id).state is JobState.COMPLETED
        assert first.get_job(b.id).processed_items == 4

    def test_held_lock_times_out(self, tmp_path):
        store = JobStateStore(tmp_path / "state", lock_timeout=0.05)
        job = store.create_job(COMMAND_NAME)
        with FileLock(str(store.record_path(job.id)) + ".lock"):
            with pytest.raises(StateError, match="Timed out"):
                store.update_job(job.id, processed_items=1)
        assert store.update_job(job.id, processed_items=1).processed_items == 1


class TestResumeValidation:
    def test_valid(self, store):
        job = store.create_job(COMMAND_NAME)
        record, manifest = store.validate_resume(job.id)
        assert record.id == job.id
        assert manifest.job_id == job.id

    def test_unknown_job(self, store):
        with pytest.raises(ResumeError, match="not found"):
            store.validate_resume("missing")

    def test_wrong_command(self, store):
        job = store.create_job("other-command")
        with pytest.raises(ResumeError, match="was created by other-command"):
            store.validate_resume(job.id)

    def test_completed_job(self, store):
        job = store.create_job(COMMAND_NAME)
        store.update_job(job.id, state=JobState.COMPLETED)
        with pytest.raises(ResumeError, match="nothing to resume"):
            store.validate_resume(job.id)

    def test_failed_job_can_resume(self, store):
        job = store.create_job(COMMAND_NAME)
        store.update_job(job.id, state=JobState.FAILED)
        record, _ = store.validate_resume(job.id)
        assert record.state is JobState.FAILED

    def test_missing_manifest(self, store):
        job = store.create_job(COMMAND_NAME)
        store.manifest_path(job.id).unlink()
        with pytest.raises(ResumeError, match="has no manifest"):
            store.validate_resume(job.id)

    def test_manifest_command_mismatch(self, store):
        job = store.create_job(COMMAND_NAME)
        store.write_manifest(JobManifest(job_id=job.id, command_name="something-else"))
        with pytest.raises(ResumeError, match="Manifest command something-else does not match"):
            store.validate_resume(job.id)

    def test_manifest_job_id_mismatch(self, store):
        job = store.create_job(COMMAND_NAME)
        manifest = JobManifest(job_id="other", command_name=COMMAND_NAME)
        store.manifest_path(job.id).write_text(manifest.model_dump_json())
        with pytest.raises(ResumeError, match="Manifest job id other does not match"):
            store.validate_resume(job.id)


class TestStateDocument:
    def test_round_trip(self, store):
        document = JobStateDocument(job_id="j1", command_run_id="r1", cycle=2)
        document.tasks["T-1"] = TaskProgress(task_key="T-1", attempts=2, status=ProgressStatus.FAILED)
        path = store.save_state(document)
        assert path == store.state_path("j1")
        loaded = store.load_state("j1")
        assert loaded.cycle == 2
        assert loaded.tasks["T-1"].status is ProgressStatus.FAILED

    def test_missing_state(self, store):
        assert store.load_state("none") is None

    def test_no_temp_files_left(self, store):
        store.save_state(JobStateDocument(job_id="j1", command_run_id="r1"))
        leftovers = [p.name for p in store.command_dir("j1").iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_unknown_schema_version_rejected(self, store):
        store.save_state(JobStateDocument(job_id="j1", command_run_id="r1"))
        path = store.state_path("j1")
        data = json.loads(path.read_text())
        data["schema_version"] = 99
        path.write_text(json.dumps(data))
        with pytest.raises(SchemaVersionError) as exc_info:
            store.load_state("j1")
        assert exc_info.value.found == 99


class TestCheckpoints:
    def test_sequence_assigned(self, store):
        first = store.append_checkpoint(JobStarted(job_id="j1", command_run_id="r1"))
        second = store.append_checkpoint(PhaseStarted(
            job_id="j1", cycle=1, task_key="T-1", phase=Phase.PRODUCE, attempt=1, agent="cheap",
        ))
        assert (first.seq, second.seq) == (1, 2)
        assert (store.checkpoint_dir("j1") / "000002.ckpt.json").exists()

    def test_duplicate_seq_rejected(self, store):
        store.append_checkpoint(JobStarted(job_id="j1", command_run_id="r1"))
        with pytest.raises(StateError, match="already exists"):
            store.append_checkpoint(CycleFinished(job_id="j1", seq=1, cycle=1))

    def test_list_in_order_with_kinds(self, store):
        store.append_checkpoint(JobStarted(job_id="j1", command_run_id="r1"))
        store.append_checkpoint(PhaseFinished(
            job_id="j1", cycle=1, task_key="T-1", phase=Phase.REVIEW, attempt=1,
            status="failed", decision="changes_requested", reason="changes_requested",
        ))
        store.append_checkpoint(TaskTerminal(
            job_id="j1", cycle=1, task_key="T-1", status=ProgressStatus.COMPLETED, attempts=1,
        ))
        store.append_checkpoint(JobFinished(job_id="j1", cycle=1, state=JobState.COMPLETED))

        checkpoints = store.list_checkpoints("j1")
        assert [c.kind for c in checkpoints] == ["job_started", "phase_finished", "task_terminal", "job_finished"]
        assert [c.stage for c in checkpoints] == ["started", "task:T-1:review", "task:T-1:completed", "completed"]

    def test_heartbeat_round_trip(self, store):
        store.append_checkpoint(PhaseHeartbeat(
            job_id="j1", cycle=1, task_key="T-1", phase=Phase.VERIFY, attempt=2, agent="strong",
        ))

        [beat] = store.list_checkpoints("j1")
        assert isinstance(beat, PhaseHeartbeat)
        assert beat.stage == "task:T-1:verify:heartbeat"
        assert (beat.attempt, beat.agent) == (2, "strong")

    def test_parse_rejects_unknown_version(self):
        with pytest.raises(SchemaVersionError):
            parse_checkpoint({"schema_version": 2, "kind": "job_started", "job_id": "j1", "command_run_id": "r"})

    def test_parse_rejects_missing_version(self):
        with pytest.raises(SchemaVersionError):
            parse_checkpoint({"kind": "job_started", "job_id": "j1", "command_run_id": "r"})

    def test_parse_rejects_unknown_kind(self):
        with pytest.raises(StateError, match="Malformed checkpoint"):
            parse_checkpoint({"schema_version": 1, "kind": "mystery", "job_id": "j1"})


class TestHandoffs:
    def test_write_handoff(self, store):
        path = store.write_handoff("j1", 3, "WEB 1/a", Phase.REVIEW, "# hello\n")
        assert path.name == "03-WEB_1_a-review.md"
        assert path.read_text() == "# hello\n"

    def test_safe_key(self):
        assert safe_key("../..") == ".._.."
        assert safe_key("///") == "task"

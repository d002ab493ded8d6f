"""Tests for triad/orchestrator/task_router.py — pass state machine."""

import pytest

from triad.core.exceptions import InvalidTransitionError, StateError
from triad.core.models import BacklogStatus, Phase
from triad.orchestrator.task_router import (
    VALID_TRANSITIONS,
    Stage,
    TaskRouter,
    first_phase_for,
    status_reached,
)


class TestValidTransitions:
    def test_pending_can_enter_any_phase(self):
        assert {Stage.PRODUCE, Stage.REVIEW, Stage.VERIFY} <= VALID_TRANSITIONS[Stage.PENDING]

    def test_review_can_loop_to_produce(self):
        assert Stage.PRODUCE in VALID_TRANSITIONS[Stage.REVIEW]

    def test_verify_can_loop_to_produce(self):
        assert Stage.PRODUCE in VALID_TRANSITIONS[Stage.VERIFY]

    def test_produce_cannot_complete(self):
        assert Stage.COMPLETED not in VALID_TRANSITIONS[Stage.PRODUCE]

    def test_terminal_stages(self):
        assert VALID_TRANSITIONS[Stage.COMPLETED] == set()
        assert VALID_TRANSITIONS[Stage.FAILED] == set()

    def test_every_working_stage_can_fail(self):
        for stage in (Stage.PENDING, Stage.PRODUCE, Stage.REVIEW, Stage.VERIFY):
            assert Stage.FAILED in VALID_TRANSITIONS[stage]


class TestTaskRouter:
    def test_full_pass(self):
        router = TaskRouter("T-1")
        for phase in (Phase.PRODUCE, Phase.REVIEW, Phase.VERIFY):
            router.enter(phase)
        router.mark_completed()
        assert router.history == [Stage.PENDING, Stage.PRODUCE, Stage.REVIEW, Stage.VERIFY, Stage.COMPLETED]

    def test_invalid_transition_raises(self):
        router = TaskRouter("T-1")
        router.enter(Phase.PRODUCE)
        with pytest.raises(InvalidTransitionError, match="Invalid transition: produce → verify"):
            router.enter(Phase.VERIFY)

    def test_invalid_transition_is_state_error(self):
        assert issubclass(InvalidTransitionError, StateError)

    def test_no_moves_after_failed(self):
        router = TaskRouter("T-1")
        router.enter(Phase.REVIEW)
        router.mark_failed("review_blocked")
        with pytest.raises(InvalidTransitionError):
            router.yield_pass("retry")

    def test_yield_pass_returns_to_pending(self):
        router = TaskRouter("T-1")
        router.enter(Phase.VERIFY)
        assert router.yield_pass("fix_required") is Stage.PENDING


class TestBacklogMapping:
    @pytest.mark.parametrize("status, phase", [
        (None, Phase.PRODUCE),
        (BacklogStatus.NOT_STARTED, Phase.PRODUCE),
        (BacklogStatus.IN_PROGRESS, Phase.PRODUCE),
        (BacklogStatus.READY_TO_REVIEW, Phase.REVIEW),
        (BacklogStatus.READY_TO_VERIFY, Phase.VERIFY),
    ])
    def test_first_phase(self, status, phase):
        assert first_phase_for(status) is phase

    def test_produce_done_when_ready_to_review_or_later(self):
        assert status_reached(Phase.PRODUCE, BacklogStatus.READY_TO_REVIEW)
        assert status_reached(Phase.PRODUCE, BacklogStatus.READY_TO_VERIFY)
        assert not status_reached(Phase.PRODUCE, BacklogStatus.IN_PROGRESS)

    def test_review_done_when_ready_to_verify(self):
        assert status_reached(Phase.REVIEW, BacklogStatus.READY_TO_VERIFY)
        assert not status_reached(Phase.REVIEW, BacklogStatus.READY_TO_REVIEW)

    def test_completed_satisfies_everything(self):
        for phase in Phase:
            assert status_reached(phase, BacklogStatus.COMPLETED)

    def test_unknown_status_not_reached(self):
        assert not status_reached(Phase.VERIFY, None)

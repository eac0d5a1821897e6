import pytest

from app.services.state_machine import (
    REPLY_OUTCOMES,
    InvalidTransitionError,
    PipelineRun,
    PipelineStage,
    can_transition,
    is_terminal,
    transition,
)

FAST_PATH = [
    PipelineStage.ADMITTED,
    PipelineStage.IDENTITY_RESOLVED,
    PipelineStage.CONVERSATION_RESOLVED,
    PipelineStage.FIELDS_EXTRACTED,
    PipelineStage.TASKS_CREATED,
    PipelineStage.REPLY_DECISION,
]


class TestValidTransitions:
    def test_received_to_admitted(self):
        assert transition(PipelineStage.RECEIVED, PipelineStage.ADMITTED) == PipelineStage.ADMITTED

    def test_received_to_duplicate(self):
        assert transition(PipelineStage.RECEIVED, PipelineStage.DUPLICATE) == PipelineStage.DUPLICATE

    @pytest.mark.parametrize("outcome", REPLY_OUTCOMES)
    def test_reply_decision_to_each_outcome(self, outcome):
        assert can_transition(PipelineStage.REPLY_DECISION, outcome)
        assert can_transition(outcome, PipelineStage.FINALIZED)

    def test_any_processing_stage_can_finalize(self):
        for stage in FAST_PATH:
            assert can_transition(stage, PipelineStage.FINALIZED)


class TestInvalidTransitions:
    def test_cannot_skip_identity(self):
        with pytest.raises(InvalidTransitionError):
            transition(PipelineStage.ADMITTED, PipelineStage.CONVERSATION_RESOLVED)

    def test_duplicate_is_terminal(self):
        assert is_terminal(PipelineStage.DUPLICATE)
        with pytest.raises(InvalidTransitionError):
            transition(PipelineStage.DUPLICATE, PipelineStage.ADMITTED)

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(PipelineStage.ADMITTED, PipelineStage.ADMITTED)

    def test_error_message_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(PipelineStage.FINALIZED, PipelineStage.RECEIVED)
        assert "FINALIZED -> RECEIVED" in str(exc.value)


class TestPipelineRun:
    def test_full_walk_records_history_and_outcome(self):
        run = PipelineRun()
        for stage in FAST_PATH:
            run.advance(stage)
        run.advance(PipelineStage.AUTO_REPLY_QUEUED)
        run.advance(PipelineStage.FINALIZED)

        assert run.stage == PipelineStage.FINALIZED
        assert run.outcome == PipelineStage.AUTO_REPLY_QUEUED
        assert run.history[0] == PipelineStage.RECEIVED
        assert len(run.history) == len(FAST_PATH) + 3

    def test_worker_run_starts_at_reply_decision(self):
        run = PipelineRun(PipelineStage.REPLY_DECISION)
        run.advance(PipelineStage.SKIPPED_ASSIGNED)
        assert run.outcome == PipelineStage.SKIPPED_ASSIGNED

    def test_invalid_step_leaves_stage_unchanged(self):
        run = PipelineRun()
        with pytest.raises(InvalidTransitionError):
            run.advance(PipelineStage.TASKS_CREATED)
        assert run.stage == PipelineStage.RECEIVED

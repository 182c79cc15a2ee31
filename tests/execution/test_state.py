"""Tests for execution state helpers."""

import pytest

from missionspine.execution.state import (
    ExecutionState,
    ExecutionStatus,
    StageStatus,
    WebhookWaitState,
    can_resume,
    clear_checkpoint,
    create_execution_state,
    find_resume_point,
    get_execution_summary,
    get_progress,
    set_checkpoint,
    update_stage_state,
)
from missionspine.core.timestamps import utc_now


def _state(*statuses: StageStatus) -> ExecutionState:
    state = create_execution_state("m", [f"s{i}" for i in range(len(statuses))])
    for stage, status in zip(state.stages, statuses):
        stage.status = status
    return state


class TestFindResumePoint:
    def test_fresh_mission_starts_at_zero(self):
        """A fresh [A, B, C] mission resumes from 0."""
        state = create_execution_state("m", ["A", "B", "C"])
        assert find_resume_point(state) == 0

    def test_after_failure(self):
        """A completed, B failed: resume from B."""
        state = create_execution_state("m", ["A", "B", "C"])
        update_stage_state(state, 0, StageStatus.COMPLETED)
        update_stage_state(state, 1, StageStatus.FAILED, error="boom")
        assert find_resume_point(state) == 1

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ((StageStatus.SKIPPED, StageStatus.PENDING), 1),
            ((StageStatus.COMPLETED, StageStatus.SKIPPED, StageStatus.RUNNING), 2),
            ((StageStatus.COMPLETED, StageStatus.SKIPPED), -1),
            ((), -1),
        ],
    )
    def test_first_not_done(self, statuses, expected):
        """Completed and skipped count as done; nothing left gives -1."""
        assert find_resume_point(_state(*statuses)) == expected

    def test_checkpoint_wins(self):
        """A checkpoint's stage index overrides the status scan."""
        state = _state(StageStatus.COMPLETED, StageStatus.COMPLETED, StageStatus.PENDING)
        set_checkpoint(state, 1, step_index=2, item_index=4)
        assert find_resume_point(state) == 1
        clear_checkpoint(state)
        assert find_resume_point(state) == 2


class TestProgress:
    def test_zero_stages(self):
        """No stages means fully done."""
        assert get_progress(_state()) == 100

    def test_monotonic(self):
        """Progress never decreases as stages finish, ending at 100."""
        state = create_execution_state("m", ["a", "b", "c"])
        seen = [get_progress(state)]
        for index, status in enumerate([StageStatus.COMPLETED, StageStatus.SKIPPED, StageStatus.COMPLETED]):
            update_stage_state(state, index, StageStatus.RUNNING)
            seen.append(get_progress(state))
            update_stage_state(state, index, status)
            seen.append(get_progress(state))
        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert seen[1] == 0
        assert seen[2] == 33


class TestCanResume:
    @pytest.mark.parametrize("status", list(ExecutionStatus))
    def test_only_failed_or_paused(self, status):
        """can_resume holds exactly for failed and paused."""
        state = _state()
        state.status = status
        assert can_resume(state) is (status in (ExecutionStatus.FAILED, ExecutionStatus.PAUSED))


class TestUpdateStageState:
    def test_started_at_set_once(self):
        """started_at is set on the first transition to running only."""
        state = create_execution_state("m", ["a"])
        update_stage_state(state, 0, StageStatus.RUNNING)
        first = state.stages[0].started_at
        update_stage_state(state, 0, StageStatus.RUNNING)
        assert state.stages[0].started_at == first

    def test_failure_appends_to_error_log(self):
        """Errors land on the stage and in the execution error log."""
        state = create_execution_state("m", ["a"])
        update_stage_state(state, 0, StageStatus.FAILED, error="HTTP 500", step="fetch")
        assert state.stages[0].error == "HTTP 500"
        assert state.stages[0].completed_at is not None
        assert state.errors[0].step == "fetch"
        assert state.errors[0].action == "a"

    def test_completion_clears_error(self):
        """A completed stage carries no stale error."""
        state = create_execution_state("m", ["a"])
        update_stage_state(state, 0, StageStatus.FAILED, error="x")
        update_stage_state(state, 0, StageStatus.COMPLETED)
        assert state.stages[0].error is None
        assert len(state.errors) == 1


class TestSerialization:
    def test_round_trip_keeps_dates(self):
        """to_dict/from_dict restores datetimes and the checkpoint."""
        state = create_execution_state("m", ["a", "b"], {"trigger": "cli"})
        update_stage_state(state, 0, StageStatus.COMPLETED)
        now = utc_now()
        set_checkpoint(state, 1, 0, variables={"x": 1}, webhook_wait=WebhookWaitState(
            registration_id="r1",
            path="/hook",
            webhook_url="http://localhost:3000/hook",
            expected_events=1,
            received_events=0,
            wait_started_at=now,
            expires_at=now,
        ))

        restored = ExecutionState.from_dict(state.to_dict())
        assert restored.started_at == state.started_at
        assert restored.stages[0].completed_at == state.stages[0].completed_at
        assert restored.stages[0].status == StageStatus.COMPLETED
        assert restored.checkpoint.variables == {"x": 1}
        assert restored.checkpoint.webhook_wait.expires_at == now
        assert restored.metadata == {"trigger": "cli"}

    def test_summary(self):
        """Summary mentions mission, id, status, progress and counts."""
        state = _state(StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.PENDING)
        state.status = ExecutionStatus.FAILED
        state.duration_ms = 2500
        summary = get_execution_summary(state)
        assert summary.startswith(f"m [{state.id}]: failed (33%)")
        assert "1 completed, 1 failed, 1 pending" in summary
        assert summary.endswith("2s")

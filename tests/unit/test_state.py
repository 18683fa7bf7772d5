"""
Unit tests for run state and snapshots.
"""

import json

import pytest

from rerun_agent.state import (
    JobStatus,
    RunPhase,
    RunState,
    StateSnapshot,
)


@pytest.fixture
def finished_snapshot():
    return StateSnapshot(
        running=False,
        finished=True,
        cancelled=True,
        status=JobStatus.FAILED,
        start_time_ms=1_700_000_000_123,
        end_time_ms=1_700_000_060_456,
        retry_count=2,
        max_retry_count=8,
        cancellation_reason="timed out",
        elapsed_ms=60_333,
        run_id="abc123def456",
    )


class TestJobStatus:
    """Tests for JobStatus literals."""

    def test_wire_literals(self):
        assert [s.value for s in JobStatus] == ["success", "failed", "active", "unknown"]

    def test_from_literal(self):
        assert JobStatus("active") is JobStatus.ACTIVE


class TestRunState:
    """Tests for RunState."""

    def test_never_started(self):
        state = RunState()

        assert state.phase == RunPhase.IDLE
        assert state.running is False
        assert state.finished is False
        assert state.elapsed_ms() == -1

    def test_running(self):
        state = RunState()
        state.reset(max_retry_count=3)
        state.start_time = 1000

        assert state.phase == RunPhase.RUNNING
        assert state.running is True
        assert state.elapsed_ms(now=4500) == 3500

    def test_finished_vs_cancelled(self):
        state = RunState()
        state.reset(max_retry_count=3)
        state.start_time = 1000
        state.end_time = 2000

        assert state.phase == RunPhase.FINISHED
        assert state.elapsed_ms(now=99999) == 1000

        state.cancelled = True
        assert state.phase == RunPhase.CANCELLED

    def test_reset_clears_everything(self):
        state = RunState()
        state.reset(max_retry_count=3)
        first_id = state.run_id
        first_epoch = state.cancellation_epoch
        state.start_time = 1000
        state.end_time = 2000
        state.retry_count = 3
        state.cancelled = True
        state.cancellation_reason = "manual"
        state.last_status = JobStatus.FAILED

        state.reset(max_retry_count=5)

        assert state.run_id != first_id
        assert state.cancellation_epoch == first_epoch + 1
        assert state.start_time is None
        assert state.end_time is None
        assert state.retry_count == 0
        assert state.max_retry_count == 5
        assert state.cancelled is False
        assert state.cancellation_reason is None
        assert state.last_status == JobStatus.UNKNOWN

    def test_snapshot_uses_zero_sentinels(self):
        snapshot = RunState().snapshot()

        assert snapshot.start_time_ms == 0
        assert snapshot.end_time_ms == 0
        assert snapshot.elapsed_ms == -1
        assert snapshot.status == JobStatus.UNKNOWN


class TestStateSnapshot:
    """Tests for the snapshot contract."""

    def test_immutable(self, finished_snapshot):
        with pytest.raises(AttributeError):
            finished_snapshot.retry_count = 5

    def test_to_dict_literals(self, finished_snapshot):
        data = finished_snapshot.to_dict()

        assert data["status"] == "failed"
        assert data["start_time_ms"] == 1_700_000_000_123
        assert isinstance(data["end_time_ms"], int)
        assert data["cancellation_reason"] == "timed out"

    def test_json_round_trip(self, finished_snapshot):
        raw = finished_snapshot.to_json()

        assert json.loads(raw)["status"] == "failed"
        assert StateSnapshot.from_json(raw) == finished_snapshot

    @pytest.mark.parametrize("status", list(JobStatus))
    def test_every_status_round_trips(self, finished_snapshot, status):
        data = finished_snapshot.to_dict()
        data["status"] = status.value

        assert StateSnapshot.from_dict(data).status is status

    def test_from_dict_ignores_unknown_keys(self, finished_snapshot):
        data = finished_snapshot.to_dict()
        data["elapsedMillis"] = 1

        assert StateSnapshot.from_dict(data) == finished_snapshot

    def test_phase(self, finished_snapshot):
        assert finished_snapshot.phase == RunPhase.CANCELLED
        assert StateSnapshot.idle().phase == RunPhase.IDLE

    def test_elapsed_seconds(self, finished_snapshot):
        assert finished_snapshot.elapsed_seconds == pytest.approx(60.333)
        assert StateSnapshot.idle().elapsed_seconds == 0.0

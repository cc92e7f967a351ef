"""Tests for run status persistence."""

from datetime import timedelta
from pathlib import Path

import pytest

from infraworker.core import FileRecord, MemoryRecord, StatusManager
from infraworker.errors import StatusCorruptionError, StatusNotFoundError
from infraworker.models import ErrorInfo, ExecutionResult, TableStatus, WorkerStatus


@pytest.fixture
def statuses(status_record: MemoryRecord, clock) -> StatusManager:
    return StatusManager(status_record, clock)


@pytest.mark.unit
class TestStatusManager:
    """Tests for StatusManager."""

    def test_load_missing_raises(self, statuses: StatusManager) -> None:
        """Nothing recorded yet raises StatusNotFoundError."""
        with pytest.raises(StatusNotFoundError):
            statuses.load()
        assert statuses.load_or_none() is None

    def test_load_corrupt_raises(
        self, statuses: StatusManager, status_record: MemoryRecord
    ) -> None:
        """Unparseable contents raise StatusCorruptionError, absent via load_or_none."""
        status_record.write('{"status": "nonsense"}')
        with pytest.raises(StatusCorruptionError):
            statuses.load()
        assert statuses.load_or_none() is None

    def test_load_undecodable_file(self, tmp_path: Path) -> None:
        """A status file that is not valid UTF-8 counts as corrupt."""
        path = tmp_path / "status.json"
        path.write_bytes(b"\xff\xfe{bad")
        statuses = StatusManager(FileRecord(path))
        with pytest.raises(StatusCorruptionError):
            statuses.load()
        assert statuses.load_or_none() is None

    def test_save_and_load(self, statuses: StatusManager, clock) -> None:
        """A saved run is read back with updated_at stamped."""
        result = ExecutionResult(
            environment="staging",
            status=WorkerStatus.WAITING_FOR_TABLES,
            start_time=clock.now,
            tables_created=[TableStatus(name="users", status="CREATING", created_at=clock.now)],
        )
        clock.advance(5)
        statuses.save(result)

        loaded = statuses.load()
        assert loaded.status == WorkerStatus.WAITING_FOR_TABLES
        assert loaded.updated_at == clock.now
        assert loaded.table("users") is not None
        assert loaded.end_time is None

    def test_terminal_save_sets_end_time_and_duration(
        self, statuses: StatusManager, clock
    ) -> None:
        """Saving a terminal state records end_time and duration."""
        result = ExecutionResult(environment="staging", start_time=clock.now)
        clock.advance(timedelta(minutes=3))
        result.status = WorkerStatus.COMPLETED
        result.success = True
        statuses.save(result)

        loaded = statuses.load()
        assert loaded.end_time == clock.now
        assert loaded.duration == timedelta(minutes=3)

    def test_terminal_save_keeps_existing_end_time(self, statuses: StatusManager, clock) -> None:
        """A second save of a finished run does not move end_time."""
        result = ExecutionResult(environment="staging", start_time=clock.now)
        result.status = WorkerStatus.FAILED
        clock.advance(60)
        statuses.save(result)
        finished = result.end_time
        clock.advance(60)
        statuses.save(result)
        assert statuses.load().end_time == finished

    def test_error_info_round_trips(self, statuses: StatusManager, clock) -> None:
        """Structured errors survive persistence, retry_after included."""
        result = ExecutionResult(environment="staging", status=WorkerStatus.FAILED)
        result.last_error = ErrorInfo(
            code="ERROR_TABLE_TIMEOUT",
            message="timed out",
            timestamp=clock.now,
            retry_after=timedelta(minutes=2),
        )
        statuses.save(result)
        error = statuses.load().last_error
        assert error is not None
        assert error.code == "ERROR_TABLE_TIMEOUT"
        assert error.retry_after == timedelta(minutes=2)

    def test_clear(self, statuses: StatusManager) -> None:
        """clear removes the record."""
        statuses.save(ExecutionResult(environment="staging"))
        statuses.clear()
        assert statuses.load_or_none() is None

    def test_is_setup_completed(self, statuses: StatusManager) -> None:
        """Only a successful completed run counts as set up."""
        assert statuses.is_setup_completed() is False
        result = ExecutionResult(environment="staging", status=WorkerStatus.COMPLETED)
        statuses.save(result)
        assert statuses.is_setup_completed() is False
        result.success = True
        statuses.save(result)
        assert statuses.is_setup_completed() is True

    def test_file_backed(self, tmp_path: Path) -> None:
        """Status persists through a FileRecord across manager instances."""
        path = tmp_path / "infraworker-staging-status.json"
        StatusManager(FileRecord(path)).save(
            ExecutionResult(environment="staging", status=WorkerStatus.CREATING_INDEXES)
        )
        loaded = StatusManager(FileRecord(path)).load()
        assert loaded.status == WorkerStatus.CREATING_INDEXES


@pytest.mark.unit
class TestExecutionResult:
    """Tests for the ExecutionResult model helpers."""

    def test_reset_run_keeps_retry_bookkeeping(self, clock) -> None:
        """A new run clears per-run tracking but not the retry count."""
        result = ExecutionResult(
            environment="staging",
            retry_count=2,
            fix_attempts=1,
            index_passes=3,
            planned_actions=["create table users"],
            tables_created=[TableStatus(name="users", status="ACTIVE")],
        )
        clock.advance(30)
        result.reset_run(clock.now)
        assert result.retry_count == 2
        assert result.start_time == clock.now
        assert result.fix_attempts == 0
        assert result.index_passes == 0
        assert result.planned_actions == []
        assert result.tables_created == []

    def test_in_progress_statuses(self) -> None:
        """Waiting and validating states are in progress; outcomes are not."""
        assert WorkerStatus.WAITING_FOR_INDEXES.in_progress
        assert WorkerStatus.FIXING_ISSUES.in_progress
        assert not WorkerStatus.COMPLETED.in_progress
        assert not WorkerStatus.RETRYING.in_progress
        assert not WorkerStatus.DELETION_SCHEDULED.in_progress

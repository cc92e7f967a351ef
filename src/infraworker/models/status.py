"""Status models for provisioning runs.

``ExecutionResult`` is the worker's durable snapshot for one environment.
It is overwritten on every state transition and read back by the worker
(to resume after a crash) and by the health service.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WorkerStatus(str, Enum):
    """Provisioning lifecycle states."""

    # Initial states
    IDLE = "idle"
    INITIALIZING = "initializing"

    # Generic in-progress label, written by the restart path
    RUNNING = "running"

    # Setup phases
    CREATING_TABLES = "creating_tables"
    WAITING_FOR_TABLES = "waiting_for_tables"
    CREATING_INDEXES = "creating_indexes"
    WAITING_FOR_INDEXES = "waiting_for_indexes"

    # Validation phases
    VALIDATING = "validating"
    FIXING_ISSUES = "fixing_issues"
    REVALIDATING = "revalidating"

    # Outcomes
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    # Deletion track
    DELETION_SCHEDULED = "deletion_scheduled"
    DELETING = "deleting"
    DELETED = "deleted"
    DELETION_FAILED = "deletion_failed"

    @property
    def in_progress(self) -> bool:
        """True while a run is actively mutating or polling the store."""
        return self in IN_PROGRESS_STATUSES


IN_PROGRESS_STATUSES = frozenset(
    {
        WorkerStatus.INITIALIZING,
        WorkerStatus.RUNNING,
        WorkerStatus.CREATING_TABLES,
        WorkerStatus.WAITING_FOR_TABLES,
        WorkerStatus.CREATING_INDEXES,
        WorkerStatus.WAITING_FOR_INDEXES,
        WorkerStatus.VALIDATING,
        WorkerStatus.FIXING_ISSUES,
        WorkerStatus.REVALIDATING,
        WorkerStatus.DELETING,
    }
)

TERMINAL_STATUSES = frozenset(
    {
        WorkerStatus.COMPLETED,
        WorkerStatus.FAILED,
        WorkerStatus.DELETED,
        WorkerStatus.DELETION_FAILED,
    }
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class ErrorInfo(BaseModel):
    """Structured error attached to a failed run."""

    code: str = Field(description="Error code, e.g. ERROR_TABLE_NOT_ACTIVE")
    message: str = Field(description="Human-readable error message")
    timestamp: datetime = Field(default_factory=utcnow)
    recoverable: bool = Field(default=True, description="Whether retrying may help")
    retry_after: timedelta | None = Field(default=None, description="Suggested retry delay")


class ProgressInfo(BaseModel):
    """Derived progress information. Never persisted on its own."""

    current_step: int
    total_steps: int
    step_name: str
    percentage: int


class IndexStatus(BaseModel):
    """Snapshot of one secondary index touched by the current run."""

    name: str
    table: str
    status: str = Field(description="CREATING, ACTIVE, FAILED, ...")
    created_at: datetime = Field(default_factory=utcnow)
    became_active_at: datetime | None = None


class TableStatus(BaseModel):
    """Snapshot of one table touched by the current run."""

    name: str
    status: str = Field(description="CREATING, ACTIVE, FAILED, ...")
    created_at: datetime = Field(default_factory=utcnow)
    became_active_at: datetime | None = None
    index_count: int = Field(default=0, description="Indexes reported by the store")
    expected_indexes: int = Field(default=0, description="Indexes declared in config")


class ExecutionResult(BaseModel):
    """Durable state of the current provisioning run for one environment.

    Attributes:
        success: True once the run completed successfully.
        status: Current lifecycle state.
        phase: Human-readable phase label (filled in by the health service).
        start_time: When the current run started.
        end_time: When the run reached a terminal state.
        duration: Wall time between start and end.
        progress: Derived progress information.
        tables_created: Tables created or adopted by this run.
        indexes_created: Indexes created or adopted by this run.
        error_message: Operator-facing error summary.
        last_error: Structured last error.
        retry_count: Retries consumed in the current failure cycle.
        environment: Environment this record belongs to.
        metadata: Free-form annotations (never read back for control flow).
        health_status: healthy, degraded, unhealthy, provisioning or unknown.
        next_action: What happens next, for operators.
        estimated_time: Rough time until the next milestone.
        updated_at: Time of the last save.
        owner: Worker owner ID that last advanced the run.
        next_retry_at: Earliest time the next retry may start.
        failed_step: State the run was in when it failed, resumed on retry.
        fix_attempts: Corrective passes made in the current validation cycle.
        index_passes: Index creation passes made in the current run.
        validation_issues: Mismatches found by the last validation.
        recreated_tables: Tables already recreated by force_recreate in this run.
        planned_actions: Mutations skipped by a dry run.
        dry_run: Whether this run was a dry run.
    """

    success: bool = False
    status: WorkerStatus = WorkerStatus.IDLE
    phase: str | None = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    duration: timedelta = timedelta(0)

    progress: ProgressInfo | None = None

    tables_created: list[TableStatus] = Field(default_factory=list)
    indexes_created: list[IndexStatus] = Field(default_factory=list)

    error_message: str | None = None
    last_error: ErrorInfo | None = None
    retry_count: int = Field(default=0, ge=0)

    environment: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    health_status: str | None = None
    next_action: str | None = None
    estimated_time: timedelta | None = None

    updated_at: datetime | None = None
    owner: str | None = None
    next_retry_at: datetime | None = None
    failed_step: WorkerStatus | None = None
    fix_attempts: int = 0
    index_passes: int = 0
    validation_issues: list[str] = Field(default_factory=list)
    recreated_tables: list[str] = Field(default_factory=list)
    planned_actions: list[str] = Field(default_factory=list)
    dry_run: bool = False

    def table(self, name: str) -> TableStatus | None:
        """Return the recorded status for ``name``, if any."""
        for table in self.tables_created:
            if table.name == name:
                return table
        return None

    def index(self, table: str, name: str) -> IndexStatus | None:
        """Return the recorded status for index ``name`` on ``table``, if any."""
        for index in self.indexes_created:
            if index.table == table and index.name == name:
                return index
        return None

    def reset_run(self, now: datetime) -> None:
        """Start a new run: clear per-run tracking while keeping retry bookkeeping."""
        self.success = False
        self.start_time = now
        self.end_time = None
        self.duration = timedelta(0)
        self.tables_created = []
        self.indexes_created = []
        self.fix_attempts = 0
        self.index_passes = 0
        self.validation_issues = []
        self.recreated_tables = []
        self.planned_actions = []

"""Health and restart service for the provisioning worker.

Reads the persisted run, enriches it with operator guidance, derives a
health verdict, and restarts the worker process when asked. It only
touches the status record, the lock record and the worker process; it
never talks to the table store.
"""

import logging
import os
import socket
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from ..config import WorkerConfig
from ..constants import SERVICE_NAME
from ..errors import LockHeld, WorkerRunningError
from ..models import ExecutionResult, ProgressInfo, RestartResult, WorkerStatus, utcnow
from ..services.process import ProcessController
from .lock_manager import LockManager
from .status_manager import StatusManager

logger = logging.getLogger(__name__)

RUNNING_ERROR = "Worker is currently running. Use force=true to restart anyway"

# status -> (phase, next action, estimated time to the next milestone)
_GUIDANCE: dict[WorkerStatus, tuple[str, str, timedelta | None]] = {
    WorkerStatus.IDLE: ("Idle", "Waiting for the next scheduled run", None),
    WorkerStatus.INITIALIZING: ("Initialization", "Initializing infrastructure worker", None),
    WorkerStatus.RUNNING: ("Setup", "Infrastructure setup is in progress", None),
    WorkerStatus.CREATING_TABLES: (
        "Table Creation",
        "Creating tables - this may take a few minutes",
        timedelta(minutes=5),
    ),
    WorkerStatus.WAITING_FOR_TABLES: (
        "Table Activation",
        "Waiting for tables to become active",
        timedelta(minutes=3),
    ),
    WorkerStatus.CREATING_INDEXES: (
        "Index Creation",
        "Creating secondary indexes",
        timedelta(minutes=2),
    ),
    WorkerStatus.WAITING_FOR_INDEXES: (
        "Index Activation",
        "Waiting for secondary indexes to become ready",
        timedelta(minutes=1),
    ),
    WorkerStatus.VALIDATING: (
        "Validation",
        "Validating infrastructure configuration",
        timedelta(seconds=30),
    ),
    WorkerStatus.FIXING_ISSUES: (
        "Issue Resolution",
        "Fixing detected infrastructure issues",
        timedelta(minutes=2),
    ),
    WorkerStatus.REVALIDATING: (
        "Re-validation",
        "Re-validating infrastructure after fixes",
        timedelta(minutes=1),
    ),
    WorkerStatus.COMPLETED: ("Completed", "Infrastructure is ready for use", None),
    WorkerStatus.DELETION_SCHEDULED: (
        "Deletion",
        "Tables will be deleted on the next run",
        None,
    ),
    WorkerStatus.DELETING: (
        "Deletion",
        "Deleting tables and waiting for them to disappear",
        timedelta(minutes=2),
    ),
    WorkerStatus.DELETED: ("Deleted", "Restart the worker to provision again", None),
    WorkerStatus.DELETION_FAILED: (
        "Deletion",
        "Manual intervention required - deletion failed",
        None,
    ),
}

# status -> (step, name) out of _TOTAL_STEPS
_TOTAL_STEPS = 6
_PROGRESS: dict[WorkerStatus, tuple[int, str]] = {
    WorkerStatus.INITIALIZING: (1, "Initializing"),
    WorkerStatus.RUNNING: (2, "In Progress"),
    WorkerStatus.CREATING_TABLES: (2, "Creating Tables"),
    WorkerStatus.WAITING_FOR_TABLES: (3, "Waiting for Tables"),
    WorkerStatus.CREATING_INDEXES: (4, "Creating Indexes"),
    WorkerStatus.WAITING_FOR_INDEXES: (4, "Waiting for Indexes"),
    WorkerStatus.VALIDATING: (5, "Validating"),
    WorkerStatus.FIXING_ISSUES: (5, "Fixing Issues"),
    WorkerStatus.REVALIDATING: (5, "Validating"),
    WorkerStatus.COMPLETED: (6, "Completed"),
}


def calculate_progress(status: WorkerStatus) -> ProgressInfo:
    """Derive progress for ``status``. Unlisted statuses report step 1."""
    step, name = _PROGRESS.get(status, (1, status.value))
    return ProgressInfo(
        current_step=step,
        total_steps=_TOTAL_STEPS,
        step_name=name,
        percentage=min(100, step * 100 // _TOTAL_STEPS),
    )


class HealthService:
    """Operator-facing status, health and restart operations.

    Args:
        config: Worker configuration (staleness bound, retry limits)
        status_manager: Access to the persisted run
        lock_manager: Access to the environment lock
        processes: Worker process controller
        clock: Time source
        owner_id: Lock owner identity used while resetting state
    """

    def __init__(
        self,
        config: WorkerConfig,
        status_manager: StatusManager,
        lock_manager: LockManager,
        processes: ProcessController,
        clock: Callable[[], datetime] = utcnow,
        owner_id: str | None = None,
    ) -> None:
        self.config = config
        self.owner_id = owner_id or f"restart-{socket.gethostname()}-{os.getpid()}"
        self.statuses = status_manager
        self.locks = lock_manager
        self.processes = processes
        self._clock = clock

    # ------------------------------------------------------------------
    # Status

    def get_status(self) -> ExecutionResult | None:
        """Load the persisted run and enrich it. None if missing or unreadable."""
        result = self.statuses.load_or_none()
        if result is None:
            return None
        return self.enrich(result)

    def enrich(self, result: ExecutionResult) -> ExecutionResult:
        """Fill phase, next action, estimated time, health status and progress."""
        now = self._clock()
        phase, next_action, estimate = _GUIDANCE.get(
            result.status, ("Monitoring", "Monitoring infrastructure status", None)
        )

        if result.status == WorkerStatus.FAILED:
            phase = "Error Recovery"
            recoverable = result.last_error is None or result.last_error.recoverable
            if recoverable:
                next_action = "Manual intervention required - max retries exceeded"
            else:
                next_action = "Manual intervention required - fix the configuration"
        elif result.status == WorkerStatus.RETRYING:
            phase = "Retry"
            next_action = f"Retrying infrastructure setup (attempt {result.retry_count + 1})"
            if result.next_retry_at is not None:
                estimate = max(timedelta(0), result.next_retry_at - now)

        result.phase = phase
        result.next_action = next_action
        result.estimated_time = estimate
        result.health_status = self._health_status(result, now)
        if result.progress is None:
            result.progress = calculate_progress(result.status)
        return result

    def _is_stale(self, result: ExecutionResult, now: datetime) -> bool:
        return now - result.start_time > self.config.staleness_bound

    def _health_status(self, result: ExecutionResult, now: datetime) -> str:
        status = result.status
        if status == WorkerStatus.COMPLETED:
            return "healthy" if result.success else "degraded"
        if status in (WorkerStatus.FAILED, WorkerStatus.DELETION_FAILED):
            return "unhealthy"
        if status in (
            WorkerStatus.RETRYING,
            WorkerStatus.FIXING_ISSUES,
            WorkerStatus.REVALIDATING,
        ):
            return "degraded"
        if status.in_progress or status == WorkerStatus.DELETION_SCHEDULED:
            return "degraded" if self._is_stale(result, now) else "provisioning"
        if status == WorkerStatus.DELETED:
            return "healthy"
        return "unknown"

    # ------------------------------------------------------------------
    # Health

    def is_healthy(self) -> tuple[bool, str]:
        """Derive a health verdict from the persisted run.

        Returns:
            (healthy, reason). Missing or corrupt status is reported, never raised.
        """
        result = self.statuses.load_or_none()
        if result is None:
            return False, "Worker status unknown"

        now = self._clock()
        match result.status:
            case WorkerStatus.COMPLETED:
                if result.success:
                    return True, "Worker completed successfully"
                return False, "Worker completed with errors"
            case WorkerStatus.FAILED:
                return False, f"Worker failed: {result.error_message}"
            case WorkerStatus.RETRYING:
                if result.retry_count > self.config.stuck_retry_threshold:
                    return False, "Worker stuck in retry loop"
                return False, "Worker is retrying after failure"
            case WorkerStatus.DELETED:
                return True, "Infrastructure deleted"
            case WorkerStatus.DELETION_FAILED:
                return False, f"Deletion failed: {result.error_message}"
            case status if status.in_progress or status == WorkerStatus.DELETION_SCHEDULED:
                if self._is_stale(result, now):
                    return False, "Worker running too long"
                return True, "Worker is running normally"
            case _:
                return False, "Worker status unknown"

    def health_report(self) -> dict[str, Any]:
        """Summary for the operator surface."""
        healthy, reason = self.is_healthy()
        result = self.get_status()
        held, lock = self.locks.is_held()
        return {
            "service": SERVICE_NAME,
            "environment": self.config.environment,
            "healthy": healthy,
            "reason": reason,
            "status": result.status.value if result else None,
            "health_status": result.health_status if result else "unknown",
            "phase": result.phase if result else None,
            "retry_count": result.retry_count if result else 0,
            "lock": {
                "held": held,
                "owner": lock.owner if lock else None,
                "expires_at": lock.expires_at.isoformat() if lock else None,
            },
            "checked_at": self._clock().isoformat(),
        }

    # ------------------------------------------------------------------
    # Restart

    def restart(self, force: bool = False) -> RestartResult:
        """Terminate the current worker, clear its status and launch a fresh one.

        Without ``force`` the status is only cleared while holding the
        environment lock, so a worker cannot save a transition in between.

        Args:
            force: Restart even if a healthy run is in progress or the lock is held

        Raises:
            WorkerRunningError: If a healthy worker is running and ``force`` is False
        """
        result = RestartResult(service_name=SERVICE_NAME, start_time=self._clock())
        if force:
            output = self._force_reset()
        else:
            output = self._locked_reset(result)

        try:
            pid = self.processes.launch()
        except OSError as e:
            logger.error(f"Failed to launch worker: {e}")
            result.status = "failed"
            result.error = f"Failed to launch worker: {e}"
            result.output = "; ".join(output)
            result.end_time = self._clock()
            return result

        output.append(f"Worker restart initiated successfully (pid {pid})")
        result.status = "completed"
        result.output = "; ".join(output)
        result.end_time = self._clock()
        return result

    def _refuse(self, result: RestartResult) -> WorkerRunningError:
        result.status = "failed"
        result.error = RUNNING_ERROR
        result.end_time = self._clock()
        logger.warning("Refusing to restart: worker is currently running")
        return WorkerRunningError(result)

    def _locked_reset(self, result: RestartResult) -> list[str]:
        output = []
        if self.locks.cleanup_expired():
            output.append("removed expired lock")
        try:
            lock = self.locks.acquire(self.owner_id)
        except LockHeld as e:
            raise self._refuse(result) from e

        try:
            current = self.statuses.load_or_none()
            if (
                current is not None
                and current.status.in_progress
                and not self._is_stale(current, self._clock())
            ):
                raise self._refuse(result)

            logger.info(f"Restarting {SERVICE_NAME} for {self.config.environment}")
            output.append(self.processes.terminate())
            self.statuses.clear()
            output.append("cleared worker status")
        finally:
            self.locks.release(lock)
        return output

    def _force_reset(self) -> list[str]:
        logger.info(f"Force restarting {SERVICE_NAME} for {self.config.environment}")
        output = [self.processes.terminate()]

        held, lock = self.locks.is_held()
        if held and lock is not None:
            logger.warning(f"Clearing lock {lock.id} held by {lock.owner}")
            self.locks.force_clear()
            output.append(f"cleared lock held by {lock.owner}")
        elif self.locks.cleanup_expired():
            output.append("removed expired lock")

        self.statuses.clear()
        output.append("cleared worker status")
        return output

    def auto_restart_if_needed(self) -> RestartResult:
        """Force a restart when the worker is unhealthy."""
        healthy, reason = self.is_healthy()
        if healthy:
            now = self._clock()
            return RestartResult(
                service_name=SERVICE_NAME,
                status="not_needed",
                start_time=now,
                end_time=now,
                output="Worker is healthy, no restart needed",
            )
        logger.warning(f"Worker is unhealthy ({reason}), initiating auto-restart")
        return self.restart(force=True)

"""Provisioning worker: scheduling, retries and crash recovery.

Each tick takes the environment lock, loads the last saved run, advances
the state machine one step at a time (saving after every transition) and
releases the lock once the run reaches a terminal or retrying state. A
tick that finds the lock held by another owner does nothing. The lock is
extended on every polling wait and before every save; a tick that loses it
aborts without writing the status.
"""

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from ..config import WorkerConfig
from ..constants import STOP_JOIN_TIMEOUT
from ..errors import (
    InfraWorkerError,
    LockHeld,
    LockLostError,
    ProvisioningError,
    StatusCorruptionError,
    StatusNotFoundError,
    StopRequested,
    WorkerStateError,
)
from ..models import TERMINAL_STATUSES, ErrorInfo, ExecutionResult, LockInfo, WorkerStatus, utcnow
from ..services.process import ProcessController
from ..services.table_store import TableStore
from .lock_manager import LockManager
from .provisioner import InfrastructureSetup
from .records import FileRecord
from .status_manager import StatusManager

logger = logging.getLogger(__name__)

# Failed validation cycles restart at validation rather than at the failing pass
_RESUME_AT = {
    WorkerStatus.FIXING_ISSUES: WorkerStatus.VALIDATING,
    WorkerStatus.REVALIDATING: WorkerStatus.VALIDATING,
}


def default_owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class Worker:
    """Background provisioning worker for one environment.

    Args:
        config: Worker configuration
        store: Table store to provision against
        lock_manager: Lock manager (defaults to the file lock at ``config.lock_path``)
        status_manager: Status manager (defaults to the file at ``config.status_path``)
        processes: PID record handler (defaults to ``config.pid_path``)
        clock: Time source
        sleep: Wait function used instead of real waiting (tests pass a fake clock's)
        owner_id: Lock owner identity (defaults to host-pid-random)
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: TableStore,
        *,
        lock_manager: LockManager | None = None,
        status_manager: StatusManager | None = None,
        processes: ProcessController | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] | None = None,
        owner_id: str | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.owner_id = owner_id or default_owner_id()
        self.locks = lock_manager or LockManager(
            FileRecord(config.lock_path), config.environment, config.lock_timeout, clock
        )
        self.statuses = status_manager or StatusManager(FileRecord(config.status_path), clock)
        self.processes = processes or ProcessController(config.pid_path)
        self.setup = InfrastructureSetup(config, store, clock, sleep=self._interruptible_sleep)
        self._clock = clock
        self._sleep = sleep

        self._state_lock = threading.Lock()
        self._running = False
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._thread: threading.Thread | None = None
        self._held: LockInfo | None = None
        self._force_recreate_started = False

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def _claim_running(self) -> None:
        with self._state_lock:
            if self._running:
                raise WorkerStateError("Worker is already running")
            self._running = True
            self._stop.clear()
            self._finished.clear()

    def start_in_background(self) -> None:
        """Start ticking on a background thread.

        Raises:
            WorkerStateError: If the worker is already running
        """
        self._claim_running()
        self._thread = threading.Thread(
            target=self._loop, name=f"infraworker-{self.config.environment}", daemon=True
        )
        self._thread.start()
        logger.info(
            f"Worker {self.owner_id} started for {self.config.environment} "
            f"(interval {self.config.tick_interval})"
        )

    def run(self) -> None:
        """Tick on the calling thread until stopped (or finished, with run_once)."""
        self._claim_running()
        logger.info(f"Worker {self.owner_id} running for {self.config.environment}")
        self._loop()

    def request_stop(self) -> None:
        """Ask the loop to stop after the current step. Safe from signal handlers."""
        self._stop.set()

    def stop(self, timeout: float = STOP_JOIN_TIMEOUT) -> bool:
        """Stop the worker and wait for the background thread.

        Returns:
            True if the worker is no longer running
        """
        self.request_stop()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Worker thread did not stop within {timeout}s")
                return False
        return not self.is_running

    def wait_for_completion(
        self, timeout: float | None = None, poll: float = 0.5
    ) -> ExecutionResult | None:
        """Block until the run reaches a terminal state, the loop exits, or ``timeout``.

        Returns:
            The last persisted result (None if nothing was recorded)
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            result = self.statuses.load_or_none()
            if result is not None and result.status in TERMINAL_STATUSES:
                return result
            if not self.is_running:
                return result
            if deadline is not None and time.monotonic() >= deadline:
                return result
            self._finished.wait(poll)

    def _loop(self) -> None:
        self.processes.write_pid()
        try:
            while not self._stop.is_set():
                try:
                    result = self.tick()
                except (InfraWorkerError, OSError) as e:
                    logger.error(f"Tick failed: {e}")
                    result = None

                if (
                    self.config.run_once
                    and result is not None
                    and result.status in TERMINAL_STATUSES
                ):
                    logger.info(f"Run finished with status {result.status.value}; exiting")
                    break
                self._pause(self._next_delay(result))
        finally:
            self.processes.remove_pid()
            with self._state_lock:
                self._running = False
            self._finished.set()
            logger.info(f"Worker {self.owner_id} stopped")

    def _next_delay(self, result: ExecutionResult | None) -> timedelta:
        if result is None:
            return self.config.lock_retry_interval
        interval = self.config.tick_interval
        if result.status == WorkerStatus.RETRYING and result.next_retry_at is not None:
            remaining = result.next_retry_at - self._clock()
            return max(timedelta(0), min(interval, remaining))
        return interval

    def _pause(self, delay: timedelta) -> None:
        if self._sleep is not None:
            self._sleep(delay.total_seconds())
        else:
            self._stop.wait(delay.total_seconds())

    def _interruptible_sleep(self, seconds: float) -> None:
        """Wait used by the state machine's polling.

        Raises:
            StopRequested: Once a stop is requested
            LockLostError: If the lock could not be extended after the wait
        """
        if self._sleep is not None:
            self._sleep(seconds)
            stopped = self._stop.is_set()
        else:
            stopped = self._stop.wait(seconds)
        if stopped:
            raise StopRequested("Stop requested while waiting on the table store")
        self._heartbeat()

    def _heartbeat(self) -> None:
        """Extend the lock held by the current tick."""
        if self._held is not None:
            self._held = self.locks.refresh(self._held)

    def _save(self, result: ExecutionResult) -> None:
        # Only the lock owner may write; a lost lock aborts before the write
        self._heartbeat()
        self.statuses.save(result)

    # ------------------------------------------------------------------
    # Ticks

    def tick(self) -> ExecutionResult | None:
        """Run one scheduling pass.

        Returns:
            The current result, or None if the lock was held elsewhere or lost
        """
        try:
            lock = self.locks.acquire(self.owner_id)
        except LockHeld as e:
            logger.info(f"Provisioning lock held by {e.holder.owner}; skipping tick")
            return None

        self._held = lock
        try:
            return self._run_locked()
        except LockLostError as e:
            logger.error(f"Lost provisioning lock, aborting tick: {e}")
            return None
        finally:
            self.locks.release(self._held)
            self._held = None

    def _run_locked(self) -> ExecutionResult:
        now = self._clock()
        result = self._load_or_new(now)
        if not self._prepare(result, now):
            return result
        result.owner = self.owner_id

        while True:
            if self._stop.is_set():
                logger.info(f"Stop requested; pausing at {result.status.value}")
                break
            self._heartbeat()
            previous = result.status
            try:
                self.setup.advance(result)
            except StopRequested:
                logger.info(f"Stop requested; pausing at {previous.value}")
                break
            except ProvisioningError as e:
                self._handle_failure(result, e)

            self._save(result)
            logger.info(f"{previous.value} -> {result.status.value}")
            if result.status in TERMINAL_STATUSES or result.status == WorkerStatus.RETRYING:
                break
        return result

    def _load_or_new(self, now: datetime) -> ExecutionResult:
        try:
            return self.statuses.load()
        except StatusCorruptionError as e:
            logger.warning(f"Status record unreadable, starting fresh: {e}")
        except StatusNotFoundError:
            logger.info(f"No previous run recorded for {self.config.environment}")
        return ExecutionResult(
            environment=self.config.environment, start_time=now, dry_run=self.config.dry_run
        )

    def _prepare(self, result: ExecutionResult, now: datetime) -> bool:
        """Decide whether the loaded run has work to do, moving it to its next step."""
        match result.status:
            case WorkerStatus.COMPLETED:
                if self.config.force_recreate and not self._force_recreate_started:
                    self._force_recreate_started = True
                    logger.info("Force recreate requested; starting a new run")
                    result.status = WorkerStatus.IDLE
                    return True
                if (
                    result.end_time is not None
                    and now - result.end_time >= self.config.revalidate_interval
                ):
                    logger.info("Revalidating completed infrastructure")
                    result.status = WorkerStatus.VALIDATING
                    result.success = False
                    result.start_time = now
                    result.end_time = None
                    return True
                return False
            case WorkerStatus.RETRYING:
                if result.next_retry_at is not None and now < result.next_retry_at:
                    return False
                step = result.failed_step or WorkerStatus.IDLE
                result.status = _RESUME_AT.get(step, step)
                logger.info(
                    f"Retry {result.retry_count}/{self.config.max_retries} "
                    f"resuming at {result.status.value}"
                )
                return True
            case WorkerStatus.FAILED:
                error = result.last_error
                if error is not None and error.recoverable and (
                    result.retry_count < self.config.max_retries
                ):
                    self._schedule_retry(result, now)
                    self._save(result)
                return False
            case WorkerStatus.DELETED | WorkerStatus.DELETION_FAILED:
                return False
            case _:
                if result.status.in_progress:
                    logger.info(f"Resuming interrupted run at {result.status.value}")
                return True

    # ------------------------------------------------------------------
    # Failures and retries

    def retry_delay(self, retry_count: int) -> timedelta:
        """Delay before retry number ``retry_count + 1``."""
        delay = self.config.retry_delay * (self.config.backoff_multiplier**retry_count)
        return min(delay, self.config.max_retry_delay)

    def _handle_failure(self, result: ExecutionResult, error: ProvisioningError) -> None:
        now = self._clock()
        result.failed_step = result.status
        result.status = WorkerStatus.FAILED
        result.success = False
        result.error_message = str(error)
        result.last_error = ErrorInfo(
            code=error.code,
            message=str(error),
            timestamp=now,
            recoverable=error.recoverable,
            retry_after=error.retry_after,
        )
        logger.error(f"Step {result.failed_step.value} failed [{error.code}]: {error}")

        if error.recoverable and result.retry_count < self.config.max_retries:
            self._schedule_retry(result, now)
            return

        reason = "retries exhausted" if error.recoverable else "not recoverable"
        result.error_message = f"{error} ({reason}; manual intervention required)"
        result.next_retry_at = None
        logger.error(f"Provisioning failed for {result.environment}: manual intervention required")

    def _schedule_retry(self, result: ExecutionResult, now: datetime) -> None:
        delay = self.retry_delay(result.retry_count)
        result.status = WorkerStatus.RETRYING
        result.end_time = None
        result.next_retry_at = now + delay
        result.retry_count += 1
        if result.last_error is not None:
            result.last_error.retry_after = delay
        logger.warning(
            f"Retry {result.retry_count}/{self.config.max_retries} scheduled in {delay}"
        )

    # ------------------------------------------------------------------
    # Deletion

    def schedule_delete(self) -> ExecutionResult:
        """Mark the environment's tables for deletion on the next tick.

        Raises:
            WorkerStateError: If deletion is not enabled in the configuration
            LockHeld: If another worker holds the lock
        """
        if not self.config.allow_deletion:
            raise WorkerStateError("Deletion is disabled; set allow_deletion = true")

        lock = self.locks.acquire(self.owner_id)
        try:
            result = self._load_or_new(self._clock())
            result.status = WorkerStatus.DELETION_SCHEDULED
            result.success = False
            result.owner = self.owner_id
            result.error_message = None
            result.last_error = None
            result.retry_count = 0
            result.next_retry_at = None
            result.failed_step = None
            self.statuses.save(result)
        finally:
            self.locks.release(lock)
        logger.warning(f"Deletion scheduled for {self.config.environment}")
        return result

"""Worker process lifecycle: PID records, termination and relaunch."""

import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path

from ..constants import GRACEFUL_SHUTDOWN_TIMEOUT

logger = logging.getLogger(__name__)


def is_pid_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


class ProcessController:
    """Signal and relaunch the background worker process.

    Args:
        pid_path: File holding the PID of the running worker
        config_path: Config file passed to a relaunched worker
        log_path: Log file a relaunched worker writes to
        grace_period: Seconds between SIGTERM and SIGKILL
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        pid_path: Path,
        config_path: Path | None = None,
        log_path: Path | None = None,
        grace_period: float = GRACEFUL_SHUTDOWN_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pid_path = pid_path
        self.config_path = config_path
        self.log_path = log_path
        self.grace_period = grace_period
        self._sleep = sleep

    def write_pid(self, pid: int | None = None) -> None:
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(pid if pid is not None else os.getpid()))

    def read_pid(self) -> int | None:
        try:
            return int(self.pid_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def remove_pid(self) -> None:
        self.pid_path.unlink(missing_ok=True)

    def terminate(self) -> str:
        """Stop the recorded worker process: SIGTERM, then SIGKILL after the grace period.

        Returns:
            Description of what was done, for the restart result
        """
        pid = self.read_pid()
        if pid is None:
            return "no worker process recorded"
        if pid == os.getpid():
            return f"worker runs in this process ({pid}); not signalling"
        if not is_pid_running(pid):
            self.remove_pid()
            return f"worker process {pid} was not running"

        logger.info(f"Sending SIGTERM to worker process {pid}")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.remove_pid()
            return f"worker process {pid} exited before SIGTERM"

        deadline = time.monotonic() + self.grace_period
        while time.monotonic() < deadline:
            if not is_pid_running(pid):
                self.remove_pid()
                return f"terminated worker process {pid}"
            self._sleep(0.1)

        logger.warning(
            f"Worker process {pid} did not exit after {self.grace_period}s, sending SIGKILL"
        )
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        self.remove_pid()
        return f"killed worker process {pid}"

    def launch(self) -> int:
        """Start a fresh detached worker process and return its PID."""
        cmd = [sys.executable, "-m", "infraworker"]
        if self.log_path is not None:
            cmd += ["--log-file", str(self.log_path)]
        cmd.append("run")
        if self.config_path is not None:
            cmd += ["--config", str(self.config_path)]
        logger.info(f"Launching worker: {' '.join(cmd)}")
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        return proc.pid

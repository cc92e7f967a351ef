"""Durable persistence of the current provisioning run."""

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import ValidationError

from ..errors import StatusCorruptionError, StatusNotFoundError
from ..models import TERMINAL_STATUSES, ExecutionResult, WorkerStatus, utcnow
from .records import DurableRecord

logger = logging.getLogger(__name__)


class StatusManager:
    """Load and save the ``ExecutionResult`` for one environment.

    Every save replaces the whole document atomically, so a crash between
    two transitions leaves the last completed transition on disk.
    """

    def __init__(self, record: DurableRecord, clock: Callable[[], datetime] = utcnow) -> None:
        self.record = record
        self._clock = clock

    def load(self) -> ExecutionResult:
        """Load the persisted run.

        Raises:
            StatusNotFoundError: If no run has been recorded
            StatusCorruptionError: If the record exists but cannot be parsed
        """
        raw = self.record.read()
        if raw is None:
            raise StatusNotFoundError("No provisioning run recorded")
        try:
            return ExecutionResult.model_validate_json(raw)
        except (ValidationError, UnicodeError) as e:
            raise StatusCorruptionError(f"Persisted status is unreadable: {e}") from e

    def load_or_none(self) -> ExecutionResult | None:
        """Load the persisted run, treating missing or corrupt records as absent."""
        try:
            return self.load()
        except StatusCorruptionError as e:
            logger.warning(f"Ignoring corrupt status record: {e}")
            return None
        except StatusNotFoundError:
            return None

    def save(self, result: ExecutionResult) -> ExecutionResult:
        """Persist ``result``, stamping ``updated_at`` and terminal timing."""
        now = self._clock()
        result.updated_at = now
        if result.status in TERMINAL_STATUSES:
            if result.end_time is None:
                result.end_time = now
            result.duration = result.end_time - result.start_time
        self.record.write(result.model_dump_json(indent=2))
        return result

    def clear(self) -> None:
        """Remove the persisted run."""
        self.record.delete()

    def is_setup_completed(self) -> bool:
        """True if the last recorded run completed successfully."""
        result = self.load_or_none()
        return result is not None and result.status == WorkerStatus.COMPLETED and result.success

"""Error taxonomy for the provisioning worker."""

from datetime import timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ExecutionResult, LockInfo, RestartResult


class InfraWorkerError(Exception):
    """Base exception for infraworker errors."""


class ConfigError(InfraWorkerError):
    """Raised when the worker configuration cannot be loaded."""


class LockHeld(InfraWorkerError):
    """Another owner holds an unexpired lock.

    This is the normal "someone else is running" outcome of a tick, not a
    failure.
    """

    def __init__(self, holder: "LockInfo") -> None:
        super().__init__(
            f"Lock held by {holder.owner} until {holder.expires_at.isoformat()}"
        )
        self.holder = holder


class LockLostError(InfraWorkerError):
    """The current run no longer owns its lock."""


class StatusNotFoundError(InfraWorkerError):
    """No prior run has been recorded."""


class StatusCorruptionError(StatusNotFoundError):
    """The persisted status exists but cannot be parsed."""


class ProvisioningError(InfraWorkerError):
    """A state-machine step failed.

    Attributes:
        code: Machine-readable error code (e.g. ERROR_TABLE_NOT_ACTIVE).
        recoverable: Whether the worker may retry the run.
        retry_after: Optional hint for the next attempt.
    """

    code = "ERROR_PROVISIONING"
    recoverable = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retry_after: timedelta | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.retry_after = retry_after


class RecoverableProvisioningError(ProvisioningError):
    """Transient failure (activation timeout, store hiccup). Retried with backoff."""

    code = "ERROR_TRANSIENT"


class ValidationMismatch(ProvisioningError):
    """Provisioned resources still disagree with the required set after fixing."""

    code = "ERROR_VALIDATION_MISMATCH"

    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues) or "validation mismatch")
        self.issues = issues


class FatalConfigurationError(ProvisioningError):
    """The required-resource set is malformed. Never retried."""

    code = "ERROR_FATAL_CONFIGURATION"
    recoverable = False


class StopRequested(InfraWorkerError):
    """The worker was asked to stop while a step was polling the store."""


class WorkerRunningError(InfraWorkerError):
    """Restart refused because a healthy worker is currently running."""

    def __init__(self, result: "RestartResult") -> None:
        super().__init__(result.error or "worker is running")
        self.result = result


class WorkerStateError(InfraWorkerError):
    """Worker lifecycle misuse (double start, deletion not allowed, ...)."""

    def __init__(self, message: str, result: "ExecutionResult | None" = None) -> None:
        super().__init__(message)
        self.result = result

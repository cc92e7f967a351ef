"""Pydantic data models for infraworker.

This package defines the records persisted and exchanged by the worker:
- Lock records (LockInfo)
- Run status snapshots (ExecutionResult, TableStatus, IndexStatus, ErrorInfo)
- Derived progress (ProgressInfo)
- Restart outcomes (RestartResult)

Example:
    >>> from infraworker.models import ExecutionResult, WorkerStatus
    >>> result = ExecutionResult(environment="staging", status=WorkerStatus.IDLE)
    >>> result.model_dump_json()
"""

from .lock import LockInfo
from .restart import RestartResult
from .status import (
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    ErrorInfo,
    ExecutionResult,
    IndexStatus,
    ProgressInfo,
    TableStatus,
    WorkerStatus,
    utcnow,
)

__all__ = [
    "IN_PROGRESS_STATUSES",
    "TERMINAL_STATUSES",
    "ErrorInfo",
    "ExecutionResult",
    "IndexStatus",
    "LockInfo",
    "ProgressInfo",
    "RestartResult",
    "TableStatus",
    "WorkerStatus",
    "utcnow",
]

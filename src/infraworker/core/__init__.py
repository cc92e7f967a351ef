"""Core provisioning logic for infraworker.

This package contains the worker's moving parts:
- records: Durable keyed records (file and in-memory)
- lock_manager: Owner-based, expiring environment lock
- status_manager: Persistence of the current run
- provisioner: Table/index provisioning state machine
- worker: Scheduling, retries and crash recovery
- health: Status enrichment, health verdicts and restarts
"""

from .health import HealthService, calculate_progress
from .lock_manager import LockManager
from .provisioner import InfrastructureSetup, IssueKind, ValidationIssue
from .records import DurableRecord, FileRecord, MemoryRecord
from .status_manager import StatusManager
from .worker import Worker

__all__ = [
    "DurableRecord",
    "FileRecord",
    "HealthService",
    "InfrastructureSetup",
    "IssueKind",
    "LockManager",
    "MemoryRecord",
    "StatusManager",
    "ValidationIssue",
    "Worker",
    "calculate_progress",
]

"""External service integrations for infraworker.

This package provides interfaces to the systems the worker drives:
- table_store: TableStore protocol, descriptions and errors
- dynamodb: DynamoDB-backed table store (boto3)
- memory_store: In-memory table store for tests and local runs
- process: Worker process signalling and relaunch
"""

from ..config import StoreConfig
from .dynamodb import DynamoTableStore
from .memory_store import InMemoryTableStore
from .process import ProcessController, is_pid_running
from .table_store import (
    ACTIVE,
    CREATING,
    DELETING,
    FAILED_STATES,
    IndexDescription,
    Item,
    ResourceInUseError,
    SchemaRejectedError,
    TableDescription,
    TableNotFoundError,
    TableStore,
    TableStoreError,
)


def make_table_store(config: StoreConfig) -> TableStore:
    """Build the table store selected by ``config.backend``."""
    if config.backend == "memory":
        return InMemoryTableStore()
    return DynamoTableStore(config)


__all__ = [
    "ACTIVE",
    "CREATING",
    "DELETING",
    "FAILED_STATES",
    "DynamoTableStore",
    "InMemoryTableStore",
    "IndexDescription",
    "Item",
    "ProcessController",
    "ResourceInUseError",
    "SchemaRejectedError",
    "TableDescription",
    "TableNotFoundError",
    "TableStore",
    "TableStoreError",
    "is_pid_running",
    "make_table_store",
]

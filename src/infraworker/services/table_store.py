"""Table store capability used by the provisioning state machine.

Tables and indexes move asynchronously through ``CREATING -> ACTIVE`` (or a
failed state), so callers must poll ``describe_table`` rather than assume a
create is synchronous.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import IndexSpec, KeyAttribute, TableSpec
from ..errors import InfraWorkerError

ACTIVE = "ACTIVE"
CREATING = "CREATING"
DELETING = "DELETING"
UPDATING = "UPDATING"

# Table or index states from which the resource will never become active
FAILED_STATES = frozenset({"FAILED", "INACCESSIBLE_ENCRYPTION_CREDENTIALS", "ARCHIVED"})

Item = dict[str, Any]


class TableStoreError(InfraWorkerError):
    """Transient or unclassified table store failure."""


class TableNotFoundError(TableStoreError):
    """The named table does not exist."""


class ResourceInUseError(TableStoreError):
    """The resource already exists or is busy with another operation."""


class SchemaRejectedError(TableStoreError):
    """The store refused the request shape. Retrying will not help."""


@dataclass(frozen=True)
class IndexDescription:
    """Store-side view of a secondary index."""

    name: str
    status: str
    partition_key: KeyAttribute
    sort_key: KeyAttribute | None = None

    @property
    def active(self) -> bool:
        return self.status == ACTIVE


@dataclass(frozen=True)
class TableDescription:
    """Store-side view of a table and its secondary indexes."""

    name: str
    status: str
    partition_key: KeyAttribute
    sort_key: KeyAttribute | None = None
    indexes: list[IndexDescription] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.status == ACTIVE

    def index(self, name: str) -> IndexDescription | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None


class TableStore(Protocol):
    """Operations the worker and the CRUD layer need from the table store."""

    def create_table(self, name: str, spec: TableSpec) -> None:
        """Create ``name`` with the key schema and indexes of ``spec``.

        Raises ResourceInUseError if the table already exists.
        """
        ...

    def describe_table(self, name: str) -> TableDescription:
        """Describe ``name``. Raises TableNotFoundError if absent."""
        ...

    def delete_table(self, name: str) -> None:
        """Start deleting ``name``. Raises TableNotFoundError if absent."""
        ...

    def create_index(self, table: str, spec: TableSpec, index: IndexSpec) -> None:
        """Add ``index`` to ``table``.

        Raises ResourceInUseError if the index exists or another index is
        still building on the table.
        """
        ...

    def delete_index(self, table: str, index_name: str) -> None:
        """Start dropping ``index_name`` from ``table``."""
        ...

    def list_tables(self) -> list[str]:
        ...

    def get_item(self, table: str, key: Item) -> Item | None:
        ...

    def put_item(self, table: str, item: Item) -> None:
        ...

    def update_item(self, table: str, key: Item, updates: Item) -> Item:
        """Set ``updates`` on the item at ``key`` and return the new item."""
        ...

    def delete_item(self, table: str, key: Item) -> None:
        ...

    def query_by_index(self, table: str, index_name: str, key_name: str, value: Any) -> list[Item]:
        """Return items whose ``key_name`` equals ``value`` through ``index_name``."""
        ...

    def scan(self, table: str, limit: int | None = None) -> list[Item]:
        ...

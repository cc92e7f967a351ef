"""In-memory implementation of the table store.

Useful for tests and local runs without a database. Tables and indexes go
through the same asynchronous lifecycle as the real store: they report
``CREATING`` (or ``DELETING``) for ``activation_delay`` describes before
settling. Data is not persisted across process restarts.
"""

import copy
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from ..config import IndexSpec, KeyAttribute, TableSpec
from .table_store import (
    ACTIVE,
    CREATING,
    DELETING,
    IndexDescription,
    Item,
    ResourceInUseError,
    TableDescription,
    TableNotFoundError,
)


@dataclass
class _Index:
    name: str
    partition_key: KeyAttribute
    sort_key: KeyAttribute | None
    status: str
    pending: int


@dataclass
class _Table:
    name: str
    partition_key: KeyAttribute
    sort_key: KeyAttribute | None
    status: str
    pending: int
    indexes: dict[str, _Index] = field(default_factory=dict)
    items: dict[tuple, Item] = field(default_factory=dict)

    def item_key(self, key: Item) -> tuple:
        names = [self.partition_key.name] + ([self.sort_key.name] if self.sort_key else [])
        return tuple(key.get(name) for name in names)


class InMemoryTableStore:
    """Thread-safe table store kept in local memory.

    Attributes:
        activation_delay: Describes a resource stays CREATING/DELETING for.
        calls: Mutating calls made, as ``(operation, resource)`` pairs.
    """

    def __init__(self, activation_delay: int = 1) -> None:
        self.activation_delay = activation_delay
        self.calls: list[tuple[str, str]] = []
        self._tables: dict[str, _Table] = {}
        self._faults: dict[str, list[Exception]] = defaultdict(list)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Test hooks

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        with self._lock:
            self._faults[operation].extend([error] * times)

    def set_table_status(self, name: str, status: str) -> None:
        with self._lock:
            self._get(name).status = status

    def add_table(
        self, spec: TableSpec, name: str | None = None, with_indexes: bool = True
    ) -> None:
        """Insert an already-active table, bypassing the lifecycle."""
        with self._lock:
            table = self._new_table(name or spec.name, spec, status=ACTIVE)
            if not with_indexes:
                table.indexes.clear()
            self._tables[table.name] = table

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _raise_fault(self, operation: str) -> None:
        faults = self._faults.get(operation)
        if faults:
            raise faults.pop(0)

    # ------------------------------------------------------------------
    # Table lifecycle

    def _new_table(self, name: str, spec: TableSpec, status: str) -> _Table:
        pending = 0 if status == ACTIVE else self.activation_delay
        table = _Table(
            name=name,
            partition_key=spec.partition_key,
            sort_key=spec.sort_key,
            status=status,
            pending=pending,
        )
        for index in spec.indexes:
            table.indexes[index.name] = _Index(
                name=index.name,
                partition_key=index.partition_key,
                sort_key=index.sort_key,
                status=status,
                pending=pending,
            )
        return table

    def _get(self, name: str) -> _Table:
        table = self._tables.get(name)
        if table is None:
            raise TableNotFoundError(f"Table not found: {name}")
        return table

    def create_table(self, name: str, spec: TableSpec) -> None:
        with self._lock:
            self._raise_fault("create_table")
            if name in self._tables:
                raise ResourceInUseError(f"Table already exists: {name}")
            self.calls.append(("create_table", name))
            self._tables[name] = self._new_table(name, spec, status=CREATING)

    def describe_table(self, name: str) -> TableDescription:
        with self._lock:
            self._raise_fault("describe_table")
            table = self._get(name)
            self._tick(table)
            if table.name not in self._tables:
                raise TableNotFoundError(f"Table not found: {name}")
            return TableDescription(
                name=table.name,
                status=table.status,
                partition_key=table.partition_key,
                sort_key=table.sort_key,
                indexes=[
                    IndexDescription(
                        name=index.name,
                        status=index.status,
                        partition_key=index.partition_key,
                        sort_key=index.sort_key,
                    )
                    for index in table.indexes.values()
                ],
            )

    def _tick(self, table: _Table) -> None:
        """Advance pending lifecycle transitions by one describe."""
        if table.status in (CREATING, DELETING):
            if table.pending > 0:
                table.pending -= 1
            elif table.status == DELETING:
                del self._tables[table.name]
                return
            else:
                table.status = ACTIVE
        for index in list(table.indexes.values()):
            if index.status not in (CREATING, DELETING):
                continue
            if index.pending > 0:
                index.pending -= 1
            elif index.status == DELETING:
                del table.indexes[index.name]
            else:
                index.status = ACTIVE

    def delete_table(self, name: str) -> None:
        with self._lock:
            self._raise_fault("delete_table")
            table = self._get(name)
            if table.status == DELETING:
                raise ResourceInUseError(f"Table is already being deleted: {name}")
            self.calls.append(("delete_table", name))
            table.status = DELETING
            table.pending = self.activation_delay

    def create_index(self, table: str, spec: TableSpec, index: IndexSpec) -> None:
        with self._lock:
            self._raise_fault("create_index")
            target = self._get(table)
            if index.name in target.indexes:
                raise ResourceInUseError(f"Index already exists: {table}.{index.name}")
            if target.status != ACTIVE or any(
                i.status == CREATING for i in target.indexes.values()
            ):
                raise ResourceInUseError(f"Table {table} is busy; try again later")
            self.calls.append(("create_index", f"{table}.{index.name}"))
            target.indexes[index.name] = _Index(
                name=index.name,
                partition_key=index.partition_key,
                sort_key=index.sort_key,
                status=CREATING,
                pending=self.activation_delay,
            )

    def delete_index(self, table: str, index_name: str) -> None:
        with self._lock:
            self._raise_fault("delete_index")
            target = self._get(table)
            index = target.indexes.get(index_name)
            if index is None:
                raise TableNotFoundError(f"Index not found: {table}.{index_name}")
            self.calls.append(("delete_index", f"{table}.{index_name}"))
            index.status = DELETING
            index.pending = self.activation_delay

    def list_tables(self) -> list[str]:
        with self._lock:
            return sorted(self._tables)

    # ------------------------------------------------------------------
    # Item operations

    def get_item(self, table: str, key: Item) -> Item | None:
        with self._lock:
            target = self._get(table)
            item = target.items.get(target.item_key(key))
            return copy.deepcopy(item) if item is not None else None

    def put_item(self, table: str, item: Item) -> None:
        with self._lock:
            target = self._get(table)
            target.items[target.item_key(item)] = copy.deepcopy(item)

    def update_item(self, table: str, key: Item, updates: Item) -> Item:
        with self._lock:
            target = self._get(table)
            item = target.items.setdefault(target.item_key(key), dict(key))
            item.update(copy.deepcopy(updates))
            return copy.deepcopy(item)

    def delete_item(self, table: str, key: Item) -> None:
        with self._lock:
            target = self._get(table)
            target.items.pop(target.item_key(key), None)

    def query_by_index(self, table: str, index_name: str, key_name: str, value: Any) -> list[Item]:
        with self._lock:
            target = self._get(table)
            if index_name not in target.indexes:
                raise TableNotFoundError(f"Index not found: {table}.{index_name}")
            return [
                copy.deepcopy(item) for item in target.items.values() if item.get(key_name) == value
            ]

    def scan(self, table: str, limit: int | None = None) -> list[Item]:
        with self._lock:
            items = [copy.deepcopy(item) for item in self._get(table).items.values()]
            return items if limit is None else items[:limit]

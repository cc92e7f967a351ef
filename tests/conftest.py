"""Shared test fixtures for infraworker tests."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from infraworker.config import IndexSpec, KeyAttribute, TableSpec, WorkerConfig
from infraworker.core import LockManager, MemoryRecord, StatusManager, Worker
from infraworker.services import InMemoryTableStore, ProcessController


class FakeClock:
    """Manually advanced clock. ``sleep`` advances time instead of waiting."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta | float) -> None:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self.now += delta

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tables() -> list[TableSpec]:
    """The users/roles table set with two indexes each."""
    return [
        TableSpec(
            name="users",
            partition_key=KeyAttribute(name="id"),
            indexes=[
                IndexSpec(name="email-index", partition_key=KeyAttribute(name="email")),
                IndexSpec(name="username-index", partition_key=KeyAttribute(name="username")),
            ],
        ),
        TableSpec(
            name="roles",
            partition_key=KeyAttribute(name="id"),
            indexes=[
                IndexSpec(name="name-index", partition_key=KeyAttribute(name="name")),
                IndexSpec(name="status-index", partition_key=KeyAttribute(name="status")),
            ],
        ),
    ]


@pytest.fixture
def make_config(tmp_path: Path, tables: list[TableSpec]) -> Callable[..., WorkerConfig]:
    """Build a WorkerConfig rooted in tmp_path; keyword arguments override fields."""

    def _make(**overrides: Any) -> WorkerConfig:
        data: dict[str, Any] = {
            "environment": "testing",
            "state_dir": tmp_path,
            "tables": tables,
            "retry_delay": timedelta(minutes=2),
            "max_retries": 3,
        }
        data.update(overrides)
        return WorkerConfig(**data)

    return _make


@pytest.fixture
def config(make_config: Callable[..., WorkerConfig]) -> WorkerConfig:
    return make_config()


@pytest.fixture
def store() -> InMemoryTableStore:
    return InMemoryTableStore(activation_delay=1)


@pytest.fixture
def lock_record() -> MemoryRecord:
    return MemoryRecord()


@pytest.fixture
def status_record() -> MemoryRecord:
    return MemoryRecord()


@pytest.fixture
def make_worker(
    tmp_path: Path,
    store: InMemoryTableStore,
    clock: FakeClock,
    lock_record: MemoryRecord,
    status_record: MemoryRecord,
) -> Callable[..., Worker]:
    """Build workers that share the same lock and status records (like two processes)."""

    def _make(config: WorkerConfig, owner_id: str = "worker-a", **kwargs: Any) -> Worker:
        return Worker(
            config,
            kwargs.pop("store", store),
            lock_manager=LockManager(lock_record, config.environment, config.lock_timeout, clock),
            status_manager=StatusManager(status_record, clock),
            processes=ProcessController(tmp_path / f"{owner_id}.pid"),
            clock=clock,
            sleep=clock.sleep,
            owner_id=owner_id,
            **kwargs,
        )

    return _make


def _write_config(path: Path, state_dir: Path, **extra: str) -> Path:
    """Write a minimal TOML config using the in-memory store."""
    lines = [
        'environment = "testing"',
        f'state_dir = "{state_dir}"',
        "poll_interval = 0",
        "schedule_interval = 1",
        *(f"{k} = {v}" for k, v in extra.items()),
        "",
        "[store]",
        'backend = "memory"',
        "",
        "[[tables]]",
        'name = "users"',
        'partition_key = { name = "id", type = "S" }',
        "",
        "[[tables.indexes]]",
        'name = "email-index"',
        'partition_key = { name = "email", type = "S" }',
    ]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A config file in tmp_path pointing state at tmp_path/state."""
    return _write_config(tmp_path / "infraworker.toml", tmp_path / "state")


@pytest.fixture
def write_config() -> Callable[..., Path]:
    """Writer for minimal TOML configs; extra keyword arguments become raw TOML lines."""
    return _write_config

"""Configuration management for infraworker."""

import os
import tomllib
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Literal, Self

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError

CONFIG_FILENAME = "infraworker.toml"
CONFIG_ENV_VAR = "INFRAWORKER_CONFIG"

AttributeType = Literal["S", "N", "B"]


class BillingMode(str, Enum):
    """Table billing modes supported by the store."""

    PAY_PER_REQUEST = "PAY_PER_REQUEST"
    PROVISIONED = "PROVISIONED"


class ProjectionType(str, Enum):
    """Which attributes a secondary index carries."""

    ALL = "ALL"
    KEYS_ONLY = "KEYS_ONLY"
    INCLUDE = "INCLUDE"


class KeyAttribute(BaseModel):
    """A key attribute: name plus scalar type (S, N or B)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    type: AttributeType = "S"


class IndexSpec(BaseModel):
    """A required global secondary index."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=3)
    partition_key: KeyAttribute
    sort_key: KeyAttribute | None = None
    projection: ProjectionType = ProjectionType.ALL
    non_key_attributes: list[str] = Field(default_factory=list)

    def key_attributes(self) -> list[KeyAttribute]:
        return [k for k in (self.partition_key, self.sort_key) if k is not None]


class TableSpec(BaseModel):
    """A required table and its secondary indexes."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Logical table name (prefix is added)")
    partition_key: KeyAttribute
    sort_key: KeyAttribute | None = None
    billing_mode: BillingMode = BillingMode.PAY_PER_REQUEST
    read_capacity: int = Field(default=5, ge=1)
    write_capacity: int = Field(default=5, ge=1)
    indexes: list[IndexSpec] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    def key_attributes(self) -> list[KeyAttribute]:
        return [k for k in (self.partition_key, self.sort_key) if k is not None]

    def attribute_definitions(self) -> list[KeyAttribute]:
        """All key attributes used by the table and its indexes, first declaration wins."""
        seen: dict[str, KeyAttribute] = {}
        for attr in self.key_attributes():
            seen.setdefault(attr.name, attr)
        for index in self.indexes:
            for attr in index.key_attributes():
                seen.setdefault(attr.name, attr)
        return list(seen.values())


class StoreConfig(BaseModel):
    """Connection settings for the table store."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["dynamodb", "memory"] = "dynamodb"
    region: str | None = None
    endpoint_url: str | None = None
    profile: str | None = None
    connect_timeout: float = Field(default=5.0, gt=0)
    read_timeout: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)


def default_schedule_interval(environment: str) -> timedelta:
    """Environment-specific tick interval."""
    match environment:
        case "development":
            return timedelta(seconds=30)
        case "testing":
            return timedelta(minutes=5)
        case "production":
            return timedelta(minutes=15)
        case _:
            return timedelta(minutes=10)


class WorkerConfig(BaseModel):
    """Immutable per-run worker configuration.

    Durations accept seconds (int/float) or ISO 8601 strings in TOML.
    Loaded once when the worker is constructed and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    environment: str = Field(default="development", min_length=1)

    # Scheduling
    schedule_interval: timedelta | None = None
    revalidate_interval: timedelta = timedelta(hours=1)

    # Lock settings
    lock_timeout: timedelta = timedelta(minutes=30)
    lock_retry_interval: timedelta = timedelta(seconds=5)

    # Retry settings
    max_retries: int = Field(default=5, ge=0)
    retry_delay: timedelta = timedelta(seconds=30)
    backoff_multiplier: float = 2.0
    max_retry_delay: timedelta = timedelta(hours=1)

    # Polling
    poll_interval: timedelta = timedelta(seconds=15)
    table_wait_timeout: timedelta = timedelta(minutes=10)
    index_wait_timeout: timedelta = timedelta(minutes=10)
    delete_wait_timeout: timedelta = timedelta(minutes=10)

    # Validation
    max_fix_attempts: int = Field(default=1, ge=1)

    # Health
    staleness_bound: timedelta = timedelta(minutes=30)
    stuck_retry_threshold: int = Field(default=5, ge=0)

    # Required resources
    table_prefix: str = ""
    tables: list[TableSpec] = Field(default_factory=list)

    # Paths
    state_dir: Path = Path("/tmp")
    lock_file_path: Path | None = None
    status_file_path: Path | None = None
    pid_file_path: Path | None = None
    log_file_path: Path | None = None

    # Feature flags
    dry_run: bool = False
    skip_validation: bool = False
    force_recreate: bool = False
    run_once: bool = False
    allow_deletion: bool = False

    store: StoreConfig = Field(default_factory=StoreConfig)

    @model_validator(mode="after")
    def validate_worker_settings(self) -> Self:
        """Reject inconsistent settings up front."""
        if self.lock_timeout <= timedelta(0):
            raise ValueError("lock_timeout must be positive")
        if self.retry_delay <= timedelta(0):
            raise ValueError("retry_delay must be positive")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be at least 1.0")
        if not self.tables:
            raise ValueError("at least one required table must be specified")
        if self.force_recreate and self.skip_validation:
            raise ValueError("force_recreate and skip_validation cannot both be true")
        return self

    @property
    def tick_interval(self) -> timedelta:
        return self.schedule_interval or default_schedule_interval(self.environment)

    @property
    def lock_path(self) -> Path:
        return self.lock_file_path or self.state_dir / f"infraworker-{self.environment}.lock"

    @property
    def status_path(self) -> Path:
        return self.status_file_path or (
            self.state_dir / f"infraworker-{self.environment}-status.json"
        )

    @property
    def pid_path(self) -> Path:
        return self.pid_file_path or self.state_dir / f"infraworker-{self.environment}.pid"

    @property
    def log_path(self) -> Path:
        """Log file of a worker relaunched in the background."""
        return self.log_file_path or self.state_dir / f"infraworker-{self.environment}.log"

    def physical_name(self, table: TableSpec) -> str:
        """Store-side name of ``table``: ``<prefix>_<name>`` when a prefix is set."""
        if self.table_prefix:
            return f"{self.table_prefix}_{table.name}"
        return table.name


_BOOL_ENV_OVERRIDES = {
    "INFRASTRUCTURE_DRY_RUN": "dry_run",
    "INFRASTRUCTURE_SKIP_VALIDATION": "skip_validation",
    "INFRASTRUCTURE_FORCE_RECREATE": "force_recreate",
}


def apply_env_overrides(data: dict, environ: dict[str, str] | None = None) -> dict:
    """Overlay supported environment variables on raw config data."""
    env = os.environ if environ is None else environ
    merged = dict(data)
    if env.get("INFRAWORKER_ENV"):
        merged["environment"] = env["INFRAWORKER_ENV"]
    for var, key in _BOOL_ENV_OVERRIDES.items():
        if var in env:
            merged[key] = env[var].strip().lower() == "true"
    return merged


def resolve_config_path(path: Path | None = None) -> Path:
    """Pick the config path: explicit argument, then $INFRAWORKER_CONFIG, then cwd."""
    if path is not None:
        return path
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env)
    return Path.cwd() / CONFIG_FILENAME


def load_config(path: Path | None = None, environ: dict[str, str] | None = None) -> WorkerConfig:
    """Load worker config from a TOML file.

    Args:
        path: Config file path (see resolve_config_path for defaults)
        environ: Environment used for overrides (defaults to os.environ)

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file is missing, not valid TOML, or fails validation
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
    try:
        return WorkerConfig.model_validate(apply_env_overrides(data, environ))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e


def write_config_template(path: Path) -> Path:
    """Write a default config template.

    Args:
        path: Destination file

    Returns:
        Path to the written config file
    """
    template = {
        "environment": "development",
        "table_prefix": "dev",
        "state_dir": "/tmp",
        "lock_timeout": 1800,
        "max_retries": 5,
        "retry_delay": 30,
        "backoff_multiplier": 2.0,
        "poll_interval": 15,
        "table_wait_timeout": 600,
        "index_wait_timeout": 600,
        "dry_run": False,
        "skip_validation": False,
        "force_recreate": False,
        "run_once": False,
        "allow_deletion": False,
        "store": {"backend": "dynamodb", "region": "us-east-1"},
        "tables": [
            {
                "name": "users",
                "partition_key": {"name": "id", "type": "S"},
                "indexes": [
                    {"name": "email-index", "partition_key": {"name": "email", "type": "S"}},
                    {
                        "name": "username-index",
                        "partition_key": {"name": "username", "type": "S"},
                    },
                ],
                "tags": {"CreatedBy": "infrastructure-worker"},
            },
            {
                "name": "roles",
                "partition_key": {"name": "id", "type": "S"},
                "indexes": [
                    {"name": "name-index", "partition_key": {"name": "name", "type": "S"}},
                    {"name": "status-index", "partition_key": {"name": "status", "type": "S"}},
                ],
                "tags": {"CreatedBy": "infrastructure-worker"},
            },
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(template, f)
    return path

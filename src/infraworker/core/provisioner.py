"""Provisioning state machine.

``InfrastructureSetup.advance`` performs exactly one step for the current
status and moves the result to its next state. The caller persists the
result after every call, so a crash resumes at the step after the last one
saved. Every store mutation is idempotent: creating something that already
exists counts as success.

Polling waits go through the injected ``sleep`` so the worker can interrupt
them; mutating calls are never interrupted.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from ..config import IndexSpec, KeyAttribute, TableSpec, WorkerConfig
from ..errors import (
    FatalConfigurationError,
    ProvisioningError,
    RecoverableProvisioningError,
    ValidationMismatch,
    WorkerStateError,
)
from ..models import ErrorInfo, ExecutionResult, IndexStatus, TableStatus, WorkerStatus, utcnow
from ..services.table_store import (
    ACTIVE,
    DELETING,
    FAILED_STATES,
    ResourceInUseError,
    SchemaRejectedError,
    TableDescription,
    TableNotFoundError,
    TableStore,
    TableStoreError,
)

logger = logging.getLogger(__name__)


class IssueKind(str, Enum):
    """Kinds of mismatch between the store and the required resources."""

    MISSING_TABLE = "missing_table"
    TABLE_NOT_ACTIVE = "table_not_active"
    TABLE_KEY_MISMATCH = "table_key_mismatch"
    MISSING_INDEX = "missing_index"
    INDEX_NOT_ACTIVE = "index_not_active"
    INDEX_KEY_MISMATCH = "index_key_mismatch"


@dataclass(frozen=True)
class ValidationIssue:
    """One mismatch found by validation."""

    kind: IssueKind
    table: str
    index: str | None = None
    detail: str = ""

    def __str__(self) -> str:
        target = f"{self.table}.{self.index}" if self.index else self.table
        text = f"{self.kind.value}: {target}"
        return f"{text} ({self.detail})" if self.detail else text


class InfrastructureSetup:
    """Drive one environment's tables and indexes towards the required set.

    Args:
        config: Worker configuration (required tables, timeouts, flags)
        store: Table store to provision against
        clock: Time source (injectable for tests)
        sleep: Wait function for polling; may raise to interrupt a wait
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: TableStore,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self._clock = clock
        self._sleep = sleep
        self._steps: dict[WorkerStatus, Callable[[ExecutionResult], None]] = {
            WorkerStatus.IDLE: self._start,
            WorkerStatus.RUNNING: self._start,
            WorkerStatus.INITIALIZING: self._initialize,
            WorkerStatus.CREATING_TABLES: self._create_tables,
            WorkerStatus.WAITING_FOR_TABLES: self._wait_for_tables,
            WorkerStatus.CREATING_INDEXES: self._create_indexes,
            WorkerStatus.WAITING_FOR_INDEXES: self._wait_for_indexes,
            WorkerStatus.VALIDATING: self._validate_step,
            WorkerStatus.FIXING_ISSUES: self._fix_issues,
            WorkerStatus.REVALIDATING: self._revalidate,
            WorkerStatus.DELETION_SCHEDULED: self._schedule_deletion,
            WorkerStatus.DELETING: self._delete_tables,
        }

    @property
    def max_index_passes(self) -> int:
        """One index build per table per pass, plus a pass to adopt existing ones."""
        return max(len(spec.indexes) for spec in self.config.tables) + 1

    def advance(self, result: ExecutionResult) -> ExecutionResult:
        """Perform the step for ``result.status`` and return the updated result.

        Raises:
            ProvisioningError: If the step failed (the caller marks the run failed)
            WorkerStateError: If ``result.status`` has no step to run
        """
        step = self._steps.get(result.status)
        if step is None:
            raise WorkerStateError(f"No provisioning step for status {result.status.value}", result)
        try:
            step(result)
        except ProvisioningError:
            raise
        except SchemaRejectedError as e:
            raise FatalConfigurationError(str(e), code="ERROR_SCHEMA_REJECTED") from e
        except TableStoreError as e:
            raise RecoverableProvisioningError(str(e), code="ERROR_TABLE_STORE") from e
        return result

    # ------------------------------------------------------------------
    # Helpers

    def _physical(self) -> list[tuple[str, TableSpec]]:
        return [(self.config.physical_name(spec), spec) for spec in self.config.tables]

    def _describe(self, name: str) -> TableDescription | None:
        try:
            return self.store.describe_table(name)
        except TableNotFoundError:
            return None

    def _mutate(self, result: ExecutionResult, action: str, fn: Callable, *args) -> bool:
        """Issue a mutating call, or record it as planned in a dry run.

        Returns:
            True if the call was issued and accepted (or the resource already existed)
        """
        if self.config.dry_run:
            result.planned_actions.append(action)
            logger.info(f"[dry run] Would {action}")
            return False
        try:
            fn(*args)
        except ResourceInUseError as e:
            logger.info(f"Skipped: {action} ({e})")
            return True
        logger.info(action[0].upper() + action[1:])
        return True

    def _create_table(self, result: ExecutionResult, name: str, spec: TableSpec) -> bool:
        indexes = ", ".join(i.name for i in spec.indexes) or "no indexes"
        return self._mutate(
            result, f"create table {name} ({indexes})", self.store.create_table, name, spec
        )

    def _delete_table(self, result: ExecutionResult, name: str, reason: str = "") -> bool:
        action = f"delete table {name}" + (f" ({reason})" if reason else "")
        return self._mutate(result, action, self.store.delete_table, name)

    def _create_index(
        self, result: ExecutionResult, table: str, spec: TableSpec, index: IndexSpec
    ) -> bool:
        action = f"create index {table}.{index.name}"
        issued = self._mutate(result, action, self.store.create_index, table, spec, index)
        if issued:
            self._track_index(result, table, index.name, "CREATING")
        return issued

    def _track_table(
        self, result: ExecutionResult, name: str, spec: TableSpec, desc: TableDescription | None
    ) -> TableStatus:
        now = self._clock()
        entry = result.table(name)
        if entry is None:
            entry = TableStatus(name=name, status="CREATING", created_at=now)
            result.tables_created.append(entry)
        entry.expected_indexes = len(spec.indexes)
        if desc is not None:
            entry.status = desc.status
            entry.index_count = len(desc.indexes)
        if entry.status == ACTIVE and entry.became_active_at is None:
            entry.became_active_at = now
        return entry

    def _track_index(self, result: ExecutionResult, table: str, name: str, status: str) -> None:
        now = self._clock()
        entry = result.index(table, name)
        if entry is None:
            entry = IndexStatus(name=name, table=table, status=status, created_at=now)
            result.indexes_created.append(entry)
        entry.status = status
        if status == ACTIVE and entry.became_active_at is None:
            entry.became_active_at = now

    def _poll(
        self, timeout: timedelta, check: Callable[[], list[str]], what: str, code: str
    ) -> None:
        """Call ``check`` until it reports nothing pending or ``timeout`` elapses."""
        deadline = self._clock() + timeout
        while True:
            pending = check()
            if not pending:
                return
            if self._clock() >= deadline:
                raise RecoverableProvisioningError(
                    f"Timed out after {timeout} waiting for {what}: {', '.join(pending)}",
                    code=code,
                    retry_after=self.config.poll_interval,
                )
            logger.debug(f"Waiting for {what}: {', '.join(pending)}")
            self._sleep(self.config.poll_interval.total_seconds())

    def _await_table_gone(self, name: str) -> None:
        self._poll(
            self.config.delete_wait_timeout,
            lambda: [name] if self._describe(name) is not None else [],
            "table deletion",
            "ERROR_DELETE_TIMEOUT",
        )

    def _await_index_gone(self, table: str, index: str) -> None:
        def check() -> list[str]:
            desc = self._describe(table)
            return [f"{table}.{index}"] if desc is not None and desc.index(index) else []

        self._poll(self.config.delete_wait_timeout, check, "index deletion", "ERROR_DELETE_TIMEOUT")

    def _complete(self, result: ExecutionResult) -> None:
        result.status = WorkerStatus.COMPLETED
        result.success = True
        result.end_time = None
        result.error_message = None
        result.last_error = None
        result.retry_count = 0
        result.next_retry_at = None
        result.failed_step = None

    # ------------------------------------------------------------------
    # Setup track

    def _start(self, result: ExecutionResult) -> None:
        result.status = WorkerStatus.INITIALIZING

    def _initialize(self, result: ExecutionResult) -> None:
        problems = self.check_required_resources()
        if problems:
            raise FatalConfigurationError(
                "Invalid required-resource set: " + "; ".join(problems),
                code="ERROR_INVALID_TABLE_SPEC",
            )
        result.reset_run(self._clock())
        result.dry_run = self.config.dry_run
        result.status = WorkerStatus.CREATING_TABLES

    def check_required_resources(self) -> list[str]:
        """Return problems that make the configured table set unusable."""
        problems = []
        seen_tables: set[str] = set()
        for name, spec in self._physical():
            if name in seen_tables:
                problems.append(f"duplicate table {name}")
            seen_tables.add(name)

            seen_indexes: set[str] = set()
            for index in spec.indexes:
                if index.name in seen_indexes:
                    problems.append(f"duplicate index {index.name} on {name}")
                seen_indexes.add(index.name)

            types: dict[str, str] = {}
            keys = spec.key_attributes() + [k for i in spec.indexes for k in i.key_attributes()]
            for attr in keys:
                if types.setdefault(attr.name, attr.type) != attr.type:
                    problems.append(
                        f"attribute {attr.name} on {name} declared as both "
                        f"{types[attr.name]} and {attr.type}"
                    )
        return problems

    def _create_tables(self, result: ExecutionResult) -> None:
        for name, spec in self._physical():
            desc = self._describe(name)

            if (
                desc is not None
                and self.config.force_recreate
                and name not in result.recreated_tables
            ):
                result.recreated_tables.append(name)
                if self._delete_table(result, name, "force recreate"):
                    self._await_table_gone(name)
                    desc = None

            if desc is not None and desc.status == DELETING:
                self._await_table_gone(name)
                desc = None

            if desc is None:
                if self._create_table(result, name, spec):
                    self._track_table(result, name, spec, None)
            else:
                logger.info(f"Table {name} already exists ({desc.status})")
                self._track_table(result, name, spec, desc)

        result.status = WorkerStatus.WAITING_FOR_TABLES

    def _wait_for_tables(self, result: ExecutionResult) -> None:
        def check() -> list[str]:
            pending = []
            for name, spec in self._physical():
                desc = self._describe(name)
                if desc is None:
                    if not self.config.dry_run:
                        pending.append(name)
                    continue
                if desc.status in FAILED_STATES:
                    raise RecoverableProvisioningError(
                        f"Table {name} entered state {desc.status}", code="ERROR_TABLE_FAILED"
                    )
                self._track_table(result, name, spec, desc)
                if not desc.active:
                    pending.append(name)
            return pending

        self._poll(self.config.table_wait_timeout, check, "tables", "ERROR_TABLE_TIMEOUT")
        result.status = WorkerStatus.CREATING_INDEXES

    def _create_indexes(self, result: ExecutionResult) -> None:
        result.index_passes += 1
        for name, spec in self._physical():
            desc = self._describe(name)
            if desc is None:
                if self.config.dry_run:
                    continue
                raise RecoverableProvisioningError(
                    f"Table {name} disappeared while creating indexes", code="ERROR_TABLE_MISSING"
                )

            missing: list[IndexSpec] = []
            for index in spec.indexes:
                found = desc.index(index.name)
                if found is None:
                    missing.append(index)
                else:
                    self._track_index(result, name, index.name, found.status)

            if self.config.dry_run:
                for index in missing:
                    self._create_index(result, name, spec, index)
                continue

            # The store builds one index per table at a time
            if missing:
                self._create_index(result, name, spec, missing[0])

        result.status = WorkerStatus.WAITING_FOR_INDEXES

    def _wait_for_indexes(self, result: ExecutionResult) -> None:
        missing: list[str] = []

        def check() -> list[str]:
            missing.clear()
            pending = []
            for name, spec in self._physical():
                desc = self._describe(name)
                if desc is None:
                    if self.config.dry_run:
                        continue
                    raise RecoverableProvisioningError(
                        f"Table {name} disappeared while waiting for indexes",
                        code="ERROR_TABLE_MISSING",
                    )
                for index in spec.indexes:
                    found = desc.index(index.name)
                    if found is None:
                        missing.append(f"{name}.{index.name}")
                        continue
                    if found.status in FAILED_STATES:
                        raise RecoverableProvisioningError(
                            f"Index {name}.{index.name} entered state {found.status}",
                            code="ERROR_INDEX_FAILED",
                        )
                    self._track_index(result, name, index.name, found.status)
                    if not found.active:
                        pending.append(f"{name}.{index.name}")
                self._track_table(result, name, spec, desc)
            return pending

        self._poll(self.config.index_wait_timeout, check, "indexes", "ERROR_INDEX_TIMEOUT")

        if missing and not self.config.dry_run:
            if result.index_passes >= self.max_index_passes:
                raise RecoverableProvisioningError(
                    f"Indexes still missing after {result.index_passes} passes: "
                    f"{', '.join(missing)}",
                    code="ERROR_INDEX_MISSING",
                )
            result.status = WorkerStatus.CREATING_INDEXES
        elif self.config.skip_validation:
            logger.info("Skipping validation")
            self._complete(result)
        else:
            result.status = WorkerStatus.VALIDATING

    # ------------------------------------------------------------------
    # Validation

    def validate(self) -> list[ValidationIssue]:
        """Describe every required resource and report mismatches."""
        issues = []
        for name, spec in self._physical():
            desc = self._describe(name)
            if desc is None:
                issues.append(ValidationIssue(IssueKind.MISSING_TABLE, name))
                continue
            if (desc.partition_key, desc.sort_key) != (spec.partition_key, spec.sort_key):
                issues.append(
                    ValidationIssue(
                        IssueKind.TABLE_KEY_MISMATCH,
                        name,
                        detail=f"found {_keys(desc.partition_key, desc.sort_key)}, "
                        f"want {_keys(spec.partition_key, spec.sort_key)}",
                    )
                )
                # Recreating the table brings its indexes back too
                continue
            if not desc.active:
                issues.append(ValidationIssue(IssueKind.TABLE_NOT_ACTIVE, name, detail=desc.status))
            for index in spec.indexes:
                found = desc.index(index.name)
                if found is None:
                    issues.append(ValidationIssue(IssueKind.MISSING_INDEX, name, index.name))
                elif (found.partition_key, found.sort_key) != (index.partition_key, index.sort_key):
                    issues.append(
                        ValidationIssue(
                            IssueKind.INDEX_KEY_MISMATCH,
                            name,
                            index.name,
                            detail=f"found {_keys(found.partition_key, found.sort_key)}, "
                            f"want {_keys(index.partition_key, index.sort_key)}",
                        )
                    )
                elif not found.active:
                    issues.append(
                        ValidationIssue(IssueKind.INDEX_NOT_ACTIVE, name, index.name, found.status)
                    )
        return issues

    def _validate_step(self, result: ExecutionResult) -> None:
        result.fix_attempts = 0
        issues = self.validate()
        result.validation_issues = [str(issue) for issue in issues]
        if not issues:
            logger.info("Validation passed")
            self._complete(result)
            return

        logger.warning(
            f"Validation found {len(issues)} issue(s): {'; '.join(result.validation_issues)}"
        )
        if self.config.dry_run:
            for issue in issues:
                result.planned_actions.append(f"fix {issue}")
                logger.info(f"[dry run] Would fix {issue}")
            self._complete(result)
            return
        result.status = WorkerStatus.FIXING_ISSUES

    def _fix_issues(self, result: ExecutionResult) -> None:
        specs = {name: spec for name, spec in self._physical()}
        fixed_tables: set[str] = set()

        for issue in self.validate():
            spec = specs[issue.table]
            match issue.kind:
                case IssueKind.MISSING_TABLE:
                    self._create_table(result, issue.table, spec)
                case IssueKind.TABLE_KEY_MISMATCH:
                    if self._delete_table(result, issue.table, "wrong key schema"):
                        self._await_table_gone(issue.table)
                    self._create_table(result, issue.table, spec)
                case IssueKind.MISSING_INDEX if issue.table not in fixed_tables:
                    fixed_tables.add(issue.table)
                    self._create_index(result, issue.table, spec, _index_spec(spec, issue.index))
                case IssueKind.INDEX_KEY_MISMATCH if issue.table not in fixed_tables:
                    fixed_tables.add(issue.table)
                    index = _index_spec(spec, issue.index)
                    action = f"delete index {issue.table}.{index.name} (wrong key schema)"
                    if self._mutate(
                        result, action, self.store.delete_index, issue.table, index.name
                    ):
                        self._await_index_gone(issue.table, index.name)
                    self._create_index(result, issue.table, spec, index)
                case _:
                    # Not active yet, or the table already has a build in flight
                    logger.debug(f"Waiting out {issue}")

        result.fix_attempts += 1
        self._await_settled(result)
        result.status = WorkerStatus.REVALIDATING

    def _await_settled(self, result: ExecutionResult) -> None:
        """Wait until nothing is CREATING/DELETING. Revalidation reports anything left over."""

        def check() -> list[str]:
            pending = []
            for name, spec in self._physical():
                desc = self._describe(name)
                if desc is None:
                    continue
                self._track_table(result, name, spec, desc)
                if not desc.active and desc.status not in FAILED_STATES:
                    pending.append(name)
                for index in desc.indexes:
                    if not index.active and index.status not in FAILED_STATES:
                        pending.append(f"{name}.{index.name}")
                    elif index.active and result.index(name, index.name):
                        self._track_index(result, name, index.name, ACTIVE)
            return pending

        try:
            self._poll(
                self.config.table_wait_timeout, check, "fixes to settle", "ERROR_FIX_TIMEOUT"
            )
        except RecoverableProvisioningError as e:
            logger.warning(str(e))

    def _revalidate(self, result: ExecutionResult) -> None:
        issues = self.validate()
        result.validation_issues = [str(issue) for issue in issues]
        if not issues:
            logger.info(f"Revalidation passed after {result.fix_attempts} fix attempt(s)")
            self._complete(result)
        elif result.fix_attempts < self.config.max_fix_attempts:
            result.status = WorkerStatus.FIXING_ISSUES
        else:
            raise ValidationMismatch(result.validation_issues)

    # ------------------------------------------------------------------
    # Deletion track

    def _schedule_deletion(self, result: ExecutionResult) -> None:
        result.reset_run(self._clock())
        result.dry_run = self.config.dry_run
        result.status = WorkerStatus.DELETING

    def _delete_tables(self, result: ExecutionResult) -> None:
        try:
            for name, _ in self._physical():
                if self._describe(name) is None:
                    logger.info(f"Table {name} already deleted")
                    continue
                self._delete_table(result, name)
            if not self.config.dry_run:
                self._poll(
                    self.config.delete_wait_timeout,
                    lambda: [n for n, _ in self._physical() if self._describe(n) is not None],
                    "table deletion",
                    "ERROR_DELETE_TIMEOUT",
                )
        except (ProvisioningError, TableStoreError) as e:
            code = getattr(e, "code", "ERROR_DELETION")
            logger.error(f"Deletion failed: {e}")
            result.status = WorkerStatus.DELETION_FAILED
            result.success = False
            result.error_message = f"Deletion failed: {e}"
            result.last_error = ErrorInfo(
                code=code, message=str(e), timestamp=self._clock(), recoverable=False
            )
            return

        result.status = WorkerStatus.DELETED
        result.success = True
        result.error_message = None
        result.last_error = None


def _keys(partition_key: KeyAttribute, sort_key: KeyAttribute | None) -> str:
    text = f"{partition_key.name}:{partition_key.type}"
    return f"{text}/{sort_key.name}:{sort_key.type}" if sort_key else text


def _index_spec(spec: TableSpec, name: str | None) -> IndexSpec:
    for index in spec.indexes:
        if index.name == name:
            return index
    raise FatalConfigurationError(f"Index {name} is not declared on {spec.name}")

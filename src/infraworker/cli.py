"""infraworker CLI: operate the infrastructure provisioning worker."""

import signal
from pathlib import Path

import typer

from infraworker import __version__

from .config import (
    CONFIG_FILENAME,
    WorkerConfig,
    load_config,
    resolve_config_path,
    write_config_template,
)
from .core import FileRecord, HealthService, LockManager, StatusManager, Worker
from .errors import ConfigError, InfraWorkerError, LockHeld, WorkerRunningError, WorkerStateError
from .logging import configure_logging
from .output import OutputContext, get_output_context, set_output_context
from .services import ProcessController, make_table_store


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"infraworker {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="infraworker",
    help="Idempotent table and index provisioning worker",
    no_args_is_help=True,
)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help=f"Config file (defaults to $INFRAWORKER_CONFIG or ./{CONFIG_FILENAME})",
)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v, -vv)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output in JSON format for automation",
    ),
    no_color: bool = typer.Option(
        False,
        "--no-color",
        help="Disable colored output",
    ),
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        help="Also append log records to this file",
    ),
) -> None:
    """infraworker - keep an environment's tables and indexes provisioned."""
    console = configure_logging(
        verbosity=verbose, quiet=quiet, no_color=no_color, log_file=log_file
    )
    set_output_context(OutputContext(console=console, json_mode=json_output))


def _load(config_path: Path | None) -> tuple[WorkerConfig, Path]:
    ctx = get_output_context()
    path = resolve_config_path(config_path)
    try:
        return load_config(path), path
    except ConfigError as e:
        ctx.error(str(e))
        raise typer.Exit(2) from None


def _processes(config: WorkerConfig, path: Path) -> ProcessController:
    return ProcessController(config.pid_path, config_path=path, log_path=config.log_path)


def _health_service(config: WorkerConfig, path: Path) -> HealthService:
    return HealthService(
        config,
        StatusManager(FileRecord(config.status_path)),
        LockManager(FileRecord(config.lock_path), config.environment, config.lock_timeout),
        _processes(config, path),
    )


def _build_worker(config: WorkerConfig, path: Path) -> Worker:
    return Worker(
        config,
        make_table_store(config.store),
        processes=_processes(config, path),
    )


# ============================================================================
# infraworker init
# ============================================================================


@app.command()
def init(
    path: Path = typer.Option(
        Path(CONFIG_FILENAME), "--path", "-p", help="Where to write the config template"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
) -> None:
    """Write a config template with example tables."""
    ctx = get_output_context()
    if path.exists() and not force:
        ctx.print(f"[yellow]Config already exists:[/yellow] {path}")
        raise typer.Exit(1)
    write_config_template(path)
    ctx.success(f"Created config template: {path}", {"path": str(path)})


# ============================================================================
# infraworker run / tick
# ============================================================================


@app.command()
def run(
    config_path: Path | None = CONFIG_OPTION,
    once: bool = typer.Option(False, "--once", help="Exit after the run reaches a final state"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Describe only; skip all mutations"),
) -> None:
    """Run the worker in the foreground until stopped."""
    ctx = get_output_context()
    config, path = _load(config_path)
    updates = {}
    if once:
        updates["run_once"] = True
    if dry_run:
        updates["dry_run"] = True
    if updates:
        config = config.model_copy(update=updates)

    worker = _build_worker(config, path)

    def _handle_signal(signum: int, _frame: object) -> None:
        ctx.print(f"[yellow]Received signal {signum}, stopping...[/yellow]")
        worker.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        worker.run()
    except WorkerStateError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    result = worker.statuses.load_or_none()
    if result is not None:
        ctx.show_execution(_health_service(config, path).enrich(result))
        if result.status.value in ("failed", "deletion_failed"):
            raise typer.Exit(1)


@app.command()
def tick(config_path: Path | None = CONFIG_OPTION) -> None:
    """Run a single scheduling pass and print the result."""
    ctx = get_output_context()
    config, path = _load(config_path)
    worker = _build_worker(config, path)
    try:
        result = worker.tick()
    except InfraWorkerError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    if result is None:
        ctx.result({"skipped": True}, "[yellow]Lock held by another worker; nothing done[/yellow]")
        return
    ctx.show_execution(_health_service(config, path).enrich(result))


# ============================================================================
# infraworker status / health
# ============================================================================


@app.command()
def status(config_path: Path | None = CONFIG_OPTION) -> None:
    """Show the current provisioning status."""
    ctx = get_output_context()
    config, path = _load(config_path)
    result = _health_service(config, path).get_status()
    if result is None:
        ctx.error("No provisioning run recorded", {"environment": config.environment})
        raise typer.Exit(1)
    ctx.show_execution(result)


@app.command()
def health(config_path: Path | None = CONFIG_OPTION) -> None:
    """Report worker health. Exits 1 when unhealthy."""
    ctx = get_output_context()
    config, path = _load(config_path)
    report = _health_service(config, path).health_report()
    ctx.show_health(report)
    if not report["healthy"]:
        raise typer.Exit(1)


# ============================================================================
# infraworker restart / auto-restart
# ============================================================================


@app.command()
def restart(
    config_path: Path | None = CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Restart even if running"),
) -> None:
    """Terminate the worker, clear its status and launch a fresh one."""
    ctx = get_output_context()
    config, path = _load(config_path)
    try:
        result = _health_service(config, path).restart(force=force)
    except WorkerRunningError as e:
        ctx.show_restart(e.result)
        raise typer.Exit(1) from None
    ctx.show_restart(result)
    if result.status == "failed":
        raise typer.Exit(1)


@app.command("auto-restart")
def auto_restart(config_path: Path | None = CONFIG_OPTION) -> None:
    """Restart the worker only if it is unhealthy."""
    ctx = get_output_context()
    config, path = _load(config_path)
    result = _health_service(config, path).auto_restart_if_needed()
    ctx.show_restart(result)
    if result.status == "failed":
        raise typer.Exit(1)


# ============================================================================
# infraworker schedule-delete
# ============================================================================


@app.command("schedule-delete")
def schedule_delete(
    config_path: Path | None = CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Schedule deletion of every configured table on the next run."""
    ctx = get_output_context()
    config, path = _load(config_path)
    if not yes and not ctx.json_mode:
        names = ", ".join(config.physical_name(t) for t in config.tables)
        if not typer.confirm(f"Delete tables {names} in {config.environment}?"):
            ctx.print("Cancelled")
            raise typer.Exit(0)

    worker = _build_worker(config, path)
    try:
        result = worker.schedule_delete()
    except LockHeld as e:
        ctx.error(f"Cannot schedule deletion: {e}")
        raise typer.Exit(1) from None
    except WorkerStateError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None
    ctx.success(
        f"Deletion scheduled for {config.environment}",
        {"environment": config.environment, "status": result.status.value},
    )


if __name__ == "__main__":
    app()

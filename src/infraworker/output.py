"""Console and JSON rendering of worker results."""

import json
from dataclasses import dataclass
from typing import Any

from rich.console import Console
from rich.table import Table

from .models import ExecutionResult, RestartResult

HEALTH_COLORS = {"healthy": "green", "unhealthy": "red", "degraded": "yellow"}


def _tables_view(result: ExecutionResult) -> Table:
    table = Table(title="Tables")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Indexes")
    table.add_column("Active since")
    for t in result.tables_created:
        active = "-"
        if t.became_active_at:
            active = t.became_active_at.strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(t.name, t.status, f"{t.index_count}/{t.expected_indexes}", active)
    return table


@dataclass
class OutputContext:
    """Where CLI output goes: a Rich console, or JSON on stdout with --json."""

    console: Console
    json_mode: bool = False

    def print(self, message: str, style: str | None = None) -> None:
        if not self.json_mode:
            self.console.print(message, style=style)

    def print_json(self, data: dict[str, Any]) -> None:
        if self.json_mode:
            print(json.dumps(data, indent=2, default=str))

    def result(self, data: dict[str, Any], message: str = "") -> None:
        """Emit ``data`` in JSON mode, otherwise ``message`` if there is one."""
        if self.json_mode:
            self.print_json(data)
        elif message:
            self.console.print(message)

    def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        self.result({"error": message, **(data or {})}, f"[red]Error: {message}[/red]")

    def success(self, message: str, data: dict[str, Any] | None = None) -> None:
        self.result({"success": message, **(data or {})}, f"[green]{message}[/green]")

    def show_execution(self, result: ExecutionResult) -> None:
        """Render a provisioning run: summary lines, a table view and any planned actions."""
        if self.json_mode:
            self.print_json(result.model_dump(mode="json"))
            return

        out = self.console
        color = HEALTH_COLORS.get(result.health_status or "", "cyan")
        out.print(f"\n[bold]Environment:[/bold] {result.environment}")
        out.print(f"[bold]Status:[/bold] [{color}]{result.status.value}[/{color}]")
        if result.phase:
            out.print(f"[bold]Phase:[/bold] {result.phase}")
        if result.progress:
            p = result.progress
            out.print(
                f"[bold]Progress:[/bold] {p.step_name} "
                f"({p.current_step}/{p.total_steps}, {p.percentage}%)"
            )
        if result.next_action:
            out.print(f"[bold]Next:[/bold] {result.next_action}")
        if result.retry_count:
            out.print(f"[bold]Retries:[/bold] {result.retry_count}")
        if result.error_message:
            out.print(f"[red]Error:[/red] {result.error_message}")
        if result.tables_created:
            out.print(_tables_view(result))
        for action in result.planned_actions:
            out.print(f"  [yellow]would[/yellow] {action}")

    def show_restart(self, result: RestartResult) -> None:
        data = result.model_dump(mode="json")
        if result.status == "failed":
            self.error(result.error or "Restart failed", data)
        elif result.status == "not_needed":
            self.result(data, f"[green]{result.output}[/green]")
        else:
            self.success(result.output or "Restart initiated", data)

    def show_health(self, report: dict[str, Any]) -> None:
        if report["healthy"]:
            self.result(report, f"[green]Healthy:[/green] {report['reason']}")
        else:
            self.result(report, f"[red]Unhealthy:[/red] {report['reason']}")


# Set by the cli.py main callback
_ctx: OutputContext | None = None


def get_output_context() -> OutputContext:
    """Return the active context, or a plain console one outside the CLI."""
    if _ctx is None:
        return OutputContext(Console())
    return _ctx


def set_output_context(ctx: OutputContext) -> None:
    global _ctx
    _ctx = ctx

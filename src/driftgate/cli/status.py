# Copyright (c) Syntropy Systems
"""driftgate status command."""

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from driftgate.cli.common import load_project_config
from driftgate.models.state import RunState, load_run_state
from driftgate.runbook import RefreshPaths

console = Console()

STATUS_STYLES = {
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "blocked": "yellow",
}


def status(
    cache_root: Optional[Path] = typer.Option(
        None, "--cache-root", help="Cache root holding the run state (default: from config)"
    ),
) -> None:
    """Show the persisted refresh run state."""
    config = load_project_config()
    root = cache_root or config.resolve(config.source_cache_root)
    path = RefreshPaths(root).run_state

    try:
        state = load_run_state(path)
    except (OSError, ValidationError) as e:
        console.print(f"[red]Error:[/red] cannot read run state {path}: {e}")
        raise typer.Exit(1) from e

    if state is None:
        console.print(f"[dim]No run state at {path} (not_started)[/dim]")
        return

    _show_state(state)


def _show_state(state: RunState) -> None:
    style = STATUS_STYLES.get(state.status.value, "white")

    table = Table(show_header=False, box=None)
    table.add_column("Field", style="dim")
    table.add_column("Value")

    table.add_row("run", f"[bold]{state.active_run_id}[/bold]")
    table.add_row("status", f"[{style}]{state.status.value}[/{style}]")
    table.add_row("step", state.current_step)
    table.add_row("branch", f"{state.active_branch} (base {state.base_branch})")
    table.add_row("started", state.started_at)
    table.add_row("updated", state.updated_at)
    table.add_row("last command", state.last_successful_command or "-")
    table.add_row("last artifact", state.last_successful_artifact or "-")
    table.add_row("next", state.next_planned_command or "-")
    if state.failed_step:
        table.add_row("failed step", state.failed_step)
    if state.failure_reason:
        table.add_row("failure", state.failure_reason)
    if state.resume_from_step:
        table.add_row("resumed from", state.resume_from_step)

    compat = state.compatibility
    table.add_row(
        "compatibility",
        f"{compat.status} (engine {compat.engine_version or '-'}, "
        f"schema {compat.db_schema_version or '-'})",
    )
    if compat.reason:
        table.add_row("compat reason", compat.reason)

    console.print(table)

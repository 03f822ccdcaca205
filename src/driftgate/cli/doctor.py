# Copyright (c) Syntropy Systems
"""driftgate doctor command."""

import os
import shutil
from pathlib import Path

from rich.console import Console

from driftgate.cli.common import load_project_config, make_engine
from driftgate.config import find_gate_dir
from driftgate.errors import GateError
from driftgate.gitinfo import capture_git_info
from driftgate.policy import load_policy

console = Console()


def doctor() -> None:
    """Check driftgate setup and diagnose issues.

    Verifies:
    - .driftgate directory exists
    - engine command can be located
    - git work tree
    - required environment directories
    - threshold policy parses
    - source cache root exists
    """
    issues: list[str] = []
    warnings: list[str] = []

    gate_dir = find_gate_dir()
    if gate_dir is None:
        console.print("[red]✗[/red] No .driftgate directory found")
        console.print("  Run [bold]driftgate init[/bold] to initialize a project")
        return

    console.print(f"[green]✓[/green] driftgate directory: {gate_dir}")
    config = load_project_config()

    # Engine command
    engine = make_engine(config, config.resolve(config.output_root) / "logs")
    command = " ".join(config.engine_command)
    if engine.executable_available():
        console.print(f"[green]✓[/green] Engine command: {command}")
    else:
        console.print(f"[red]✗[/red] Engine executable not found: {command}")
        issues.append("Engine executable missing")

    # Git
    if shutil.which("git") is None:
        console.print("[red]✗[/red] git not found")
        issues.append("git missing")
    else:
        info = capture_git_info(config.project_root)
        if info is None:
            console.print("[yellow]⚠[/yellow] Not inside a git work tree")
            warnings.append("No git work tree")
        else:
            dirty = " (dirty)" if info.dirty else ""
            console.print(
                f"[green]✓[/green] Git: {info.branch} @ {info.head_short}{dirty}"
            )
            if config.base_branch and info.branch != config.base_branch:
                console.print(
                    f"[yellow]⚠[/yellow] On '{info.branch}', "
                    f"refresh expects '{config.base_branch}'"
                )
                warnings.append("Not on the base branch")

    # Required environment directories
    for name in config.required_env_dirs:
        value = os.environ.get(name)
        if not value:
            console.print(f"[red]✗[/red] {name} is not set")
            issues.append(f"{name} unset")
        elif not Path(value).is_dir():
            console.print(f"[red]✗[/red] {name} points to a missing directory: {value}")
            issues.append(f"{name} missing directory")
        else:
            console.print(f"[green]✓[/green] {name}={value}")

    # Threshold policy
    thresholds = config.resolve(config.thresholds_path)
    try:
        loaded = load_policy(thresholds)
    except GateError as e:
        console.print(f"[red]✗[/red] {e}")
        issues.append("Threshold policy unusable")
    else:
        console.print(
            f"[green]✓[/green] Thresholds: {thresholds} "
            f"(schema {loaded.policy.schema_version})"
        )

    # Source cache root
    source = config.resolve(config.source_cache_root)
    if source.is_dir():
        console.print(f"[green]✓[/green] Source cache root: {source}")
    else:
        console.print(f"[yellow]⚠[/yellow] Source cache root not found: {source}")
        warnings.append("Source cache root missing")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
    elif warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")

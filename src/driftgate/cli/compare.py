# Copyright (c) Syntropy Systems
"""Compare command - evaluate drift between the before and after captures."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from driftgate.cli.common import load_project_config
from driftgate.drift import compare_run
from driftgate.errors import GateError
from driftgate.models.capture import CaptureMode
from driftgate.models.drift import GATE_EXIT_CODES, DriftReport
from driftgate.policy import load_policy

console = Console()

STATUS_STYLES = {"PASS": "green", "WARN": "yellow", "FAIL": "red"}


def compare(
    run_id: str = typer.Option(..., "--run-id", help="Run identifier to compare"),
    mode: str = typer.Option("lite", "--mode", help="Capture mode: lite or full"),
    output_root: Optional[Path] = typer.Option(
        None, "--output-root", help="Where run directories live (default: from config)"
    ),
    thresholds: Optional[Path] = typer.Option(
        None, "--thresholds", help="Threshold policy file (default: from config)"
    ),
    expect_status: Optional[str] = typer.Option(
        None,
        "--expect-status",
        help="Exit 0 only when the gate status equals this value (PASS, WARN, FAIL)",
    ),
) -> None:
    """Compare the before and after captures of a run.

    Exits 0 on PASS, 10 on WARN and 20 on FAIL.

    Example:
        driftgate compare --run-id pr-42

    """
    if mode not in ("lite", "full"):
        console.print("[red]Error:[/red] --mode must be one of: lite, full")
        raise typer.Exit(1)
    capture_mode: CaptureMode = "full" if mode == "full" else "lite"

    expected = expect_status.upper() if expect_status else None
    if expected is not None and expected not in GATE_EXIT_CODES:
        console.print("[red]Error:[/red] --expect-status must be one of: PASS, WARN, FAIL")
        raise typer.Exit(1)

    config = load_project_config()
    root = output_root or config.resolve(config.output_root)
    policy_path = thresholds or config.resolve(config.thresholds_path)

    try:
        loaded = load_policy(policy_path)
        report = compare_run(root, run_id, capture_mode, loaded)
    except GateError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _show_report(report)
    console.print(f"  [dim]report:[/dim] {root / run_id / 'compare' / 'drift_report.md'}")

    if expected is not None:
        if report.gate_status != expected:
            console.print(
                f"[red]Expected gate status {expected}, got {report.gate_status}[/red]"
            )
            raise typer.Exit(1)
        raise typer.Exit(0)

    raise typer.Exit(report.exit_code)


def _show_report(report: DriftReport) -> None:
    """Print the gate status and the triggered rules."""
    style = STATUS_STYLES.get(report.gate_status, "white")
    console.print(
        f"Gate status for [bold]{report.run_id}[/bold]: "
        f"[{style}]{report.gate_status}[/{style}]"
    )

    triggered = report.rule_results.hard_failures + report.rule_results.soft_failures
    if not triggered:
        console.print("[dim]No rules triggered[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Rule")
    table.add_column("Severity")
    table.add_column("Observed", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Message")

    for result in triggered:
        severity_style = "red" if result.severity == "hard" else "yellow"
        table.add_row(
            result.id,
            f"[{severity_style}]{result.severity}[/{severity_style}]",
            "-" if result.observed is None else str(result.observed),
            "-" if result.threshold is None else str(result.threshold),
            result.message,
        )

    console.print(table)

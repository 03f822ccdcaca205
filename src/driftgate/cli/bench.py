# Copyright (c) Syntropy Systems
"""Bench command - latency benchmark against a cache root."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from driftgate.artifacts import compact_timestamp
from driftgate.benchmark import resolve_profile, run_benchmark
from driftgate.cli.common import load_project_config, make_engine
from driftgate.errors import GateError
from driftgate.models.benchmark import BenchmarkReport
from driftgate.queries import load_eval_queries, query_manifest_path

console = Console()


def bench(
    cache_root: Optional[Path] = typer.Option(
        None, "--cache-root", help="Cache root to query (default: from config)"
    ),
    profile: str = typer.Option("quick", "--profile", help="quick, standard or full"),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Report path (default: manifests/semantic_benchmark_<timestamp>.json)",
    ),
    query_limit: Optional[int] = typer.Option(
        None, "--query-limit", help="Override the profile's query count (0: all)"
    ),
    warmup_passes: Optional[int] = typer.Option(None, "--warmup-passes"),
    timed_passes: Optional[int] = typer.Option(None, "--timed-passes"),
    limit: int = typer.Option(20, "--limit", help="Results requested per query"),
    lexical_k: int = typer.Option(96, "--lexical-k"),
    semantic_k: int = typer.Option(96, "--semantic-k"),
    rrf_k: int = typer.Option(60, "--rrf-k"),
    timeout_ms: int = typer.Option(2000, "--timeout-ms", help="Per-query timeout in ms"),
    semantic_model_id: Optional[str] = typer.Option(
        None, "--semantic-model-id", help="Embedding model id (default: from config)"
    ),
) -> None:
    """Benchmark query latency for every retrieval mode.

    Exits 1 when the report is invalid (failure rate above the limit).

    Example:
        driftgate bench --profile standard

    """
    config = load_project_config()
    root = cache_root or config.resolve(config.source_cache_root)
    output_path = output or (
        root / "manifests" / f"semantic_benchmark_{compact_timestamp()}.json"
    )

    try:
        selected = resolve_profile(
            profile,
            query_limit=query_limit,
            warmup_passes=warmup_passes,
            timed_passes=timed_passes,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    manifest = query_manifest_path(root)
    engine = make_engine(config, output_path.parent / "logs")
    try:
        queries = load_eval_queries(manifest)
        report = run_benchmark(
            engine,
            root,
            queries,
            output_path,
            profile=selected,
            limit=limit,
            lexical_k=lexical_k,
            semantic_k=semantic_k,
            rrf_k=rrf_k,
            timeout_ms=timeout_ms,
            semantic_model_id=semantic_model_id or config.semantic_model_id,
            query_manifest=manifest,
        )
    except (GateError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _show_report(report)
    console.print(f"  [dim]report:[/dim] {output_path}")

    if not report.overall.valid:
        console.print(
            f"[red]Benchmark invalid:[/red] failure rate above "
            f"{report.overall.max_failure_rate} in {', '.join(report.overall.invalid_modes)}"
        )
        raise typer.Exit(1)


def _show_report(report: BenchmarkReport) -> None:
    """Display per-mode latency in a table."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Mode")
    table.add_column("p50 ms", justify="right")
    table.add_column("p95 ms", justify="right")
    table.add_column("mean ms", justify="right")
    table.add_column("Failures", justify="right")

    for summary in report.mode_summaries:
        latency = summary.latency_ms
        table.add_row(
            summary.mode,
            _fmt(latency.p50),
            _fmt(latency.p95),
            _fmt(latency.mean),
            f"{summary.timed_failure_count}/{summary.expected_timed_queries}",
        )

    console.print(table)


def _fmt(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.2f}"

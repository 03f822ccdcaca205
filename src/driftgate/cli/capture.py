# Copyright (c) Syntropy Systems
"""before/after commands - capture a baseline for one side of a change."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from driftgate.capture import CaptureOptions, CaptureOrchestrator
from driftgate.cli.common import load_project_config, make_engine, parse_parts
from driftgate.errors import GateError
from driftgate.models.capture import CaptureMode, CapturePhase

console = Console()

RUN_ID_OPTION = typer.Option(..., "--run-id", help="Run identifier shared by both phases")
MODE_OPTION = typer.Option("lite", "--mode", help="Capture mode: lite or full")
SOURCE_OPTION = typer.Option(
    None, "--source-cache-root", help="Cache root to seed from (default: from config)"
)
OUTPUT_OPTION = typer.Option(
    None, "--output-root", help="Where run directories are written (default: from config)"
)
MODEL_OPTION = typer.Option(
    None, "--semantic-model-id", help="Embedding model id (default: from config)"
)
PART_OPTION = typer.Option(6, "--part", help="Target part for the quick refresh")
MAX_PAGES_OPTION = typer.Option(60, "--max-pages", help="Max pages per document (0: all)")
TARGET_PARTS_OPTION = typer.Option(
    "2 6 8 9", "--target-parts", help="Parts ingested by the full refresh"
)
LEXICAL_K_OPTION = typer.Option(96, "--lexical-k")
SEMANTIC_K_OPTION = typer.Option(96, "--semantic-k")
RRF_K_OPTION = typer.Option(60, "--rrf-k")
TIMEOUT_OPTION = typer.Option(2000, "--timeout-ms", help="Per-query timeout in ms")
SNAPSHOT_LIMIT_OPTION = typer.Option(10, "--snapshot-limit", help="Results kept per query")
PROFILE_OPTION = typer.Option("quick", "--bench-profile", help="quick, standard or full")
REPEATS_LITE_OPTION = typer.Option(1, "--bench-repeats-lite")
REPEATS_FULL_OPTION = typer.Option(2, "--bench-repeats-full")
FORCE_OPTION = typer.Option(False, "--force", help="Overwrite an existing phase directory")


def _run_capture(
    phase: CapturePhase,
    *,
    run_id: str,
    mode: str,
    source_cache_root: Optional[Path],
    output_root: Optional[Path],
    semantic_model_id: Optional[str],
    part: int,
    max_pages: int,
    target_parts: str,
    lexical_k: int,
    semantic_k: int,
    rrf_k: int,
    timeout_ms: int,
    snapshot_limit: int,
    bench_profile: str,
    bench_repeats_lite: int,
    bench_repeats_full: int,
    force: bool,
) -> None:
    if mode not in ("lite", "full"):
        console.print("[red]Error:[/red] --mode must be one of: lite, full")
        raise typer.Exit(1)
    capture_mode: CaptureMode = "full" if mode == "full" else "lite"

    config = load_project_config()
    options = CaptureOptions(
        run_id=run_id,
        phase=phase,
        mode=capture_mode,
        source_cache_root=source_cache_root or config.resolve(config.source_cache_root),
        output_root=output_root or config.resolve(config.output_root),
        semantic_model_id=semantic_model_id or config.semantic_model_id,
        part=part,
        max_pages=max_pages,
        target_parts=parse_parts(target_parts),
        lexical_k=lexical_k,
        semantic_k=semantic_k,
        rrf_k=rrf_k,
        timeout_ms=timeout_ms,
        snapshot_limit=snapshot_limit,
        bench_profile=bench_profile,
        bench_repeats_lite=bench_repeats_lite,
        bench_repeats_full=bench_repeats_full,
        force=force,
    )

    try:
        orchestrator = CaptureOrchestrator(
            options, config, lambda log_dir: make_engine(config, log_dir)
        )
        manifest = orchestrator.run()
    except GateError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(
        f"[green]Captured {phase}[/green] for run [bold]{manifest.run_id}[/bold] "
        f"({manifest.mode})"
    )
    console.print(f"  [dim]manifest:[/dim] {orchestrator.layout.manifest}")


def before(
    run_id: str = RUN_ID_OPTION,
    mode: str = MODE_OPTION,
    source_cache_root: Optional[Path] = SOURCE_OPTION,
    output_root: Optional[Path] = OUTPUT_OPTION,
    semantic_model_id: Optional[str] = MODEL_OPTION,
    part: int = PART_OPTION,
    max_pages: int = MAX_PAGES_OPTION,
    target_parts: str = TARGET_PARTS_OPTION,
    lexical_k: int = LEXICAL_K_OPTION,
    semantic_k: int = SEMANTIC_K_OPTION,
    rrf_k: int = RRF_K_OPTION,
    timeout_ms: int = TIMEOUT_OPTION,
    snapshot_limit: int = SNAPSHOT_LIMIT_OPTION,
    bench_profile: str = PROFILE_OPTION,
    bench_repeats_lite: int = REPEATS_LITE_OPTION,
    bench_repeats_full: int = REPEATS_FULL_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Capture the baseline before a change.

    Example:
        driftgate before --run-id pr-42

    """
    _run_capture(
        "before",
        run_id=run_id,
        mode=mode,
        source_cache_root=source_cache_root,
        output_root=output_root,
        semantic_model_id=semantic_model_id,
        part=part,
        max_pages=max_pages,
        target_parts=target_parts,
        lexical_k=lexical_k,
        semantic_k=semantic_k,
        rrf_k=rrf_k,
        timeout_ms=timeout_ms,
        snapshot_limit=snapshot_limit,
        bench_profile=bench_profile,
        bench_repeats_lite=bench_repeats_lite,
        bench_repeats_full=bench_repeats_full,
        force=force,
    )


def after(
    run_id: str = RUN_ID_OPTION,
    mode: str = MODE_OPTION,
    source_cache_root: Optional[Path] = SOURCE_OPTION,
    output_root: Optional[Path] = OUTPUT_OPTION,
    semantic_model_id: Optional[str] = MODEL_OPTION,
    part: int = PART_OPTION,
    max_pages: int = MAX_PAGES_OPTION,
    target_parts: str = TARGET_PARTS_OPTION,
    lexical_k: int = LEXICAL_K_OPTION,
    semantic_k: int = SEMANTIC_K_OPTION,
    rrf_k: int = RRF_K_OPTION,
    timeout_ms: int = TIMEOUT_OPTION,
    snapshot_limit: int = SNAPSHOT_LIMIT_OPTION,
    bench_profile: str = PROFILE_OPTION,
    bench_repeats_lite: int = REPEATS_LITE_OPTION,
    bench_repeats_full: int = REPEATS_FULL_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Capture the candidate after a change.

    Example:
        driftgate after --run-id pr-42

    """
    _run_capture(
        "after",
        run_id=run_id,
        mode=mode,
        source_cache_root=source_cache_root,
        output_root=output_root,
        semantic_model_id=semantic_model_id,
        part=part,
        max_pages=max_pages,
        target_parts=target_parts,
        lexical_k=lexical_k,
        semantic_k=semantic_k,
        rrf_k=rrf_k,
        timeout_ms=timeout_ms,
        snapshot_limit=snapshot_limit,
        bench_profile=bench_profile,
        bench_repeats_lite=bench_repeats_lite,
        bench_repeats_full=bench_repeats_full,
        force=force,
    )

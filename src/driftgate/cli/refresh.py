# Copyright (c) Syntropy Systems
"""Refresh command - run the resumable refresh runbook."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from driftgate.cli.common import load_project_config, make_engine, parse_parts
from driftgate.errors import GateError
from driftgate.gitinfo import current_branch
from driftgate.runbook import RefreshOptions, RefreshPaths, Runbook

console = Console()


def refresh(
    cache_root: Optional[Path] = typer.Option(
        None, "--cache-root", help="Cache root to refresh (default: from config)"
    ),
    part: int = typer.Option(6, "--part", help="Target part for a single-part refresh"),
    max_pages: int = typer.Option(0, "--max-pages", help="Max pages per document (0: all)"),
    full_target_set: bool = typer.Option(
        False, "--full-target-set", help="Refresh every part in --target-parts"
    ),
    target_parts: str = typer.Option(
        "2 6 8 9", "--target-parts", help="Parts used with --full-target-set"
    ),
    stage: Optional[str] = typer.Option(
        None, "--stage", help="Validation stage passed to the engine (A or B)"
    ),
    rebuild_on_mismatch: bool = typer.Option(
        False,
        "--rebuild-on-mismatch",
        help="Archive the store and start a new run on a compatibility mismatch",
    ),
    allow_blocked_resume: bool = typer.Option(
        False, "--allow-blocked-resume", help="Resume a run that was blocked"
    ),
    no_decisions: bool = typer.Option(
        False, "--no-decisions", help="Do not append to the decision log"
    ),
    semantic_model_id: Optional[str] = typer.Option(
        None, "--semantic-model-id", help="Embedding model id (default: from config)"
    ),
) -> None:
    """Run the refresh runbook, resuming from the last checkpoint.

    Example:
        driftgate refresh --full-target-set

    """
    config = load_project_config()
    root = cache_root or config.resolve(config.source_cache_root)
    parts = parse_parts(target_parts) if full_target_set else [part]
    branch = current_branch(config.project_root) or "HEAD"

    options = RefreshOptions(
        cache_root=root,
        target_parts=parts,
        max_pages=max_pages,
        stage=stage,
        rebuild_on_mismatch=rebuild_on_mismatch,
        allow_blocked_resume=allow_blocked_resume,
        update_decisions=not no_decisions,
        semantic_model_id=semantic_model_id or config.semantic_model_id or None,
        active_branch=branch,
        base_branch=config.base_branch or None,
        expected_db_schema_version=config.expected_db_schema_version,
        runbook_version=config.runbook_version,
        required_env_dirs=config.required_env_dirs,
        probe_queries=config.probe_queries,
    )
    engine = make_engine(config, root / "manifests" / "logs")

    try:
        state = Runbook(options, engine).run()
    except GateError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(
        f"[green]Refresh completed[/green] run [bold]{state.active_run_id}[/bold] "
        f"at {state.current_step}"
    )
    console.print(f"  [dim]state:[/dim] {RefreshPaths(root).run_state}")

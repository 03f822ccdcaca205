# Copyright (c) Syntropy Systems
"""driftgate init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from driftgate.config import CONFIG_DIR_NAME, GateConfig
from driftgate.policy import DEFAULT_THRESHOLDS_YAML

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new driftgate project.

    Creates a .driftgate directory with configuration and a threshold policy.
    """
    target = path.resolve()
    gate_dir = target / CONFIG_DIR_NAME

    if gate_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {gate_dir}")
        return

    gate_dir.mkdir(parents=True)

    defaults = GateConfig()
    config = {
        "engine_command": defaults.engine_command,
        "build_commands": defaults.build_commands,
        "source_cache_root": defaults.source_cache_root,
        "output_root": defaults.output_root,
        "thresholds_path": defaults.thresholds_path,
        "expected_db_schema_version": defaults.expected_db_schema_version,
        "semantic_model_id": defaults.semantic_model_id,
        "stage_env_var": defaults.stage_env_var,
        "required_env_dirs": defaults.required_env_dirs,
        "probe_queries": defaults.probe_queries,
        "kill_grace_period": defaults.kill_grace_period,
    }

    config_path = gate_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    thresholds_path = gate_dir / "thresholds.yaml"
    _ = thresholds_path.write_text(DEFAULT_THRESHOLDS_YAML)

    console.print(f"[green]Initialized driftgate project:[/green] {gate_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]thresholds:[/dim] {thresholds_path}")

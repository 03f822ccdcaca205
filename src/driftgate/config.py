# Copyright (c) Syntropy Systems
"""Configuration management for driftgate."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import cast

import yaml

CONFIG_DIR_NAME = ".driftgate"


def _default_build_commands() -> list[list[str]]:
    return [
        ["cargo", "check"],
        ["cargo", "test"],
        ["cargo", "build", "--quiet"],
    ]


@dataclass
class GateConfig:
    """Configuration for driftgate."""

    # argv prefix used to invoke the engine CLI
    engine_command: list[str] = field(
        default_factory=lambda: ["cargo", "run", "--quiet", "--"]
    )

    # Commands run during the build/test phase of a capture
    build_commands: list[list[str]] = field(default_factory=_default_build_commands)

    # Command whose last stdout token is the engine version (empty: engine --version)
    version_command: list[str] = field(default_factory=list)

    source_cache_root: str = ".cache/engine"
    output_root: str = ".cache/engine/regression"
    thresholds_path: str = ".driftgate/thresholds.yaml"

    expected_db_schema_version: str = "1"
    runbook_version: str = "2"
    semantic_model_id: str = "miniLM-L6-v2-local-v1"

    # Environment variable the engine reads to select validate stage A/B
    stage_env_var: str = "WP2_GATE_STAGE"

    # Environment variables that must point at existing directories
    required_env_dirs: list[str] = field(default_factory=list)

    # Branch the runbook must run on (empty: accept the current branch)
    base_branch: str = ""

    # Queries replayed by smoke determinism checks and runbook validation
    probe_queries: list[str] = field(default_factory=list)

    # Source document patterns seeded into a phase cache
    source_globs: list[str] = field(default_factory=lambda: ["*.pdf"])

    # Seconds to wait after SIGTERM before SIGKILL on engine steps
    kill_grace_period: int = 10

    # Root used to resolve relative paths (parent of .driftgate/)
    project_root: Path = field(default_factory=Path.cwd)

    def resolve(self, value: str | Path) -> Path:
        """Resolve a configured path against the project root."""
        path = Path(value)
        if path.is_absolute():
            return path
        return self.project_root / path


def find_gate_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .driftgate directory by walking up from start_path.

    Returns None if no .driftgate directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        gate_dir = current / CONFIG_DIR_NAME
        if gate_dir.is_dir():
            return gate_dir
        current = current.parent

    # Check root
    gate_dir = current / CONFIG_DIR_NAME
    if gate_dir.is_dir():
        return gate_dir

    return None


def _is_str_list(value: object) -> bool:
    return isinstance(value, list) and all(
        isinstance(item, str) for item in cast("list[object]", value)
    )


def _coerce(name: str, current: object, value: object) -> object | None:
    """Return ``value`` if it fits the type of the default, else None."""
    if isinstance(current, bool):
        return value if isinstance(value, bool) else None
    if isinstance(current, int):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return None
    if isinstance(current, str):
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            return str(value)
        return None
    if name == "build_commands":
        if isinstance(value, list) and all(
            _is_str_list(item) for item in cast("list[object]", value)
        ):
            return value
        return None
    if isinstance(current, list):
        return value if _is_str_list(value) else None
    return None


def load_config(gate_dir: Path | None = None) -> GateConfig:
    """Load configuration from .driftgate/config.yaml or defaults.

    Looks for config in:
    1. Provided gate_dir
    2. Nearest .driftgate directory walking up
    3. Defaults (paths relative to the current directory)
    """
    if gate_dir is None:
        gate_dir = find_gate_dir()

    if gate_dir is None:
        return GateConfig()

    config = GateConfig(project_root=gate_dir.parent.resolve())
    config_path = gate_dir / "config.yaml"
    if not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    for config_field in fields(config):
        if config_field.name == "project_root" or config_field.name not in data:
            continue
        value = _coerce(
            config_field.name,
            getattr(config, config_field.name),
            data[config_field.name],
        )
        if value is not None:
            setattr(config, config_field.name, value)

    return config


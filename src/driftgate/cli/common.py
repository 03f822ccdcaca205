# Copyright (c) Syntropy Systems
"""Helpers shared by driftgate CLI commands."""
from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import typer

from driftgate.config import GateConfig, load_config
from driftgate.engine import EngineClient

if TYPE_CHECKING:
    from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(verbose: bool = False) -> None:
    """Route library logging to stderr; console output stays on stdout."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
        force=True,
    )


def load_project_config() -> GateConfig:
    """Configuration of the nearest project, or defaults."""
    return load_config()


def make_engine(config: GateConfig, log_dir: Path) -> EngineClient:
    """Engine client for the configured command, logging into ``log_dir``."""
    return EngineClient.from_config(config, log_dir)


def parse_parts(value: str) -> list[int]:
    """Parse a space- or comma-separated list of part numbers."""
    tokens = value.replace(",", " ").split()
    try:
        parts = [int(token) for token in tokens]
    except ValueError as e:
        msg = f"target parts must be integers: {value!r}"
        raise typer.BadParameter(msg) from e
    if not parts or any(part < 0 for part in parts):
        msg = f"target parts must be non-negative integers: {value!r}"
        raise typer.BadParameter(msg)
    return parts

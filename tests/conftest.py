# Copyright (c) Syntropy Systems
"""Pytest fixtures for driftgate tests."""

import json
import os
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
import yaml

# Store original cwd at module load time
_original_cwd = Path.cwd()

FAKE_ENGINE = Path(__file__).parent / "fake_engine.py"

EVAL_QUERIES = [
    {
        "query_id": "Q-002",
        "query_text": "Zone limits table",
        "intent": "table",
        "part_filter": 6,
        "must_hit_top1": True,
        "expected_chunk_ids": ["zone-1"],
    },
    {
        "query_id": "Q-001",
        "query_text": "Mixing zone definition",
        "intent": "definition",
        "part_filter": "6",
        "must_hit_top1": True,
        "expected_chunk_ids": ["mixing-1"],
    },
    {
        "query_id": "Q-003",
        "query_text": "Outfall monitoring frequency",
        "chunk_type_filter": "section",
    },
]

TARGET_SECTIONS = {
    "target_count": 2,
    "targets": [
        {"ref": "6.1", "title": "Mixing zones", "part": 6},
        {"ref": "6.2", "title": "Limits", "part": 6, "tags": ["table"]},
    ],
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
        # Tests may chdir into the directory; leave it before it is removed
        os.chdir(_original_cwd)


@pytest.fixture
def engine_command() -> list[str]:
    """argv prefix that runs the fake engine."""
    return [sys.executable, str(FAKE_ENGINE)]


@pytest.fixture
def source_cache(temp_dir: Path) -> Path:
    """A source cache root with documents, targets and evaluation queries."""
    cache = temp_dir / "source-cache"
    manifests = cache / "manifests"
    manifests.mkdir(parents=True)
    _ = (cache / "part6.pdf").write_bytes(b"%PDF-1.4 part 6")
    _ = (cache / "part2.pdf").write_bytes(b"%PDF-1.4 part 2")
    _ = (manifests / "target_sections.json").write_text(json.dumps(TARGET_SECTIONS))
    _ = (manifests / "semantic_eval_queries.json").write_text(
        json.dumps({"queries": EVAL_QUERIES})
    )
    # Outputs of a previous run that must not leak into a phase cache
    _ = (manifests / "run_state.json").write_text("{}")
    _ = (manifests / "ingest_run_0001.json").write_text('{"run_id": "stale"}')
    return cache


@pytest.fixture
def gate_project(
    temp_dir: Path, source_cache: Path, engine_command: list[str]
) -> Generator[Path, None, None]:
    """Create a temporary driftgate project wired to the fake engine."""
    gate_dir = temp_dir / ".driftgate"
    gate_dir.mkdir()

    from driftgate.policy import DEFAULT_THRESHOLDS_YAML

    config = {
        "engine_command": engine_command,
        "build_commands": [[sys.executable, "-c", "pass"]],
        "source_cache_root": str(source_cache),
        "output_root": "regression",
        "probe_queries": ["mixing zone"],
    }
    with (gate_dir / "config.yaml").open("w") as f:
        yaml.dump(config, f, default_flow_style=False)
    _ = (gate_dir / "thresholds.yaml").write_text(DEFAULT_THRESHOLDS_YAML)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)

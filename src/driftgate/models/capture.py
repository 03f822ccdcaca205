# Copyright (c) Syntropy Systems
"""Pydantic models for capture manifests and query snapshots."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from typing_extensions import TypeAlias

from .base import GateBaseModel
from .benchmark import RetrievalMode  # noqa: TC001

CapturePhase: TypeAlias = Literal["before", "after"]
CaptureMode: TypeAlias = Literal["lite", "full"]


class GitInfo(GateBaseModel):
    """Captured git repository information."""

    branch: str
    head_commit: str
    head_short: str
    dirty: bool
    remote: str | None = None


class EvalQuery(GateBaseModel):
    """One entry of the evaluation query manifest."""

    query_id: str
    query_text: str
    intent: str | None = None
    part_filter: str | None = None
    chunk_type_filter: str | None = None
    must_hit_top1: bool = False
    expected_chunk_ids: list[str] = Field(default_factory=list)

    @field_validator("part_filter", mode="before")
    @classmethod
    def _part_as_str(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class CandidateCounts(GateBaseModel):
    """Candidate counts per retrieval stage."""

    lexical: int = 0
    semantic: int = 0
    fused: int = 0


class SnapshotError(GateBaseModel):
    """Failure details for an errored snapshot query."""

    exit_code: int | None = None
    message: str = ""


class QuerySnapshotRecord(GateBaseModel):
    """One line of a search_snapshot_*.jsonl file."""

    query_id: str
    query_text: str
    intent: str | None = None
    mode: RetrievalMode
    part_filter: str | None = None
    chunk_type_filter: str | None = None
    must_hit_top1: bool = False
    expected_chunk_ids: list[str] = Field(default_factory=list)
    status: Literal["ok", "error"]
    returned: int = 0
    fallback_used: bool = False
    query_duration_ms: float | None = None
    timeout_ms: int = 0
    timed_out: bool = False
    candidate_counts: CandidateCounts = Field(default_factory=CandidateCounts)
    top_chunk_ids: list[str] = Field(default_factory=list)
    top_refs: list[str] = Field(default_factory=list)
    top1_chunk_id: str | None = None
    top1_ref: str | None = None
    top1_citation: str | None = None
    error: SnapshotError | None = None


class CaptureControls(GateBaseModel):
    """Knobs a capture ran with, recorded for reproducibility."""

    semantic_model_id: str
    part: int
    max_pages: int
    target_parts: list[int]
    lexical_k: int
    semantic_k: int
    rrf_k: int
    timeout_ms: int
    snapshot_limit: int
    bench_profile: str
    bench_repeats: int


class CaptureArtifacts(GateBaseModel):
    """Paths of the artifacts a capture produced."""

    quick_stage_b_report: str
    full_stage_b_report: str | None = None
    lexical_snapshot: str
    semantic_snapshot: str
    benchmark_runs: list[str] = Field(default_factory=list)
    benchmark_selected: str
    semantic_model_lockfile: str | None = None


class CaptureManifest(GateBaseModel):
    """capture_manifest.json, written last and only on success."""

    manifest_version: int = 1
    run_id: str
    phase: CapturePhase
    mode: CaptureMode
    generated_at: str
    source_cache_root: str
    phase_cache_root: str
    git: GitInfo | None = None
    controls: CaptureControls
    artifacts: CaptureArtifacts

# Copyright (c) Syntropy Systems
"""Pydantic models for benchmark records and reports."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from typing_extensions import TypeAlias

from .base import GateBaseModel

RetrievalMode: TypeAlias = Literal["lexical", "semantic", "hybrid"]
PassPhase: TypeAlias = Literal["warmup", "timed"]

RETRIEVAL_MODES: tuple[RetrievalMode, ...] = ("lexical", "semantic", "hybrid")


class TimedRecord(GateBaseModel):
    """One successful timed query invocation."""

    mode: RetrievalMode
    pass_index: int
    query_id: str
    wall_ms: float
    latency_ms: float
    returned: int = 0
    lexical_candidate_count: int = 0
    semantic_candidate_count: int = 0
    fused_candidate_count: int = 0
    fallback_used: bool = False


class FailureRecord(GateBaseModel):
    """One failed query invocation (warmup or timed)."""

    mode: RetrievalMode
    phase: PassPhase
    pass_index: int
    query_id: str
    query_text: str = ""
    wall_ms: float = 0.0
    reason: str = ""


class NumericStats(GateBaseModel):
    """min/max/mean/p50/p95/p99 of a sample; all None when empty."""

    min: float | None = None
    max: float | None = None
    mean: float | None = None
    p50: float | None = None
    p95: float | None = None
    p99: float | None = None


class ModeSummary(GateBaseModel):
    """Aggregated statistics for one retrieval mode."""

    mode: RetrievalMode
    query_count: int
    expected_timed_queries: int
    completed_timed_queries: int
    timed_failure_count: int
    failure_rate: float
    latency_ms: NumericStats
    wall_ms: NumericStats
    returned: NumericStats
    lexical_candidate_count: NumericStats
    semantic_candidate_count: NumericStats
    fused_candidate_count: NumericStats
    fallback_used_rate: float | None = None


class BenchmarkScope(GateBaseModel):
    """Parameters the benchmark ran with."""

    profile: str
    query_count: int
    warmup_passes: int
    timed_passes: int
    modes: list[RetrievalMode] = Field(default_factory=lambda: list(RETRIEVAL_MODES))
    limit: int = 20
    lexical_k: int = 96
    semantic_k: int = 96
    rrf_k: int = 60
    timeout_ms: int = 2000
    semantic_model_id: str | None = None
    query_manifest: str | None = None
    cache_root: str | None = None


class BenchmarkEnvironment(GateBaseModel):
    """Host facts recorded alongside a benchmark."""

    cpu_model: str | None = None
    physical_cores: int | None = None
    logical_threads: int | None = None
    memory_total_gb: float | None = None
    kernel: str | None = None
    platform: str | None = None
    python_version: str | None = None
    engine_version: str | None = None
    filesystem: str | None = None


class BenchmarkOverall(GateBaseModel):
    """Report-level verdict."""

    valid: bool
    max_failure_rate: float
    total_timed_failures: int
    invalid_modes: list[RetrievalMode] = Field(default_factory=list)


class BenchmarkReport(GateBaseModel):
    """Aggregated benchmark report written to benchmark_*.json."""

    report_version: int = 1
    generated_at: str
    scope: BenchmarkScope
    environment: BenchmarkEnvironment = Field(default_factory=BenchmarkEnvironment)
    mode_summaries: list[ModeSummary] = Field(default_factory=list)
    failures: list[FailureRecord] = Field(default_factory=list)
    overall: BenchmarkOverall

    def mode_summary(self, mode: RetrievalMode) -> ModeSummary | None:
        """Return the summary for ``mode``, or None when it was not benchmarked."""
        for summary in self.mode_summaries:
            if summary.mode == mode:
                return summary
        return None

    def mode_p95(self, mode: RetrievalMode) -> float | None:
        """Return the latency p95 for ``mode`` if it was measured."""
        summary = self.mode_summary(mode)
        if summary is None:
            return None
        return summary.latency_ms.p95

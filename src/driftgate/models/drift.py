# Copyright (c) Syntropy Systems
"""Pydantic models for threshold policies and drift reports."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from typing_extensions import TypeAlias

from .base import GateBaseModel, JSONObject

GateStatus: TypeAlias = Literal["PASS", "WARN", "FAIL"]
Severity: TypeAlias = Literal["hard", "soft"]

GATE_EXIT_CODES: dict[str, int] = {"PASS": 0, "WARN": 10, "FAIL": 20}


class RuleLimits(GateBaseModel):
    """Limits for one severity tier. An absent limit disables its rule."""

    # Higher-is-better metrics: maximum allowed absolute drop
    quality_metric_drop: dict[str, float] = Field(default_factory=dict)
    # Lower-is-better metrics: maximum allowed absolute increase
    quality_metric_increase: dict[str, float] = Field(default_factory=dict)
    # Metrics that must stay at or above a floor in the after capture
    determinism_floor: dict[str, float] = Field(default_factory=dict)

    top1_expected_hit_rate_floor: float | None = None
    top1_expected_hit_rate_drop: float | None = None
    jaccard_at_10_min: float | None = None
    top1_unchanged_rate_min: float | None = None
    no_result_rate_increase: float | None = None
    timeout_rate_increase: float | None = None
    fallback_rate_increase: float | None = None
    error_rate_increase: float | None = None

    bench_p95_increase_ms: float | None = None
    bench_p95_increase_pct: float | None = None
    bench_mean_increase_pct: float | None = None

    def metric_paths(self) -> set[str]:
        return (
            set(self.quality_metric_drop)
            | set(self.quality_metric_increase)
            | set(self.determinism_floor)
        )


class ThresholdPolicy(GateBaseModel):
    """Versioned hard/soft threshold policy."""

    schema_version: int = 1
    hard: RuleLimits = Field(default_factory=RuleLimits)
    soft: RuleLimits = Field(default_factory=RuleLimits)


class RuleResult(GateBaseModel):
    """One triggered rule."""

    id: str
    severity: Severity
    message: str
    observed: float | str | None = None
    threshold: float | str | None = None


class RuleResults(GateBaseModel):
    hard_failures: list[RuleResult] = Field(default_factory=list)
    soft_failures: list[RuleResult] = Field(default_factory=list)


class StageBSide(GateBaseModel):
    status: str | None = None
    summary: JSONObject = Field(default_factory=dict)
    failed_checks: list[str] = Field(default_factory=list)


class StageBDrift(GateBaseModel):
    """Quality report comparison for one stage B report pair."""

    before: StageBSide
    after: StageBSide
    new_failed_checks: list[str] = Field(default_factory=list)
    resolved_checks: list[str] = Field(default_factory=list)


class MetricDelta(GateBaseModel):
    metric: str
    before: float | None = None
    after: float | None = None
    delta: float | None = None
    rel_increase: float | None = None


class SnapshotSummary(GateBaseModel):
    """Aggregate view of one snapshot file."""

    total: int = 0
    ok: int = 0
    errors: int = 0
    error_rate: float | None = None
    no_result_rate: float | None = None
    timeout_rate: float | None = None
    fallback_rate: float | None = None
    must_hit_total: int = 0
    top1_expected_hits: int = 0
    top1_expected_hit_rate: float | None = None


class SnapshotOverlap(GateBaseModel):
    common_queries: int = 0
    avg_jaccard_at_10: float | None = None
    top1_unchanged_rate: float | None = None


class SnapshotDrift(GateBaseModel):
    before: SnapshotSummary
    after: SnapshotSummary
    overlap: SnapshotOverlap


class StatDelta(GateBaseModel):
    before: float | None = None
    after: float | None = None
    delta: float | None = None
    rel_increase: float | None = None


class BenchmarkModeDrift(GateBaseModel):
    latency_ms: dict[str, StatDelta] = Field(default_factory=dict)
    latency_ms_delta: dict[str, float | None] = Field(default_factory=dict)
    wall_ms_delta: dict[str, float | None] = Field(default_factory=dict)
    failure_rate_before: float | None = None
    failure_rate_after: float | None = None


class BenchmarkDrift(GateBaseModel):
    before_valid: bool
    after_valid: bool
    mode_deltas: dict[str, BenchmarkModeDrift] = Field(default_factory=dict)


class DriftFacts(GateBaseModel):
    """Everything the rule engine evaluates."""

    quick_stage_b: StageBDrift
    full_stage_b: StageBDrift | None = None
    quality_metrics: dict[str, list[MetricDelta]] = Field(default_factory=dict)
    search_snapshots: dict[str, SnapshotDrift] = Field(default_factory=dict)
    benchmark_quick: BenchmarkDrift


class DriftReport(GateBaseModel):
    """compare/drift_report.json."""

    report_version: int = 1
    run_id: str
    mode: Literal["lite", "full"]
    generated_at: str
    threshold_schema_version: int
    threshold_file_hash: str
    threshold_path: str
    quick_stage_b: StageBDrift
    full_stage_b: StageBDrift | None = None
    quality_metrics: dict[str, list[MetricDelta]] = Field(default_factory=dict)
    search_snapshots: dict[str, SnapshotDrift] = Field(default_factory=dict)
    benchmark_quick: BenchmarkDrift
    rule_results: RuleResults
    gate_status: GateStatus

    @property
    def exit_code(self) -> int:
        return GATE_EXIT_CODES[self.gate_status]

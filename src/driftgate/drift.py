# Copyright (c) Syntropy Systems
"""Before/after drift computation and gate evaluation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import ValidationError

from driftgate.artifacts import as_float, dig, read_json_object, utcnow, write_model
from driftgate.capture import PhaseLayout, phase_dir
from driftgate.errors import CompareError
from driftgate.metrics import jaccard, mean, num_delta, rate, rel_increase
from driftgate.models.benchmark import RETRIEVAL_MODES, BenchmarkReport, NumericStats
from driftgate.models.capture import CaptureManifest, CaptureMode, QuerySnapshotRecord
from driftgate.models.drift import (
    BenchmarkDrift,
    BenchmarkModeDrift,
    DriftFacts,
    DriftReport,
    MetricDelta,
    SnapshotDrift,
    SnapshotOverlap,
    SnapshotSummary,
    StageBDrift,
    StageBSide,
    StatDelta,
)
from driftgate.report import render_markdown
from driftgate.rules import evaluate_rules, gate_status
from driftgate.snapshot import load_snapshot

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

    from driftgate.models.base import JSONObject
    from driftgate.policy import LoadedPolicy

logger = logging.getLogger(__name__)

SNAPSHOT_MODES = ("lexical", "semantic")
PASSING_RESULTS = frozenset({"pass", "passed"})
STAT_KEYS = ("p50", "p95", "p99", "mean")

# Quality metrics always reported, whether or not a rule references them
DEFAULT_QUALITY_METRICS = (
    "semantic_quality.hybrid_ndcg_at_10",
    "semantic_quality.lexical_ndcg_at_10",
    "semantic_quality.hybrid_mrr_at_10_first_hit",
    "semantic_quality.hybrid_recall_at_50",
    "semantic_quality.exact_ref_top1_hit_rate",
    "semantic_quality.citation_parity_top1",
    "semantic_quality.retrieval_determinism_topk_overlap",
    "semantic_quality.pinpoint_determinism_top1",
    "citation_parity.top1_parity",
    "citation_parity.top3_containment",
    "citation_parity.page_range_parity",
    "extraction_fidelity.text_layer_replay_stability",
    "table_quality_scorecard.table_sparse_row_ratio",
)


@dataclass
class CaptureBundle:
    """The artifacts of one capture phase that the comparison reads."""

    quick_report: JSONObject
    full_report: JSONObject | None
    benchmark: BenchmarkReport
    snapshots: dict[str, list[QuerySnapshotRecord]]


def _require(path: Path, label: str) -> Path:
    if not path.is_file():
        msg = f"{label} missing: {path}"
        raise CompareError(msg)
    return path


def _read_report(path: Path) -> JSONObject:
    try:
        return read_json_object(path)
    except ValueError as e:
        msg = f"malformed quality report {path}: {e}"
        raise CompareError(msg) from e


def load_bundle(phase_path: Path, mode: CaptureMode) -> CaptureBundle:
    """Read a phase directory's comparison inputs.

    Raises:
        CompareError: An artifact is missing or malformed, or the capture
            was taken in a different mode.

    """
    if not phase_path.is_dir():
        msg = f"capture directory not found: {phase_path}"
        raise CompareError(msg)
    layout = PhaseLayout(phase_path)

    if layout.manifest.exists():
        try:
            manifest = CaptureManifest.model_validate_json(layout.manifest.read_text())
        except ValidationError as e:
            msg = f"malformed capture manifest {layout.manifest}: {e.error_count()} error(s)"
            raise CompareError(msg) from e
        if manifest.mode != mode:
            msg = (
                f"{phase_path.name} capture was taken in {manifest.mode} mode, "
                f"comparison requested {mode}"
            )
            raise CompareError(msg)

    quick = _read_report(_require(layout.quick_report, "required artifact"))
    full = None
    if mode == "full":
        full = _read_report(_require(layout.full_report, "full-mode artifact"))
    bench_path = _require(layout.benchmark_selected, "required artifact")
    try:
        benchmark = BenchmarkReport.model_validate_json(bench_path.read_text())
    except ValidationError as e:
        msg = f"malformed benchmark report {bench_path}: {e.error_count()} error(s)"
        raise CompareError(msg) from e
    snapshots = {m: load_snapshot(layout.snapshot(m)) for m in SNAPSHOT_MODES}
    return CaptureBundle(quick, full, benchmark, snapshots)


def failed_checks(report: JSONObject) -> list[str]:
    """Sorted ids of checks whose result is not a pass."""
    checks = report.get("checks")
    if not isinstance(checks, list):
        return []
    failed: set[str] = set()
    for check in checks:
        if not isinstance(check, dict):
            continue
        check_id = check.get("check_id")
        if isinstance(check_id, str) and check.get("result") not in PASSING_RESULTS:
            failed.add(check_id)
    return sorted(failed)


def _stage_side(report: JSONObject) -> StageBSide:
    status = report.get("status")
    summary = report.get("summary")
    return StageBSide(
        status=status if isinstance(status, str) else None,
        summary=summary if isinstance(summary, dict) else {},
        failed_checks=failed_checks(report),
    )


def stage_b_drift(before: JSONObject, after: JSONObject) -> StageBDrift:
    """Compare two stage B quality reports."""
    before_side = _stage_side(before)
    after_side = _stage_side(after)
    before_failed = set(before_side.failed_checks)
    after_failed = set(after_side.failed_checks)
    return StageBDrift(
        before=before_side,
        after=after_side,
        new_failed_checks=sorted(after_failed - before_failed),
        resolved_checks=sorted(before_failed - after_failed),
    )


def metric_deltas(
    before: JSONObject, after: JSONObject, metrics: Iterable[str]
) -> list[MetricDelta]:
    """Per-metric before/after/delta for dotted report paths."""
    deltas: list[MetricDelta] = []
    for metric in metrics:
        b = as_float(dig(before, metric))
        a = as_float(dig(after, metric))
        deltas.append(
            MetricDelta(
                metric=metric,
                before=b,
                after=a,
                delta=num_delta(b, a),
                rel_increase=rel_increase(b, a),
            )
        )
    return deltas


def summarize_snapshot(records: Sequence[QuerySnapshotRecord]) -> SnapshotSummary:
    """Rates over all records of one snapshot file."""
    total = len(records)
    ok = [r for r in records if r.status == "ok"]
    must_hit = [r for r in records if r.must_hit_top1]
    hits = [
        r
        for r in must_hit
        if r.top1_chunk_id is not None and r.top1_chunk_id in r.expected_chunk_ids
    ]
    return SnapshotSummary(
        total=total,
        ok=len(ok),
        errors=total - len(ok),
        error_rate=rate(total - len(ok), total),
        no_result_rate=rate(sum(1 for r in ok if r.returned == 0), total),
        timeout_rate=rate(sum(1 for r in records if r.timed_out), total),
        fallback_rate=rate(sum(1 for r in records if r.fallback_used), total),
        must_hit_total=len(must_hit),
        top1_expected_hits=len(hits),
        top1_expected_hit_rate=rate(len(hits), len(must_hit)),
    )


def snapshot_overlap(
    before: Sequence[QuerySnapshotRecord], after: Sequence[QuerySnapshotRecord]
) -> SnapshotOverlap:
    """Jaccard@10 and top-1 stability over queries present in both snapshots."""
    before_by_id = {r.query_id: r for r in before}
    after_by_id = {r.query_id: r for r in after}
    common = sorted(before_by_id.keys() & after_by_id.keys())
    if not common:
        return SnapshotOverlap()
    similarities = [
        jaccard(before_by_id[q].top_chunk_ids[:10], after_by_id[q].top_chunk_ids[:10])
        for q in common
    ]
    unchanged = sum(
        1 for q in common if before_by_id[q].top1_chunk_id == after_by_id[q].top1_chunk_id
    )
    return SnapshotOverlap(
        common_queries=len(common),
        avg_jaccard_at_10=mean(similarities),
        top1_unchanged_rate=rate(unchanged, len(common)),
    )


def _stat_delta(before: NumericStats | None, after: NumericStats | None, key: str) -> StatDelta:
    b: float | None = getattr(before, key) if before is not None else None
    a: float | None = getattr(after, key) if after is not None else None
    return StatDelta(before=b, after=a, delta=num_delta(b, a), rel_increase=rel_increase(b, a))


def benchmark_drift(before: BenchmarkReport, after: BenchmarkReport) -> BenchmarkDrift:
    """Latency deltas per retrieval mode."""
    mode_deltas: dict[str, BenchmarkModeDrift] = {}
    for mode in RETRIEVAL_MODES:
        b = before.mode_summary(mode)
        a = after.mode_summary(mode)
        if b is None and a is None:
            continue
        latency = {
            key: _stat_delta(b.latency_ms if b else None, a.latency_ms if a else None, key)
            for key in STAT_KEYS
        }
        wall = {
            key: _stat_delta(b.wall_ms if b else None, a.wall_ms if a else None, key)
            for key in STAT_KEYS
        }
        mode_deltas[mode] = BenchmarkModeDrift(
            latency_ms=latency,
            latency_ms_delta={k: v.delta for k, v in latency.items()},
            wall_ms_delta={k: v.delta for k, v in wall.items()},
            failure_rate_before=b.failure_rate if b else None,
            failure_rate_after=a.failure_rate if a else None,
        )
    return BenchmarkDrift(
        before_valid=before.overall.valid,
        after_valid=after.overall.valid,
        mode_deltas=mode_deltas,
    )


def build_facts(
    before: CaptureBundle,
    after: CaptureBundle,
    metrics: Iterable[str] = DEFAULT_QUALITY_METRICS,
) -> DriftFacts:
    """Compute every drift section from two capture bundles."""
    metric_list = list(dict.fromkeys(metrics))
    quality = {"quick": metric_deltas(before.quick_report, after.quick_report, metric_list)}
    full_stage_b = None
    if before.full_report is not None and after.full_report is not None:
        full_stage_b = stage_b_drift(before.full_report, after.full_report)
        quality["full"] = metric_deltas(before.full_report, after.full_report, metric_list)

    snapshots = {
        mode: SnapshotDrift(
            before=summarize_snapshot(before.snapshots[mode]),
            after=summarize_snapshot(after.snapshots[mode]),
            overlap=snapshot_overlap(before.snapshots[mode], after.snapshots[mode]),
        )
        for mode in SNAPSHOT_MODES
    }
    return DriftFacts(
        quick_stage_b=stage_b_drift(before.quick_report, after.quick_report),
        full_stage_b=full_stage_b,
        quality_metrics=quality,
        search_snapshots=snapshots,
        benchmark_quick=benchmark_drift(before.benchmark, after.benchmark),
    )


def evaluate(
    run_id: str,
    mode: CaptureMode,
    before: CaptureBundle,
    after: CaptureBundle,
    loaded: LoadedPolicy,
) -> DriftReport:
    """Build facts, apply the policy and produce the drift report."""
    policy = loaded.policy
    referenced = policy.hard.metric_paths() | policy.soft.metric_paths()
    metrics = [*DEFAULT_QUALITY_METRICS, *sorted(referenced)]
    facts = build_facts(before, after, metrics)
    results = evaluate_rules(facts, policy.hard, policy.soft)
    return DriftReport(
        run_id=run_id,
        mode=mode,
        generated_at=utcnow(),
        threshold_schema_version=policy.schema_version,
        threshold_file_hash=loaded.sha256,
        threshold_path=str(loaded.path),
        quick_stage_b=facts.quick_stage_b,
        full_stage_b=facts.full_stage_b,
        quality_metrics=facts.quality_metrics,
        search_snapshots=facts.search_snapshots,
        benchmark_quick=facts.benchmark_quick,
        rule_results=results,
        gate_status=gate_status(results),
    )


def compare_run(
    output_root: Path,
    run_id: str,
    mode: CaptureMode,
    loaded: LoadedPolicy,
) -> DriftReport:
    """Compare ``<run_id>/before`` with ``<run_id>/after`` and write the outputs.

    Writes ``compare/drift_report.json``, ``compare/drift_report.md`` and
    ``compare/gate_status.txt`` under the run directory.
    """
    before = load_bundle(phase_dir(output_root, run_id, "before"), mode)
    after = load_bundle(phase_dir(output_root, run_id, "after"), mode)
    report = evaluate(run_id, mode, before, after, loaded)

    compare_dir = output_root / run_id / "compare"
    compare_dir.mkdir(parents=True, exist_ok=True)
    write_model(compare_dir / "drift_report.json", report)
    _ = (compare_dir / "drift_report.md").write_text(render_markdown(report))
    _ = (compare_dir / "gate_status.txt").write_text(report.gate_status + "\n")
    logger.info("Wrote drift report to %s (gate %s)", compare_dir, report.gate_status)
    return report

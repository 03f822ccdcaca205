"""Tests for drift computation, rules and the gate verdict."""

import json
from pathlib import Path

import pytest
import yaml

from driftgate.artifacts import write_json, write_model
from driftgate.benchmark import build_report
from driftgate.capture import PhaseLayout, phase_dir
from driftgate.drift import (
    CaptureBundle,
    build_facts,
    compare_run,
    evaluate,
    failed_checks,
    load_bundle,
    snapshot_overlap,
    stage_b_drift,
    summarize_snapshot,
)
from driftgate.errors import CompareError
from driftgate.models.benchmark import BenchmarkScope, FailureRecord, TimedRecord
from driftgate.models.capture import QuerySnapshotRecord
from driftgate.models.drift import RuleLimits, ThresholdPolicy
from driftgate.policy import DEFAULT_THRESHOLDS_YAML, LoadedPolicy, load_policy
from driftgate.report import render_markdown
from driftgate.rules import evaluate_rules, gate_status, slug
from driftgate.snapshot import write_snapshot

MODES = ("lexical", "semantic", "hybrid")


def _report(ndcg=0.9, failing=()):
    checks = [{"check_id": "Q-001", "result": "pass"}]
    checks += [{"check_id": check_id, "result": "fail"} for check_id in failing]
    return {
        "status": "passed" if not failing else "failed",
        "summary": {"total_checks": len(checks), "passed": 1, "failed": len(failing)},
        "checks": checks,
        "semantic_quality": {
            "hybrid_ndcg_at_10": ndcg,
            "retrieval_determinism_topk_overlap": 1.0,
            "pinpoint_determinism_top1": 1.0,
        },
        "citation_parity": {"top1_parity": 1.0},
    }


def _benchmark(p95=3.0, failures=0):
    scope = BenchmarkScope(
        profile="quick", query_count=1, warmup_passes=0, timed_passes=1, modes=list(MODES)
    )
    records = [
        TimedRecord(mode=mode, pass_index=1, query_id="Q-1", wall_ms=p95, latency_ms=p95)
        for mode in MODES
    ]
    failure_records = [
        FailureRecord(mode="hybrid", phase="timed", pass_index=1, query_id=f"Q-F{i}")
        for i in range(failures)
    ]
    return build_report(scope, records, failure_records)


def _record(query_id, mode, top, *, must_hit=False, expected=(), **extra):
    return QuerySnapshotRecord(
        query_id=query_id,
        query_text=f"text {query_id}",
        mode=mode,
        status=extra.pop("status", "ok"),
        returned=len(top),
        top_chunk_ids=list(top),
        top1_chunk_id=top[0] if top else None,
        must_hit_top1=must_hit,
        expected_chunk_ids=list(expected),
        **extra,
    )


def _snapshot(mode, top1="a-1"):
    return [
        _record("Q-1", mode, [top1, "b-2", "c-3"], must_hit=True, expected=["a-1"]),
        _record("Q-2", mode, ["d-1", "e-2"]),
    ]


def _bundle(ndcg=0.9, p95=3.0, failing=(), top1="a-1", bench_failures=0, full=False):
    return CaptureBundle(
        quick_report=_report(ndcg, failing),
        full_report=_report(ndcg, failing) if full else None,
        benchmark=_benchmark(p95, bench_failures),
        snapshots={mode: _snapshot(mode, top1) for mode in ("lexical", "semantic")},
    )


@pytest.fixture
def loaded_policy(temp_dir: Path) -> LoadedPolicy:
    """The default threshold policy written to disk."""
    path = temp_dir / "thresholds.yaml"
    _ = path.write_text(DEFAULT_THRESHOLDS_YAML)
    return load_policy(path)


def _ids(results):
    return [r.id for r in results]


class TestPolicy:
    """Tests for threshold policy loading."""

    def test_default_policy_loads(self, loaded_policy):
        """The bundled default policy parses and is hashed."""
        assert loaded_policy.policy.schema_version == 1
        assert loaded_policy.policy.soft.bench_p95_increase_ms == 5
        assert loaded_policy.policy.hard.top1_expected_hit_rate_floor == 0.9
        assert len(loaded_policy.sha256) == 64

    def test_json_policy(self, temp_dir):
        """JSON is accepted as a YAML subset."""
        path = temp_dir / "thresholds.json"
        _ = path.write_text(json.dumps({"schema_version": 2, "hard": {"jaccard_at_10_min": 0.5}}))
        loaded = load_policy(path)
        assert loaded.policy.schema_version == 2
        assert loaded.policy.hard.jaccard_at_10_min == 0.5
        assert loaded.policy.soft == RuleLimits()

    def test_missing_file(self, temp_dir):
        """A missing policy is a comparison error."""
        with pytest.raises(CompareError, match="not found"):
            _ = load_policy(temp_dir / "nope.yaml")

    def test_invalid_policy(self, temp_dir):
        """Wrongly typed limits are rejected."""
        path = temp_dir / "bad.yaml"
        _ = path.write_text(yaml.dump({"hard": {"jaccard_at_10_min": "high"}}))
        with pytest.raises(CompareError, match="invalid threshold policy"):
            _ = load_policy(path)

    def test_malformed_yaml(self, temp_dir):
        """Unparseable files are rejected."""
        path = temp_dir / "bad.yaml"
        _ = path.write_text("hard: [unclosed")
        with pytest.raises(CompareError):
            _ = load_policy(path)


class TestFacts:
    """Tests for drift fact computation."""

    def test_failed_checks(self):
        """Only non-passing checks are listed, sorted."""
        report = _report(failing=("Q-009", "Q-003"))
        assert failed_checks(report) == ["Q-003", "Q-009"]
        assert failed_checks({}) == []

    def test_stage_b_new_and_resolved(self):
        """New failures and resolved failures are separated."""
        drift = stage_b_drift(_report(failing=("Q-002",)), _report(failing=("Q-003",)))
        assert drift.new_failed_checks == ["Q-003"]
        assert drift.resolved_checks == ["Q-002"]

    def test_summarize_snapshot(self):
        """Rates are computed over every record."""
        records = [
            _record("Q-1", "lexical", ["a-1"], must_hit=True, expected=["a-1"]),
            _record("Q-2", "lexical", [], must_hit=True, expected=["x-1"]),
            _record("Q-3", "lexical", [], status="error"),
            _record("Q-4", "lexical", ["b-1"], timed_out=True, fallback_used=True),
        ]
        summary = summarize_snapshot(records)
        assert summary.total == 4
        assert summary.errors == 1
        assert summary.error_rate == 0.25
        # Errored rows are not counted as empty results
        assert summary.no_result_rate == 0.25
        assert summary.timeout_rate == 0.25
        assert summary.fallback_rate == 0.25
        assert summary.must_hit_total == 2
        assert summary.top1_expected_hit_rate == 0.5

    def test_empty_snapshot(self):
        """An empty snapshot has no rates."""
        summary = summarize_snapshot([])
        assert summary.total == 0
        assert summary.error_rate is None
        assert summary.top1_expected_hit_rate is None

    def test_overlap(self):
        """Jaccard and top-1 stability use queries present on both sides."""
        before = [
            _record("Q-1", "lexical", ["a", "b"]),
            _record("Q-2", "lexical", ["c"]),
            _record("Q-3", "lexical", ["z"]),
        ]
        after = [_record("Q-1", "lexical", ["b", "c"]), _record("Q-2", "lexical", ["c"])]
        overlap = snapshot_overlap(before, after)
        assert overlap.common_queries == 2
        assert overlap.avg_jaccard_at_10 == pytest.approx((1 / 3 + 1.0) / 2)
        assert overlap.top1_unchanged_rate == 0.5

    def test_overlap_without_common_queries(self):
        """No shared queries leaves the overlap undefined."""
        overlap = snapshot_overlap([_record("Q-1", "lexical", ["a"])], [])
        assert overlap.avg_jaccard_at_10 is None

    def test_benchmark_deltas(self):
        """Latency deltas are reported per mode and statistic."""
        facts = build_facts(_bundle(p95=3.0), _bundle(p95=6.0))
        hybrid = facts.benchmark_quick.mode_deltas["hybrid"]
        assert hybrid.latency_ms["p95"].delta == 3.0
        assert hybrid.latency_ms["p95"].rel_increase == 1.0
        assert hybrid.latency_ms_delta["p95"] == 3.0

    def test_missing_metric_is_null(self):
        """Metrics absent from a report have null deltas."""
        facts = build_facts(_bundle(), _bundle(), ["semantic_quality.not_reported"])
        entry = facts.quality_metrics["quick"][0]
        assert entry.before is None
        assert entry.delta is None


class TestRules:
    """Tests for rule evaluation and the gate verdict."""

    def test_identical_captures_pass(self, loaded_policy):
        """No drift means PASS with exit code 0."""
        report = evaluate("run-1", "lite", _bundle(), _bundle(), loaded_policy)
        assert report.gate_status == "PASS"
        assert report.exit_code == 0
        assert report.rule_results.hard_failures == []
        assert report.rule_results.soft_failures == []

    def test_small_latency_increase_below_absolute_floor(self, loaded_policy):
        """3ms -> 6ms stays under the 5ms absolute allowance."""
        report = evaluate("run-1", "lite", _bundle(p95=3.0), _bundle(p95=6.0), loaded_policy)
        assert report.gate_status == "PASS"

    def test_latency_regression_warns(self, loaded_policy):
        """3ms -> 9ms exceeds the allowance in every mode."""
        report = evaluate("run-1", "lite", _bundle(p95=3.0), _bundle(p95=9.0), loaded_policy)
        assert report.gate_status == "WARN"
        assert report.exit_code == 10
        assert _ids(report.rule_results.soft_failures) == [
            "S-BENCH-P95-HYBRID",
            "S-BENCH-P95-LEXICAL",
            "S-BENCH-P95-SEMANTIC",
        ]
        assert report.rule_results.soft_failures[0].threshold == 5

    def test_relative_latency_allowance(self, loaded_policy):
        """Slow baselines use the percentage allowance."""
        ok = evaluate("r", "lite", _bundle(p95=100.0), _bundle(p95=108.0), loaded_policy)
        assert ok.gate_status == "PASS"
        slow = evaluate("r", "lite", _bundle(p95=100.0), _bundle(p95=111.0), loaded_policy)
        assert slow.gate_status == "WARN"
        assert slow.rule_results.soft_failures[0].threshold == pytest.approx(10.0)

    def test_quality_drop_fails(self, loaded_policy):
        """A large nDCG drop is a hard failure."""
        report = evaluate("run-1", "lite", _bundle(ndcg=0.9), _bundle(ndcg=0.8), loaded_policy)
        assert report.gate_status == "FAIL"
        assert report.exit_code == 20
        assert "H-QUALITY-DROP-QUICK-HYBRID-NDCG-AT-10" in _ids(report.rule_results.hard_failures)
        assert "S-QUALITY-DROP-QUICK-HYBRID-NDCG-AT-10" in _ids(report.rule_results.soft_failures)

    def test_new_failed_check_is_always_hard(self):
        """Checks that start failing fail the gate regardless of policy."""
        facts = build_facts(_bundle(), _bundle(failing=("Q-002",)))
        results = evaluate_rules(facts, RuleLimits(), RuleLimits())
        assert _ids(results.hard_failures) == ["H-NEW-FAILED-CHECKS-QUICK"]
        assert gate_status(results) == "FAIL"

    def test_full_stage_b_checked_in_full_mode(self):
        """Full-mode reports get their own new-failure rule."""
        facts = build_facts(_bundle(full=True), _bundle(full=True, failing=("Q-002",)))
        results = evaluate_rules(facts, RuleLimits(), RuleLimits())
        assert _ids(results.hard_failures) == [
            "H-NEW-FAILED-CHECKS-QUICK",
            "H-NEW-FAILED-CHECKS-FULL",
        ]

    def test_invalid_benchmark_is_hard(self):
        """An invalid benchmark on either side fails the gate."""
        facts = build_facts(_bundle(), _bundle(bench_failures=1))
        results = evaluate_rules(facts, RuleLimits(), RuleLimits())
        assert _ids(results.hard_failures) == ["H-BENCH-INVALID-AFTER"]

    def test_top1_floor_fires_on_crossing_only(self):
        """The floor rule needs before >= floor > after."""
        limits = RuleLimits(top1_expected_hit_rate_floor=0.9)
        crossing = build_facts(_bundle(top1="a-1"), _bundle(top1="x-1"))
        assert _ids(evaluate_rules(crossing, limits, RuleLimits()).hard_failures) == [
            "H-TOP1-HIT-FLOOR-LEXICAL",
            "H-TOP1-HIT-FLOOR-SEMANTIC",
        ]
        below = build_facts(_bundle(top1="x-1"), _bundle(top1="x-1"))
        assert evaluate_rules(below, limits, RuleLimits()).hard_failures == []

    def test_jaccard_and_stability(self):
        """Changed rankings trigger overlap rules."""
        limits = RuleLimits(jaccard_at_10_min=0.8, top1_unchanged_rate_min=0.9)
        facts = build_facts(_bundle(top1="a-1"), _bundle(top1="x-1"))
        ids = _ids(evaluate_rules(facts, RuleLimits(), limits).soft_failures)
        assert "S-JACCARD10-LEXICAL" in ids
        assert "S-TOP1-STABILITY-SEMANTIC" in ids

    def test_same_rule_in_both_tiers(self):
        """A rule configured in both tiers reports once per tier."""
        limits = RuleLimits(top1_expected_hit_rate_drop=0.02)
        facts = build_facts(_bundle(top1="a-1"), _bundle(top1="x-1"))
        results = evaluate_rules(facts, limits, limits)
        assert "H-TOP1-HIT-DROP-LEXICAL" in _ids(results.hard_failures)
        assert "S-TOP1-HIT-DROP-LEXICAL" in _ids(results.soft_failures)

    def test_null_operands_skip(self):
        """Rules skip metrics missing on either side."""
        limits = RuleLimits(quality_metric_drop={"semantic_quality.absent": 0.0})
        facts = build_facts(_bundle(), _bundle(), ["semantic_quality.absent"])
        assert evaluate_rules(facts, limits, RuleLimits()).hard_failures == []

    def test_slug(self):
        """Rule subjects use the last dotted segment."""
        assert slug("semantic_quality.hybrid_ndcg_at_10") == "HYBRID-NDCG-AT-10"
        assert slug("top1_parity") == "TOP1-PARITY"


class TestCompareRun:
    """Tests for loading captures from disk and writing the outputs."""

    def _write_phase(self, output_root: Path, phase: str, bundle: CaptureBundle) -> Path:
        layout = PhaseLayout(phase_dir(output_root, "run-1", phase))
        write_json(layout.quick_report, bundle.quick_report)
        write_model(layout.benchmark_selected, bundle.benchmark)
        for mode, records in bundle.snapshots.items():
            _ = write_snapshot(layout.snapshot(mode), records)
        return layout.phase_dir

    def test_writes_outputs(self, temp_dir, loaded_policy):
        """The JSON report, markdown and status file are written."""
        self._write_phase(temp_dir, "before", _bundle(p95=3.0))
        self._write_phase(temp_dir, "after", _bundle(p95=9.0))

        report = compare_run(temp_dir, "run-1", "lite", loaded_policy)

        compare_dir = temp_dir / "run-1" / "compare"
        assert report.gate_status == "WARN"
        assert (compare_dir / "gate_status.txt").read_text() == "WARN\n"
        data = json.loads((compare_dir / "drift_report.json").read_text())
        assert data["gate_status"] == "WARN"
        assert data["threshold_file_hash"] == loaded_policy.sha256
        markdown = (compare_dir / "drift_report.md").read_text()
        assert "# Regression Drift Report" in markdown
        assert "S-BENCH-P95-HYBRID" in markdown

    def test_missing_phase(self, temp_dir, loaded_policy):
        """A missing capture directory is a comparison error."""
        self._write_phase(temp_dir, "before", _bundle())
        with pytest.raises(CompareError, match="capture directory not found"):
            _ = compare_run(temp_dir, "run-1", "lite", loaded_policy)

    def test_missing_artifact(self, temp_dir):
        """Every required artifact must exist."""
        phase = self._write_phase(temp_dir, "before", _bundle())
        PhaseLayout(phase).benchmark_selected.unlink()
        with pytest.raises(CompareError, match="required artifact missing"):
            _ = load_bundle(phase, "lite")

    def test_full_mode_needs_full_report(self, temp_dir):
        """Full-mode comparison requires the full stage B report."""
        phase = self._write_phase(temp_dir, "before", _bundle())
        with pytest.raises(CompareError, match="full-mode artifact missing"):
            _ = load_bundle(phase, "full")

    def test_malformed_snapshot(self, temp_dir):
        """Snapshot rows must match the record schema."""
        phase = self._write_phase(temp_dir, "before", _bundle())
        _ = PhaseLayout(phase).snapshot("lexical").write_text('{"query_id": "Q-1"}\n')
        with pytest.raises(CompareError, match="malformed search snapshot"):
            _ = load_bundle(phase, "lite")

    @pytest.mark.parametrize(
        ("artifact", "content", "message"),
        [
            ("quick_report", "{not json", "malformed quality report"),
            ("quick_report", "[1, 2]", "malformed quality report"),
            ("benchmark_selected", '{"scope": ', "malformed benchmark report"),
            ("manifest", '{"run_id": 1}', "malformed capture manifest"),
        ],
    )
    def test_malformed_artifact(self, temp_dir, artifact, content, message):
        """Unreadable artifacts are comparison errors, not crashes."""
        phase = self._write_phase(temp_dir, "before", _bundle())
        _ = getattr(PhaseLayout(phase), artifact).write_text(content)
        with pytest.raises(CompareError, match=message):
            _ = load_bundle(phase, "lite")

    def test_truncated_snapshot_line(self, temp_dir):
        """A snapshot line cut off mid-write is a comparison error."""
        phase = self._write_phase(temp_dir, "before", _bundle())
        path = PhaseLayout(phase).snapshot("semantic")
        _ = path.write_text(path.read_text() + '{"query_id": "Q-9", "sta\n')
        with pytest.raises(CompareError, match="malformed search snapshot"):
            _ = load_bundle(phase, "lite")


class TestMarkdown:
    """Tests for the markdown rendering."""

    def test_sections(self):
        """The summary lists every section and triggered rule."""
        policy = LoadedPolicy(
            ThresholdPolicy(soft=RuleLimits(bench_p95_increase_ms=1.0)),
            Path("thresholds.yaml"),
            "abc",
        )
        report = evaluate("run-7", "lite", _bundle(p95=3.0), _bundle(p95=9.0), policy)
        markdown = render_markdown(report)
        assert "- Run ID: `run-7`" in markdown
        assert "## Quick Stage B" in markdown
        assert "## Snapshot Drift" in markdown
        assert "- Hybrid p95 delta (ms): `6.0`" in markdown
        assert "## Hard Fail Rules Triggered\n- none" in markdown
        assert "`S-BENCH-P95-LEXICAL`" in markdown
        assert "## Full Stage B" not in markdown

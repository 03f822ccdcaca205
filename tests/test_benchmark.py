"""Tests for the benchmark aggregator and runner."""

import json
from pathlib import Path

import pytest

from driftgate.artifacts import write_model
from driftgate.benchmark import (
    MAX_FAILURE_RATE,
    aggregate_mode,
    build_report,
    pass_order,
    resolve_profile,
    run_benchmark,
    select_median_report,
)
from driftgate.engine import EngineClient
from driftgate.models.benchmark import (
    BenchmarkReport,
    BenchmarkScope,
    FailureRecord,
    TimedRecord,
)
from driftgate.models.capture import EvalQuery


def _timed(mode, query_id, latency, pass_index=1):
    return TimedRecord(
        mode=mode,
        pass_index=pass_index,
        query_id=query_id,
        wall_ms=latency + 1.0,
        latency_ms=latency,
        returned=3,
    )


def _scope(query_count=2, timed_passes=1, modes=("lexical", "semantic", "hybrid")):
    return BenchmarkScope(
        profile="quick",
        query_count=query_count,
        warmup_passes=1,
        timed_passes=timed_passes,
        modes=list(modes),
    )


class TestProfiles:
    """Tests for benchmark profiles."""

    def test_named_profiles(self):
        """quick, standard and full carry their pass counts."""
        quick = resolve_profile("quick")
        assert (quick.query_limit, quick.warmup_passes, quick.timed_passes) == (20, 1, 1)
        full = resolve_profile("full")
        assert (full.query_limit, full.warmup_passes, full.timed_passes) == (0, 2, 5)

    def test_overrides(self):
        """Explicit values replace profile defaults."""
        profile = resolve_profile("standard", timed_passes=4, query_limit=5)
        assert profile.timed_passes == 4
        assert profile.query_limit == 5
        assert profile.warmup_passes == 1

    def test_unknown_profile(self):
        """Unknown profile names are rejected."""
        with pytest.raises(ValueError, match="unknown benchmark profile"):
            _ = resolve_profile("huge")

    def test_zero_timed_passes_rejected(self):
        """At least one timed pass is required."""
        with pytest.raises(ValueError):
            _ = resolve_profile("quick", timed_passes=0)


class TestPassOrder:
    """Tests for the deterministic per-pass shuffle."""

    def test_deterministic(self):
        """The same pass key always yields the same order."""
        queries = [EvalQuery(query_id=f"Q-{i:03d}", query_text=f"q{i}") for i in range(20)]
        first = [q.query_id for q in pass_order(queries, "timed-1")]
        second = [q.query_id for q in pass_order(list(reversed(queries)), "timed-1")]
        assert first == second
        assert sorted(first) == [q.query_id for q in queries]

    def test_keys_differ(self):
        """Different passes are ordered differently."""
        queries = [EvalQuery(query_id=f"Q-{i:03d}", query_text=f"q{i}") for i in range(20)]
        assert [q.query_id for q in pass_order(queries, "timed-1")] != [
            q.query_id for q in pass_order(queries, "timed-2")
        ]


class TestAggregation:
    """Tests for per-mode aggregation and report validity."""

    def test_only_timed_failures_count(self):
        """Warmup failures do not affect the failure rate."""
        failures = [
            FailureRecord(mode="lexical", phase="warmup", pass_index=1, query_id="Q-1"),
            FailureRecord(mode="lexical", phase="timed", pass_index=1, query_id="Q-2"),
        ]
        summary = aggregate_mode(
            "lexical",
            [_timed("lexical", "Q-1", 3.0)],
            failures,
            query_count=2,
            timed_passes=1,
        )
        assert summary.expected_timed_queries == 2
        assert summary.timed_failure_count == 1
        assert summary.failure_rate == 0.5
        assert summary.latency_ms.p50 == 3.0

    def test_valid_report(self):
        """A report without timed failures is valid."""
        records = [
            _timed(mode, qid, 3.0)
            for mode in ("lexical", "semantic", "hybrid")
            for qid in ("Q-1", "Q-2")
        ]
        report = build_report(_scope(), records, [])
        assert report.overall.valid
        assert report.overall.max_failure_rate == MAX_FAILURE_RATE
        assert report.overall.total_timed_failures == 0
        assert report.mode_p95("hybrid") == 3.0

    def test_failure_rate_above_limit_invalidates(self):
        """One timed failure in two queries is far above one percent."""
        records = [_timed("hybrid", "Q-1", 3.0)]
        failures = [FailureRecord(mode="hybrid", phase="timed", pass_index=1, query_id="Q-2")]
        report = build_report(_scope(modes=("hybrid",)), records, failures)
        assert not report.overall.valid
        assert report.overall.invalid_modes == ["hybrid"]

    def test_expected_timed_queries(self):
        """Two timed passes over ten queries expect twenty timed runs."""
        summary = aggregate_mode("semantic", [], [], query_count=10, timed_passes=2)
        assert summary.expected_timed_queries == 20
        assert summary.completed_timed_queries == 0
        assert summary.failure_rate == 0.0
        assert summary.latency_ms.p95 is None

    @pytest.mark.parametrize(("failed", "valid"), [(2, True), (3, False)])
    def test_one_percent_boundary(self, failed, valid):
        """Exactly one percent failed is still valid; anything above is not."""
        query_ids = [f"Q-{i:03d}" for i in range(100)]
        timed = [(pass_index, qid) for pass_index in (1, 2) for qid in query_ids]
        failures = [
            FailureRecord(mode="hybrid", phase="timed", pass_index=p, query_id=qid)
            for p, qid in timed[:failed]
        ]
        records = [_timed("hybrid", qid, 3.0, pass_index=p) for p, qid in timed[failed:]]

        report = build_report(
            _scope(query_count=100, timed_passes=2, modes=("hybrid",)), records, failures
        )

        summary = report.mode_summary("hybrid")
        assert summary.expected_timed_queries == 200
        assert summary.completed_timed_queries == 200 - failed
        assert summary.timed_failure_count == failed
        assert report.overall.valid is valid
        assert report.overall.invalid_modes == ([] if valid else ["hybrid"])

    def test_mode_summaries_serialized_as_list(self):
        """Each summary carries its mode inside a list."""
        records = [_timed(mode, "Q-1", 3.0) for mode in ("lexical", "hybrid")]
        report = build_report(_scope(query_count=1, modes=("lexical", "hybrid")), records, [])
        data = json.loads(report.model_dump_json())
        assert [s["mode"] for s in data["mode_summaries"]] == ["lexical", "hybrid"]
        assert data["mode_summaries"][1]["completed_timed_queries"] == 1
        assert report.mode_summary("semantic") is None

    def test_inputs_not_mutated(self):
        """Aggregation leaves the raw records untouched."""
        records = [_timed("hybrid", "Q-2", 9.0), _timed("hybrid", "Q-1", 1.0)]
        _ = build_report(_scope(modes=("hybrid",)), records, [])
        assert [r.query_id for r in records] == ["Q-2", "Q-1"]


class TestSelectMedian:
    """Tests for median run selection."""

    def _write(self, path: Path, p95: float | None) -> Path:
        records = [] if p95 is None else [_timed("hybrid", "Q-1", p95)]
        write_model(path, build_report(_scope(query_count=1, modes=("hybrid",)), records, []))
        return path

    def test_picks_median_by_hybrid_p95(self, temp_dir):
        """The run with the median hybrid p95 is selected."""
        paths = [
            self._write(temp_dir / "run1.json", 9.0),
            self._write(temp_dir / "run2.json", 3.0),
            self._write(temp_dir / "run3.json", 5.0),
        ]
        assert select_median_report(paths) == paths[2]

    def test_even_count_takes_lower_middle(self, temp_dir):
        """With two runs the faster one is selected."""
        paths = [
            self._write(temp_dir / "run1.json", 8.0),
            self._write(temp_dir / "run2.json", 4.0),
        ]
        assert select_median_report(paths) == paths[1]

    def test_missing_p95_sorts_first(self, temp_dir):
        """A run without hybrid latency ranks as zero."""
        paths = [
            self._write(temp_dir / "run1.json", 8.0),
            self._write(temp_dir / "run2.json", None),
            self._write(temp_dir / "run3.json", 4.0),
        ]
        assert select_median_report(paths) == paths[2]


class TestRunBenchmark:
    """End-to-end benchmark runs against the fake engine."""

    def _queries(self):
        return [
            EvalQuery(query_id="Q-001", query_text="Mixing zone definition", part_filter="6"),
            EvalQuery(query_id="Q-002", query_text="Zone limits table"),
        ]

    def test_writes_report_and_query_list(self, temp_dir, engine_command):
        """The report and its query TSV are written next to each other."""
        engine = EngineClient(engine_command, temp_dir, temp_dir / "logs")
        output = temp_dir / "bench" / "benchmark_quick_run1.json"

        report = run_benchmark(
            engine,
            temp_dir,
            self._queries(),
            output,
            profile=resolve_profile("quick"),
        )

        assert report.overall.valid
        assert report.scope.query_count == 2
        assert report.environment.engine_version == "1.2.3"
        assert report.mode_summary("hybrid").completed_timed_queries == 2
        assert report.mode_p95("lexical") == 3.0
        saved = BenchmarkReport.model_validate_json(output.read_text())
        assert saved.overall.valid

        tsv = (temp_dir / "bench" / "benchmark_quick_run1.queries.tsv").read_text()
        assert tsv.splitlines()[0].split("\t") == [
            "query_id",
            "part_filter",
            "chunk_type_filter",
            "query_text",
        ]
        assert "Q-001\t6" in tsv

    def test_query_failures_invalidate(self, temp_dir, engine_command, monkeypatch):
        """Failing queries are recorded and make the report invalid."""
        monkeypatch.setenv("FAKE_FAIL", "query")
        engine = EngineClient(engine_command, temp_dir, temp_dir / "logs")
        output = temp_dir / "bench.json"

        report = run_benchmark(
            engine, temp_dir, self._queries(), output, profile=resolve_profile("quick")
        )

        assert not report.overall.valid
        assert report.overall.total_timed_failures == 6
        # Warmup failures are kept in the report but not counted
        assert len(report.failures) == 12
        assert "failed on purpose" in report.failures[0].reason
        data = json.loads(output.read_text())
        assert data["overall"]["valid"] is False

"""Tests for driftgate CLI commands."""

import json
import os

from typer.testing import CliRunner

from driftgate.cli.main import app

runner = CliRunner()


def _capture(phase, run_id="pr-1", env=None, extra=()):
    return runner.invoke(app, [phase, "--run-id", run_id, *extra], env=env)


class TestInitCommand:
    """Tests for driftgate init command."""

    def test_init_creates_directory(self, temp_dir):
        """Test that init creates .driftgate with config and thresholds."""
        os.chdir(temp_dir)

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert (temp_dir / ".driftgate").exists()
        assert (temp_dir / ".driftgate" / "config.yaml").exists()
        assert (temp_dir / ".driftgate" / "thresholds.yaml").exists()

    def test_init_already_initialized(self, gate_project):
        """Test init when already initialized."""
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.stdout


class TestCaptureCommands:
    """Tests for before/after captures."""

    def test_before_writes_manifest(self, gate_project):
        """A capture ends with the manifest on disk."""
        result = _capture("before")

        assert result.exit_code == 0, result.stdout
        assert "Captured before" in result.stdout
        manifest = gate_project / "regression" / "pr-1" / "before" / "capture_manifest.json"
        assert json.loads(manifest.read_text())["phase"] == "before"

    def test_second_capture_needs_force(self, gate_project):
        """An existing phase directory is not overwritten silently."""
        assert _capture("before").exit_code == 0

        result = _capture("before")
        assert result.exit_code == 1
        assert "--force" in result.stdout

        assert _capture("before", extra=["--force"]).exit_code == 0

    def test_invalid_mode(self, gate_project):
        """Unknown capture modes are rejected."""
        result = _capture("before", extra=["--mode", "huge"])

        assert result.exit_code == 1
        assert "--mode must be one of" in result.stdout

    def test_engine_failure(self, gate_project):
        """A failing engine step fails the capture."""
        result = _capture("before", env={"FAKE_FAIL": "ingest"})

        assert result.exit_code == 1
        assert "Error:" in result.stdout
        phase = gate_project / "regression" / "pr-1" / "before"
        assert not (phase / "capture_manifest.json").exists()


class TestCompareCommand:
    """Tests for the gate verdict and its exit codes."""

    def test_unchanged_engine_passes(self, gate_project):
        """Identical before and after captures PASS with exit 0."""
        assert _capture("before").exit_code == 0
        assert _capture("after").exit_code == 0

        result = runner.invoke(app, ["compare", "--run-id", "pr-1"])

        assert result.exit_code == 0, result.stdout
        assert "PASS" in result.stdout
        compare_dir = gate_project / "regression" / "pr-1" / "compare"
        assert (compare_dir / "gate_status.txt").read_text() == "PASS\n"
        assert (compare_dir / "drift_report.json").exists()
        assert (compare_dir / "drift_report.md").exists()

    def test_quality_drop_fails(self, gate_project):
        """A hybrid nDCG drop beyond the hard limit exits 20."""
        assert _capture("before").exit_code == 0
        assert _capture("after", env={"FAKE_NDCG": "0.8"}).exit_code == 0

        result = runner.invoke(app, ["compare", "--run-id", "pr-1"])

        assert result.exit_code == 20
        assert "FAIL" in result.stdout
        report = json.loads(
            (gate_project / "regression" / "pr-1" / "compare" / "drift_report.json").read_text()
        )
        ids = [r["id"] for r in report["rule_results"]["hard_failures"]]
        assert "H-QUALITY-DROP-QUICK-HYBRID-NDCG-AT-10" in ids

    def test_latency_regression_warns(self, gate_project):
        """A p95 increase beyond the soft allowance exits 10."""
        assert _capture("before").exit_code == 0
        assert _capture("after", env={"FAKE_LATENCY_MS": "20.0"}).exit_code == 0

        result = runner.invoke(app, ["compare", "--run-id", "pr-1"])

        assert result.exit_code == 10
        assert "WARN" in result.stdout

    def test_expect_status(self, gate_project):
        """--expect-status turns the verdict into a match check."""
        assert _capture("before").exit_code == 0
        assert _capture("after", env={"FAKE_LATENCY_MS": "20.0"}).exit_code == 0

        matched = runner.invoke(app, ["compare", "--run-id", "pr-1", "--expect-status", "warn"])
        assert matched.exit_code == 0

        mismatched = runner.invoke(
            app, ["compare", "--run-id", "pr-1", "--expect-status", "PASS"]
        )
        assert mismatched.exit_code == 1
        assert "Expected gate status PASS" in mismatched.stdout

    def test_invalid_expect_status(self, gate_project):
        """Only PASS, WARN and FAIL are accepted."""
        result = runner.invoke(app, ["compare", "--run-id", "pr-1", "--expect-status", "OK"])

        assert result.exit_code == 1
        assert "--expect-status must be one of" in result.stdout

    def test_missing_captures(self, gate_project):
        """Comparing a run that was never captured is an error."""
        result = runner.invoke(app, ["compare", "--run-id", "nope"])

        assert result.exit_code == 1
        assert "capture directory not found" in result.stdout

    def test_missing_thresholds(self, gate_project):
        """A missing threshold policy is an error."""
        result = runner.invoke(
            app,
            ["compare", "--run-id", "pr-1", "--thresholds", str(gate_project / "none.yaml")],
        )

        assert result.exit_code == 1
        assert "threshold file not found" in result.stdout

    def test_malformed_artifact(self, gate_project):
        """A corrupted capture artifact is reported without a traceback."""
        assert _capture("before").exit_code == 0
        assert _capture("after").exit_code == 0
        report = gate_project / "regression" / "pr-1" / "after" / "quality_report_quick_stageb.json"
        _ = report.write_text("{not json")

        result = runner.invoke(app, ["compare", "--run-id", "pr-1"])

        assert result.exit_code == 1
        assert "Error:" in result.stdout
        assert "malformed quality report" in result.stdout
        assert not isinstance(result.exception, ValueError)


class TestRefreshAndStatus:
    """Tests for the refresh runbook and status commands."""

    def test_status_without_state(self, gate_project, temp_dir):
        """Status reports when nothing has run yet."""
        cache = temp_dir / "empty-cache"
        result = runner.invoke(app, ["status", "--cache-root", str(cache)])

        assert result.exit_code == 0
        assert "No run state" in result.stdout
        assert "not_started" in result.stdout

    def test_status_unreadable_state(self, gate_project):
        """A malformed state file is reported as an error."""
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "cannot read run state" in result.stdout

    def test_refresh_then_status(self, gate_project, source_cache):
        """A completed refresh shows up in status."""
        (source_cache / "manifests" / "run_state.json").unlink()

        result = runner.invoke(app, ["refresh", "--no-decisions"])

        assert result.exit_code == 0, result.stdout
        assert "Refresh completed" in result.stdout
        assert not (source_cache / "manifests" / "decisions_log.jsonl").exists()

        status = runner.invoke(app, ["status"])
        assert status.exit_code == 0
        assert "completed" in status.stdout
        assert "R09" in status.stdout

    def test_refresh_failure_exits_1(self, gate_project, source_cache):
        """A failing step is reported and recorded."""
        (source_cache / "manifests" / "run_state.json").unlink()

        result = runner.invoke(app, ["refresh"], env={"FAKE_FAIL": "validate"})

        assert result.exit_code == 1
        assert "R06" in result.stdout
        state = json.loads((source_cache / "manifests" / "run_state.json").read_text())
        assert state["status"] == "failed"
        assert state["failed_step"] == "R06-VALIDATE"

    def test_refresh_unreadable_state(self, gate_project):
        """A malformed state file stops the refresh before any step runs."""
        result = runner.invoke(app, ["refresh"])

        assert result.exit_code == 1
        assert "unreadable" in result.stdout


class TestBenchCommand:
    """Tests for the bench command."""

    def test_bench_writes_report(self, gate_project, temp_dir):
        """The benchmark report is written where requested."""
        output = temp_dir / "bench.json"

        result = runner.invoke(app, ["bench", "--output", str(output)])

        assert result.exit_code == 0, result.stdout
        assert "hybrid" in result.stdout
        assert json.loads(output.read_text())["overall"]["valid"] is True
        assert (temp_dir / "bench.queries.tsv").exists()

    def test_bench_invalid_report_exits_1(self, gate_project, temp_dir):
        """Query failures make the report invalid."""
        result = runner.invoke(
            app,
            ["bench", "--output", str(temp_dir / "bench.json")],
            env={"FAKE_FAIL": "query"},
        )

        assert result.exit_code == 1
        assert "Benchmark invalid" in result.stdout

    def test_unknown_profile(self, gate_project):
        """Unknown profiles are rejected."""
        result = runner.invoke(app, ["bench", "--profile", "huge"])

        assert result.exit_code == 1
        assert "unknown benchmark profile" in result.stdout


class TestDoctorCommand:
    """Tests for driftgate doctor command."""

    def test_doctor_no_project(self, temp_dir):
        """Doctor outside a project points at init."""
        os.chdir(temp_dir)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "No .driftgate directory found" in result.stdout

    def test_doctor_project(self, gate_project):
        """Doctor checks the engine, thresholds and source cache."""
        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "Engine command" in result.stdout
        assert "Thresholds" in result.stdout
        assert "Source cache root" in result.stdout

# Copyright (c) Syntropy Systems
"""Before/after capture orchestration."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from driftgate.artifacts import utcnow, write_model
from driftgate.benchmark import resolve_profile, run_benchmark, select_median_report
from driftgate.errors import CaptureError, GateError
from driftgate.gitinfo import capture_git_info, current_branch
from driftgate.models.capture import (
    CaptureArtifacts,
    CaptureControls,
    CaptureManifest,
    CaptureMode,
    CapturePhase,
)
from driftgate.queries import load_eval_queries, query_manifest_path
from driftgate.runbook import RefreshOptions, RefreshPaths, Runbook
from driftgate.smoke import SmokeChecker
from driftgate.snapshot import capture_query_snapshot, write_snapshot

if TYPE_CHECKING:
    from collections.abc import Callable

    from driftgate.config import GateConfig
    from driftgate.engine import EngineClient

logger = logging.getLogger(__name__)

SOURCE_SUBDIR = "pdfs"
STORE_FILES = ("index.sqlite", "index.sqlite-shm", "index.sqlite-wal")

# Per-run outputs that must not leak from the source cache into a phase cache
STRIPPED_MANIFESTS = (
    "run_state.json",
    "decisions_log.jsonl",
    "extraction_quality_report.json",
)
STRIPPED_MANIFEST_GLOBS = (
    "ingest_run_*.json",
    "embedding_run_*.json",
    "semantic_benchmark_*",
)


@dataclass
class CaptureOptions:
    """Inputs of one capture phase."""

    run_id: str
    phase: CapturePhase
    source_cache_root: Path
    output_root: Path
    mode: CaptureMode = "lite"
    semantic_model_id: str = "miniLM-L6-v2-local-v1"
    part: int = 6
    max_pages: int = 60
    target_parts: list[int] = field(default_factory=lambda: [2, 6, 8, 9])
    lexical_k: int = 96
    semantic_k: int = 96
    rrf_k: int = 60
    timeout_ms: int = 2000
    snapshot_limit: int = 10
    bench_profile: str = "quick"
    bench_repeats_lite: int = 1
    bench_repeats_full: int = 2
    force: bool = False

    def validate(self) -> None:
        """Reject option combinations the capture cannot honor."""
        if not self.run_id:
            msg = "run id must not be empty"
            raise CaptureError(msg)
        for name in ("part", "max_pages", "lexical_k", "semantic_k", "rrf_k", "timeout_ms"):
            if getattr(self, name) < 0:
                msg = f"{name} must be non-negative"
                raise CaptureError(msg)
        if self.snapshot_limit < 1:
            msg = "snapshot limit must be at least 1"
            raise CaptureError(msg)
        if self.bench_repeats_lite < 1 or self.bench_repeats_full < 1:
            msg = "benchmark repeats must be at least 1"
            raise CaptureError(msg)
        if not self.target_parts:
            msg = "at least one target part is required"
            raise CaptureError(msg)
        try:
            _ = resolve_profile(self.bench_profile)
        except ValueError as e:
            raise CaptureError(str(e)) from e

    @property
    def bench_repeats(self) -> int:
        return self.bench_repeats_full if self.mode == "full" else self.bench_repeats_lite


@dataclass(frozen=True)
class PhaseLayout:
    """Where a capture phase writes its artifacts."""

    phase_dir: Path

    @property
    def cache(self) -> Path:
        return self.phase_dir / "cache"

    @property
    def logs(self) -> Path:
        return self.phase_dir / "logs"

    @property
    def quick_report(self) -> Path:
        return self.phase_dir / "quality_report_quick_stageb.json"

    @property
    def full_report(self) -> Path:
        return self.phase_dir / "quality_report_full_stageb.json"

    @property
    def benchmark_selected(self) -> Path:
        return self.phase_dir / "benchmark_quick.json"

    def benchmark_run(self, index: int) -> Path:
        return self.phase_dir / f"benchmark_quick_run{index}.json"

    def snapshot(self, mode: str) -> Path:
        return self.phase_dir / f"search_snapshot_{mode}.jsonl"

    @property
    def model_lock(self) -> Path:
        return self.phase_dir / "semantic_model_config.lock.json"

    @property
    def manifest(self) -> Path:
        return self.phase_dir / "capture_manifest.json"


def phase_dir(output_root: Path, run_id: str, phase: str) -> Path:
    """``<output_root>/<run_id>/<phase>``."""
    return output_root / run_id / phase


def seed_phase_cache(source: Path, target: Path, source_globs: list[str]) -> int:
    """Copy source documents, store and manifests into a fresh phase cache.

    Returns the number of root-level source documents seeded.

    Raises:
        CaptureError: The source cache is missing or holds no documents.

    """
    if not source.is_dir():
        msg = f"source cache root does not exist: {source}"
        raise CaptureError(msg)
    target.mkdir(parents=True, exist_ok=True)

    seeded = 0
    for pattern in source_globs:
        for doc in sorted(source.glob(pattern)):
            if doc.is_file():
                _ = shutil.copy2(doc, target / doc.name)
                seeded += 1
    if seeded == 0:
        msg = f"no source documents matching {source_globs} in {source}"
        raise CaptureError(msg)

    if (source / SOURCE_SUBDIR).is_dir():
        _ = shutil.copytree(source / SOURCE_SUBDIR, target / SOURCE_SUBDIR)
    for name in STORE_FILES:
        if (source / name).is_file():
            _ = shutil.copy2(source / name, target / name)

    manifests = target / "manifests"
    if (source / "manifests").is_dir():
        _ = shutil.copytree(source / "manifests", manifests)
    manifests.mkdir(exist_ok=True)
    for name in STRIPPED_MANIFESTS:
        (manifests / name).unlink(missing_ok=True)
    for pattern in STRIPPED_MANIFEST_GLOBS:
        for path in manifests.glob(pattern):
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()

    logger.info("Seeded %d source document(s) into %s", seeded, target)
    return seeded


class CaptureOrchestrator:
    """Runs one capture phase end to end; the manifest is written last."""

    options: CaptureOptions
    config: GateConfig
    layout: PhaseLayout
    engine: EngineClient

    def __init__(
        self,
        options: CaptureOptions,
        config: GateConfig,
        engine_factory: Callable[[Path], EngineClient],
    ) -> None:
        """Initialize the orchestrator.

        Args:
            options: Capture inputs
            config: Project configuration
            engine_factory: Builds an engine client logging into the given dir

        """
        options.validate()
        self.options = options
        self.config = config
        self.layout = PhaseLayout(
            phase_dir(options.output_root, options.run_id, options.phase)
        )
        self.engine = engine_factory(self.layout.logs)

    def prepare(self) -> None:
        """Create the phase directory, refusing to overwrite without force."""
        phase_path = self.layout.phase_dir
        if phase_path.exists():
            if not self.options.force:
                msg = f"{phase_path} already exists; pass --force to overwrite"
                raise CaptureError(msg)
            logger.info("Removing existing phase directory %s", phase_path)
            shutil.rmtree(phase_path)
        self.layout.logs.mkdir(parents=True)

    def _refresh_options(
        self, *, target_parts: list[int], max_pages: int, branch: str
    ) -> RefreshOptions:
        return RefreshOptions(
            cache_root=self.layout.cache,
            target_parts=target_parts,
            max_pages=max_pages,
            stage="A",
            # Phase caches are disposable copies; archive and rebuild on mismatch
            rebuild_on_mismatch=True,
            update_decisions=False,
            semantic_model_id=self.options.semantic_model_id,
            semantic_model_lock_path=self.layout.model_lock,
            active_branch=branch,
            base_branch=branch,
            expected_db_schema_version=self.config.expected_db_schema_version,
            runbook_version=self.config.runbook_version,
            required_env_dirs=self.config.required_env_dirs,
            probe_queries=self.config.probe_queries,
        )

    def _refresh(self, options: RefreshOptions, report_target: Path, label: str) -> None:
        logger.info("Running %s refresh", label)
        _ = Runbook(options, self.engine).run()
        self.engine.validate(
            self.layout.cache, stage="B", log_name=f"validate_{label}_stageb"
        )
        report = RefreshPaths(self.layout.cache).quality_report
        if not report.exists():
            msg = f"{label} stage B validate produced no quality report"
            raise CaptureError(msg)
        _ = shutil.copy2(report, report_target)

    def run(self) -> CaptureManifest:
        """Execute the full capture sequence.

        Raises:
            CaptureError: Any step failed; no manifest has been written.

        """
        opts = self.options
        self.prepare()
        stage = "seed"
        try:
            _ = seed_phase_cache(
                opts.source_cache_root, self.layout.cache, self.config.source_globs
            )

            stage = "build"
            self.engine.build(self.config.build_commands)

            stage = "smoke"
            smoke = SmokeChecker(
                self.engine,
                self.layout.cache,
                target_parts=[opts.part],
                max_pages=opts.max_pages,
                probe_queries=self.config.probe_queries,
            )
            smoke.run()
            smoke.check_determinism()
            smoke.check_idempotence()

            branch = current_branch(self.config.project_root) or "HEAD"

            stage = "quick refresh"
            self._refresh(
                self._refresh_options(
                    target_parts=[opts.part], max_pages=opts.max_pages, branch=branch
                ),
                self.layout.quick_report,
                "quick",
            )

            if opts.mode == "full":
                stage = "full refresh"
                self._refresh(
                    self._refresh_options(
                        target_parts=opts.target_parts, max_pages=0, branch=branch
                    ),
                    self.layout.full_report,
                    "full",
                )

            stage = "benchmark"
            runs = self._benchmark()

            stage = "snapshots"
            self._snapshots()
        except (GateError, OSError, ValueError) as e:
            if isinstance(e, CaptureError):
                raise
            msg = f"{opts.phase} capture failed during {stage}: {e}"
            logger.error(msg)
            raise CaptureError(msg) from e

        manifest = self._manifest(runs)
        write_model(self.layout.manifest, manifest)
        logger.info("Capture manifest written to %s", self.layout.manifest)
        return manifest

    def _benchmark(self) -> list[Path]:
        opts = self.options
        queries = load_eval_queries(query_manifest_path(self.layout.cache))
        profile = resolve_profile(opts.bench_profile)
        runs: list[Path] = []
        for index in range(1, opts.bench_repeats + 1):
            path = self.layout.benchmark_run(index)
            logger.info("Benchmark repeat %d/%d", index, opts.bench_repeats)
            report = run_benchmark(
                self.engine,
                self.layout.cache,
                queries,
                path,
                profile=profile,
                lexical_k=opts.lexical_k,
                semantic_k=opts.semantic_k,
                rrf_k=opts.rrf_k,
                timeout_ms=opts.timeout_ms,
                semantic_model_id=opts.semantic_model_id,
                query_manifest=query_manifest_path(self.layout.cache),
            )
            if not report.overall.valid:
                msg = (
                    f"{opts.phase} capture failed during benchmark: repeat {index} is invalid, "
                    f"failure rate above {report.overall.max_failure_rate} in "
                    f"{', '.join(report.overall.invalid_modes)}"
                )
                logger.error(msg)
                raise CaptureError(msg)
            runs.append(path)
        selected = select_median_report(runs)
        _ = shutil.copy2(selected, self.layout.benchmark_selected)
        logger.info("Selected median benchmark run %s", selected.name)
        return runs

    def _snapshots(self) -> None:
        opts = self.options
        queries = load_eval_queries(query_manifest_path(self.layout.cache))
        for mode in ("lexical", "semantic"):
            records = capture_query_snapshot(
                self.engine,
                self.layout.cache,
                queries,
                mode,
                limit=opts.snapshot_limit,
                lexical_k=opts.lexical_k,
                semantic_k=opts.semantic_k,
                rrf_k=opts.rrf_k,
                timeout_ms=opts.timeout_ms,
                semantic_model_id=opts.semantic_model_id,
            )
            count = write_snapshot(self.layout.snapshot(mode), records)
            logger.info("Wrote %d %s snapshot rows", count, mode)

    def _manifest(self, runs: list[Path]) -> CaptureManifest:
        opts = self.options
        layout = self.layout
        return CaptureManifest(
            run_id=opts.run_id,
            phase=opts.phase,
            mode=opts.mode,
            generated_at=utcnow(),
            source_cache_root=str(opts.source_cache_root),
            phase_cache_root=str(layout.cache),
            git=capture_git_info(self.config.project_root),
            controls=CaptureControls(
                semantic_model_id=opts.semantic_model_id,
                part=opts.part,
                max_pages=opts.max_pages,
                target_parts=opts.target_parts,
                lexical_k=opts.lexical_k,
                semantic_k=opts.semantic_k,
                rrf_k=opts.rrf_k,
                timeout_ms=opts.timeout_ms,
                snapshot_limit=opts.snapshot_limit,
                bench_profile=opts.bench_profile,
                bench_repeats=opts.bench_repeats,
            ),
            artifacts=CaptureArtifacts(
                quick_stage_b_report=str(layout.quick_report),
                full_stage_b_report=str(layout.full_report) if opts.mode == "full" else None,
                lexical_snapshot=str(layout.snapshot("lexical")),
                semantic_snapshot=str(layout.snapshot("semantic")),
                benchmark_runs=[str(p) for p in runs],
                benchmark_selected=str(layout.benchmark_selected),
                semantic_model_lockfile=(
                    str(layout.model_lock) if layout.model_lock.exists() else None
                ),
            ),
        )

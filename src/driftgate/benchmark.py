# Copyright (c) Syntropy Systems
"""Query-mode latency benchmark: execution, aggregation and median selection."""
from __future__ import annotations

import csv
import hashlib
import logging
import platform
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from driftgate.artifacts import utcnow, write_model
from driftgate.errors import EngineError
from driftgate.metrics import median_index, numeric_stats, rate
from driftgate.models.benchmark import (
    RETRIEVAL_MODES,
    BenchmarkEnvironment,
    BenchmarkOverall,
    BenchmarkReport,
    BenchmarkScope,
    FailureRecord,
    ModeSummary,
    PassPhase,
    RetrievalMode,
    TimedRecord,
)
from driftgate.models.engine import QueryRequest

if TYPE_CHECKING:
    from collections.abc import Sequence

    from driftgate.engine import EngineClient
    from driftgate.models.capture import EvalQuery

logger = logging.getLogger(__name__)

# A mode with more than 1% failed timed queries invalidates the report
MAX_FAILURE_RATE = 0.01

PROGRESS_EVERY = 25


@dataclass(frozen=True)
class BenchmarkProfile:
    """Named default for query count and pass counts."""

    name: str
    query_limit: int
    warmup_passes: int
    timed_passes: int


PROFILES: dict[str, BenchmarkProfile] = {
    "quick": BenchmarkProfile("quick", query_limit=20, warmup_passes=1, timed_passes=1),
    "standard": BenchmarkProfile(
        "standard", query_limit=30, warmup_passes=1, timed_passes=2
    ),
    # query_limit 0 means every query in the manifest
    "full": BenchmarkProfile("full", query_limit=0, warmup_passes=2, timed_passes=5),
}


def resolve_profile(
    name: str,
    *,
    query_limit: int | None = None,
    warmup_passes: int | None = None,
    timed_passes: int | None = None,
) -> BenchmarkProfile:
    """Look up a profile and apply explicit overrides."""
    base = PROFILES.get(name)
    if base is None:
        msg = f"unknown benchmark profile '{name}' (expected one of {', '.join(PROFILES)})"
        raise ValueError(msg)
    profile = BenchmarkProfile(
        name,
        query_limit=base.query_limit if query_limit is None else query_limit,
        warmup_passes=base.warmup_passes if warmup_passes is None else warmup_passes,
        timed_passes=base.timed_passes if timed_passes is None else timed_passes,
    )
    if profile.query_limit < 0 or profile.warmup_passes < 0:
        msg = "query limit and warmup passes must be non-negative"
        raise ValueError(msg)
    if profile.timed_passes < 1:
        msg = "timed passes must be at least 1"
        raise ValueError(msg)
    return profile


def pass_order(queries: Sequence[EvalQuery], pass_key: str) -> list[EvalQuery]:
    """Deterministic per-pass shuffle keyed on sha256("<pass_key>|<query_id>")."""

    def _key(query: EvalQuery) -> str:
        return hashlib.sha256(f"{pass_key}|{query.query_id}".encode()).hexdigest()

    return sorted(queries, key=_key)


def aggregate_mode(
    mode: RetrievalMode,
    records: Sequence[TimedRecord],
    failures: Sequence[FailureRecord],
    *,
    query_count: int,
    timed_passes: int,
) -> ModeSummary:
    """Summarize one mode's timed records and failures.

    Only failures recorded during timed passes count toward the failure rate.
    """
    mode_records = [r for r in records if r.mode == mode]
    timed_failures = [f for f in failures if f.mode == mode and f.phase == "timed"]
    expected = timed_passes * query_count
    failure_rate = rate(len(timed_failures), expected) or 0.0
    fallback_count = sum(1 for r in mode_records if r.fallback_used)

    return ModeSummary(
        mode=mode,
        query_count=query_count,
        expected_timed_queries=expected,
        completed_timed_queries=len(mode_records),
        timed_failure_count=len(timed_failures),
        failure_rate=failure_rate,
        latency_ms=numeric_stats([r.latency_ms for r in mode_records]),
        wall_ms=numeric_stats([r.wall_ms for r in mode_records]),
        returned=numeric_stats([float(r.returned) for r in mode_records]),
        lexical_candidate_count=numeric_stats(
            [float(r.lexical_candidate_count) for r in mode_records]
        ),
        semantic_candidate_count=numeric_stats(
            [float(r.semantic_candidate_count) for r in mode_records]
        ),
        fused_candidate_count=numeric_stats(
            [float(r.fused_candidate_count) for r in mode_records]
        ),
        fallback_used_rate=rate(fallback_count, len(mode_records)),
    )


def build_report(
    scope: BenchmarkScope,
    records: Sequence[TimedRecord],
    failures: Sequence[FailureRecord],
    *,
    environment: BenchmarkEnvironment | None = None,
    generated_at: str | None = None,
) -> BenchmarkReport:
    """Aggregate raw records into a report without mutating the inputs."""
    summaries = [
        aggregate_mode(
            mode,
            records,
            failures,
            query_count=scope.query_count,
            timed_passes=scope.timed_passes,
        )
        for mode in scope.modes
    ]

    invalid = [s.mode for s in summaries if s.failure_rate > MAX_FAILURE_RATE]
    overall = BenchmarkOverall(
        valid=not invalid,
        max_failure_rate=MAX_FAILURE_RATE,
        total_timed_failures=sum(s.timed_failure_count for s in summaries),
        invalid_modes=invalid,
    )
    return BenchmarkReport(
        generated_at=generated_at or utcnow(),
        scope=scope,
        environment=environment or BenchmarkEnvironment(),
        mode_summaries=summaries,
        failures=list(failures),
        overall=overall,
    )


def _cpu_model() -> str | None:
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.exists():
        for line in cpuinfo.read_text(errors="replace").splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    return platform.processor() or None


def _filesystem_for(path: Path) -> str | None:
    target = str(path.resolve())
    best: tuple[int, str] | None = None
    try:
        partitions = psutil.disk_partitions(all=True)
    except OSError:
        return None
    for partition in partitions:
        mount = partition.mountpoint
        if target == mount or target.startswith(mount.rstrip("/") + "/"):
            if best is None or len(mount) > best[0]:
                best = (len(mount), partition.fstype)
    return best[1] if best else None


def collect_environment(
    cache_root: Path | None = None,
    engine_version: str | None = None,
) -> BenchmarkEnvironment:
    """Record host facts that influence latency figures."""
    memory = psutil.virtual_memory()
    return BenchmarkEnvironment(
        cpu_model=_cpu_model(),
        physical_cores=psutil.cpu_count(logical=False),
        logical_threads=psutil.cpu_count(logical=True),
        memory_total_gb=round(memory.total / (1024**3), 2),
        kernel=platform.release() or None,
        platform=platform.platform(),
        python_version=platform.python_version(),
        engine_version=engine_version,
        filesystem=_filesystem_for(cache_root) if cache_root is not None else None,
    )


def select_median_report(paths: Sequence[Path]) -> Path:
    """Pick the run whose hybrid p95 latency is the median of all runs.

    Runs without a hybrid p95 sort as 0.
    """
    if not paths:
        msg = "no benchmark runs to select from"
        raise ValueError(msg)
    ranked: list[tuple[float, int, Path]] = []
    for index, path in enumerate(paths):
        report = BenchmarkReport.model_validate_json(path.read_text())
        ranked.append((report.mode_p95("hybrid") or 0.0, index, path))
    ranked.sort()
    return ranked[median_index(len(ranked))][2]


def write_query_snapshot(path: Path, queries: Sequence[EvalQuery]) -> None:
    """Record which queries a benchmark ran, as TSV."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="") as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["query_id", "part_filter", "chunk_type_filter", "query_text"])
        for query in queries:
            writer.writerow(
                [
                    query.query_id,
                    query.part_filter or "",
                    query.chunk_type_filter or "",
                    query.query_text,
                ]
            )


class BenchmarkRunner:
    """Executes warmup and timed passes for every retrieval mode."""

    engine: EngineClient
    cache_root: Path
    queries: list[EvalQuery]
    scope: BenchmarkScope
    records: list[TimedRecord]
    failures: list[FailureRecord]

    def __init__(
        self,
        engine: EngineClient,
        cache_root: Path,
        queries: Sequence[EvalQuery],
        scope: BenchmarkScope,
    ) -> None:
        self.engine = engine
        self.cache_root = cache_root
        self.queries = list(queries)
        self.scope = scope
        self.records = []
        self.failures = []

    def _request(self, query: EvalQuery, mode: RetrievalMode) -> QueryRequest:
        return QueryRequest(
            cache_root=str(self.cache_root),
            query_text=query.query_text,
            mode=mode,
            limit=self.scope.limit,
            lexical_k=self.scope.lexical_k,
            semantic_k=self.scope.semantic_k,
            rrf_k=self.scope.rrf_k,
            timeout_ms=self.scope.timeout_ms,
            part=query.part_filter,
            chunk_type=query.chunk_type_filter,
            semantic_model_id=self.scope.semantic_model_id,
        )

    def _run_one(
        self,
        query: EvalQuery,
        mode: RetrievalMode,
        phase: PassPhase,
        pass_index: int,
    ) -> None:
        started = time.perf_counter()
        try:
            response = self.engine.query(self._request(query, mode))
        except EngineError as e:
            wall_ms = (time.perf_counter() - started) * 1000.0
            logger.warning(
                "%s %s pass %d query %s failed: %s",
                mode,
                phase,
                pass_index,
                query.query_id,
                e,
            )
            self.failures.append(
                FailureRecord(
                    mode=mode,
                    phase=phase,
                    pass_index=pass_index,
                    query_id=query.query_id,
                    query_text=query.query_text,
                    wall_ms=wall_ms,
                    reason=e.stderr or str(e),
                )
            )
            return

        wall_ms = (time.perf_counter() - started) * 1000.0
        if phase == "warmup":
            return

        retrieval = response.retrieval
        latency = retrieval.query_duration_ms
        self.records.append(
            TimedRecord(
                mode=mode,
                pass_index=pass_index,
                query_id=query.query_id,
                wall_ms=wall_ms,
                latency_ms=latency if latency is not None else wall_ms,
                returned=response.returned,
                lexical_candidate_count=retrieval.lexical_candidate_count,
                semantic_candidate_count=retrieval.semantic_candidate_count,
                fused_candidate_count=retrieval.fused_candidate_count,
                fallback_used=retrieval.fallback_used,
            )
        )

    def run(self) -> None:
        """Run all warmup passes, then all timed passes."""
        total = (
            (self.scope.warmup_passes + self.scope.timed_passes)
            * len(self.scope.modes)
            * len(self.queries)
        )
        done = 0
        passes: list[tuple[PassPhase, int]] = [
            ("warmup", i) for i in range(1, self.scope.warmup_passes + 1)
        ]
        passes += [("timed", i) for i in range(1, self.scope.timed_passes + 1)]

        for phase, pass_index in passes:
            ordered = pass_order(self.queries, f"{phase}-{pass_index}")
            for mode in self.scope.modes:
                for query in ordered:
                    self._run_one(query, mode, phase, pass_index)
                    done += 1
                    if done % PROGRESS_EVERY == 0 or done == total:
                        logger.info("Benchmark progress: %d/%d invocations", done, total)

    def report(self, environment: BenchmarkEnvironment | None = None) -> BenchmarkReport:
        """Aggregate what has been collected so far."""
        return build_report(
            self.scope, self.records, self.failures, environment=environment
        )


def run_benchmark(
    engine: EngineClient,
    cache_root: Path,
    queries: Sequence[EvalQuery],
    output_path: Path,
    *,
    profile: BenchmarkProfile,
    modes: Sequence[RetrievalMode] = RETRIEVAL_MODES,
    limit: int = 20,
    lexical_k: int = 96,
    semantic_k: int = 96,
    rrf_k: int = 60,
    timeout_ms: int = 2000,
    semantic_model_id: str | None = None,
    query_manifest: Path | None = None,
) -> BenchmarkReport:
    """Run a benchmark end to end and write its report to ``output_path``."""
    selected = list(queries)
    if profile.query_limit > 0:
        selected = selected[: profile.query_limit]
    if not selected:
        msg = "benchmark needs at least one query"
        raise ValueError(msg)

    scope = BenchmarkScope(
        profile=profile.name,
        query_count=len(selected),
        warmup_passes=profile.warmup_passes,
        timed_passes=profile.timed_passes,
        modes=list(modes),
        limit=limit,
        lexical_k=lexical_k,
        semantic_k=semantic_k,
        rrf_k=rrf_k,
        timeout_ms=timeout_ms,
        semantic_model_id=semantic_model_id,
        query_manifest=str(query_manifest) if query_manifest else None,
        cache_root=str(cache_root),
    )
    write_query_snapshot(output_path.with_suffix(".queries.tsv"), selected)

    try:
        engine_version = engine.version()
    except EngineError as e:
        logger.warning("Engine version unavailable: %s", e)
        engine_version = None

    runner = BenchmarkRunner(engine, cache_root, selected, scope)
    runner.run()
    report = runner.report(collect_environment(cache_root, engine_version))
    write_model(output_path, report)
    logger.info(
        "Benchmark report written to %s (valid=%s)", output_path, report.overall.valid
    )
    return report

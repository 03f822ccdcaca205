# Copyright (c) Syntropy Systems
"""Smoke checks: quality report sanity, determinism and idempotence."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from driftgate.artifacts import read_json_object
from driftgate.errors import StepError
from driftgate.models.engine import QueryRequest
from driftgate.runbook import RefreshPaths

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from driftgate.engine import EngineClient
    from driftgate.models.base import JSONObject, JSONValue

logger = logging.getLogger(__name__)

# Report sections compared across consecutive validate runs
REPORT_CORE_FIELDS = (
    "status",
    "summary",
    "checks",
    "hierarchy_metrics",
    "table_quality_scorecard",
)


def normalize_report(report: JSONObject) -> str:
    """Canonical JSON of the report fields that must be reproducible."""
    core = {key: report.get(key) for key in REPORT_CORE_FIELDS}
    return json.dumps(core, sort_keys=True)


def normalize_counts(manifest: JSONObject) -> str:
    """Canonical JSON of ingest counts, ignoring timing figures."""
    counts = manifest.get("counts")
    if not isinstance(counts, dict):
        return "{}"
    stable: dict[str, JSONValue] = {
        k: v for k, v in counts.items() if not k.endswith(("_ms", "_seconds"))
    }
    return json.dumps(stable, sort_keys=True)


class SmokeChecker:
    """Runs ingest/validate against a cache root and asserts stability."""

    engine: EngineClient
    paths: RefreshPaths
    target_parts: list[int]
    max_pages: int
    probe_queries: list[str]

    def __init__(
        self,
        engine: EngineClient,
        cache_root: Path,
        *,
        target_parts: Sequence[int],
        max_pages: int = 0,
        probe_queries: Sequence[str] = (),
    ) -> None:
        self.engine = engine
        self.paths = RefreshPaths(cache_root)
        self.target_parts = list(target_parts)
        self.max_pages = max_pages
        self.probe_queries = list(probe_queries)

    def _ingest(self, log_name: str) -> Path:
        self.engine.ingest(
            self.paths.cache_root,
            target_parts=self.target_parts,
            max_pages=self.max_pages,
            log_name=log_name,
        )
        latest = self.paths.latest_ingest_manifest()
        if latest is None:
            msg = "ingest produced no ingest manifest"
            raise StepError(msg)
        return latest

    def _report(self) -> JSONObject:
        if not self.paths.quality_report.exists():
            msg = f"quality report not found at {self.paths.quality_report}"
            raise StepError(msg)
        return read_json_object(self.paths.quality_report)

    def _probe(self) -> list[str]:
        """Top-1 identity of each probe query."""
        identities: list[str] = []
        for text in self.probe_queries:
            response = self.engine.query(
                QueryRequest(
                    cache_root=str(self.paths.cache_root),
                    query_text=text,
                    mode="lexical",
                    limit=1,
                    part=str(self.target_parts[0]) if self.target_parts else None,
                )
            )
            top = response.results[0] if response.results else None
            identity = (
                None
                if top is None
                else {
                    "chunk_id": top.chunk_id,
                    "reference": top.reference,
                    "citation": top.citation,
                }
            )
            identities.append(json.dumps(identity, sort_keys=True))
        return identities

    def run(self) -> None:
        """Ingest, validate and require a passing quality report."""
        logger.info("Smoke: ingest and validate")
        _ = self._ingest("smoke_ingest")
        self.engine.validate(self.paths.cache_root, log_name="smoke_validate")

        report = self._report()
        summary = report.get("summary")
        summary = summary if isinstance(summary, dict) else {}
        if report.get("status") != "passed":
            msg = f"smoke: quality report status is {report.get('status')!r}, expected 'passed'"
            raise StepError(msg)
        if summary.get("failed") != 0 or summary.get("pending") != 0:
            msg = "smoke: quality summary has failed or pending checks"
            raise StepError(msg)
        logger.info("Smoke: quality report passed")

    def check_determinism(self) -> None:
        """Consecutive validate runs must give identical core report fields and top-1 hits."""
        logger.info("Smoke: determinism check")
        baseline_report = normalize_report(self._report())
        baseline_probes = self._probe()

        self.engine.validate(self.paths.cache_root, log_name="smoke_validate_repeat")

        if normalize_report(self._report()) != baseline_report:
            msg = "quality report core fields changed between consecutive validate runs"
            raise StepError(msg)
        current_probes = self._probe()
        for text, before, after in zip(
            self.probe_queries, baseline_probes, current_probes
        ):
            if before != after:
                msg = f"probe query {text!r} changed between consecutive validate runs"
                raise StepError(msg)
        logger.info("Smoke: validate/query outputs are deterministic")

    def check_idempotence(self) -> None:
        """Consecutive ingests of unchanged sources must report identical counts."""
        logger.info("Smoke: idempotence check")
        first = self.paths.latest_ingest_manifest()
        if first is None:
            first = self._ingest("smoke_ingest")
        baseline = normalize_counts(read_json_object(first))

        second = self._ingest("smoke_ingest_repeat")
        if normalize_counts(read_json_object(second)) != baseline:
            msg = "idempotence counts changed between ingest runs"
            raise StepError(msg)
        logger.info("Smoke: idempotence counts are stable")

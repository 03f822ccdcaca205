# Copyright (c) Syntropy Systems
"""Threshold policy loading and defaults."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

import yaml
from pydantic import ValidationError

from driftgate.errors import CompareError
from driftgate.models.drift import ThresholdPolicy

if TYPE_CHECKING:
    from pathlib import Path

DEFAULT_THRESHOLDS_YAML = """\
# driftgate threshold policy.
# Every rule is independently hard (FAIL) or soft (WARN) by where it is listed.
schema_version: 1

hard:
  quality_metric_drop:
    semantic_quality.hybrid_ndcg_at_10: 0.05
    semantic_quality.exact_ref_top1_hit_rate: 0.05
    citation_parity.top1_parity: 0.02
  determinism_floor:
    semantic_quality.retrieval_determinism_topk_overlap: 1.0
    semantic_quality.pinpoint_determinism_top1: 1.0
  top1_expected_hit_rate_floor: 0.9
  error_rate_increase: 0.02

soft:
  quality_metric_drop:
    semantic_quality.hybrid_ndcg_at_10: 0.01
    semantic_quality.lexical_ndcg_at_10: 0.01
    semantic_quality.hybrid_mrr_at_10_first_hit: 0.02
    semantic_quality.hybrid_recall_at_50: 0.02
    citation_parity.top3_containment: 0.01
  quality_metric_increase:
    table_quality_scorecard.table_sparse_row_ratio: 0.02
  top1_expected_hit_rate_drop: 0.02
  jaccard_at_10_min: 0.8
  top1_unchanged_rate_min: 0.9
  no_result_rate_increase: 0.02
  timeout_rate_increase: 0.0
  fallback_rate_increase: 0.05
  bench_p95_increase_ms: 5
  bench_p95_increase_pct: 0.10
"""


@dataclass(frozen=True)
class LoadedPolicy:
    """A parsed policy plus the provenance recorded in drift reports."""

    policy: ThresholdPolicy
    path: Path
    sha256: str


def load_policy(path: Path) -> LoadedPolicy:
    """Load a YAML (or JSON) threshold policy and hash its bytes.

    Raises:
        CompareError: The file is missing or invalid.

    """
    if not path.is_file():
        msg = f"threshold file not found: {path}"
        raise CompareError(msg)
    raw = path.read_bytes()
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        msg = f"threshold file is not valid YAML/JSON: {path}: {e}"
        raise CompareError(msg) from e
    try:
        policy = ThresholdPolicy.model_validate(data)
    except ValidationError as e:
        msg = f"invalid threshold policy {path}: {e.error_count()} error(s)"
        raise CompareError(msg) from e
    return LoadedPolicy(policy, path, hashlib.sha256(raw).hexdigest())

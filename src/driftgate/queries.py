# Copyright (c) Syntropy Systems
"""Evaluation query manifest loading."""
from __future__ import annotations

from typing import TYPE_CHECKING, cast

from pydantic import TypeAdapter, ValidationError

from driftgate.artifacts import read_json
from driftgate.errors import StepError
from driftgate.models.capture import EvalQuery

if TYPE_CHECKING:
    from pathlib import Path

QUERY_MANIFEST = "manifests/semantic_eval_queries.json"

_queries_adapter = TypeAdapter(list[EvalQuery])


def query_manifest_path(cache_root: Path) -> Path:
    """Location of the evaluation query manifest inside a cache root."""
    return cache_root / QUERY_MANIFEST


def load_eval_queries(path: Path, limit: int = 0) -> list[EvalQuery]:
    """Load the ``queries`` array sorted by query_id.

    ``limit`` keeps only the first N queries after sorting; 0 keeps all.

    Raises:
        StepError: The manifest is missing or malformed.

    """
    if not path.exists():
        msg = f"missing query manifest: {path}"
        raise StepError(msg)
    data = read_json(path)
    raw = data.get("queries") if isinstance(data, dict) else None
    if not isinstance(raw, list):
        msg = f"query manifest has no 'queries' array: {path}"
        raise StepError(msg)
    try:
        queries = _queries_adapter.validate_python(cast("list[object]", raw))
    except ValidationError as e:
        msg = f"invalid query manifest {path}: {e.error_count()} error(s)"
        raise StepError(msg) from e

    queries.sort(key=lambda q: q.query_id)
    if limit > 0:
        queries = queries[:limit]
    return queries

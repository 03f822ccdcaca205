# Copyright (c) Syntropy Systems
"""Replay evaluation queries and record per-query search snapshots."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from driftgate.artifacts import read_jsonl, write_jsonl
from driftgate.errors import CompareError, EngineError
from driftgate.models.capture import (
    CandidateCounts,
    EvalQuery,
    QuerySnapshotRecord,
    SnapshotError,
)
from driftgate.models.engine import QueryRequest

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from driftgate.engine import EngineClient
    from driftgate.models.benchmark import RetrievalMode
    from driftgate.models.engine import QueryResponse

logger = logging.getLogger(__name__)

TOP_K = 10
PROGRESS_EVERY = 10


def is_timed_out(duration_ms: float | None, timeout_ms: int) -> bool:
    """A query timed out when its duration reached a positive timeout."""
    return duration_ms is not None and timeout_ms > 0 and duration_ms >= timeout_ms


def _base_fields(query: EvalQuery, mode: RetrievalMode) -> dict[str, object]:
    return {
        "query_id": query.query_id,
        "query_text": query.query_text,
        "intent": query.intent,
        "mode": mode,
        "part_filter": query.part_filter,
        "chunk_type_filter": query.chunk_type_filter,
        "must_hit_top1": query.must_hit_top1,
        "expected_chunk_ids": query.expected_chunk_ids,
    }


def ok_record(
    query: EvalQuery,
    mode: RetrievalMode,
    response: QueryResponse,
    timeout_ms: int,
) -> QuerySnapshotRecord:
    """Snapshot row for a successful query."""
    retrieval = response.retrieval
    top = response.results[:TOP_K]
    first = top[0] if top else None
    duration = retrieval.query_duration_ms
    effective_timeout = retrieval.timeout_ms if retrieval.timeout_ms is not None else timeout_ms
    return QuerySnapshotRecord.model_validate(
        {
            **_base_fields(query, mode),
            "status": "ok",
            "returned": response.returned,
            "fallback_used": retrieval.fallback_used,
            "query_duration_ms": duration,
            "timeout_ms": effective_timeout,
            "timed_out": is_timed_out(duration, effective_timeout),
            "candidate_counts": CandidateCounts(
                lexical=retrieval.lexical_candidate_count,
                semantic=retrieval.semantic_candidate_count,
                fused=retrieval.fused_candidate_count,
            ),
            "top_chunk_ids": [r.chunk_id for r in top if r.chunk_id is not None],
            "top_refs": [r.reference for r in top if r.reference is not None],
            "top1_chunk_id": first.chunk_id if first else None,
            "top1_ref": first.reference if first else None,
            "top1_citation": first.citation if first else None,
        }
    )


def error_record(
    query: EvalQuery,
    mode: RetrievalMode,
    error: EngineError,
    timeout_ms: int,
) -> QuerySnapshotRecord:
    """Snapshot row for a failed query."""
    return QuerySnapshotRecord.model_validate(
        {
            **_base_fields(query, mode),
            "status": "error",
            "timeout_ms": timeout_ms,
            "error": SnapshotError(
                exit_code=error.exit_code, message=error.stderr or str(error)
            ),
        }
    )


def capture_query_snapshot(
    engine: EngineClient,
    cache_root: Path,
    queries: Sequence[EvalQuery],
    mode: RetrievalMode,
    *,
    limit: int = 10,
    lexical_k: int = 96,
    semantic_k: int = 96,
    rrf_k: int = 60,
    timeout_ms: int = 2000,
    semantic_model_id: str | None = None,
) -> list[QuerySnapshotRecord]:
    """Run every query in query_id order; engine errors become error rows."""
    ordered = sorted(queries, key=lambda q: q.query_id)
    records: list[QuerySnapshotRecord] = []
    total = len(ordered)
    for index, query in enumerate(ordered, start=1):
        if index == 1 or index % PROGRESS_EVERY == 0:
            logger.info("Snapshot %s: query %d/%d", mode, index, total)
        request = QueryRequest(
            cache_root=str(cache_root),
            query_text=query.query_text,
            mode=mode,
            limit=limit,
            lexical_k=lexical_k,
            semantic_k=semantic_k,
            rrf_k=rrf_k,
            timeout_ms=timeout_ms,
            part=query.part_filter,
            chunk_type=query.chunk_type_filter,
            semantic_model_id=semantic_model_id,
        )
        try:
            response = engine.query(request)
        except EngineError as e:
            logger.warning("Snapshot %s: query %s failed: %s", mode, query.query_id, e)
            records.append(error_record(query, mode, e, timeout_ms))
            continue
        records.append(ok_record(query, mode, response, timeout_ms))
    return records


def write_snapshot(path: Path, records: Sequence[QuerySnapshotRecord]) -> int:
    """Write snapshot rows as JSONL."""
    return write_jsonl(path, records)


def load_snapshot(path: Path) -> list[QuerySnapshotRecord]:
    """Read snapshot rows.

    Raises:
        CompareError: The file is missing or a row is malformed.

    """
    if not path.exists():
        msg = f"missing search snapshot: {path}"
        raise CompareError(msg)
    try:
        return [QuerySnapshotRecord.model_validate(row) for row in read_jsonl(path)]
    except ValidationError as e:
        msg = f"malformed search snapshot {path}: {e.error_count()} error(s)"
        raise CompareError(msg) from e
    except ValueError as e:
        msg = f"malformed search snapshot {path}: {e}"
        raise CompareError(msg) from e

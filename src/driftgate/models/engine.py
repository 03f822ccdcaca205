# Copyright (c) Syntropy Systems
"""Models for engine query requests and JSON responses."""

from __future__ import annotations

from pydantic import Field

from .base import ExtraAllowModel, GateBaseModel
from .benchmark import RetrievalMode  # noqa: TC001


class QueryRequest(GateBaseModel):
    """Arguments for one engine ``query`` invocation."""

    cache_root: str
    query_text: str
    mode: RetrievalMode
    limit: int = 10
    lexical_k: int = 96
    semantic_k: int = 96
    rrf_k: int = 60
    timeout_ms: int = 2000
    part: str | None = None
    chunk_type: str | None = None
    semantic_model_id: str | None = None


class QueryResult(ExtraAllowModel):
    """One ranked hit from the engine."""

    chunk_id: str | None = None
    reference: str | None = None
    citation: str | None = None


class RetrievalInfo(ExtraAllowModel):
    """Retrieval diagnostics reported by the engine."""

    query_duration_ms: float | None = None
    lexical_candidate_count: int = 0
    semantic_candidate_count: int = 0
    fused_candidate_count: int = 0
    fallback_used: bool = False
    timeout_ms: int | None = None


class QueryResponse(ExtraAllowModel):
    """Parsed stdout of ``query --json``."""

    returned: int = 0
    results: list[QueryResult] = Field(default_factory=list)
    retrieval: RetrievalInfo = Field(default_factory=RetrievalInfo)

# Copyright (c) Syntropy Systems
"""Append-only decision log (decisions_log.jsonl)."""
from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

from pydantic import Field

from driftgate.artifacts import read_jsonl, utcnow
from driftgate.models.base import GateBaseModel

if TYPE_CHECKING:
    from pathlib import Path

_DECISION_ID = re.compile(r"^D-(\d+)$")


class DecisionEntry(GateBaseModel):
    """One decision record."""

    timestamp: str
    decision_id: str
    context: str
    options_considered: list[str] = Field(default_factory=list)
    selected_option: str
    rationale: str
    impact: str


def next_decision_id(path: Path) -> str:
    """Next ``D-NNNN`` id, one past the last entry in the log."""
    last = 0
    if path.exists():
        for row in read_jsonl(path):
            value = row.get("decision_id")
            if isinstance(value, str):
                match = _DECISION_ID.match(value)
                if match is not None:
                    last = max(last, int(match.group(1)))
    return f"D-{last + 1:04d}"


def append_decision(
    path: Path,
    *,
    context: str,
    options_considered: list[str],
    selected_option: str,
    rationale: str,
    impact: str,
) -> DecisionEntry:
    """Append a decision with the next id and return it."""
    entry = DecisionEntry(
        timestamp=utcnow(),
        decision_id=next_decision_id(path),
        context=context,
        options_considered=options_considered,
        selected_option=selected_option,
        rationale=rationale,
        impact=impact,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a") as f:
        _ = f.write(json.dumps(entry.model_dump(mode="json"), sort_keys=True) + "\n")
    return entry

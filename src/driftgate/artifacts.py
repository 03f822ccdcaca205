# Copyright (c) Syntropy Systems
"""Helpers for reading and writing JSON artifacts."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from pydantic import BaseModel

    from driftgate.models.base import JSONObject, JSONValue


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def compact_timestamp() -> str:
    """UTC timestamp usable inside file names and run ids."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def write_json(path: Path, data: JSONValue) -> None:
    """Write JSON with sorted keys so repeated captures diff cleanly."""
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")


def write_model(path: Path, model: BaseModel) -> None:
    """Serialize a pydantic model as stable, key-sorted JSON."""
    write_json(path, cast("JSONValue", model.model_dump(mode="json")))


def read_json(path: Path) -> JSONValue:
    """Read a JSON document."""
    return cast("JSONValue", json.loads(path.read_text()))


def read_json_object(path: Path) -> JSONObject:
    """Read a JSON document that must be an object."""
    data = read_json(path)
    if not isinstance(data, dict):
        msg = f"{path} does not contain a JSON object"
        raise ValueError(msg)
    return data


def write_jsonl(path: Path, rows: Iterable[BaseModel]) -> int:
    """Write models as JSON lines. Returns the number of rows written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w") as f:
        for row in rows:
            _ = f.write(json.dumps(row.model_dump(mode="json"), sort_keys=True) + "\n")
            count += 1
    return count


def read_jsonl(path: Path) -> list[JSONObject]:
    """Read JSON lines, skipping blank lines."""
    rows: list[JSONObject] = []
    with path.open() as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            row = cast("JSONValue", json.loads(stripped))
            if isinstance(row, dict):
                rows.append(row)
    return rows


def dig(data: JSONValue, dotted: str) -> JSONValue:
    """Look up ``a.b.c`` in nested JSON objects, None when any hop is missing."""
    current: JSONValue = data
    for key in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def as_float(value: JSONValue) -> float | None:
    """Numeric JSON value as float; None for anything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)

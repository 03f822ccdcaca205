# Copyright (c) Syntropy Systems
"""Pure numeric helpers shared by the benchmark aggregator and drift engine."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from driftgate.models.benchmark import NumericStats

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


def percentile(values: Sequence[float], p: float) -> float | None:
    """Linear-interpolated percentile with ``p`` in [0, 1].

    The input is sorted as a copy. Returns None for an empty input.
    """
    if not values:
        return None
    if not 0.0 <= p <= 1.0:
        msg = f"percentile p must be within [0, 1], got {p}"
        raise ValueError(msg)

    ordered = sorted(values)
    rank = p * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    weight = rank - lower
    return float(ordered[lower] + (ordered[upper] - ordered[lower]) * weight)


def mean(values: Sequence[float]) -> float | None:
    """Arithmetic mean, None for an empty input."""
    if not values:
        return None
    return float(sum(values)) / len(values)


def numeric_stats(values: Sequence[float]) -> NumericStats:
    """Summarize a sample as min/max/mean/p50/p95/p99."""
    if not values:
        return NumericStats()
    return NumericStats(
        min=float(min(values)),
        max=float(max(values)),
        mean=mean(values),
        p50=percentile(values, 0.50),
        p95=percentile(values, 0.95),
        p99=percentile(values, 0.99),
    )


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Set Jaccard similarity; two empty sets are identical."""
    left = set(a)
    right = set(b)
    union = left | right
    if not union:
        return 1.0
    return len(left & right) / len(union)


def rel_increase(before: float | None, after: float | None) -> float | None:
    """Relative increase of ``after`` over ``before``.

    A zero baseline yields 0.0 when nothing changed and None otherwise.
    """
    if before is None or after is None:
        return None
    if before == 0:
        return 0.0 if after == 0 else None
    return (after - before) / before


def num_delta(before: float | None, after: float | None) -> float | None:
    """Difference ``after - before``; None when either side is missing."""
    if before is None or after is None:
        return None
    return after - before


def rate(count: int, total: int) -> float | None:
    """Ratio of ``count`` to ``total``, None when there is nothing to count."""
    if total <= 0:
        return None
    return count / total


def median_index(n: int) -> int:
    """Zero-based index of the median element in a sorted list of ``n``.

    For even ``n`` the lower middle element is chosen.
    """
    if n <= 0:
        msg = "median_index requires at least one element"
        raise ValueError(msg)
    return (n + 1) // 2 - 1

# Copyright (c) Syntropy Systems
"""Drift rules: a table of predicates evaluated over drift facts."""
from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from driftgate.models.drift import RuleResult, RuleResults

if TYPE_CHECKING:
    from driftgate.models.drift import (
        DriftFacts,
        GateStatus,
        RuleLimits,
        Severity,
        SnapshotDrift,
        StageBDrift,
    )


@dataclass(frozen=True)
class Finding:
    """A rule violation before it is assigned an id and severity."""

    subject: str
    message: str
    observed: float | str | None
    threshold: float | str | None


Evaluator = Callable[["DriftFacts", "RuleLimits"], Iterator[Finding]]


@dataclass(frozen=True)
class Rule:
    code: str
    evaluate: Evaluator


def slug(text: str) -> str:
    """``semantic_quality.hybrid_ndcg_at_10`` -> ``HYBRID-NDCG-AT-10``."""
    last = text.rsplit(".", 1)[-1]
    return re.sub(r"[^A-Za-z0-9]+", "-", last).strip("-").upper()


def _quality_drop(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    for tag, deltas in facts.quality_metrics.items():
        for entry in deltas:
            limit = limits.quality_metric_drop.get(entry.metric)
            if limit is None or entry.before is None or entry.after is None:
                continue
            drop = entry.before - entry.after
            if drop > limit:
                yield Finding(
                    f"{tag.upper()}-{slug(entry.metric)}",
                    f"{tag} {entry.metric} dropped {entry.before} -> {entry.after}",
                    drop,
                    limit,
                )


def _quality_increase(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    for tag, deltas in facts.quality_metrics.items():
        for entry in deltas:
            limit = limits.quality_metric_increase.get(entry.metric)
            if limit is None or entry.delta is None:
                continue
            if entry.delta > limit:
                yield Finding(
                    f"{tag.upper()}-{slug(entry.metric)}",
                    f"{tag} {entry.metric} rose {entry.before} -> {entry.after}",
                    entry.delta,
                    limit,
                )


def _determinism(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    for tag, deltas in facts.quality_metrics.items():
        for entry in deltas:
            floor = limits.determinism_floor.get(entry.metric)
            if floor is None or entry.after is None:
                continue
            if entry.after < floor:
                yield Finding(
                    f"{tag.upper()}-{slug(entry.metric)}",
                    f"{tag} {entry.metric} below floor",
                    entry.after,
                    floor,
                )


def _snapshots(facts: DriftFacts) -> Iterator[tuple[str, SnapshotDrift]]:
    for mode in sorted(facts.search_snapshots):
        yield mode, facts.search_snapshots[mode]


def _top1_floor(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    floor = limits.top1_expected_hit_rate_floor
    if floor is None:
        return
    for mode, drift in _snapshots(facts):
        before = drift.before.top1_expected_hit_rate
        after = drift.after.top1_expected_hit_rate
        if before is None or after is None:
            continue
        # Fires only on a crossing of the floor
        if before >= floor and after < floor:
            yield Finding(
                mode.upper(),
                f"{mode} top1 expected hit rate fell below floor ({before} -> {after})",
                after,
                floor,
            )


def _top1_drop(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    limit = limits.top1_expected_hit_rate_drop
    if limit is None:
        return
    for mode, drift in _snapshots(facts):
        before = drift.before.top1_expected_hit_rate
        after = drift.after.top1_expected_hit_rate
        if before is None or after is None:
            continue
        if before - after > limit:
            yield Finding(
                mode.upper(),
                f"{mode} top1 expected hit rate dropped {before} -> {after}",
                before - after,
                limit,
            )


def _jaccard(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    minimum = limits.jaccard_at_10_min
    if minimum is None:
        return
    for mode, drift in _snapshots(facts):
        observed = drift.overlap.avg_jaccard_at_10
        if observed is not None and observed < minimum:
            yield Finding(
                mode.upper(), f"{mode} avg Jaccard@10 below minimum", observed, minimum
            )


def _top1_stability(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    minimum = limits.top1_unchanged_rate_min
    if minimum is None:
        return
    for mode, drift in _snapshots(facts):
        observed = drift.overlap.top1_unchanged_rate
        if observed is not None and observed < minimum:
            yield Finding(
                mode.upper(), f"{mode} top1 unchanged rate below minimum", observed, minimum
            )


def _rate_increase(
    attribute: str, label: str, limit_name: str
) -> Evaluator:
    def evaluate(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
        limit = getattr(limits, limit_name)
        if limit is None:
            return
        for mode, drift in _snapshots(facts):
            before: float | None = getattr(drift.before, attribute)
            after: float | None = getattr(drift.after, attribute)
            if before is None or after is None:
                continue
            if after - before > limit:
                yield Finding(
                    mode.upper(),
                    f"{mode} {label} increased {before} -> {after}",
                    after - before,
                    limit,
                )

    return evaluate


def _bench_p95(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    if limits.bench_p95_increase_ms is None and limits.bench_p95_increase_pct is None:
        return
    for mode in sorted(facts.benchmark_quick.mode_deltas):
        p95 = facts.benchmark_quick.mode_deltas[mode].latency_ms.get("p95")
        if p95 is None or p95.before is None or p95.delta is None:
            continue
        threshold = max(
            limits.bench_p95_increase_ms or 0.0,
            (limits.bench_p95_increase_pct or 0.0) * p95.before,
        )
        if p95.delta > threshold:
            yield Finding(
                mode.upper(),
                f"{mode} p95 latency increased {p95.before} -> {p95.after} ms",
                p95.delta,
                threshold,
            )


def _bench_mean(facts: DriftFacts, limits: RuleLimits) -> Iterator[Finding]:
    limit = limits.bench_mean_increase_pct
    if limit is None:
        return
    for mode in sorted(facts.benchmark_quick.mode_deltas):
        stat = facts.benchmark_quick.mode_deltas[mode].latency_ms.get("mean")
        if stat is None or stat.rel_increase is None:
            continue
        if stat.rel_increase > limit:
            yield Finding(
                mode.upper(),
                f"{mode} mean latency increased {stat.before} -> {stat.after} ms",
                stat.rel_increase,
                limit,
            )


RULES: tuple[Rule, ...] = (
    Rule("QUALITY-DROP", _quality_drop),
    Rule("QUALITY-INCREASE", _quality_increase),
    Rule("DETERMINISM", _determinism),
    Rule("TOP1-HIT-FLOOR", _top1_floor),
    Rule("TOP1-HIT-DROP", _top1_drop),
    Rule("JACCARD10", _jaccard),
    Rule("TOP1-STABILITY", _top1_stability),
    Rule(
        "NO-RESULT",
        _rate_increase("no_result_rate", "no-result rate", "no_result_rate_increase"),
    ),
    Rule("TIMEOUT", _rate_increase("timeout_rate", "timeout rate", "timeout_rate_increase")),
    Rule("FALLBACK", _rate_increase("fallback_rate", "fallback rate", "fallback_rate_increase")),
    Rule("SNAPSHOT-ERRORS", _rate_increase("error_rate", "error rate", "error_rate_increase")),
    Rule("BENCH-P95", _bench_p95),
    Rule("BENCH-MEAN", _bench_mean),
)


def _new_failed_checks(tag: str, drift: StageBDrift | None) -> Iterator[RuleResult]:
    if drift is None or not drift.new_failed_checks:
        return
    yield RuleResult(
        id=f"H-NEW-FAILED-CHECKS-{tag}",
        severity="hard",
        message=f"checks newly failing in {tag.lower()} stage B: "
        + ", ".join(drift.new_failed_checks),
        observed=len(drift.new_failed_checks),
        threshold=0,
    )


def always_hard(facts: DriftFacts) -> list[RuleResult]:
    """Rules that are hard failures regardless of policy."""
    results = list(_new_failed_checks("QUICK", facts.quick_stage_b))
    results += _new_failed_checks("FULL", facts.full_stage_b)
    for side, valid in (
        ("BEFORE", facts.benchmark_quick.before_valid),
        ("AFTER", facts.benchmark_quick.after_valid),
    ):
        if not valid:
            results.append(
                RuleResult(
                    id=f"H-BENCH-INVALID-{side}",
                    severity="hard",
                    message=f"{side.lower()} benchmark is invalid (failure rate above limit)",
                    observed="invalid",
                    threshold="valid",
                )
            )
    return results


def evaluate_rules(
    facts: DriftFacts, hard: RuleLimits, soft: RuleLimits
) -> RuleResults:
    """Evaluate every rule once per severity tier that configures it."""
    results = RuleResults(hard_failures=always_hard(facts))
    tiers: tuple[tuple[Severity, str, RuleLimits], ...] = (
        ("hard", "H", hard),
        ("soft", "S", soft),
    )
    for severity, prefix, limits in tiers:
        bucket = results.hard_failures if severity == "hard" else results.soft_failures
        for rule in RULES:
            for finding in rule.evaluate(facts, limits):
                bucket.append(
                    RuleResult(
                        id=f"{prefix}-{rule.code}-{finding.subject}",
                        severity=severity,
                        message=finding.message,
                        observed=finding.observed,
                        threshold=finding.threshold,
                    )
                )
    return results


def gate_status(results: RuleResults) -> GateStatus:
    """FAIL on any hard failure, else WARN on any soft failure, else PASS."""
    if results.hard_failures:
        return "FAIL"
    if results.soft_failures:
        return "WARN"
    return "PASS"

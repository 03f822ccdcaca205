# Copyright (c) Syntropy Systems
"""Markdown rendering of drift reports."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from driftgate.models.drift import DriftReport, RuleResult, StageBDrift, StageBSide


def pct(value: float | None) -> str:
    """Percentage with two decimals, ``n/a`` when missing."""
    if value is None:
        return "n/a"
    return f"{round(value * 100, 2)}%"


def num(value: float | str | None) -> str:
    """Number rounded to six decimals, ``n/a`` when missing."""
    if value is None:
        return "n/a"
    if isinstance(value, str):
        return value
    return str(round(value, 6))


def _checks(side: StageBSide) -> str:
    passed = side.summary.get("passed", "n/a")
    total = side.summary.get("total_checks", "n/a")
    return f"status=`{side.status}` checks=`{passed}/{total}`"


def _stage_lines(title: str, drift: StageBDrift) -> list[str]:
    return [
        f"## {title}",
        f"- Before: {_checks(drift.before)}",
        f"- After: {_checks(drift.after)}",
        f"- New failed checks: `{', '.join(drift.new_failed_checks)}`",
        "",
    ]


def _rule_lines(title: str, results: list[RuleResult]) -> list[str]:
    lines = [f"## {title}"]
    if not results:
        lines.append("- none")
    for result in results:
        lines.append(
            f"- `{result.id}`: {result.message} "
            f"(observed={num(result.observed)}, threshold={num(result.threshold)})"
        )
    lines.append("")
    return lines


def render_markdown(report: DriftReport) -> str:
    """Human-readable summary of a drift report."""
    lines = [
        "# Regression Drift Report",
        "",
        f"- Run ID: `{report.run_id}`",
        f"- Mode: `{report.mode}`",
        f"- Gate status: `{report.gate_status}`",
        f"- Threshold schema version: `{report.threshold_schema_version}`",
        f"- Threshold hash: `{report.threshold_file_hash}`",
        "",
    ]
    lines += _stage_lines("Quick Stage B", report.quick_stage_b)

    lines.append("## Snapshot Drift")
    for mode, drift in sorted(report.search_snapshots.items()):
        label = mode.capitalize()
        lines += [
            f"- {label} top1 expected hit rate: "
            f"`{pct(drift.before.top1_expected_hit_rate)} -> "
            f"{pct(drift.after.top1_expected_hit_rate)}`",
            f"- {label} avg Jaccard@10: `{num(drift.overlap.avg_jaccard_at_10)}`",
            f"- {label} no-result rate: "
            f"`{pct(drift.before.no_result_rate)} -> {pct(drift.after.no_result_rate)}`",
        ]
    lines.append("")

    lines.append("## Benchmark Drift")
    for mode, drift in report.benchmark_quick.mode_deltas.items():
        lines.append(
            f"- {mode.capitalize()} p95 delta (ms): `{num(drift.latency_ms_delta.get('p95'))}`"
        )
    lines.append("")

    if report.full_stage_b is not None:
        lines += _stage_lines("Full Stage B", report.full_stage_b)

    lines += _rule_lines("Hard Fail Rules Triggered", report.rule_results.hard_failures)
    lines += _rule_lines("Soft Fail Rules Triggered", report.rule_results.soft_failures)
    return "\n".join(lines)

"""
Cross-tier analysis embedded in the report.

Two derived views help a reader interpret the verdicts:

- **Degradation**: how much each latency aggregate grew compared to the
  lightest tier of the same scenario.
- **Recommendations**: short, rule-based hints (high error rate, slow
  loads), or a single informational note when nothing stands out.

Neither view influences the overall status; only verdicts do.  Both are
computed once, when the report is built.

:func:`degraded_variant` derives the "third parties blocked" twin of a
scenario so both can be run and compared side by side.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import replace

from loadvitals.models import (
    DegradationEntry,
    FailureCause,
    MetricName,
    Recommendation,
    Scenario,
    Step,
    StepType,
    TierResult,
)

HIGH_ERROR_RATE = 0.05
SLOW_LOAD_MS = 3000.0


def degradation(results: Iterable[TierResult]) -> list[DegradationEntry]:
    """
    Percentage change of latency aggregates relative to the lightest tier.

    Tiers are grouped by scenario.  The tier with the lowest concurrency
    is the baseline.  Metrics missing on either side, or with a zero
    baseline, are left out.
    """
    by_scenario: dict[str, list[TierResult]] = defaultdict(list)
    for result in results:
        by_scenario[result.scenario_id].append(result)

    entries: list[DegradationEntry] = []
    for scenario_id, tiers in by_scenario.items():
        if len(tiers) < 2:
            continue
        ordered = sorted(tiers, key=lambda result: result.tier.concurrency)
        baseline = ordered[0]
        for result in ordered[1:]:
            changes: dict[MetricName, float] = {}
            for metric in MetricName.sampled():
                if not metric.is_latency:
                    continue
                base_value = baseline.metrics.get(metric)
                value = result.metrics.get(metric)
                if base_value is None or value is None or base_value == 0:
                    continue
                changes[metric] = round((value - base_value) / base_value * 100.0, 1)
            entries.append(
                DegradationEntry(
                    scenario=scenario_id,
                    tier=result.tier.name,
                    baseline_tier=baseline.tier.name,
                    changes=changes,
                )
            )
    return entries


def _mean_total_load(result: TierResult) -> float | None:
    values = [
        value
        for value in (sample.get(MetricName.TOTAL_LOAD) for sample in result.samples)
        if value is not None
    ]
    if not values:
        return None
    return sum(values) / len(values)


def recommendations(results: Sequence[TierResult]) -> list[Recommendation]:
    """Rule-based hints derived from error rates, timeouts and load times."""
    items: list[Recommendation] = []

    noisy = [result for result in results if result.error_rate > HIGH_ERROR_RATE]
    if noisy:
        rates = ", ".join(
            f"{result.scenario_id}/{result.tier.name} {result.error_rate:.0%}" for result in noisy
        )
        items.append(
            Recommendation(
                kind="error_rate",
                severity="high",
                message=(
                    f"High error rates under load ({rates}). Check server "
                    "capacity and resource limits."
                ),
            )
        )

    timeouts = sum(
        1
        for result in results
        for failure in result.failures
        if failure.cause is FailureCause.TIMEOUT
    )
    if timeouts:
        items.append(
            Recommendation(
                kind="timeouts",
                severity="high",
                message=f"{timeouts} session(s) hit their navigation or run deadline.",
            )
        )

    slow = []
    for result in results:
        mean_load = _mean_total_load(result)
        if mean_load is not None and mean_load > SLOW_LOAD_MS:
            slow.append(f"{result.scenario_id}/{result.tier.name} {mean_load:.0f}ms")
    if slow:
        items.append(
            Recommendation(
                kind="response_time",
                severity="medium",
                message=(
                    f"Slow average page loads ({', '.join(slow)}). Consider caching "
                    "and trimming render-blocking resources."
                ),
            )
        )

    if not items:
        items.append(
            Recommendation(
                kind="performance",
                severity="info",
                message="Performance under load looks acceptable.",
            )
        )
    return items


DEGRADED_SUFFIX = ":degraded"


def degraded_variant(scenario: Scenario, patterns: Sequence[str]) -> Scenario:
    """
    Copy of *scenario* that blocks *patterns* before its first step.

    The copy is labelled ``<id>:degraded`` so its tiers, verdicts and
    degradation entries never mix with the baseline's.
    """
    cleaned = tuple(pattern.strip() for pattern in patterns if pattern.strip())
    if not cleaned:
        return scenario
    block = Step(type=StepType.BLOCK, patterns=cleaned)
    return replace(
        scenario,
        id=f"{scenario.id}{DEGRADED_SUFFIX}",
        steps=(block, *scenario.steps),
    )

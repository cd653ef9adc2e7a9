"""Reduce per-session metric values into per-tier aggregates."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence

from loadvitals.models import (
    Aggregation,
    ConcurrencyTier,
    ExecutionFailure,
    MetricName,
    MetricSample,
    TierResult,
)


def percentile(values: Sequence[float], rank: float) -> float | None:
    """
    Nearest-rank percentile of *values*.

    Sorts ascending and picks index ``ceil(rank / 100 * n) - 1``, so the
    result is always one of the measured values rather than an
    interpolation between two of them.

    Returns:
        The percentile value, or ``None`` for an empty sequence.
    """
    if not values:
        return None
    ordered = sorted(values)
    index = math.ceil((rank / 100.0) * len(ordered)) - 1
    index = min(max(index, 0), len(ordered) - 1)
    return ordered[index]


def aggregate(values: Iterable[float | None], method: Aggregation) -> float | None:
    """Aggregate *values*, ignoring ``None`` entries entirely."""
    present = [float(value) for value in values if value is not None]
    if not present:
        return None

    rank = method.percentile
    if rank is not None:
        return percentile(present, rank)
    if method is Aggregation.MEAN:
        return sum(present) / len(present)
    if method is Aggregation.MIN:
        return min(present)
    return max(present)


def aggregate_samples(
    samples: Sequence[MetricSample],
    aggregations: Mapping[MetricName, Aggregation] | None = None,
) -> tuple[dict[MetricName, float | None], dict[MetricName, Aggregation]]:
    """
    Aggregate every sampled metric across *samples*.

    Args:
        samples: Successful runs of one tier.
        aggregations: Per-metric overrides; metrics not listed use their
            default (p95 for latency metrics, mean otherwise).

    Returns:
        ``(values, methods)`` keyed by metric.  A metric that no sample
        observed maps to ``None``.
    """
    overrides = aggregations or {}
    values: dict[MetricName, float | None] = {}
    methods: dict[MetricName, Aggregation] = {}
    for metric in MetricName.sampled():
        method = overrides.get(metric, metric.default_aggregation)
        methods[metric] = method
        values[metric] = aggregate((sample.get(metric) for sample in samples), method)
    return values, methods


def build_tier_result(
    tier: ConcurrencyTier,
    scenario_id: str,
    samples: Iterable[MetricSample],
    failures: Iterable[ExecutionFailure],
    aggregations: Mapping[MetricName, Aggregation] | None = None,
    duration_ms: float = 0.0,
) -> TierResult:
    """Assemble a :class:`TierResult`, ordering outcomes by session index."""
    ordered_samples = tuple(sorted(samples, key=lambda sample: sample.session_index))
    ordered_failures = tuple(sorted(failures, key=lambda failure: failure.session_index))

    values, methods = aggregate_samples(ordered_samples, aggregations)
    total = len(ordered_samples) + len(ordered_failures)
    values[MetricName.ERROR_RATE] = len(ordered_failures) / total if total else 0.0

    return TierResult(
        tier=tier,
        scenario_id=scenario_id,
        samples=ordered_samples,
        failures=ordered_failures,
        metrics=values,
        aggregations=methods,
        duration_ms=duration_ms,
    )

"""
Threshold evaluation.

``evaluate`` is a pure function.  Given the aggregated metrics of one tier
and a policy, it returns one :class:`~loadvitals.models.Verdict` per rule.
There is no state between calls, so evaluating the same inputs twice gives
identical verdicts.

Comparison semantics:

- ``<=`` passes when ``value <= limit + 0.01`` and ``>=`` when
  ``value >= limit - 0.01``.
- ``=`` passes when ``|value - limit| <= 0.01``.
- ``<`` and ``>`` are exact.
- A metric with no aggregate (every sample was ``None``) fails with the
  explanation ``"no data"``.

Failed sessions always count: a policy without an ``error-rate`` rule is
evaluated per tier with an implicit ``error-rate <= max_error_rate`` rule.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace

from loadvitals.errors import ConfigurationError
from loadvitals.models import (
    Aggregation,
    Comparator,
    MetricName,
    ThresholdPolicy,
    ThresholdRule,
    TierResult,
    Verdict,
)

TOLERANCE = 0.01

NO_DATA = "no data"

# Relation printed in the explanation when a rule fails.
_NEGATED = {
    Comparator.LE: ">",
    Comparator.GE: "<",
    Comparator.LT: ">=",
    Comparator.GT: "<=",
    Comparator.EQ: "!=",
}


def compare(value: float, comparator: Comparator, limit: float) -> bool:
    """Apply *comparator* to ``value`` and ``limit``."""
    if comparator is Comparator.LE:
        return value <= limit + TOLERANCE
    if comparator is Comparator.GE:
        return value >= limit - TOLERANCE
    if comparator is Comparator.LT:
        return value < limit
    if comparator is Comparator.GT:
        return value > limit
    return abs(value - limit) <= TOLERANCE


def _beyond_warn(value: float, rule: ThresholdRule) -> bool:
    if rule.warn is None:
        return False
    if rule.comparator in (Comparator.LE, Comparator.LT):
        return value > rule.warn
    if rule.comparator in (Comparator.GE, Comparator.GT):
        return value < rule.warn
    return False


def _fmt(value: float) -> str:
    return f"{value:g}"


def check_rule(
    rule: ThresholdRule,
    measured: float | None,
    *,
    tier: str = "",
    scenario: str = "",
    aggregation: Aggregation | None = None,
) -> Verdict:
    """Judge a single measured aggregate against a single rule."""
    label = rule.metric.value if aggregation is None else f"{aggregation.value} {rule.metric.value}"

    if measured is None:
        return Verdict(
            metric=rule.metric,
            tier=tier,
            scenario=scenario,
            measured=None,
            rule=rule,
            aggregation=aggregation,
            passed=False,
            explanation=NO_DATA,
        )

    passed = compare(measured, rule.comparator, rule.limit)
    if passed:
        explanation = (
            f"{label}: measured={_fmt(measured)} {rule.comparator.value} "
            f"limit={_fmt(rule.limit)}"
        )
    else:
        explanation = (
            f"{label}: measured={_fmt(measured)} {_NEGATED[rule.comparator]} "
            f"limit={_fmt(rule.limit)}"
        )

    warned = passed and _beyond_warn(measured, rule)
    if warned:
        explanation += f" (beyond warn level {_fmt(rule.warn)})"

    return Verdict(
        metric=rule.metric,
        tier=tier,
        scenario=scenario,
        measured=measured,
        rule=rule,
        aggregation=aggregation,
        passed=passed,
        warned=warned,
        explanation=explanation,
    )


def evaluate(
    aggregated: Mapping[MetricName, float | None],
    policy: ThresholdPolicy,
    *,
    tier: str = "",
    scenario: str = "",
    aggregations: Mapping[MetricName, Aggregation] | None = None,
) -> list[Verdict]:
    """
    Produce one verdict per rule of *policy*, in rule order.

    Args:
        aggregated: Aggregated value per metric for a single tier.
        policy: Rules to check.
        tier: Tier name recorded on each verdict.
        scenario: Scenario id recorded on each verdict.
        aggregations: Method used for each aggregate, for the explanation.
    """
    methods = aggregations or {}
    return [
        check_rule(
            rule,
            aggregated.get(rule.metric),
            tier=tier,
            scenario=scenario,
            aggregation=methods.get(rule.metric),
        )
        for rule in policy.rules
    ]


def tier_rules(policy: ThresholdPolicy) -> tuple[ThresholdRule, ...]:
    """Rules checked for every tier: the policy's own plus the implicit error-rate rule."""
    if any(rule.metric is MetricName.ERROR_RATE for rule in policy.rules):
        return tuple(policy.rules)
    implicit = ThresholdRule(MetricName.ERROR_RATE, Comparator.LE, policy.max_error_rate)
    return (*policy.rules, implicit)


def evaluate_tier(result: TierResult, policy: ThresholdPolicy) -> list[Verdict]:
    """Verdicts for one tier, failed sessions included through the error rate."""
    return evaluate(
        result.metrics,
        replace(policy, rules=tier_rules(policy)),
        tier=result.tier.name,
        scenario=result.scenario_id,
        aggregations=result.aggregations,
    )


def evaluate_run(results: Iterable[TierResult], policy: ThresholdPolicy) -> list[Verdict]:
    """Evaluate every tier of a run, keeping tier order then rule order."""
    verdicts: list[Verdict] = []
    for result in results:
        verdicts.extend(evaluate_tier(result, policy))
    return verdicts


def validate_policy(policy: ThresholdPolicy) -> None:
    """
    Reject policies that could never be evaluated.

    Raises:
        ConfigurationError: If the policy has no rules, a rule names a
            metric outside :class:`MetricName`, or an aggregation override
            targets the tier-level error rate.
    """
    if not policy.rules:
        raise ConfigurationError("Threshold policy must define at least one rule")
    for index, rule in enumerate(policy.rules, start=1):
        if not isinstance(rule.metric, MetricName):
            raise ConfigurationError(
                f"Policy rule #{index}: metric '{rule.metric}' is not produced by the collector"
            )
        if not isinstance(rule.comparator, Comparator):
            raise ConfigurationError(
                f"Policy rule #{index}: unknown comparator '{rule.comparator}'"
            )
    if MetricName.ERROR_RATE in policy.aggregations:
        raise ConfigurationError("error-rate is computed per tier and cannot be re-aggregated")
    if not 0.0 <= policy.max_error_rate <= 1.0:
        raise ConfigurationError(
            f"max_error_rate must be between 0 and 1, got {policy.max_error_rate:g}"
        )

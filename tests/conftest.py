"""
Shared pytest fixtures for the loadvitals test suite.

Fixtures here build domain objects (scenarios, samples, tier results,
policies) and in-memory session pools, so individual tests only state
what is special about their case.

Key Concepts Demonstrated:
- Test data factories
- Fake drivers behind the real session pool
- Faker for throwaway identifiers
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest
from faker import Faker

from loadvitals.aggregation import build_tier_result
from loadvitals.config import TestingConfig
from loadvitals.driver import SessionPool
from loadvitals.models import (
    Comparator,
    ConcurrencyTier,
    MetricName,
    MetricSample,
    Scenario,
    Step,
    StepType,
    ThresholdPolicy,
    ThresholdRule,
    TierResult,
    utc_now,
)
from tests.fakes import FakeDriver

# Initialize Faker for generating test data
fake = Faker()


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------

@pytest.fixture
def settings() -> type[TestingConfig]:
    return TestingConfig


# -----------------------------------------------------------------------------
# Scenario Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def scenario_factory() -> Callable[..., Scenario]:
    """
    Factory fixture for creating scenarios.

    Example:
        def test_something(scenario_factory):
            scenario = scenario_factory(steps=(Step(StepType.NAVIGATE, "/blog/"),))
    """

    def _create_scenario(
        scenario_id: str | None = None,
        base_url: str = "http://localhost:1313",
        steps: Sequence[Step] | None = None,
        **kwargs: Any,
    ) -> Scenario:
        return Scenario(
            id=scenario_id or fake.slug(),
            base_url=base_url,
            steps=tuple(steps) if steps is not None else (Step(StepType.NAVIGATE, "/"),),
            **kwargs,
        )

    return _create_scenario


@pytest.fixture
def homepage(scenario_factory) -> Scenario:
    return scenario_factory(
        "homepage",
        steps=(
            Step(StepType.NAVIGATE, "/"),
            Step(StepType.WAIT, duration_ms=10),
            Step(StepType.SCROLL),
        ),
    )


# -----------------------------------------------------------------------------
# Sample and Tier Result Factories
# -----------------------------------------------------------------------------

@pytest.fixture
def sample_factory() -> Callable[..., MetricSample]:
    """Create samples with every metric unset except the ones given."""

    def _create_sample(
        session_index: int = 0,
        scenario_id: str = "homepage",
        tier_id: str = "light",
        **metrics: float | None,
    ) -> MetricSample:
        values: dict[MetricName, float | None] = {metric: None for metric in MetricName.sampled()}
        for key, value in metrics.items():
            values[MetricName[key.upper()]] = value
        return MetricSample(
            scenario_id=scenario_id,
            tier_id=tier_id,
            session_index=session_index,
            timestamp=utc_now(),
            metrics=values,
        )

    return _create_sample


@pytest.fixture
def lcp_tier_result(sample_factory) -> Callable[..., TierResult]:
    """
    Build a tier result from a list of LCP values, one sample per value.

    Example:
        result = lcp_tier_result([2000.0] * 5)
    """

    def _create(
        lcp_values: Sequence[float | None],
        tier: ConcurrencyTier | None = None,
        scenario_id: str = "homepage",
        failures: Sequence[Any] = (),
    ) -> TierResult:
        tier = tier or ConcurrencyTier("light", len(lcp_values) + len(failures))
        samples = [
            sample_factory(
                index,
                scenario_id=scenario_id,
                tier_id=tier.name,
                largest_contentful_paint=value,
            )
            for index, value in enumerate(lcp_values)
        ]
        return build_tier_result(tier, scenario_id, samples, failures)

    return _create


# -----------------------------------------------------------------------------
# Policy Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def lcp_rule() -> ThresholdRule:
    return ThresholdRule(MetricName.LARGEST_CONTENTFUL_PAINT, Comparator.LE, 2500.0)


@pytest.fixture
def lcp_policy(lcp_rule) -> ThresholdPolicy:
    return ThresholdPolicy(rules=(lcp_rule,))


@pytest.fixture
def lcp_and_error_rate_policy(lcp_rule) -> ThresholdPolicy:
    return ThresholdPolicy(
        rules=(lcp_rule, ThresholdRule(MetricName.ERROR_RATE, Comparator.LE, 0.1)),
    )


# -----------------------------------------------------------------------------
# Session Pool Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def fake_pool() -> Callable[..., SessionPool]:
    """
    Build a real :class:`SessionPool` whose drivers are fakes.

    Example:
        pool = fake_pool(ceiling=2, navigate_delay=0.01)
    """

    def _create_pool(ceiling: int = 4, factory: Callable[..., FakeDriver] | None = None,
                     **driver_kwargs: Any) -> SessionPool:
        if factory is None:
            def factory(device=None):
                return FakeDriver(device=device, **driver_kwargs)
        return SessionPool(ceiling, factory)

    return _create_pool

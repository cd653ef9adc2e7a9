"""
Scenario executor: runs one scenario against one session.

Execution errors are data here, not exceptions.  A failing step ends that
run and comes back as an :class:`~loadvitals.models.ExecutionFailure`, so
the orchestrator can keep collecting the other sessions of the tier.
Anything outside the :class:`~loadvitals.errors.ExecutionError` family
still propagates; the orchestrator records that as a crash.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from loadvitals.collector import MetricCollector
from loadvitals.driver import InterceptAction, RequestMatcher
from loadvitals.errors import (
    DeadlineExceeded,
    ExecutionError,
    NavigationError,
    NavigationTimeout,
    ScriptError,
    StepError,
)
from loadvitals.models import (
    ExecutionFailure,
    FailureCause,
    MetricSample,
    Scenario,
    Step,
    StepType,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_NAVIGATION_TIMEOUT_MS = 30_000.0
DEFAULT_RUN_DEADLINE_MS = 120_000.0


class Driver(Protocol):
    def navigate(self, url: str, max_wait_ms: float) -> Any: ...

    def click(self, selector: str, timeout_ms: float) -> None: ...

    def wait(self, duration_ms: float) -> None: ...

    def scroll(self) -> None: ...

    def intercept_requests(self, matcher: Any, action: InterceptAction = ...) -> None: ...

    def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    def drain_page_errors(self) -> list[str]: ...


def _cause_for(exc: ExecutionError) -> FailureCause:
    if isinstance(exc, (NavigationTimeout, DeadlineExceeded)):
        return FailureCause.TIMEOUT
    if isinstance(exc, NavigationError):
        return FailureCause.NAVIGATION
    if isinstance(exc, ScriptError):
        return FailureCause.SCRIPT
    return FailureCause.STEP


class ScenarioExecutor:
    """
    Executes the steps of a scenario in order and samples metrics once.

    Args:
        collector: Reads the metric sample after the last step.
        navigation_timeout_ms: Upper bound for each navigation and click.
        run_deadline_ms: Budget for a whole run when the scenario does not
            carry its own ``deadline_ms``.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        collector: MetricCollector | None = None,
        *,
        navigation_timeout_ms: float = DEFAULT_NAVIGATION_TIMEOUT_MS,
        run_deadline_ms: float = DEFAULT_RUN_DEADLINE_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.collector = collector or MetricCollector()
        self.navigation_timeout_ms = navigation_timeout_ms
        self.run_deadline_ms = run_deadline_ms
        self._clock = clock

    def run(
        self,
        scenario: Scenario,
        driver: Driver,
        *,
        tier_id: str,
        session_index: int = 0,
        on_step: Callable[[int], None] | None = None,
    ) -> MetricSample | ExecutionFailure:
        """
        Run *scenario* on *driver*.

        *on_step* is told the index of each step before it starts, and
        ``len(scenario.steps)`` before metrics are read, so a watcher on
        another thread knows where a stuck run is.

        Returns:
            A :class:`MetricSample` tagged with the scenario and tier, or an
            :class:`ExecutionFailure` naming the step that failed.  A failure
            while reading metrics reports ``step_index == len(scenario.steps)``.
        """
        budget_ms = self.budget_ms(scenario)
        deadline = self._clock() + budget_ms / 1000.0

        for index, step in enumerate(scenario.steps):
            try:
                remaining_ms = self._remaining_ms(deadline, budget_ms)
                logger.debug(
                    "[%s/%s#%d] step %d: %s",
                    scenario.id, tier_id, session_index, index, step.describe(),
                )
                if on_step is not None:
                    on_step(index)
                self._run_step(scenario, driver, step, remaining_ms)
            except ExecutionError as exc:
                return self._failure(scenario, tier_id, session_index, index, exc)

        try:
            self._remaining_ms(deadline, budget_ms)
            if on_step is not None:
                on_step(len(scenario.steps))
            return self.collector.sample(
                driver,
                scenario_id=scenario.id,
                tier_id=tier_id,
                session_index=session_index,
            )
        except ExecutionError as exc:
            return self._failure(scenario, tier_id, session_index, len(scenario.steps), exc)

    def budget_ms(self, scenario: Scenario) -> float:
        """Overall deadline for one run of *scenario*."""
        return scenario.deadline_ms or self.run_deadline_ms

    def _remaining_ms(self, deadline: float, budget_ms: float) -> float:
        remaining_ms = (deadline - self._clock()) * 1000.0
        if remaining_ms <= 0:
            raise DeadlineExceeded(f"Run deadline of {budget_ms:.0f}ms exceeded")
        return remaining_ms

    def _run_step(
        self, scenario: Scenario, driver: Driver, step: Step, remaining_ms: float
    ) -> None:
        timeout_ms = min(self.navigation_timeout_ms, remaining_ms)

        if step.type is StepType.NAVIGATE:
            try:
                driver.navigate(scenario.resolve_url(step.target), timeout_ms)
            except NavigationTimeout as exc:
                if timeout_ms < self.navigation_timeout_ms:
                    raise DeadlineExceeded(
                        f"Run deadline expired while loading {exc.url}"
                    ) from exc
                raise
        elif step.type is StepType.CLICK:
            driver.click(step.target, timeout_ms)
        elif step.type is StepType.WAIT:
            if step.duration_ms > remaining_ms:
                raise DeadlineExceeded(
                    f"Waiting {step.duration_ms:.0f}ms would exceed the run deadline"
                )
            driver.wait(step.duration_ms)
        elif step.type is StepType.SCROLL:
            driver.scroll()
        elif step.type is StepType.BLOCK:
            driver.intercept_requests(RequestMatcher.of(step.patterns), InterceptAction.BLOCK)
        elif step.type is StepType.UNBLOCK:
            driver.intercept_requests(RequestMatcher.of(()), InterceptAction.ALLOW)
        else:  # pragma: no cover - StepType is a closed enum
            raise StepError(f"Unsupported step type {step.type!r}")

    def _failure(
        self,
        scenario: Scenario,
        tier_id: str,
        session_index: int,
        step_index: int,
        exc: ExecutionError,
    ) -> ExecutionFailure:
        cause = _cause_for(exc)
        logger.warning(
            "[%s/%s#%d] run failed at step %d (%s): %s",
            scenario.id, tier_id, session_index, step_index, cause.value, exc,
        )
        return ExecutionFailure(
            scenario_id=scenario.id,
            tier_id=tier_id,
            session_index=session_index,
            timestamp=utc_now(),
            step_index=step_index,
            cause=cause,
            message=str(exc),
        )

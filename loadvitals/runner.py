"""
Run controller.

:class:`LoadRun` wires the components together for one run and walks the
state machine::

    idle -> loading -> executing -> evaluating -> reported -> idle
                  \\-> aborted

- **loading**: the run definition is validated and the session pool is
  built.  Configuration errors propagate from here; no session has been
  opened yet.
- **executing**: the environment preflight runs first (target health check
  and one browser launch).  If it fails the run moves to ``aborted`` and
  no report is written.  After that, tiers run and execution errors only
  ever become failure records.
- **evaluating**: the threshold policy is applied to each tier result.
- **reported**: the artifact is built and written, then the controller
  returns to ``idle``.

Once the preflight has succeeded a report is always written, even if every
single session failed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from loadvitals import report
from loadvitals.analysis import degraded_variant
from loadvitals.collector import OBSERVER_SCRIPT, MetricCollector
from loadvitals.driver import SUPPORTED_BROWSERS, SessionPool, create_session_pool
from loadvitals.errors import ConfigurationError, EnvironmentUnavailable
from loadvitals.executor import ScenarioExecutor
from loadvitals.health import wait_for_target
from loadvitals.loader import RunDefinition
from loadvitals.models import ReportArtifact, RunStatus, Scenario, TierResult, utc_now
from loadvitals.orchestrator import Orchestrator
from loadvitals.thresholds import evaluate_run, validate_policy

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2
EXIT_ENVIRONMENT_ABORTED = 3

HealthCheck = Callable[..., None]


class RunState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    REPORTED = "reported"
    ABORTED = "aborted"


_TRANSITIONS = {
    RunState.IDLE: {RunState.LOADING},
    RunState.LOADING: {RunState.EXECUTING, RunState.ABORTED},
    RunState.EXECUTING: {RunState.EVALUATING, RunState.ABORTED},
    RunState.EVALUATING: {RunState.REPORTED},
    RunState.REPORTED: {RunState.IDLE},
    RunState.ABORTED: set(),
}


@dataclass(frozen=True)
class RunOutcome:
    """What a finished (or aborted) run produced."""

    state: RunState
    exit_code: int
    artifact: ReportArtifact | None = None
    paths: dict[str, Path] = field(default_factory=dict)
    error: str | None = None


class LoadRun:
    """
    One load run from a validated definition to a written report.

    Args:
        definition: Scenarios, tiers, policy and resilience patterns.
        settings: Runtime settings class from :func:`loadvitals.config.get_config`.
        pool: Session pool to use; built from *settings* when omitted.
        health_check: Called as ``health_check(url, timeout=..., interval=...)``
            for every distinct base URL before any tier runs.
        out_dir: Directory for the report files.  Defaults to a timestamped
            directory under ``settings.REPORT_DIR``.
        parallel_tiers: Run the tiers of a scenario concurrently.
        skip_health_check: Do not poll the target before running.
    """

    def __init__(
        self,
        definition: RunDefinition,
        settings: Any,
        *,
        pool: SessionPool | None = None,
        health_check: HealthCheck = wait_for_target,
        out_dir: Path | str | None = None,
        parallel_tiers: bool = False,
        skip_health_check: bool = False,
    ):
        self.definition = definition
        self.settings = settings
        self.pool = pool
        self.health_check = health_check
        self.out_dir = Path(out_dir) if out_dir is not None else None
        self.parallel_tiers = parallel_tiers
        self.skip_health_check = skip_health_check
        self.state = RunState.IDLE
        self.history: list[RunState] = [RunState.IDLE]

    def _transition(self, target: RunState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal run transition {self.state.value} -> {target.value}")
        logger.debug("Run state %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def scenarios(self) -> tuple[Scenario, ...]:
        """Scenarios to run, each followed by its degraded twin when blocking is configured."""
        patterns = self.definition.block_patterns
        if not patterns:
            return self.definition.scenarios
        expanded: list[Scenario] = []
        for scenario in self.definition.scenarios:
            expanded.append(scenario)
            expanded.append(degraded_variant(scenario, patterns))
        return tuple(expanded)

    def execute(self) -> RunOutcome:
        """
        Run every scenario under every tier and write the report.

        Raises:
            ConfigurationError: If the definition or settings are invalid.
                Raised before any browser session opens.
        """
        self._transition(RunState.LOADING)
        try:
            pool = self._load()
        except ConfigurationError:
            self._transition(RunState.ABORTED)
            raise

        self._transition(RunState.EXECUTING)
        scenarios = self.scenarios()
        try:
            self._preflight(pool, scenarios)
        except EnvironmentUnavailable as exc:
            logger.error("Environment setup failed, aborting run: %s", exc)
            self._transition(RunState.ABORTED)
            return RunOutcome(
                state=RunState.ABORTED,
                exit_code=EXIT_ENVIRONMENT_ABORTED,
                error=str(exc),
            )

        results = self._run_scenarios(pool, scenarios)

        self._transition(RunState.EVALUATING)
        verdicts = evaluate_run(results, self.definition.policy)

        artifact = report.build(results, verdicts, timestamp=utc_now())
        paths = report.write(artifact, self._report_dir(artifact))
        self._transition(RunState.REPORTED)
        logger.info(
            "Run %s: %d passed, %d failed, %d warned",
            artifact.overall_status.value.upper(), artifact.summary.passed,
            artifact.summary.failed, artifact.summary.warned,
        )

        exit_code = EXIT_PASS if artifact.overall_status is RunStatus.PASS else EXIT_THRESHOLD_BREACH
        self._transition(RunState.IDLE)
        return RunOutcome(
            state=RunState.REPORTED,
            exit_code=exit_code,
            artifact=artifact,
            paths=paths,
        )

    def _load(self) -> SessionPool:
        if not self.definition.scenarios:
            raise ConfigurationError("Run definition has no scenarios")
        if not self.definition.tiers:
            raise ConfigurationError("Run definition has no tiers")
        validate_policy(self.definition.policy)
        if self.out_dir is not None:
            clashes = report.existing(self.out_dir)
            if clashes:
                raise ConfigurationError(
                    f"Report files already exist in {self.out_dir}: "
                    + ", ".join(path.name for path in clashes)
                )
        if self.pool is not None:
            return self.pool
        if self.settings.BROWSER not in SUPPORTED_BROWSERS:
            raise ConfigurationError(
                f"Unsupported browser '{self.settings.BROWSER}', expected one of {SUPPORTED_BROWSERS}"
            )
        return create_session_pool(self.settings, init_scripts=(OBSERVER_SCRIPT,))

    def _preflight(self, pool: SessionPool, scenarios: Sequence[Scenario]) -> None:
        if not self.skip_health_check:
            for url in dict.fromkeys(scenario.base_url for scenario in scenarios):
                self.health_check(
                    url,
                    timeout=self.settings.HEALTH_TIMEOUT,
                    interval=self.settings.HEALTH_INTERVAL,
                )
        pool.preflight(scenarios[0].device)
        logger.info("Environment preflight passed (pool ceiling %d)", pool.ceiling)

    def _run_scenarios(
        self, pool: SessionPool, scenarios: Sequence[Scenario]
    ) -> list[TierResult]:
        executor = ScenarioExecutor(
            MetricCollector(),
            navigation_timeout_ms=self.settings.NAVIGATION_TIMEOUT_MS,
            run_deadline_ms=self.settings.RUN_DEADLINE_MS,
        )
        orchestrator = Orchestrator(executor, aggregations=self.definition.policy.aggregations)

        results: list[TierResult] = []
        for scenario in scenarios:
            results.extend(
                orchestrator.run_tiers(
                    scenario, self.definition.tiers, pool, parallel=self.parallel_tiers
                )
            )
        return results

    def _report_dir(self, artifact: ReportArtifact) -> Path:
        if self.out_dir is not None:
            return self.out_dir
        stamp = artifact.timestamp.strftime("%Y%m%dT%H%M%SZ")
        return Path(self.settings.REPORT_DIR) / f"run-{stamp}"

"""
Concurrency orchestrator: many simulated users per tier.

Each simulated user is a worker thread that acquires its own session from
the shared :class:`~loadvitals.driver.SessionPool` (strictly one session per
worker), runs the scenario once, and returns either a sample or a
failure.  Outcomes are consumed in completion order through
``concurrent.futures.wait(..., return_when=FIRST_COMPLETED)``, so a slow
straggler never holds up the processing of faster sessions.

The collecting thread also watches every open session.  One that outlives
its run deadline (plus a short grace) is recorded as a timeout straight
away and its browser is force-closed; whatever its worker returns later
is discarded.  A browser call stuck inside a step can therefore never
hang the tier.

Aggregation only starts once every worker of the tier has produced its
outcome, and the outcome lists are owned by the collecting thread alone,
so samples need no locking.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from loadvitals.aggregation import build_tier_result
from loadvitals.driver import SessionPool
from loadvitals.errors import EnvironmentUnavailable
from loadvitals.executor import ScenarioExecutor
from loadvitals.models import (
    Aggregation,
    ConcurrencyTier,
    ExecutionFailure,
    FailureCause,
    MetricName,
    MetricSample,
    Scenario,
    TierResult,
    utc_now,
)

logger = logging.getLogger(__name__)

Outcome = MetricSample | ExecutionFailure

# Seconds between deadline checks while waiting for workers.
WATCH_INTERVAL = 0.05
# Extra time a session gets past its deadline before it is force-closed.
DEADLINE_GRACE_MS = 100.0


@dataclass
class _OpenSession:
    driver: object
    expires_at: float
    step_index: int = 0


class SessionWatch:
    """
    Open sessions of one tier, keyed by session index.

    Workers register after their session opens and leave when the
    scenario returns.  The collecting thread calls :meth:`expire` to take
    out every session past its deadline; a session taken out that way is
    never reported by its worker.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._open: dict[int, _OpenSession] = {}

    def enter(self, index: int, driver: object, budget_ms: float) -> None:
        expires_at = self._clock() + (budget_ms + DEADLINE_GRACE_MS) / 1000.0
        with self._lock:
            self._open[index] = _OpenSession(driver, expires_at)

    def step(self, index: int, step_index: int) -> None:
        with self._lock:
            session = self._open.get(index)
            if session is not None:
                session.step_index = step_index

    def leave(self, index: int) -> None:
        with self._lock:
            self._open.pop(index, None)

    def expire(self) -> list[tuple[int, object, int]]:
        """Remove and return ``(index, driver, step_index)`` of overdue sessions."""
        now = self._clock()
        with self._lock:
            overdue = [index for index, s in self._open.items() if s.expires_at <= now]
            taken = [self._open.pop(index) for index in overdue]
        return [(index, s.driver, s.step_index) for index, s in zip(overdue, taken)]


class Orchestrator:
    """
    Runs a scenario under one or more concurrency tiers.

    Args:
        executor: Runs a single scenario on a single session.
        aggregations: Per-metric aggregation overrides applied when the
            tier result is built.
    """

    def __init__(
        self,
        executor: ScenarioExecutor | None = None,
        *,
        aggregations: Mapping[MetricName, Aggregation] | None = None,
    ):
        self.executor = executor or ScenarioExecutor()
        self.aggregations = dict(aggregations or {})

    def run_tier(
        self, scenario: Scenario, tier: ConcurrencyTier, sessions: SessionPool
    ) -> TierResult:
        """
        Spawn ``tier.concurrency`` workers and aggregate what they produce.

        Every worker yields exactly one sample or one failure, so
        ``success_count + failure_count == tier.concurrency`` always holds.
        """
        logger.info(
            "Tier '%s': %d sessions of scenario '%s' (pool ceiling %d)",
            tier.name, tier.concurrency, scenario.id, sessions.ceiling,
        )
        started = time.perf_counter()
        samples: list[MetricSample] = []
        failures: list[ExecutionFailure] = []

        def record(outcome: Outcome) -> None:
            if isinstance(outcome, MetricSample):
                samples.append(outcome)
            else:
                failures.append(outcome)
            logger.debug(
                "Session %d of tier '%s': %s", outcome.session_index, tier.name,
                "ok" if isinstance(outcome, MetricSample) else outcome.cause.value,
            )

        watch = SessionWatch()
        budget_ms = self.executor.budget_ms(scenario)
        pool = ThreadPoolExecutor(
            max_workers=tier.concurrency, thread_name_prefix=f"tier-{tier.name}"
        )
        try:
            futures = {
                pool.submit(self._run_session, scenario, tier, sessions, index, watch): index
                for index in range(tier.concurrency)
            }
            pending: set[Future] = set(futures)
            while pending:
                done, pending = wait(pending, timeout=WATCH_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    record(self._outcome(future, futures[future], scenario, tier))

                expired = watch.expire()
                for index, driver, step_index in expired:
                    logger.warning(
                        "Session %d of tier '%s' passed its %.0fms deadline at step %d; "
                        "force-closing it", index, tier.name, budget_ms, step_index,
                    )
                    driver.abort()
                    record(ExecutionFailure(
                        scenario_id=scenario.id,
                        tier_id=tier.name,
                        session_index=index,
                        timestamp=utc_now(),
                        step_index=step_index,
                        cause=FailureCause.TIMEOUT,
                        message=f"Run deadline of {budget_ms:.0f}ms exceeded",
                    ))
                if expired:
                    gone = {index for index, _, _ in expired}
                    pending = {f for f in pending if futures[f] not in gone}
        finally:
            # Force-closed workers may still be unwinding; they must not hold the tier.
            pool.shutdown(wait=False, cancel_futures=True)

        duration_ms = (time.perf_counter() - started) * 1000.0
        result = build_tier_result(
            tier,
            scenario.id,
            samples,
            failures,
            aggregations=self.aggregations,
            duration_ms=duration_ms,
        )
        logger.info(
            "Tier '%s' done in %.0fms: %d ok, %d failed (error rate %.1f%%)",
            tier.name, duration_ms, result.success_count, result.failure_count,
            result.error_rate * 100,
        )
        return result

    def run_tiers(
        self,
        scenario: Scenario,
        tiers: Sequence[ConcurrencyTier],
        sessions: SessionPool,
        *,
        parallel: bool = False,
    ) -> list[TierResult]:
        """Run every tier, sequentially by default; results keep tier order."""
        if not parallel or len(tiers) < 2:
            return [self.run_tier(scenario, tier, sessions) for tier in tiers]

        with ThreadPoolExecutor(max_workers=len(tiers), thread_name_prefix="tiers") as pool:
            futures = [pool.submit(self.run_tier, scenario, tier, sessions) for tier in tiers]
            return [future.result() for future in futures]

    @staticmethod
    def _outcome(
        future: Future, index: int, scenario: Scenario, tier: ConcurrencyTier
    ) -> Outcome:
        try:
            return future.result()
        except Exception as exc:
            logger.warning("Session %d of tier '%s' crashed: %r", index, tier.name, exc)
            return ExecutionFailure(
                scenario_id=scenario.id,
                tier_id=tier.name,
                session_index=index,
                timestamp=utc_now(),
                step_index=None,
                cause=FailureCause.CRASH,
                message=f"{type(exc).__name__}: {exc}",
            )

    def _run_session(
        self,
        scenario: Scenario,
        tier: ConcurrencyTier,
        sessions: SessionPool,
        index: int,
        watch: SessionWatch,
    ) -> Outcome:
        try:
            with sessions.session(scenario.device) as driver:
                watch.enter(index, driver, self.executor.budget_ms(scenario))
                try:
                    return self.executor.run(
                        scenario,
                        driver,
                        tier_id=tier.name,
                        session_index=index,
                        on_step=lambda step_index: watch.step(index, step_index),
                    )
                finally:
                    watch.leave(index)
        except EnvironmentUnavailable as exc:
            logger.warning("Session %d of tier '%s' could not open: %s", index, tier.name, exc)
            return ExecutionFailure(
                scenario_id=scenario.id,
                tier_id=tier.name,
                session_index=index,
                timestamp=utc_now(),
                step_index=None,
                cause=FailureCause.ENVIRONMENT,
                message=str(exc),
            )

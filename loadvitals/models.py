"""
Data model for load runs.

Every type here is an immutable value object.  Samples, failures and
verdicts are created once by the pipeline stage that owns them and only
ever read downstream; the report artifact is assembled from them at the
end of a run.

Serialisation follows the ``to_dict`` / ``from_dict`` convention used by
the rest of the package.  Dictionary keys are camelCase because the
dictionaries end up in the JSON report consumed by CI tooling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
from urllib.parse import urljoin

from loadvitals.errors import ConfigurationError


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Enumerations
# -----------------------------------------------------------------------------


class Aggregation(str, Enum):
    """How the per-session values of one metric are reduced for a tier."""

    MEAN = "mean"
    MIN = "min"
    MAX = "max"
    P50 = "p50"
    P90 = "p90"
    P95 = "p95"
    P99 = "p99"

    @property
    def percentile(self) -> float | None:
        """Percentile rank for ``pNN`` members, ``None`` otherwise."""
        if self.value.startswith("p"):
            return float(self.value[1:])
        return None


class MetricName(str, Enum):
    """
    Closed set of metrics a run can measure.

    The string values are the names used in policies and reports.  Every
    member except :attr:`ERROR_RATE` is read from the page by the metric
    collector; the error rate is computed per tier by the orchestrator.
    """

    FIRST_PAINT = "first-paint-ms"
    FIRST_CONTENTFUL_PAINT = "first-contentful-paint-ms"
    LARGEST_CONTENTFUL_PAINT = "largest-contentful-paint-ms"
    CUMULATIVE_LAYOUT_SHIFT = "cumulative-layout-shift"
    TIME_TO_FIRST_BYTE = "time-to-first-byte-ms"
    DOM_CONTENT_LOADED = "dom-content-loaded-ms"
    TOTAL_LOAD = "total-load-ms"
    RESOURCE_COUNT = "resource-count"
    TRANSFER_SIZE = "transfer-size-kb"
    JS_TRANSFER = "js-transfer-kb"
    CSS_TRANSFER = "css-transfer-kb"
    IMAGE_TRANSFER = "image-transfer-kb"
    JS_HEAP = "js-heap-mb"
    ERROR_COUNT = "error-count"
    ERROR_RATE = "error-rate"

    @property
    def unit(self) -> str:
        if self.value.endswith("-ms"):
            return "ms"
        if self.value.endswith("-mb"):
            return "MB"
        if self.value.endswith("-kb"):
            return "KB"
        return ""

    @property
    def is_latency(self) -> bool:
        """Time-based metrics are judged on their tail, not their mean."""
        return self.unit == "ms"

    @property
    def default_aggregation(self) -> Aggregation:
        return Aggregation.P95 if self.is_latency else Aggregation.MEAN

    @classmethod
    def sampled(cls) -> tuple[MetricName, ...]:
        """Metrics present on every :class:`MetricSample`."""
        return tuple(member for member in cls if member is not cls.ERROR_RATE)

    @classmethod
    def parse(cls, raw: Any) -> MetricName:
        try:
            return cls(str(raw).strip())
        except ValueError:
            raise ConfigurationError(f"Unknown metric '{raw}'") from None


class Comparator(str, Enum):
    """Comparison operator of a threshold rule."""

    LE = "<="
    GE = ">="
    LT = "<"
    GT = ">"
    EQ = "="

    @classmethod
    def parse(cls, raw: Any) -> Comparator:
        aliases = {"≤": "<=", "≥": ">=", "==": "=", "le": "<=", "ge": ">=",
                   "lt": "<", "gt": ">", "eq": "="}
        text = str(raw).strip()
        text = aliases.get(text.lower(), text)
        try:
            return cls(text)
        except ValueError:
            raise ConfigurationError(f"Unknown comparator '{raw}'") from None


class StepType(str, Enum):
    """Kinds of interaction step a scenario can contain."""

    NAVIGATE = "navigate"
    CLICK = "click"
    WAIT = "wait"
    SCROLL = "scroll"
    BLOCK = "block"
    UNBLOCK = "unblock"


class FailureCause(str, Enum):
    """Why a single scenario run produced no sample."""

    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    SCRIPT = "script"
    STEP = "step"
    ENVIRONMENT = "environment"
    CRASH = "crash"


class RunStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


# -----------------------------------------------------------------------------
# Scenario definition
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceProfile:
    """Viewport and user agent applied to every browser context of a scenario."""

    name: str
    width: int
    height: int
    user_agent: str | None = None
    is_mobile: bool = False

    def context_args(self) -> dict[str, Any]:
        """Keyword arguments for ``Browser.new_context``."""
        args: dict[str, Any] = {
            "viewport": {"width": self.width, "height": self.height},
            "is_mobile": self.is_mobile,
        }
        if self.user_agent:
            args["user_agent"] = self.user_agent
        return args


DEVICE_PROFILES: dict[str, DeviceProfile] = {
    "desktop": DeviceProfile("desktop", 1920, 1080),
    "mobile": DeviceProfile(
        "mobile",
        375,
        667,
        user_agent=(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 14_6 like Mac OS X) "
            "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/14.0 "
            "Mobile/15E148 Safari/604.1"
        ),
        is_mobile=True,
    ),
    "tablet": DeviceProfile(
        "tablet",
        768,
        1024,
        user_agent=(
            "Mozilla/5.0 (iPad; CPU OS 14_6 like Mac OS X) "
            "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/14.0 "
            "Mobile/15E148 Safari/604.1"
        ),
        is_mobile=True,
    ),
}


@dataclass(frozen=True)
class Step:
    """
    One interaction step of a scenario.

    Attributes:
        type: What the step does.
        target: URL or path for ``navigate``, CSS selector for ``click``.
        duration_ms: Pause length for ``wait``.
        patterns: Domain or URL patterns for ``block``.
    """

    type: StepType
    target: str = ""
    duration_ms: float = 0.0
    patterns: tuple[str, ...] = ()

    def describe(self) -> str:
        if self.type is StepType.NAVIGATE or self.type is StepType.CLICK:
            return f"{self.type.value} {self.target}"
        if self.type is StepType.WAIT:
            return f"wait {self.duration_ms:.0f}ms"
        if self.type is StepType.BLOCK:
            return f"block {', '.join(self.patterns)}"
        return self.type.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "target": self.target,
            "durationMs": self.duration_ms,
            "patterns": list(self.patterns),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Step:
        return cls(
            type=StepType(data["type"]),
            target=data.get("target", ""),
            duration_ms=float(data.get("durationMs", 0.0)),
            patterns=tuple(data.get("patterns", ())),
        )


@dataclass(frozen=True)
class Scenario:
    """A named, ordered sequence of steps executed once per simulated user."""

    id: str
    base_url: str
    steps: tuple[Step, ...]
    device: DeviceProfile | None = None
    deadline_ms: float | None = None

    def resolve_url(self, target: str) -> str:
        """Resolve a step target against the scenario's base URL."""
        if target.startswith(("http://", "https://")):
            return target
        base = self.base_url if self.base_url.endswith("/") else f"{self.base_url}/"
        return urljoin(base, target.lstrip("/"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "baseUrl": self.base_url,
            "steps": [step.to_dict() for step in self.steps],
            "device": self.device.name if self.device else None,
            "deadlineMs": self.deadline_ms,
        }


@dataclass(frozen=True)
class ConcurrencyTier:
    """How many simulated sessions run in parallel for one sub-run."""

    name: str
    concurrency: int

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Tier name must not be empty")
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int):
            raise ConfigurationError(
                f"Tier '{self.name}' concurrency must be an integer"
            )
        if self.concurrency < 1:
            raise ConfigurationError(
                f"Tier '{self.name}' concurrency must be >= 1, got {self.concurrency}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "concurrency": self.concurrency}


DEFAULT_TIERS: tuple[ConcurrencyTier, ...] = (
    ConcurrencyTier("light", 5),
    ConcurrencyTier("medium", 10),
    ConcurrencyTier("heavy", 20),
)


# -----------------------------------------------------------------------------
# Threshold policy
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ThresholdRule:
    """
    A single pass/fail rule: ``<aggregate of metric> <comparator> <limit>``.

    ``warn`` is an optional stricter limit.  A value that passes the rule
    but falls on the wrong side of ``warn`` is reported as a warning
    without failing the run.
    """

    metric: MetricName
    comparator: Comparator
    limit: float
    warn: float | None = None

    def describe(self) -> str:
        return f"{self.metric.value} {self.comparator.value} {self.limit:g}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "comparator": self.comparator.value,
            "limit": self.limit,
            "warn": self.warn,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ThresholdRule:
        warn = data.get("warn")
        return cls(
            metric=MetricName.parse(data["metric"]),
            comparator=Comparator.parse(data["comparator"]),
            limit=float(data["limit"]),
            warn=float(warn) if warn is not None else None,
        )


@dataclass(frozen=True)
class ThresholdPolicy:
    """
    Ordered threshold rules plus per-metric aggregation overrides.

    ``max_error_rate`` is the error-rate limit applied to every tier when
    no rule names ``error-rate``, so failed sessions always count against
    the run.
    """

    rules: tuple[ThresholdRule, ...]
    aggregations: Mapping[MetricName, Aggregation] = field(default_factory=dict)
    max_error_rate: float = 0.0

    def aggregation_for(self, metric: MetricName) -> Aggregation:
        return self.aggregations.get(metric, metric.default_aggregation)

    def aggregation_map(self) -> dict[MetricName, Aggregation]:
        """Aggregation for every sampled metric, overrides applied."""
        return {metric: self.aggregation_for(metric) for metric in MetricName.sampled()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [rule.to_dict() for rule in self.rules],
            "aggregations": {
                metric.value: method.value for metric, method in self.aggregations.items()
            },
            "maxErrorRate": self.max_error_rate,
        }


# -----------------------------------------------------------------------------
# Run outputs
# -----------------------------------------------------------------------------


def _metrics_to_dict(metrics: Mapping[MetricName, float | None]) -> dict[str, float | None]:
    return {metric.value: value for metric, value in metrics.items()}


def _metrics_from_dict(data: Mapping[str, Any]) -> dict[MetricName, float | None]:
    return {
        MetricName(name): (float(value) if value is not None else None)
        for name, value in data.items()
    }


@dataclass(frozen=True)
class MetricSample:
    """Measured values from one successful scenario run.

    A ``None`` value means the metric was not observable in that session.
    It is kept as ``None`` so aggregation can leave it out.
    """

    scenario_id: str
    tier_id: str
    session_index: int
    timestamp: datetime
    metrics: Mapping[MetricName, float | None]

    def get(self, metric: MetricName) -> float | None:
        return self.metrics.get(metric)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario_id,
            "tier": self.tier_id,
            "session": self.session_index,
            "timestamp": self.timestamp.isoformat(),
            "metrics": _metrics_to_dict(self.metrics),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MetricSample:
        return cls(
            scenario_id=data["scenario"],
            tier_id=data["tier"],
            session_index=int(data["session"]),
            timestamp=_parse_timestamp(data["timestamp"]),
            metrics=_metrics_from_dict(data["metrics"]),
        )


@dataclass(frozen=True)
class ExecutionFailure:
    """A scenario run that ended without a sample.

    ``step_index`` is ``None`` when the run failed before its first step,
    for example because the browser session could not be opened.
    """

    scenario_id: str
    tier_id: str
    session_index: int
    timestamp: datetime
    step_index: int | None
    cause: FailureCause
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario_id,
            "tier": self.tier_id,
            "session": self.session_index,
            "timestamp": self.timestamp.isoformat(),
            "stepIndex": self.step_index,
            "cause": self.cause.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionFailure:
        step_index = data.get("stepIndex")
        return cls(
            scenario_id=data["scenario"],
            tier_id=data["tier"],
            session_index=int(data["session"]),
            timestamp=_parse_timestamp(data["timestamp"]),
            step_index=int(step_index) if step_index is not None else None,
            cause=FailureCause(data["cause"]),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class TierResult:
    """Everything one tier of one scenario produced, plus its aggregates."""

    tier: ConcurrencyTier
    scenario_id: str
    samples: tuple[MetricSample, ...]
    failures: tuple[ExecutionFailure, ...]
    metrics: Mapping[MetricName, float | None]
    aggregations: Mapping[MetricName, Aggregation]
    duration_ms: float = 0.0

    @property
    def success_count(self) -> int:
        return len(self.samples)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def error_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 0.0
        return self.failure_count / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.tier.name,
            "concurrency": self.tier.concurrency,
            "scenario": self.scenario_id,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "errorRate": self.error_rate,
            "durationMs": self.duration_ms,
            "metrics": _metrics_to_dict(self.metrics),
            "aggregations": {
                metric.value: method.value for metric, method in self.aggregations.items()
            },
            "samples": [sample.to_dict() for sample in self.samples],
            "failures": [failure.to_dict() for failure in self.failures],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TierResult:
        return cls(
            tier=ConcurrencyTier(data["name"], int(data["concurrency"])),
            scenario_id=data["scenario"],
            samples=tuple(MetricSample.from_dict(item) for item in data["samples"]),
            failures=tuple(ExecutionFailure.from_dict(item) for item in data["failures"]),
            metrics=_metrics_from_dict(data["metrics"]),
            aggregations={
                MetricName(name): Aggregation(method)
                for name, method in data.get("aggregations", {}).items()
            },
            duration_ms=float(data.get("durationMs", 0.0)),
        )


@dataclass(frozen=True)
class Verdict:
    """Result of checking one aggregated metric of one tier against one rule."""

    metric: MetricName
    tier: str
    measured: float | None
    rule: ThresholdRule
    passed: bool
    explanation: str
    scenario: str = ""
    aggregation: Aggregation | None = None
    warned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "tier": self.tier,
            "scenario": self.scenario,
            "measured": self.measured,
            "rule": self.rule.to_dict(),
            "aggregation": self.aggregation.value if self.aggregation else None,
            "passed": self.passed,
            "warned": self.warned,
            "explanation": self.explanation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Verdict:
        measured = data.get("measured")
        aggregation = data.get("aggregation")
        return cls(
            metric=MetricName(data["metric"]),
            tier=data["tier"],
            scenario=data.get("scenario", ""),
            measured=float(measured) if measured is not None else None,
            rule=ThresholdRule.from_dict(data["rule"]),
            aggregation=Aggregation(aggregation) if aggregation else None,
            passed=bool(data["passed"]),
            warned=bool(data.get("warned", False)),
            explanation=data.get("explanation", ""),
        )


@dataclass(frozen=True)
class ReportSummary:
    passed: int
    failed: int
    warned: int

    @property
    def total(self) -> int:
        return self.passed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "passed": self.passed,
            "failed": self.failed,
            "warned": self.warned,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReportSummary:
        return cls(
            passed=int(data["passed"]),
            failed=int(data["failed"]),
            warned=int(data.get("warned", 0)),
        )


@dataclass(frozen=True)
class DegradationEntry:
    """Percentage change of latency aggregates against the lightest tier."""

    scenario: str
    tier: str
    baseline_tier: str
    changes: Mapping[MetricName, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario,
            "tier": self.tier,
            "baselineTier": self.baseline_tier,
            "changesPercent": {metric.value: pct for metric, pct in self.changes.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DegradationEntry:
        return cls(
            scenario=data["scenario"],
            tier=data["tier"],
            baseline_tier=data["baselineTier"],
            changes={
                MetricName(name): float(pct)
                for name, pct in data.get("changesPercent", {}).items()
            },
        )


@dataclass(frozen=True)
class Recommendation:
    kind: str
    severity: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind, "severity": self.severity, "message": self.message}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Recommendation:
        return cls(kind=data["type"], severity=data["severity"], message=data["message"])


@dataclass(frozen=True)
class ReportArtifact:
    """
    Final, write-once output of a run.

    ``overall_status`` is derived from the verdicts when the artifact is
    built and is never recomputed, so a deserialised artifact reports
    exactly what was written.
    """

    timestamp: datetime
    tiers: tuple[TierResult, ...]
    verdicts: tuple[Verdict, ...]
    summary: ReportSummary
    overall_status: RunStatus
    degradation: tuple[DegradationEntry, ...] = ()
    recommendations: tuple[Recommendation, ...] = ()

    @property
    def raw_samples(self) -> tuple[MetricSample, ...]:
        return tuple(sample for tier in self.tiers for sample in tier.samples)

    @property
    def failing_verdicts(self) -> tuple[Verdict, ...]:
        return tuple(verdict for verdict in self.verdicts if not verdict.passed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overallStatus": self.overall_status.value,
            "summary": self.summary.to_dict(),
            "tiers": [tier.to_dict() for tier in self.tiers],
            "verdicts": [verdict.to_dict() for verdict in self.verdicts],
            "rawSamples": [sample.to_dict() for sample in self.raw_samples],
            "degradation": [entry.to_dict() for entry in self.degradation],
            "recommendations": [item.to_dict() for item in self.recommendations],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReportArtifact:
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            tiers=tuple(TierResult.from_dict(item) for item in data["tiers"]),
            verdicts=tuple(Verdict.from_dict(item) for item in data["verdicts"]),
            summary=ReportSummary.from_dict(data["summary"]),
            overall_status=RunStatus(data["overallStatus"]),
            degradation=tuple(
                DegradationEntry.from_dict(item) for item in data.get("degradation", [])
            ),
            recommendations=tuple(
                Recommendation.from_dict(item) for item in data.get("recommendations", [])
            ),
        )

"""
Run definition loader.

A run definition names what to measure: one or more scenarios, the
concurrency tiers to run them under, the threshold policy, and optional
request-blocking patterns for resilience runs.  It is read from a YAML
(``yaml.safe_load``) or JSON file and validated completely before any
browser session is opened.  Every problem is reported as a
:class:`~loadvitals.errors.ConfigurationError` whose message names the
offending scenario step or policy rule by its 1-based position.

Example::

    scenario:
      id: homepage
      base_url: http://localhost:1313
      steps:
        - navigate: /
        - wait: 500
    tiers:
      light: 5
    policy:
      rules:
        - metric: largest-contentful-paint-ms
          comparator: "<="
          limit: 2500
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from loadvitals.errors import ConfigurationError
from loadvitals.models import (
    DEFAULT_TIERS,
    DEVICE_PROFILES,
    Aggregation,
    ConcurrencyTier,
    DeviceProfile,
    MetricName,
    Scenario,
    Step,
    StepType,
    ThresholdPolicy,
    ThresholdRule,
)
from loadvitals.thresholds import validate_policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunDefinition:
    """Everything a load run needs besides runtime settings."""

    scenarios: tuple[Scenario, ...]
    tiers: tuple[ConcurrencyTier, ...]
    policy: ThresholdPolicy
    block_patterns: tuple[str, ...] = ()


def load_definition(path: Path | str) -> RunDefinition:
    """
    Read and validate a run definition file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or its
            content is invalid.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read run definition {path}: {exc}") from exc

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot parse run definition {path}: {exc}") from exc

    definition = parse_definition(data)
    logger.info(
        "Loaded %d scenario(s), %d tier(s), %d rule(s) from %s",
        len(definition.scenarios), len(definition.tiers),
        len(definition.policy.rules), path,
    )
    return definition


def parse_definition(data: Any) -> RunDefinition:
    """Validate an already-parsed run definition document."""
    if not isinstance(data, Mapping):
        raise ConfigurationError("Run definition must be a mapping")

    if "scenarios" in data:
        raw_scenarios = data["scenarios"]
        if not isinstance(raw_scenarios, list) or not raw_scenarios:
            raise ConfigurationError("'scenarios' must be a non-empty list")
    elif "scenario" in data:
        raw_scenarios = [data["scenario"]]
    else:
        raise ConfigurationError("Run definition needs a 'scenario' or 'scenarios' section")

    scenarios = tuple(parse_scenario(raw) for raw in raw_scenarios)
    ids = [scenario.id for scenario in scenarios]
    duplicates = sorted({scenario_id for scenario_id in ids if ids.count(scenario_id) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate scenario id(s): {', '.join(duplicates)}")

    if "policy" not in data:
        raise ConfigurationError("Run definition needs a 'policy' section")

    resilience = data.get("resilience") or {}
    if not isinstance(resilience, Mapping):
        raise ConfigurationError("'resilience' must be a mapping")

    return RunDefinition(
        scenarios=scenarios,
        tiers=parse_tiers(data.get("tiers")),
        policy=parse_policy(data["policy"]),
        block_patterns=_patterns(resilience.get("block", ()), "resilience.block"),
    )


# -----------------------------------------------------------------------------
# Scenarios
# -----------------------------------------------------------------------------


def parse_scenario(raw: Any) -> Scenario:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Scenario must be a mapping")

    scenario_id = str(raw.get("id") or "").strip()
    if not scenario_id:
        raise ConfigurationError("Scenario is missing an 'id'")

    base_url = str(raw.get("base_url") or "").strip()
    if not base_url.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Scenario '{scenario_id}': base_url must be an http(s) URL, got '{base_url}'"
        )

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigurationError(f"Scenario '{scenario_id}' must define at least one step")
    steps = tuple(
        parse_step(raw_step, index=index, scenario_id=scenario_id)
        for index, raw_step in enumerate(raw_steps, start=1)
    )

    deadline = raw.get("deadline_ms")
    if deadline is not None:
        deadline = _positive_number(deadline, f"Scenario '{scenario_id}': deadline_ms")

    return Scenario(
        id=scenario_id,
        base_url=base_url,
        steps=steps,
        device=parse_device(raw.get("device"), scenario_id),
        deadline_ms=deadline,
    )


def parse_device(raw: Any, scenario_id: str = "") -> DeviceProfile | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        profile = DEVICE_PROFILES.get(raw.strip().lower())
        if profile is None:
            raise ConfigurationError(
                f"Scenario '{scenario_id}': unknown device '{raw}', "
                f"expected one of {sorted(DEVICE_PROFILES)} or a mapping"
            )
        return profile
    if isinstance(raw, Mapping):
        try:
            return DeviceProfile(
                name=str(raw.get("name", "custom")),
                width=int(raw["width"]),
                height=int(raw["height"]),
                user_agent=raw.get("user_agent"),
                is_mobile=bool(raw.get("is_mobile", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Scenario '{scenario_id}': device needs integer width and height"
            ) from exc
    raise ConfigurationError(f"Scenario '{scenario_id}': device must be a name or a mapping")


def parse_step(raw: Any, *, index: int = 1, scenario_id: str = "") -> Step:
    """
    Parse one step.

    Accepted forms are a bare name (``scroll``), a single-key mapping
    (``navigate: /``) or an explicit ``{type: ..., target: ...}`` mapping.
    """
    where = f"Scenario '{scenario_id}' step #{index}"

    if isinstance(raw, str):
        kind, value = raw, True
    elif isinstance(raw, Mapping) and "type" in raw:
        kind, value = raw["type"], raw.get("target")
    elif isinstance(raw, Mapping) and len(raw) == 1:
        kind, value = next(iter(raw.items()))
    else:
        raise ConfigurationError(f"{where}: expected a step name or a single-key mapping")

    try:
        step_type = StepType(str(kind).strip().lower())
    except ValueError:
        raise ConfigurationError(f"{where}: unknown step type '{kind}'") from None

    if step_type in (StepType.NAVIGATE, StepType.CLICK):
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{where}: '{step_type.value}' needs a non-empty target")
        return Step(type=step_type, target=value.strip())

    if step_type is StepType.WAIT:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"{where}: 'wait' needs a non-negative number of ms")
        return Step(type=step_type, duration_ms=float(value))

    if step_type is StepType.BLOCK:
        patterns = _patterns(value, where)
        if not patterns:
            raise ConfigurationError(f"{where}: 'block' needs at least one pattern")
        return Step(type=step_type, patterns=patterns)

    return Step(type=step_type)


def _patterns(raw: Any, where: str) -> tuple[str, ...]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, Sequence) or not all(isinstance(item, str) for item in raw):
        raise ConfigurationError(f"{where}: patterns must be a string or a list of strings")
    return tuple(item.strip() for item in raw if item.strip())


# -----------------------------------------------------------------------------
# Tiers
# -----------------------------------------------------------------------------


def parse_tiers(raw: Any) -> tuple[ConcurrencyTier, ...]:
    """Tiers as a ``name: concurrency`` mapping or a list of mappings."""
    if raw is None:
        return DEFAULT_TIERS

    if isinstance(raw, Mapping):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for position, entry in enumerate(raw, start=1):
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ConfigurationError(f"Tier #{position}: expected {{name, concurrency}}")
            items.append((entry["name"], entry.get("concurrency")))
    else:
        raise ConfigurationError("'tiers' must be a mapping or a list")

    if not items:
        raise ConfigurationError("'tiers' must define at least one tier")

    tiers = tuple(ConcurrencyTier(str(name), concurrency) for name, concurrency in items)
    names = [tier.name for tier in tiers]
    if len(set(names)) != len(names):
        raise ConfigurationError("Tier names must be unique")
    return tiers


# -----------------------------------------------------------------------------
# Policy
# -----------------------------------------------------------------------------


def parse_policy(raw: Any) -> ThresholdPolicy:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("'policy' must be a mapping")

    raw_rules = raw.get("rules")
    if not isinstance(raw_rules, list):
        raise ConfigurationError("'policy.rules' must be a list")
    rules = tuple(parse_rule(item, index) for index, item in enumerate(raw_rules, start=1))

    raw_aggregations = raw.get("aggregations") or {}
    if not isinstance(raw_aggregations, Mapping):
        raise ConfigurationError("'policy.aggregations' must be a mapping")

    aggregations: dict[MetricName, Aggregation] = {}
    for name, method in raw_aggregations.items():
        try:
            metric = MetricName.parse(name)
        except ConfigurationError as exc:
            raise ConfigurationError(f"policy.aggregations: {exc}") from None
        try:
            aggregations[metric] = Aggregation(str(method).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"policy.aggregations: unknown aggregation '{method}' for {metric.value}"
            ) from None

    max_error_rate = raw.get("max_error_rate", 0.0)
    if isinstance(max_error_rate, bool) or not isinstance(max_error_rate, (int, float)):
        raise ConfigurationError("'policy.max_error_rate' must be a number between 0 and 1")

    policy = ThresholdPolicy(
        rules=rules, aggregations=aggregations, max_error_rate=float(max_error_rate)
    )
    validate_policy(policy)
    return policy


def parse_rule(raw: Any, index: int = 1) -> ThresholdRule:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Policy rule #{index}: expected a mapping")
    missing = [key for key in ("metric", "comparator", "limit") if key not in raw]
    if missing:
        raise ConfigurationError(f"Policy rule #{index}: missing {', '.join(missing)}")
    try:
        return ThresholdRule.from_dict(raw)
    except ConfigurationError as exc:
        raise ConfigurationError(f"Policy rule #{index}: {exc}") from None
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Policy rule #{index}: limit and warn must be numbers") from exc


def _positive_number(raw: Any, where: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ConfigurationError(f"{where} must be a positive number")
    return float(raw)

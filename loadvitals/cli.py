"""
Command-line entry point.

CI invokes ``loadvitals run.yml`` (or ``python -m loadvitals run.yml``)
and decides the build from the exit code:

- ``0``: every threshold passed
- ``1``: at least one threshold failed
- ``2``: the run definition or settings are invalid; nothing was run
- ``3``: the browser or the target site was unavailable; no report
- ``4``: the tool itself crashed

A fixed-width summary is printed to stdout, and the JSON, HTML and text
reports are written under the report directory.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from loadvitals import report
from loadvitals.config import get_config
from loadvitals.errors import ConfigurationError
from loadvitals.loader import RunDefinition, load_definition
from loadvitals.models import ConcurrencyTier
from loadvitals.runner import (
    EXIT_CONFIG_ERROR,
    EXIT_ENVIRONMENT_ABORTED,
    EXIT_PASS,
    EXIT_THRESHOLD_BREACH,
    LoadRun,
)

logger = logging.getLogger(__name__)

EXIT_SCRIPT_ERROR = 4

__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_ENVIRONMENT_ABORTED",
    "EXIT_PASS",
    "EXIT_SCRIPT_ERROR",
    "EXIT_THRESHOLD_BREACH",
    "main",
    "parse_args",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for a load run."""
    parser = argparse.ArgumentParser(
        prog="loadvitals",
        description="Run browser load tiers against a site and check performance thresholds.",
    )
    parser.add_argument(
        "config",
        type=Path,
        help="Path to the run definition (YAML or JSON)",
    )
    parser.add_argument(
        "--tier",
        action="append",
        default=[],
        metavar="NAME=N",
        help="Replace the configured tiers (repeatable), e.g. --tier light=5",
    )
    parser.add_argument(
        "--pool-ceiling",
        type=int,
        default=None,
        help="Maximum number of browser sessions open at once",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Directory for report files (default: timestamped dir under the report dir)",
    )
    parser.add_argument(
        "--env",
        default=None,
        help="Settings profile: local, ci or testing (default: $LOADVITALS_ENV)",
    )
    parser.add_argument(
        "--block-domain",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Also run a degraded variant with requests to PATTERN blocked (repeatable)",
    )
    parser.add_argument(
        "--parallel-tiers",
        action="store_true",
        help="Run the tiers of a scenario concurrently instead of one after another",
    )
    parser.add_argument(
        "--skip-health-check",
        action="store_true",
        help="Do not wait for the target site before running",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def parse_tier_option(text: str) -> ConcurrencyTier:
    """Turn ``name=N`` into a tier."""
    name, sep, value = text.partition("=")
    if not sep or not name.strip():
        raise ConfigurationError(f"Invalid --tier '{text}', expected NAME=N")
    try:
        concurrency = int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid --tier '{text}': concurrency must be an integer") from None
    return ConcurrencyTier(name.strip(), concurrency)


def apply_overrides(definition: RunDefinition, args: argparse.Namespace) -> RunDefinition:
    if args.tier:
        tiers = tuple(parse_tier_option(text) for text in args.tier)
        names = [tier.name for tier in tiers]
        if len(set(names)) != len(names):
            raise ConfigurationError("Tier names given with --tier must be unique")
        definition = dataclasses.replace(definition, tiers=tiers)
    if args.block_domain:
        patterns = tuple(dict.fromkeys((*definition.block_patterns, *args.block_domain)))
        definition = dataclasses.replace(definition, block_patterns=patterns)
    return definition


def _settings_for(args: argparse.Namespace) -> type:
    settings = get_config(args.env)
    if args.pool_ceiling is None:
        return settings
    if args.pool_ceiling < 1:
        raise ConfigurationError(f"--pool-ceiling must be >= 1, got {args.pool_ceiling}")
    return type(f"{settings.__name__}Override", (settings,), {"POOL_CEILING": args.pool_ceiling})


def configure_logging(level: str | int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point: load the definition, run it and map the result to an exit code.

    Returns:
        ``EXIT_PASS`` (0), ``EXIT_THRESHOLD_BREACH`` (1),
        ``EXIT_CONFIG_ERROR`` (2), ``EXIT_ENVIRONMENT_ABORTED`` (3) or
        ``EXIT_SCRIPT_ERROR`` (4).
    """
    args = parse_args(argv)

    try:
        settings = _settings_for(args)
        configure_logging(logging.DEBUG if args.verbose else settings.LOG_LEVEL.upper())

        definition = apply_overrides(load_definition(args.config), args)
        run = LoadRun(
            definition,
            settings,
            out_dir=args.out,
            parallel_tiers=args.parallel_tiers,
            skip_health_check=args.skip_health_check,
        )
        outcome = run.execute()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except Exception as exc:  # pragma: no cover - last-resort CLI guard
        logger.exception("Load run crashed")
        print(f"Load run failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    if outcome.artifact is None:
        print(f"Run aborted: {outcome.error}", file=sys.stderr)
        return outcome.exit_code

    print(report.render_text(outcome.artifact), end="")
    for kind, path in outcome.paths.items():
        print(f"{kind} report: {path}")
    return outcome.exit_code


if __name__ == "__main__":
    raise SystemExit(main())

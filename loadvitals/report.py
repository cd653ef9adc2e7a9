"""
Report aggregation and rendering.

:func:`build` merges tier results and verdicts into a single
:class:`~loadvitals.models.ReportArtifact`.  The artifact is rendered in
three forms from the same data:

- ``report.json``: machine-readable, round-trips through :func:`from_json`
- ``report.html``: a standalone page rendered with a Jinja2 template
- ``report.txt``: the fixed-width summary also printed to stdout

:func:`write` creates each file with exclusive-create mode, so an
existing report is never overwritten.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from jinja2 import Environment, PackageLoader, select_autoescape

from loadvitals.analysis import degradation, recommendations
from loadvitals.models import (
    ReportArtifact,
    ReportSummary,
    RunStatus,
    TierResult,
    Verdict,
    utc_now,
)

logger = logging.getLogger(__name__)

JSON_NAME = "report.json"
HTML_NAME = "report.html"
TEXT_NAME = "report.txt"

_jinja = Environment(
    loader=PackageLoader("loadvitals", "templates"),
    autoescape=select_autoescape(["html", "j2"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def summarize(verdicts: Iterable[Verdict]) -> ReportSummary:
    passed = failed = warned = 0
    for verdict in verdicts:
        if verdict.passed:
            passed += 1
            if verdict.warned:
                warned += 1
        else:
            failed += 1
    return ReportSummary(passed=passed, failed=failed, warned=warned)


def build(
    tier_results: Sequence[TierResult],
    verdicts: Sequence[Verdict],
    *,
    timestamp: datetime | None = None,
) -> ReportArtifact:
    """
    Assemble the final artifact.

    The overall status is ``pass`` only if every verdict passed.  Tier
    results are kept whole (samples and failures included) so any failing
    verdict can be traced back to the raw data behind it.
    """
    tiers = tuple(tier_results)
    ordered_verdicts = tuple(verdicts)
    status = (
        RunStatus.PASS if all(verdict.passed for verdict in ordered_verdicts) else RunStatus.FAIL
    )
    return ReportArtifact(
        timestamp=timestamp or utc_now(),
        tiers=tiers,
        verdicts=ordered_verdicts,
        summary=summarize(ordered_verdicts),
        overall_status=status,
        degradation=tuple(degradation(tiers)),
        recommendations=tuple(recommendations(tiers)),
    )


def to_json(artifact: ReportArtifact) -> str:
    return json.dumps(artifact.to_dict(), indent=2)


def from_json(text: str) -> ReportArtifact:
    return ReportArtifact.from_dict(json.loads(text))


def _fmt(value: float | None, unit: str = "") -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}{unit}"


def render_text(artifact: ReportArtifact) -> str:
    """Fixed-width summary for CI logs."""
    lines = [
        f"Load Run Report ({artifact.timestamp.isoformat()})",
        "-" * 96,
        f"{'Scenario':<18}{'Tier':<10}{'Users':>6}{'OK':>6}{'Failed':>8}{'Err %':>8}",
        "-" * 96,
    ]
    for tier in artifact.tiers:
        lines.append(
            f"{tier.scenario_id:<18}{tier.tier.name:<10}{tier.tier.concurrency:>6}"
            f"{tier.success_count:>6}{tier.failure_count:>8}{tier.error_rate * 100:>8.1f}"
        )

    lines += [
        "",
        f"{'Scenario':<18}{'Tier':<10}{'Metric':<30}{'Actual':>12}{'Limit':>12}{'Status':>10}",
        "-" * 96,
    ]
    for verdict in artifact.verdicts:
        status = "PASS" if verdict.passed else "FAIL"
        if verdict.warned:
            status = "WARN"
        rule = f"{verdict.rule.comparator.value} {verdict.rule.limit:g}"
        lines.append(
            f"{verdict.scenario:<18}{verdict.tier:<10}{verdict.metric.value:<30}"
            f"{_fmt(verdict.measured):>12}{rule:>12}{status:>10}"
        )

    summary = artifact.summary
    lines += [
        "-" * 96,
        f"Passed: {summary.passed}  Failed: {summary.failed}  Warned: {summary.warned}",
        f"Overall: {artifact.overall_status.value.upper()}",
    ]
    return "\n".join(lines) + "\n"


def render_html(artifact: ReportArtifact) -> str:
    template = _jinja.get_template("report.html.j2")
    return template.render(report=artifact, fmt=_fmt)


def existing(out_dir: Path | str) -> list[Path]:
    """Report files already present in *out_dir*; :func:`write` would refuse them."""
    directory = Path(out_dir)
    return [directory / name for name in (JSON_NAME, HTML_NAME, TEXT_NAME) if (directory / name).exists()]


def write(artifact: ReportArtifact, out_dir: Path | str) -> dict[str, Path]:
    """
    Persist the artifact in all three forms under *out_dir*.

    Returns:
        Paths keyed by ``json``, ``html`` and ``text``.

    Raises:
        FileExistsError: If a report already exists in *out_dir*.
    """
    directory = Path(out_dir)
    directory.mkdir(parents=True, exist_ok=True)

    outputs = {
        "json": (directory / JSON_NAME, to_json(artifact)),
        "html": (directory / HTML_NAME, render_html(artifact)),
        "text": (directory / TEXT_NAME, render_text(artifact)),
    }
    paths: dict[str, Path] = {}
    for key, (path, content) in outputs.items():
        with path.open("x", encoding="utf-8") as handle:
            handle.write(content)
        paths[key] = path

    logger.info("Report written to %s", directory)
    return paths

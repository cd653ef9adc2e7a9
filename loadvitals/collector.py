"""
Metric collector: reads performance entries from a navigated session.

Paint, navigation, resource and memory data come straight from the
Performance API.  Largest-contentful-paint and layout-shift entries are
only delivered to observers, so :data:`OBSERVER_SCRIPT` must be installed
as an init script on the session before it navigates (the session pool
built by the run controller does this).

A metric the page never exposed is recorded as ``None``.  It is never
turned into ``0``, because a zero would pass most thresholds.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from loadvitals.models import MetricName, MetricSample, utc_now

logger = logging.getLogger(__name__)

OBSERVER_SCRIPT = """
(() => {
  if (window.__loadvitals) { return; }
  const state = { lcp: null, cls: null };
  window.__loadvitals = state;
  try {
    new PerformanceObserver((list) => {
      const entries = list.getEntries();
      const last = entries[entries.length - 1];
      if (last) { state.lcp = last.renderTime || last.startTime; }
    }).observe({ type: 'largest-contentful-paint', buffered: true });
  } catch (e) { /* entry type not supported by this browser */ }
  try {
    new PerformanceObserver((list) => {
      for (const entry of list.getEntries()) {
        if (!entry.hadRecentInput) { state.cls = (state.cls || 0) + entry.value; }
      }
    }).observe({ type: 'layout-shift', buffered: true });
  } catch (e) { /* entry type not supported by this browser */ }
})();
"""

READ_SCRIPT = r"""
() => {
  const nav = performance.getEntriesByType('navigation')[0] || null;
  const paints = {};
  for (const entry of performance.getEntriesByType('paint')) {
    paints[entry.name] = entry.startTime;
  }
  const resources = performance.getEntriesByType('resource');
  const kindOf = (entry) => {
    const path = entry.name.split('?')[0].split('#')[0].toLowerCase();
    if (/\.(png|jpe?g|gif|webp|avif|svg|ico|bmp)$/.test(path)) { return 'image'; }
    if (/\.css$/.test(path)) { return 'stylesheet'; }
    if (entry.initiatorType === 'script' || /\.m?js$/.test(path)) { return 'script'; }
    if (entry.initiatorType === 'img' || entry.initiatorType === 'image') { return 'image'; }
    return null;
  };
  const byType = { script: 0, stylesheet: 0, image: 0 };
  for (const entry of resources) {
    const kind = kindOf(entry);
    if (kind) { byType[kind] += entry.transferSize || 0; }
  }
  const vitals = window.__loadvitals || {};
  const memory = performance.memory || null;
  return {
    navigation: nav ? {
      startTime: nav.startTime,
      fetchStart: nav.fetchStart,
      responseStart: nav.responseStart,
      domContentLoadedEventEnd: nav.domContentLoadedEventEnd,
      loadEventEnd: nav.loadEventEnd,
    } : null,
    paints: paints,
    lcp: vitals.lcp === undefined ? null : vitals.lcp,
    cls: vitals.cls === undefined ? null : vitals.cls,
    resources: {
      count: resources.length,
      transferSize: resources.reduce((sum, r) => sum + (r.transferSize || 0), 0),
      byType: byType,
    },
    heapUsed: memory ? memory.usedJSHeapSize : null,
  };
}
"""

BYTES_PER_KB = 1024.0
BYTES_PER_MB = 1024.0 * 1024.0

# Resource kinds summed separately by the read script.
_TRANSFER_BY_TYPE = {
    MetricName.JS_TRANSFER: "script",
    MetricName.CSS_TRANSFER: "stylesheet",
    MetricName.IMAGE_TRANSFER: "image",
}


class MetricSource(Protocol):
    """The part of :class:`~loadvitals.driver.SessionDriver` the collector reads."""

    def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    def drain_page_errors(self) -> list[str]: ...


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _elapsed(end: float | None, start: float | None) -> float | None:
    """Difference of two timing marks; ``None`` if the end mark never fired."""
    if end is None or start is None or end <= 0:
        return None
    return max(end - start, 0.0)


def metrics_from_entries(
    raw: Mapping[str, Any] | None, error_count: int | None
) -> dict[MetricName, float | None]:
    """
    Map the raw payload of :data:`READ_SCRIPT` onto named metrics.

    Args:
        raw: Object returned by the in-page read script.
        error_count: Number of page errors drained from the session, or
            ``None`` if they could not be read.

    Returns:
        A value (or ``None``) for every sampled metric.
    """
    raw = raw or {}
    metrics: dict[MetricName, float | None] = {metric: None for metric in MetricName.sampled()}

    paints = raw.get("paints") or {}
    metrics[MetricName.FIRST_PAINT] = _number(paints.get("first-paint"))
    metrics[MetricName.FIRST_CONTENTFUL_PAINT] = _number(paints.get("first-contentful-paint"))
    metrics[MetricName.LARGEST_CONTENTFUL_PAINT] = _number(raw.get("lcp"))
    metrics[MetricName.CUMULATIVE_LAYOUT_SHIFT] = _number(raw.get("cls"))

    nav = raw.get("navigation")
    if nav:
        fetch_start = _number(nav.get("fetchStart"))
        metrics[MetricName.TIME_TO_FIRST_BYTE] = _elapsed(
            _number(nav.get("responseStart")), fetch_start
        )
        metrics[MetricName.DOM_CONTENT_LOADED] = _elapsed(
            _number(nav.get("domContentLoadedEventEnd")), _number(nav.get("startTime"))
        )
        metrics[MetricName.TOTAL_LOAD] = _elapsed(_number(nav.get("loadEventEnd")), fetch_start)

    resources = raw.get("resources")
    if resources:
        metrics[MetricName.RESOURCE_COUNT] = _number(resources.get("count"))
        transfer = _number(resources.get("transferSize"))
        metrics[MetricName.TRANSFER_SIZE] = transfer / BYTES_PER_KB if transfer is not None else None
        by_type = resources.get("byType") or {}
        for metric, kind in _TRANSFER_BY_TYPE.items():
            size = _number(by_type.get(kind))
            metrics[metric] = size / BYTES_PER_KB if size is not None else None

    heap = _number(raw.get("heapUsed"))
    metrics[MetricName.JS_HEAP] = heap / BYTES_PER_MB if heap is not None else None

    metrics[MetricName.ERROR_COUNT] = float(error_count) if error_count is not None else None
    return metrics


class MetricCollector:
    """Reads one :class:`~loadvitals.models.MetricSample` from a session."""

    def collect(self, source: MetricSource) -> dict[MetricName, float | None]:
        """
        Read every metric from the current page of *source*.

        Raises:
            ScriptError: If the read script itself fails in the page.
        """
        raw = source.evaluate(READ_SCRIPT)
        errors = source.drain_page_errors()
        metrics = metrics_from_entries(raw, len(errors))
        missing = [metric.value for metric, value in metrics.items() if value is None]
        if missing:
            logger.debug("Metrics not observable on this page: %s", ", ".join(missing))
        return metrics

    def sample(
        self,
        source: MetricSource,
        *,
        scenario_id: str,
        tier_id: str,
        session_index: int = 0,
    ) -> MetricSample:
        return MetricSample(
            scenario_id=scenario_id,
            tier_id=tier_id,
            session_index=session_index,
            timestamp=utc_now(),
            metrics=self.collect(source),
        )

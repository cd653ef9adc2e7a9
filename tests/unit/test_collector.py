"""
Unit tests for the metric collector.
"""

import pytest

from loadvitals.collector import READ_SCRIPT, MetricCollector, metrics_from_entries
from loadvitals.errors import ScriptError
from loadvitals.models import MetricName
from tests.fakes import FakeDriver, raw_payload


pytestmark = pytest.mark.unit


class TestMetricsFromEntries:

    def test_full_payload(self):
        # Arrange
        raw = raw_payload(
            lcp=1800.0,
            cls=0.12,
            response_start=85.0,
            load_event_end=1505.0,
            transfer_bytes=2048,
            heap_bytes=3 * 1024 * 1024,
        )

        # Act
        metrics = metrics_from_entries(raw, error_count=2)

        # Assert
        assert metrics[MetricName.LARGEST_CONTENTFUL_PAINT] == 1800.0
        assert metrics[MetricName.CUMULATIVE_LAYOUT_SHIFT] == pytest.approx(0.12)
        assert metrics[MetricName.FIRST_PAINT] == 300.0
        assert metrics[MetricName.FIRST_CONTENTFUL_PAINT] == 350.0
        assert metrics[MetricName.TIME_TO_FIRST_BYTE] == 80.0
        assert metrics[MetricName.DOM_CONTENT_LOADED] == 600.0
        assert metrics[MetricName.TOTAL_LOAD] == 1500.0
        assert metrics[MetricName.RESOURCE_COUNT] == 12.0
        assert metrics[MetricName.TRANSFER_SIZE] == 2.0
        assert metrics[MetricName.JS_HEAP] == 3.0
        assert metrics[MetricName.ERROR_COUNT] == 2.0

    def test_every_sampled_metric_present(self):
        metrics = metrics_from_entries(raw_payload(), error_count=0)

        assert set(metrics) == set(MetricName.sampled())

    def test_unobservable_metrics_are_none_not_zero(self):
        # Arrange: a browser without LCP, layout shift or memory APIs
        raw = raw_payload(lcp=None, cls=None, first_paint=None, heap_bytes=None)

        # Act
        metrics = metrics_from_entries(raw, error_count=0)

        # Assert
        assert metrics[MetricName.LARGEST_CONTENTFUL_PAINT] is None
        assert metrics[MetricName.CUMULATIVE_LAYOUT_SHIFT] is None
        assert metrics[MetricName.FIRST_PAINT] is None
        assert metrics[MetricName.JS_HEAP] is None
        assert metrics[MetricName.FIRST_CONTENTFUL_PAINT] == 350.0

    def test_transfer_split_by_resource_type(self):
        # Arrange
        raw = raw_payload(js_bytes=150 * 1024, css_bytes=512, image_bytes=0)

        # Act
        metrics = metrics_from_entries(raw, error_count=0)

        # Assert
        assert metrics[MetricName.JS_TRANSFER] == 150.0
        assert metrics[MetricName.CSS_TRANSFER] == 0.5
        assert metrics[MetricName.IMAGE_TRANSFER] == 0.0

    def test_transfer_by_type_missing_is_none(self):
        # Arrange: an older read payload without the per-type totals
        raw = raw_payload()
        del raw["resources"]["byType"]

        # Act
        metrics = metrics_from_entries(raw, error_count=0)

        # Assert
        assert metrics[MetricName.TRANSFER_SIZE] == 200.0
        assert metrics[MetricName.JS_TRANSFER] is None
        assert metrics[MetricName.CSS_TRANSFER] is None
        assert metrics[MetricName.IMAGE_TRANSFER] is None

    def test_read_script_sums_each_resource_type(self):
        assert "byType" in READ_SCRIPT
        for kind in ("script", "stylesheet", "image"):
            assert f"'{kind}'" in READ_SCRIPT

    def test_load_event_not_fired_is_none(self):
        raw = raw_payload(load_event_end=0)

        metrics = metrics_from_entries(raw, error_count=0)

        assert metrics[MetricName.TOTAL_LOAD] is None

    def test_empty_payload(self):
        metrics = metrics_from_entries(None, error_count=None)

        assert all(value is None for value in metrics.values())


class TestMetricCollector:

    def test_sample_is_tagged(self):
        # Arrange
        driver = FakeDriver(page_errors=["TypeError: x is undefined"])

        # Act
        sample = MetricCollector().sample(
            driver, scenario_id="homepage", tier_id="heavy", session_index=7
        )

        # Assert
        assert sample.scenario_id == "homepage"
        assert sample.tier_id == "heavy"
        assert sample.session_index == 7
        assert sample.get(MetricName.ERROR_COUNT) == 1.0
        assert ("evaluate", READ_SCRIPT) in driver.calls

    def test_script_error_propagates(self):
        driver = FakeDriver(evaluate_error=ScriptError("Page script failed"))

        with pytest.raises(ScriptError):
            MetricCollector().collect(driver)

"""
Unit tests for anomaly detection.

Tests the volume spike and price outlier rules and their thresholds.
"""

from datetime import timedelta

import pytest

from conftest import NOW
from spend_reconciler.core.anomaly import (
    AnomalyConfig,
    AnomalySeverity,
    compute_exact_percentile,
    compute_usage_anomalies,
    dedupe_messages,
    detect_price_outliers,
    detect_volume_spike,
    fmt_bucket_label,
    fmt_usd_maybe,
)
from spend_reconciler.storage.models import TimelineBucket, UsageRow


def buckets(counts):
    start = NOW - timedelta(hours=len(counts))
    return [
        TimelineBucket(bucket_start=start + timedelta(hours=i), requests=n, total_tokens=n * 10)
        for i, n in enumerate(counts)
    ]


def per_request_row(provider, requests, total, source="manual_per_request"):
    return UsageRow(
        provider=provider, api_key_ref="-", requests=requests,
        pricing_source=source, total_used_cost_usd=total,
    )


class TestVolumeSpike:
    """Test request spike detection over the timeline."""

    def test_spike_per_provider(self):
        """Peak 40 over two providers is 20/provider against a 2.5 median."""
        event = detect_volume_spike(buckets([5, 5, 5, 5, 5, 40]), 2, 24)
        assert event is not None
        assert event.rule == "volume_spike"
        assert event.severity == AnomalySeverity.WARNING
        assert event.observed_value == 20.0
        assert event.baseline_value == 2.5
        assert event.threshold == 12.5
        assert event.message == "Request spike around 11:00: 20.0/provider vs median 2.5/provider"

    def test_no_spike_below_ratio(self):
        assert detect_volume_spike(buckets([5, 5, 5, 5, 5, 20]), 1, 24) is None

    def test_too_few_active_buckets(self):
        assert detect_volume_spike(buckets([0, 0, 5, 0, 80]), 1, 24) is None

    def test_empty_buckets_are_ignored_for_the_median(self):
        event = detect_volume_spike(buckets([0, 0, 2, 2, 2, 2, 50]), 1, 24)
        assert event is not None
        assert event.baseline_value == 2.0

    def test_custom_ratio(self):
        config = AnomalyConfig(spike_ratio=2.0)
        assert detect_volume_spike(buckets([5, 5, 5, 5, 12]), 1, 24, config) is not None


class TestPriceOutliers:
    """Test $/request outliers among comparable rows."""

    def test_flags_expensive_provider(self):
        rows = [
            per_request_row("A", 10, 0.10),
            per_request_row("B", 10, 0.12),
            per_request_row("C", 10, 1.0),
        ]
        events = detect_price_outliers(rows)
        assert [e.row_key for e in events] == ["C::-"]
        assert events[0].baseline_value == pytest.approx(0.012)
        assert events[0].message == "High $/req: C at $0.100 vs median $0.012"

    def test_absolute_delta_is_required(self):
        rows = [
            per_request_row("A", 10, 0.10),
            per_request_row("B", 10, 0.12),
            per_request_row("C", 10, 0.5),
        ]
        assert detect_price_outliers(rows) == []

    def test_shared_account_rows_are_not_compared(self):
        rows = [
            per_request_row("A", 10, 0.10),
            per_request_row("B", 10, 50.0, source="provider_budget_api"),
        ]
        assert detect_price_outliers(rows) == []

    def test_low_volume_rows_are_skipped(self):
        rows = [
            per_request_row("A", 10, 0.10),
            per_request_row("B", 10, 0.12),
            per_request_row("C", 2, 2.0),
        ]
        assert detect_price_outliers(rows) == []


class TestCombined:
    """Test the combined detector output."""

    def test_messages_and_high_cost_keys(self):
        rows = [
            per_request_row("A", 10, 0.10),
            per_request_row("B", 10, 0.12),
            per_request_row("C", 10, 1.0),
        ]
        result = compute_usage_anomalies(rows, buckets([5, 5, 5, 5, 5, 200]), 24)
        assert [e.rule for e in result.events] == ["volume_spike", "price_outlier"]
        assert len(result.messages) == 2
        assert result.high_cost_row_keys == frozenset({"C::-"})
        assert {e.severity for e in result.events} == {AnomalySeverity.WARNING}
        assert list(AnomalySeverity) == [AnomalySeverity.WARNING]

    def test_nothing_to_report(self):
        result = compute_usage_anomalies([], [], 24)
        assert result.events == []
        assert result.messages == []

    def test_dedupe_numbers_repeats(self):
        assert dedupe_messages(["a", "b", "a", "a"]) == ["a", "b", "a (2)", "a (3)"]


class TestHelpers:
    """Test percentile and formatting helpers."""

    def test_percentile_interpolates(self):
        assert compute_exact_percentile([1, 2, 3, 4], 50) == 2.5
        assert compute_exact_percentile([7], 90) == 7

    def test_percentile_validation(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            compute_exact_percentile([], 50)
        with pytest.raises(ValueError, match="between 0 and 100"):
            compute_exact_percentile([1], 101)

    def test_bucket_labels(self):
        assert fmt_bucket_label(NOW, 24) == "12:00"
        assert fmt_bucket_label(NOW, 7 * 24) == "15-03"

    def test_usd_format(self):
        assert fmt_usd_maybe(None) == "-"
        assert fmt_usd_maybe(12.346) == "$12.35"
        assert fmt_usd_maybe(0.0123) == "$0.012"

    def test_config_validation(self):
        with pytest.raises(ValueError, match="spike_ratio"):
            AnomalyConfig(spike_ratio=0)
        with pytest.raises(ValueError, match="min_requests"):
            AnomalyConfig(min_requests=0)

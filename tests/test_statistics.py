"""
Tests for usage statistics assembly.
"""

import math
from datetime import timedelta

from conftest import NOW
from spend_reconciler.core.statistics import SpendInputs, build_timeline, build_usage_statistics
from spend_reconciler.storage.models import PricingMode, ProviderConfig, RequestRecord

SINCE = NOW - timedelta(hours=24)


def record(hours_ago: float, provider="A", key="k1", model="m1", origin="windows", tokens=100) -> RequestRecord:
    return RequestRecord(
        timestamp=NOW - timedelta(hours=hours_ago),
        provider=provider,
        api_key_ref=key,
        model=model,
        origin=origin,
        input_tokens=tokens // 2,
        output_tokens=tokens - tokens // 2,
        total_tokens=tokens,
    )


class TestTimeline:
    """Test bucket generation."""

    def test_hourly_buckets_cover_window(self):
        buckets = build_timeline([record(1.5), record(1.2), record(30)], SINCE, NOW, 24)
        assert len(buckets) == 24
        assert buckets[0].bucket_start == SINCE
        busy = [b for b in buckets if b.requests]
        assert len(busy) == 1
        assert busy[0].bucket_start == NOW - timedelta(hours=2)
        assert busy[0].total_tokens == 200

    def test_daily_buckets_for_long_windows(self):
        since = NOW - timedelta(days=7)
        buckets = build_timeline([record(50)], since, NOW, 7 * 24)
        assert buckets[0].bucket_start == since.replace(hour=0)
        assert sum(b.requests for b in buckets) == 1
        assert all(b.bucket_start.hour == 0 for b in buckets)


class TestUsageStatistics:
    """Test pricing and aggregation of request records."""

    def test_rows_priced_and_split_by_key(self):
        records = [record(1), record(2), record(3, key="k2"), record(30)]
        configs = {"A": ProviderConfig(
            name="A", manual_pricing_mode=PricingMode.PER_REQUEST, manual_pricing_amount_usd=0.01
        )}
        stats = build_usage_statistics(records, configs, SINCE, NOW)

        assert stats.window_hours == 24
        assert stats.summary.total_requests == 3
        rows = {r.api_key_ref: r for r in stats.summary.by_provider}
        assert rows["k1"].requests == 2
        assert math.isclose(rows["k1"].total_used_cost_usd, 0.02)
        assert math.isclose(rows["k2"].total_used_cost_usd, 0.01)
        assert rows["k1"].input_tokens == 100
        assert rows["k1"].pricing_source == "manual_per_request"

    def test_filters_apply_to_summary_not_catalog(self):
        records = [record(1), record(2, provider="B", model="m2", origin="linux")]
        stats = build_usage_statistics(records, {}, SINCE, NOW, providers=["B"])
        assert [r.provider for r in stats.summary.by_provider] == ["B"]
        assert stats.catalog.providers == ("A", "B")
        assert stats.catalog.origins == ("linux", "windows")

    def test_models_sorted_by_requests(self):
        records = [record(1, model="m2"), record(2, model="m2"), record(3, model="m1")]
        stats = build_usage_statistics(records, {}, SINCE, NOW)
        assert [m.model for m in stats.summary.by_model] == ["m2", "m1"]

    def test_tracked_spend_input(self):
        stats = build_usage_statistics(
            [record(1), record(2)], {}, SINCE, NOW, inputs=SpendInputs(tracked_usd={"A": 3.0})
        )
        row = stats.summary.by_provider[0]
        assert row.pricing_source == "provider_budget_api"
        assert row.total_used_cost_usd == 3.0

    def test_budget_only_provider_is_listed(self):
        stats = build_usage_statistics(
            [record(1)], {}, SINCE, NOW, inputs=SpendInputs(latest_day_usd={"Z": 4.0})
        )
        rows = {r.provider: r for r in stats.summary.by_provider}
        assert rows["Z"].requests == 0
        assert rows["Z"].pricing_source == "provider_budget_api_latest_day"
        assert rows["Z"].total_used_cost_usd == 4.0

    def test_unpriced_provider(self):
        stats = build_usage_statistics([record(1)], {}, SINCE, NOW)
        row = stats.summary.by_provider[0]
        assert row.pricing_source == "none"
        assert row.total_used_cost_usd is None

"""
Tests for stale-response suppression and refresh scheduling.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, FakeBackend
from spend_reconciler.core.sequencing import (
    GenerationCounter,
    RequestLogFeed,
    UsageStatisticsFeed,
    compute_active_refresh_delay,
    compute_idle_refresh_delay,
    merge_latest_rows,
    next_active_refresh_delay,
    next_idle_refresh_delay,
)
from spend_reconciler.storage.models import RequestRecord, UsageCatalog, UsageStatistics, UsageSummary


def stats(window_hours: int) -> UsageStatistics:
    return UsageStatistics(
        summary=UsageSummary(), catalog=UsageCatalog(), generated_at=NOW, window_hours=window_hours
    )


class GatedBackend(FakeBackend):
    """Answers each statistics request only once its gate is opened."""

    def __init__(self):
        super().__init__()
        self.gates = {}

    async def get_usage_statistics(self, hours, providers=None, models=None, origins=None):
        self._record("get_usage_statistics", hours)
        gate = self.gates.setdefault(hours, asyncio.Event())
        await gate.wait()
        return stats(hours)


class TestGenerationCounter:
    """Test generation bookkeeping."""

    def test_only_latest_is_current(self):
        counter = GenerationCounter()
        first = counter.issue("stats")
        second = counter.issue("stats")
        assert not counter.is_current("stats", first)
        assert counter.is_current("stats", second)

    def test_streams_are_independent(self):
        counter = GenerationCounter()
        a = counter.issue("a")
        counter.issue("b")
        assert counter.is_current("a", a)


class TestUsageStatisticsFeed:
    """Test that late responses never overwrite newer ones."""

    @pytest.mark.asyncio
    async def test_stale_response_is_dropped(self):
        backend = GatedBackend()
        feed = UsageStatisticsFeed(backend)

        slow = asyncio.ensure_future(feed.refresh(24))
        await asyncio.sleep(0)
        fast = asyncio.ensure_future(feed.refresh(48))
        await asyncio.sleep(0)

        backend.gates[48].set()
        assert (await fast).window_hours == 48
        backend.gates[24].set()
        assert await slow is None
        assert feed.latest.window_hours == 48

    @pytest.mark.asyncio
    async def test_single_refresh_applies(self):
        backend = FakeBackend(stats=stats(24))
        feed = UsageStatisticsFeed(backend)
        assert await feed.refresh(24, providers=["A"]) is backend.stats
        assert backend.calls == [("get_usage_statistics", 24, ["A"], None, None)]


class TestMergeLatestRows:
    """Test prepending freshly fetched records."""

    def record(self, minutes: int, model: str = "m1") -> RequestRecord:
        return RequestRecord(
            timestamp=NOW - timedelta(minutes=minutes), provider="A", api_key_ref="k1", model=model
        )

    def test_unseen_rows_go_first(self):
        existing = [self.record(10), self.record(20)]
        incoming = [self.record(1), self.record(10)]
        merged = merge_latest_rows(existing, incoming)
        assert [r.timestamp for r in merged] == [
            NOW - timedelta(minutes=1), NOW - timedelta(minutes=10), NOW - timedelta(minutes=20)
        ]

    def test_same_time_different_model_is_new(self):
        merged = merge_latest_rows([self.record(5)], [self.record(5, model="m2")])
        assert len(merged) == 2

    def test_incoming_duplicates_collapse(self):
        merged = merge_latest_rows([], [self.record(3), self.record(3)])
        assert len(merged) == 1


def request_at(minutes: int) -> RequestRecord:
    return RequestRecord(timestamp=NOW - timedelta(minutes=minutes), provider="A", api_key_ref="k1", model="m1")


class GatedRequestBackend(FakeBackend):
    """Holds each request log fetch until the gate for its limit opens."""

    def __init__(self, requests):
        super().__init__(requests=requests)
        self.gates = {}

    async def get_recent_requests(self, limit):
        gate = self.gates.setdefault(limit, asyncio.Event())
        await gate.wait()
        return await super().get_recent_requests(limit)


class TestRequestLogFeed:
    """Test full reloads and merge-latest top-ups of the request log."""

    @pytest.mark.asyncio
    async def test_reload_replaces_rows(self):
        backend = FakeBackend(requests=[request_at(20), request_at(1), request_at(10)])
        feed = RequestLogFeed(backend)
        rows = await feed.reload(2)
        assert [r.timestamp for r in rows] == [NOW - timedelta(minutes=1), NOW - timedelta(minutes=10)]

    @pytest.mark.asyncio
    async def test_top_up_never_truncates(self):
        backend = FakeBackend(requests=[request_at(10), request_at(20), request_at(30)])
        feed = RequestLogFeed(backend)
        await feed.reload(3)

        backend.requests.append(request_at(1))
        rows = await feed.merge_latest(2)
        assert [r.timestamp for r in rows] == [
            NOW - timedelta(minutes=m) for m in (1, 10, 20, 30)
        ]

    @pytest.mark.asyncio
    async def test_stale_top_up_is_dropped(self):
        backend = GatedRequestBackend([request_at(10), request_at(20)])
        feed = RequestLogFeed(backend)

        top_up = asyncio.ensure_future(feed.merge_latest(5))
        await asyncio.sleep(0)
        reload = asyncio.ensure_future(feed.reload(1))
        await asyncio.sleep(0)

        backend.gates[1].set()
        assert len(await reload) == 1
        backend.gates[5].set()
        assert await top_up is None
        assert [r.timestamp for r in feed.rows] == [NOW - timedelta(minutes=10)]


class TestRefreshDelays:
    """Test idle and active refresh timing."""

    def test_idle_before_half_hour(self):
        now = datetime(2024, 3, 15, 10, 5, 30, tzinfo=timezone.utc)
        assert compute_idle_refresh_delay(now, 0) == 24 * 60 + 30

    def test_idle_too_close_skips_to_next_boundary(self):
        now = datetime(2024, 3, 15, 10, 29, 30, tzinfo=timezone.utc)
        assert compute_idle_refresh_delay(now, -300) == 25 * 60 + 30

    def test_idle_after_half_hour_targets_top_of_hour(self):
        now = datetime(2024, 3, 15, 10, 45, 0, tzinfo=timezone.utc)
        assert compute_idle_refresh_delay(now, 60) == 16 * 60

    def test_idle_is_at_least_a_minute_away(self):
        now = datetime(2024, 3, 15, 10, 59, 30, tzinfo=timezone.utc)
        for jitter in (-300, 0, 300):
            assert compute_idle_refresh_delay(now, jitter) > 60

    def test_active_delay(self):
        assert compute_active_refresh_delay(0) == 300
        assert compute_active_refresh_delay(-60) == 240

    def test_randomized_bounds(self):
        assert 240 <= next_active_refresh_delay() <= 360
        delay = next_idle_refresh_delay(datetime(2024, 3, 15, 10, 5, tzinfo=timezone.utc))
        assert 60 < delay <= 30 * 60 + 300

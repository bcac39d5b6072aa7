"""
Unit tests for storage layer.

Tests schema creation, ledger insertion and the SQLite backend operations.
"""

import os
import sqlite3
import tempfile
from datetime import timedelta

import pytest

from conftest import NOW, package_period
from spend_reconciler.core.errors import TransportError
from spend_reconciler.storage.db import get_connection
from spend_reconciler.storage.models import GapFillMode, PricingMode, RequestRecord
from spend_reconciler.storage.repository import (
    SqliteBackend,
    initialize_schema,
    insert_request_record,
    insert_request_records,
    record_tracked_spend,
    set_provider_budget,
    upsert_provider,
)


def record(hours_ago: float, provider="A", key="k1", model="m1", tokens=100) -> RequestRecord:
    return RequestRecord(
        timestamp=NOW - timedelta(hours=hours_ago),
        provider=provider,
        api_key_ref=key,
        model=model,
        input_tokens=tokens // 2,
        output_tokens=tokens - tokens // 2,
        total_tokens=tokens,
    )


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "spend.db")
    initialize_schema(path)
    return path


@pytest.fixture
def sqlite_backend(db_path) -> SqliteBackend:
    return SqliteBackend(db_path, clock=lambda: NOW)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every table is created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "nested", "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
                assert {
                    "provider", "schedule_period", "usage_request",
                    "spend_day", "spend_manual_day", "provider_budget",
                } <= tables

                cursor = conn.execute("PRAGMA table_info(usage_request)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'timestamp', 'provider', 'api_key_ref', 'model', 'origin',
                    'session_id', 'input_tokens', 'output_tokens', 'total_tokens',
                ]
            finally:
                conn.close()

    def test_schema_is_idempotent(self, db_path):
        initialize_schema(db_path)
        initialize_schema(db_path)


class TestRequestLedger:
    """Test request record insertion."""

    def test_insert_registers_provider(self, db_path):
        insert_request_records([record(1), record(2, provider="B", key="k2")], db_path)
        conn = get_connection(db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM usage_request").fetchone()[0] == 2
            providers = conn.execute("SELECT name, api_key_ref FROM provider ORDER BY name").fetchall()
            assert providers == [("A", "k1"), ("B", "k2")]
        finally:
            conn.close()

    def test_timestamps_are_fixed_width_utc(self, db_path):
        insert_request_record(record(0), db_path)
        conn = get_connection(db_path)
        try:
            stored = conn.execute("SELECT timestamp FROM usage_request").fetchone()[0]
        finally:
            conn.close()
        assert stored == "2024-03-15T12:00:00.000000+00:00"

    def test_failed_batch_rolls_back(self, db_path):
        """A bad record aborts the whole batch."""
        bad = RequestRecord(timestamp=NOW, provider="A", api_key_ref="k1", model=None)
        with pytest.raises(sqlite3.IntegrityError):
            insert_request_records([record(1), bad], db_path)
        conn = get_connection(db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM usage_request").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM provider").fetchone()[0] == 0
        finally:
            conn.close()

    def test_empty_batch_is_a_no_op(self, db_path):
        insert_request_records([], db_path)

    def test_upsert_provider_changes_key(self, db_path):
        upsert_provider("A", "k1", db_path)
        upsert_provider("A", "k9", db_path)
        conn = get_connection(db_path)
        try:
            assert conn.execute("SELECT api_key_ref FROM provider WHERE name='A'").fetchone()[0] == "k9"
        finally:
            conn.close()


class TestProviderSettings:
    """Test pricing settings and timelines through the backend."""

    @pytest.mark.asyncio
    async def test_manual_pricing_and_gap_fill(self, sqlite_backend):
        await sqlite_backend.set_provider_manual_pricing("A", PricingMode.PER_REQUEST, 0.02)
        await sqlite_backend.set_provider_gap_fill("A", GapFillMode.PER_DAY_AVERAGE, 1.5)
        configs = await sqlite_backend.get_provider_configs()
        assert configs["A"].manual_pricing_mode == PricingMode.PER_REQUEST
        assert configs["A"].manual_pricing_amount_usd == 0.02
        assert configs["A"].gap_fill_mode == GapFillMode.PER_DAY_AVERAGE
        assert configs["A"].gap_fill_amount_usd == 1.5

    @pytest.mark.asyncio
    async def test_timeline_full_replace(self, sqlite_backend):
        later = package_period(25.0, NOW, period_id="p2")
        earlier = package_period(20.0, NOW - timedelta(days=30), NOW, period_id="p1")
        await sqlite_backend.set_provider_timeline("A", [later, earlier])

        periods = await sqlite_backend.get_provider_timeline("A")
        assert [p.id for p in periods] == ["p1", "p2"]
        assert periods[0].ended_at == NOW
        assert periods[1].ended_at is None

        await sqlite_backend.set_provider_timeline("A", [package_period(30.0, NOW)])
        periods = await sqlite_backend.get_provider_timeline("A")
        assert len(periods) == 1
        assert periods[0].id
        assert periods[0].amount_usd == 30.0

    @pytest.mark.asyncio
    async def test_configs_carry_periods(self, sqlite_backend):
        await sqlite_backend.set_provider_timeline("A", [package_period(20.0, NOW, period_id="p1")])
        configs = await sqlite_backend.get_provider_configs()
        assert [p.id for p in configs["A"].periods] == ["p1"]

    @pytest.mark.asyncio
    async def test_missing_schema_is_a_transport_error(self, tmp_path):
        backend = SqliteBackend(str(tmp_path / "blank.db"), clock=lambda: NOW)
        with pytest.raises(TransportError) as exc:
            await backend.get_provider_timeline("A")
        assert exc.value.operation == "get_provider_timeline"


class TestSpendHistory:
    """Test per-day history assembly and overrides."""

    @pytest.mark.asyncio
    async def test_tracked_day_and_override(self, db_path, sqlite_backend):
        insert_request_records([record(1), record(20), record(21)], db_path)
        record_tracked_spend("A", "2024-03-14", 10.0, db_path)

        history = await sqlite_backend.get_spend_history(3)
        assert [(e.provider, e.day_key) for e in history] == [("A", "2024-03-15"), ("A", "2024-03-14")]
        yesterday = history[1]
        assert yesterday.req_count == 2
        assert yesterday.tracked_total_usd == 10.0
        assert yesterday.source == "tracked"

        await sqlite_backend.set_spend_history_entry("A", "2024-03-14", total_used_usd=5.0)
        yesterday = (await sqlite_backend.get_spend_history(3))[1]
        assert yesterday.effective_total_usd == 15.0
        assert yesterday.source == "tracked+manual_total"

        await sqlite_backend.set_spend_history_entry("A", "2024-03-14")
        yesterday = (await sqlite_backend.get_spend_history(3))[1]
        assert yesterday.manual_total_usd is None
        assert yesterday.effective_total_usd == 10.0

    @pytest.mark.asyncio
    async def test_scheduled_package_per_day(self, sqlite_backend):
        start = NOW.replace(day=1, hour=0)
        await sqlite_backend.set_provider_timeline("A", [package_period(30.0, start)])

        history = await sqlite_backend.get_spend_history(2)
        by_day = {e.day_key: e for e in history}
        assert by_day["2024-03-14"].scheduled_total_usd == pytest.approx(1.0)
        # today only counts up to now
        assert by_day["2024-03-15"].scheduled_total_usd == pytest.approx(0.5)
        assert by_day["2024-03-14"].scheduled_package_total_usd == 30.0
        assert by_day["2024-03-14"].source == "scheduled_package_total"

    @pytest.mark.asyncio
    async def test_empty_days_are_omitted(self, sqlite_backend):
        upsert_provider("A", "k1", sqlite_backend.db_path)
        assert await sqlite_backend.get_spend_history(7) == []


class TestUsageStatistics:
    """Test priced statistics from the ledger."""

    @pytest.mark.asyncio
    async def test_per_request_pricing(self, db_path, sqlite_backend):
        insert_request_records([record(1), record(2), record(30)], db_path)
        await sqlite_backend.set_provider_manual_pricing("A", PricingMode.PER_REQUEST, 0.01)

        stats = await sqlite_backend.get_usage_statistics(24)
        assert stats.summary.total_requests == 2
        row = stats.summary.by_provider[0]
        assert row.pricing_source == "manual_per_request"
        assert row.total_used_cost_usd == pytest.approx(0.02)
        assert stats.generated_at == NOW

    @pytest.mark.asyncio
    async def test_tracked_spend_prorated_by_requests(self, db_path, sqlite_backend):
        # 2024-03-14 has two requests, one of them inside the 24h window
        insert_request_records([
            record(1, provider="B"),
            record(13, provider="B"),
            record(30, provider="B"),
        ], db_path)
        record_tracked_spend("B", "2024-03-14", 10.0, db_path)
        record_tracked_spend("B", "2024-03-15", 4.0, db_path)

        stats = await sqlite_backend.get_usage_statistics(24)
        row = stats.summary.by_provider[0]
        assert row.pricing_source == "provider_budget_api"
        assert row.total_used_cost_usd == pytest.approx(9.0)

    @pytest.mark.asyncio
    async def test_budget_only_provider(self, db_path, sqlite_backend):
        set_provider_budget("C", latest_day_spend_usd=3.0, db_path=db_path)
        stats = await sqlite_backend.get_usage_statistics(24)
        row = stats.summary.by_provider[0]
        assert row.provider == "C"
        assert row.pricing_source == "provider_budget_api_latest_day"
        assert row.total_used_cost_usd == 3.0

    @pytest.mark.asyncio
    async def test_manual_history_feeds_package_timeline(self, db_path, sqlite_backend):
        insert_request_records([record(1), record(2)], db_path)
        await sqlite_backend.set_provider_timeline("A", [package_period(30.0, NOW - timedelta(days=10))])
        await sqlite_backend.set_spend_history_entry("A", "2024-03-15", total_used_usd=2.0)

        stats = await sqlite_backend.get_usage_statistics(24)
        row = stats.summary.by_provider[0]
        assert row.pricing_source == "manual_package_timeline+manual_history"
        assert row.total_used_cost_usd == pytest.approx(3.0)


class TestRecentRequests:
    """Test the newest-first request log."""

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, db_path, sqlite_backend):
        insert_request_records([record(5), record(1), record(3, model="m2")], db_path)
        rows = await sqlite_backend.get_recent_requests(2)
        assert [r.timestamp for r in rows] == [NOW - timedelta(hours=1), NOW - timedelta(hours=3)]
        assert rows[1].model == "m2"
        assert rows[0].total_tokens == 100

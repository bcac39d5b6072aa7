"""
Repository pattern for data access.

SQLite implementation of the engine backend: request telemetry, provider
pricing settings, schedule periods and per-day spend.
"""

import asyncio
import logging
import sqlite3
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .backend import Backend
from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    GapFillMode,
    HistoryEntry,
    PricingMode,
    ProviderConfig,
    RequestRecord,
    SchedulePeriod,
    UsageStatistics,
    parse_instant,
    utc,
)
from ..core.errors import TransportError
from ..core.history import derive_history_entry
from ..core.resolution import ManualDay, day_key, day_range, package_total_in_window
from ..core.statistics import SpendInputs, build_usage_statistics
from ..core.timeline import select_active_period

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS provider (
        name TEXT PRIMARY KEY,
        api_key_ref TEXT NOT NULL DEFAULT '-',
        manual_pricing_mode TEXT NOT NULL DEFAULT 'none',
        manual_pricing_amount_usd REAL,
        package_expires_at TEXT,
        gap_fill_mode TEXT NOT NULL DEFAULT 'none',
        gap_fill_amount_usd REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schedule_period (
        id TEXT NOT NULL,
        provider TEXT NOT NULL REFERENCES provider(name) ON DELETE CASCADE,
        mode TEXT NOT NULL,
        amount_usd REAL NOT NULL,
        api_key_ref TEXT NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        PRIMARY KEY (provider, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_request (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        provider TEXT NOT NULL,
        api_key_ref TEXT NOT NULL DEFAULT '-',
        model TEXT NOT NULL,
        origin TEXT NOT NULL,
        session_id TEXT,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_request_ts ON usage_request (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS spend_day (
        provider TEXT NOT NULL,
        day_key TEXT NOT NULL,
        tracked_usd REAL NOT NULL,
        PRIMARY KEY (provider, day_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS spend_manual_day (
        provider TEXT NOT NULL,
        day_key TEXT NOT NULL,
        manual_total_usd REAL,
        manual_usd_per_req REAL,
        PRIMARY KEY (provider, day_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_budget (
        provider TEXT PRIMARY KEY,
        latest_day_spend_usd REAL,
        token_rate_usd REAL,
        updated_at TEXT NOT NULL
    )
    """,
)


def _ts(value: datetime) -> str:
    """Fixed-width UTC text so stored instants sort lexically."""
    return utc(value).isoformat(timespec="microseconds")


def _opt_ts(value: Optional[datetime]) -> Optional[str]:
    return _ts(value) if value is not None else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table if it doesn't exist.

    usage_request is an append-only ledger; rows are never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


def _ensure_provider(conn: sqlite3.Connection, name: str, api_key_ref: Optional[str] = None) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO provider (name, api_key_ref) VALUES (?, ?)",
        (name, (api_key_ref or "").strip() or "-"),
    )


def upsert_provider(name: str, api_key_ref: str = "-", db_path: str = DEFAULT_DB_PATH) -> None:
    """Register a provider or change the upstream key it bills through."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO provider (name, api_key_ref) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET api_key_ref = excluded.api_key_ref
        """, (name, api_key_ref.strip() or "-"))
        conn.commit()
    finally:
        conn.close()


def insert_request_records(records: Sequence[RequestRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append request records atomically to the ledger.

    Unknown providers are registered with the record's key.

    Args:
        records: Records to append
        db_path: Path to SQLite database file
    """
    if not records:
        return
    with transaction(db_path) as conn:
        for record in records:
            _ensure_provider(conn, record.provider, record.api_key_ref)
            conn.execute("""
                INSERT INTO usage_request
                (timestamp, provider, api_key_ref, model, origin, session_id,
                 input_tokens, output_tokens, total_tokens)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                _ts(record.timestamp),
                record.provider,
                record.api_key_ref or "-",
                record.model,
                record.origin,
                record.session_id,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
            ))


def insert_request_record(record: RequestRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    insert_request_records([record], db_path)


def record_tracked_spend(provider: str, day: str, amount_usd: float, db_path: str = DEFAULT_DB_PATH) -> None:
    """Store the budget-API spend reported for one provider-day."""
    conn = get_connection(db_path)
    try:
        _ensure_provider(conn, provider)
        conn.execute("""
            INSERT INTO spend_day (provider, day_key, tracked_usd) VALUES (?, ?, ?)
            ON CONFLICT(provider, day_key) DO UPDATE SET tracked_usd = excluded.tracked_usd
        """, (provider, day, amount_usd))
        conn.commit()
    finally:
        conn.close()


def set_provider_budget(
    provider: str,
    latest_day_spend_usd: Optional[float] = None,
    token_rate_usd: Optional[float] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> None:
    """Store the account-level latest-day spend and per-token rate."""
    conn = get_connection(db_path)
    try:
        _ensure_provider(conn, provider)
        conn.execute("""
            INSERT INTO provider_budget (provider, latest_day_spend_usd, token_rate_usd, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(provider) DO UPDATE SET
                latest_day_spend_usd = excluded.latest_day_spend_usd,
                token_rate_usd = excluded.token_rate_usd,
                updated_at = excluded.updated_at
        """, (provider, latest_day_spend_usd, token_rate_usd, _ts(datetime.now(timezone.utc))))
        conn.commit()
    finally:
        conn.close()


def _row_to_period(row: Tuple) -> SchedulePeriod:
    return SchedulePeriod(
        id=row[0],
        mode=PricingMode(row[1]),
        amount_usd=float(row[2]),
        api_key_ref=row[3],
        started_at=parse_instant(row[4]),
        ended_at=parse_instant(row[5]),
    )


def _row_to_record(row: Tuple) -> RequestRecord:
    return RequestRecord(
        timestamp=parse_instant(row[0]),
        provider=row[1],
        api_key_ref=row[2],
        model=row[3],
        origin=row[4],
        session_id=row[5],
        input_tokens=row[6],
        output_tokens=row[7],
        total_tokens=row[8],
    )


def _tracked_in_window(
    day_totals: Dict[str, float],
    requests_by_day: Dict[str, int],
    in_window_by_day: Dict[str, int],
    since: datetime,
    now: datetime,
) -> Optional[float]:
    """Share of tracked day spend inside [since, now).

    Prorated by requests inside the window, or by time for days without
    requests.
    """
    total = 0.0
    seen = False
    for key, amount in day_totals.items():
        day_start, day_end = day_range(key)
        lo, hi = max(day_start, since), min(day_end, now)
        if hi <= lo:
            continue
        seen = True
        day_requests = requests_by_day.get(key, 0)
        if day_requests > 0:
            total += amount * min(1.0, in_window_by_day.get(key, 0) / day_requests)
        else:
            total += amount * (hi - lo).total_seconds() / (day_end - day_start).total_seconds()
    return total if seen else None


class SqliteBackend(Backend):
    """Backend over a local SQLite file.

    Each call opens its own connection on a worker thread; any sqlite3.Error
    surfaces as TransportError with nothing committed.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the backend with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Returns the current instant; defaults to UTC now
        """
        self.db_path = db_path
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _run(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.error("%s failed: %s", operation, e)
            raise TransportError(operation, str(e), e) from e

    def _load_configs(self, conn: sqlite3.Connection) -> Dict[str, ProviderConfig]:
        periods: Dict[str, List[SchedulePeriod]] = defaultdict(list)
        cursor = conn.execute("""
            SELECT provider, id, mode, amount_usd, api_key_ref, started_at, ended_at
            FROM schedule_period ORDER BY started_at, ended_at, id
        """)
        for row in cursor.fetchall():
            periods[row[0]].append(_row_to_period(row[1:]))

        configs = {}
        cursor = conn.execute("""
            SELECT name, api_key_ref, manual_pricing_mode, manual_pricing_amount_usd,
                   package_expires_at, gap_fill_mode, gap_fill_amount_usd
            FROM provider ORDER BY name
        """)
        for row in cursor.fetchall():
            configs[row[0]] = ProviderConfig(
                name=row[0],
                api_key_ref=row[1],
                manual_pricing_mode=PricingMode(row[2]),
                manual_pricing_amount_usd=row[3],
                package_expires_at=parse_instant(row[4]),
                gap_fill_mode=GapFillMode(row[5]),
                gap_fill_amount_usd=row[6],
                periods=tuple(periods.get(row[0], ())),
            )
        return configs

    def _provider_configs(self) -> Dict[str, ProviderConfig]:
        conn = get_connection(self.db_path)
        try:
            return self._load_configs(conn)
        finally:
            conn.close()

    async def get_provider_configs(self) -> Dict[str, ProviderConfig]:
        return await self._run("get_provider_configs", self._provider_configs)

    def _timeline(self, provider: str) -> List[SchedulePeriod]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, mode, amount_usd, api_key_ref, started_at, ended_at
                FROM schedule_period WHERE provider = ?
                ORDER BY started_at, ended_at, id
            """, (provider,))
            return [_row_to_period(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def get_provider_timeline(self, provider: str) -> List[SchedulePeriod]:
        return await self._run("get_provider_timeline", self._timeline, provider)

    def _replace_timeline(self, provider: str, periods: Sequence[SchedulePeriod]) -> None:
        with transaction(self.db_path) as conn:
            _ensure_provider(conn, provider)
            conn.execute("DELETE FROM schedule_period WHERE provider = ?", (provider,))
            for period in periods:
                conn.execute("""
                    INSERT INTO schedule_period
                    (id, provider, mode, amount_usd, api_key_ref, started_at, ended_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    period.id or uuid.uuid4().hex,
                    provider,
                    period.mode.value,
                    period.amount_usd,
                    period.api_key_ref,
                    _ts(period.started_at),
                    _opt_ts(period.ended_at),
                ))

    async def set_provider_timeline(self, provider: str, periods: Sequence[SchedulePeriod]) -> None:
        await self._run("set_provider_timeline", self._replace_timeline, provider, list(periods))

    def _update_provider(self, provider: str, assignments: str, params: Tuple) -> None:
        conn = get_connection(self.db_path)
        try:
            _ensure_provider(conn, provider)
            conn.execute(f"UPDATE provider SET {assignments} WHERE name = ?", params + (provider,))
            conn.commit()
        finally:
            conn.close()

    async def set_provider_manual_pricing(
        self,
        provider: str,
        mode: PricingMode,
        amount_usd: Optional[float],
        package_expires_at: Optional[datetime] = None,
    ) -> None:
        await self._run(
            "set_provider_manual_pricing",
            self._update_provider,
            provider,
            "manual_pricing_mode = ?, manual_pricing_amount_usd = ?, package_expires_at = ?",
            (mode.value, amount_usd, _opt_ts(package_expires_at)),
        )

    async def set_provider_gap_fill(
        self,
        provider: str,
        mode: GapFillMode,
        amount_usd: Optional[float] = None,
    ) -> None:
        await self._run(
            "set_provider_gap_fill",
            self._update_provider,
            provider,
            "gap_fill_mode = ?, gap_fill_amount_usd = ?",
            (mode.value, amount_usd),
        )

    def _set_manual_day(self, provider: str, day: str, total_used_usd: Optional[float],
                        usd_per_req: Optional[float]) -> None:
        conn = get_connection(self.db_path)
        try:
            if total_used_usd is None and usd_per_req is None:
                conn.execute(
                    "DELETE FROM spend_manual_day WHERE provider = ? AND day_key = ?",
                    (provider, day),
                )
            else:
                _ensure_provider(conn, provider)
                conn.execute("""
                    INSERT INTO spend_manual_day (provider, day_key, manual_total_usd, manual_usd_per_req)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(provider, day_key) DO UPDATE SET
                        manual_total_usd = excluded.manual_total_usd,
                        manual_usd_per_req = excluded.manual_usd_per_req
                """, (provider, day, total_used_usd, usd_per_req))
            conn.commit()
        finally:
            conn.close()

    async def set_spend_history_entry(
        self,
        provider: str,
        day_key: str,
        total_used_usd: Optional[float] = None,
        usd_per_req: Optional[float] = None,
    ) -> None:
        await self._run(
            "set_spend_history_entry", self._set_manual_day, provider, day_key, total_used_usd, usd_per_req
        )

    def _history(self, days: int) -> List[HistoryEntry]:
        now = utc(self.clock())
        first_day = (now - timedelta(days=max(1, days) - 1)).date().isoformat()
        conn = get_connection(self.db_path)
        try:
            configs = self._load_configs(conn)
            usage: Dict[Tuple[str, str], Tuple[int, int]] = {}
            cursor = conn.execute("""
                SELECT provider, substr(timestamp, 1, 10) AS day, COUNT(*), SUM(total_tokens)
                FROM usage_request WHERE timestamp >= ?
                GROUP BY provider, day
            """, (first_day,))
            for row in cursor.fetchall():
                usage[(row[0], row[1])] = (row[2], row[3] or 0)
            tracked = {
                (row[0], row[1]): row[2]
                for row in conn.execute(
                    "SELECT provider, day_key, tracked_usd FROM spend_day WHERE day_key >= ?", (first_day,)
                ).fetchall()
            }
            manual = {
                (row[0], row[1]): (row[2], row[3])
                for row in conn.execute("""
                    SELECT provider, day_key, manual_total_usd, manual_usd_per_req
                    FROM spend_manual_day WHERE day_key >= ?
                """, (first_day,)).fetchall()
            }
        finally:
            conn.close()

        day_keys = [(now - timedelta(days=offset)).date().isoformat() for offset in range(max(1, days))]
        entries = []
        for provider in sorted(set(configs) | {p for p, _ in usage} | {p for p, _ in tracked}):
            periods = configs[provider].periods if provider in configs else ()
            for day in day_keys:
                day_start, day_end = day_range(day)
                scheduled = package_total_in_window(periods, day_start, min(day_end, now))
                active = select_active_period(periods, day_start, PricingMode.PACKAGE_TOTAL)
                req_count, tokens = usage.get((provider, day), (0, 0))
                manual_total, manual_per_req = manual.get((provider, day), (None, None))
                tracked_total = tracked.get((provider, day))
                if not (req_count or tracked_total or manual_total or manual_per_req or scheduled > 0):
                    continue
                entries.append(derive_history_entry(HistoryEntry(
                    provider=provider,
                    day_key=day,
                    req_count=req_count,
                    total_tokens=tokens,
                    tracked_total_usd=tracked_total,
                    scheduled_total_usd=scheduled if scheduled > 0 else None,
                    scheduled_package_total_usd=active.amount_usd if active is not None else None,
                    manual_total_usd=manual_total,
                    manual_usd_per_req=manual_per_req,
                )))
        entries.sort(key=lambda e: (e.day_key, e.provider), reverse=True)
        return entries

    async def get_spend_history(self, days: int) -> List[HistoryEntry]:
        return await self._run("get_spend_history", self._history, days)

    def _statistics(self, hours: int, providers, models, origins) -> UsageStatistics:
        now = utc(self.clock())
        since = now - timedelta(hours=hours)
        first_day = since.date().isoformat()
        conn = get_connection(self.db_path)
        try:
            configs = self._load_configs(conn)
            cursor = conn.execute("""
                SELECT timestamp, provider, api_key_ref, model, origin, session_id,
                       input_tokens, output_tokens, total_tokens
                FROM usage_request WHERE timestamp >= ? AND timestamp < ?
                ORDER BY timestamp
            """, (first_day, _ts(now)))
            records = [_row_to_record(row) for row in cursor.fetchall()]
            manual_days: Dict[str, List[ManualDay]] = defaultdict(list)
            for row in conn.execute("""
                SELECT provider, day_key, manual_total_usd, manual_usd_per_req
                FROM spend_manual_day WHERE day_key >= ?
            """, (first_day,)).fetchall():
                manual_days[row[0]].append(ManualDay(row[1], row[2], row[3]))
            tracked_days: Dict[str, Dict[str, float]] = defaultdict(dict)
            for row in conn.execute(
                "SELECT provider, day_key, tracked_usd FROM spend_day WHERE day_key >= ?", (first_day,)
            ).fetchall():
                tracked_days[row[0]][row[1]] = row[2]
            budgets = {
                row[0]: (row[1], row[2])
                for row in conn.execute(
                    "SELECT provider, latest_day_spend_usd, token_rate_usd FROM provider_budget"
                ).fetchall()
            }
        finally:
            conn.close()

        requests_by_day: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        in_window_by_day: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for record in records:
            key = day_key(record.timestamp)
            requests_by_day[record.provider][key] += 1
            if utc(record.timestamp) >= since:
                in_window_by_day[record.provider][key] += 1

        tracked_usd = {}
        for provider, day_totals in tracked_days.items():
            value = _tracked_in_window(
                day_totals, requests_by_day.get(provider, {}), in_window_by_day.get(provider, {}), since, now
            )
            if value is not None:
                tracked_usd[provider] = value

        inputs = SpendInputs(
            manual_days={p: tuple(days) for p, days in manual_days.items()},
            tracked_usd=tracked_usd,
            latest_day_usd={p: b[0] for p, b in budgets.items() if b[0] is not None},
            token_rate_usd={p: b[1] for p, b in budgets.items() if b[1] is not None},
            requests_by_day={p: dict(counts) for p, counts in requests_by_day.items()},
        )
        return build_usage_statistics(records, configs, since, now, inputs, providers, models, origins)

    async def get_usage_statistics(
        self,
        hours: int,
        providers: Optional[Sequence[str]] = None,
        models: Optional[Sequence[str]] = None,
        origins: Optional[Sequence[str]] = None,
    ) -> UsageStatistics:
        return await self._run("get_usage_statistics", self._statistics, hours, providers, models, origins)

    def _recent_requests(self, limit: int) -> List[RequestRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT timestamp, provider, api_key_ref, model, origin, session_id,
                       input_tokens, output_tokens, total_tokens
                FROM usage_request ORDER BY timestamp DESC, id DESC LIMIT ?
            """, (limit,))
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def get_recent_requests(self, limit: int) -> List[RequestRecord]:
        return await self._run("get_recent_requests", self._recent_requests, limit)

"""
Stale-response suppression and background refresh helpers.

Each logical fetch stream carries a generation counter; a result is applied
only if it belongs to the latest generation issued for its stream.
"""

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from ..storage.backend import Backend
from ..storage.models import RequestRecord, UsageStatistics, utc

logger = logging.getLogger(__name__)

HALF_HOUR_SECONDS = 30 * 60
MIN_IDLE_LEAD_SECONDS = 60
ACTIVE_BASE_SECONDS = 5 * 60


class GenerationCounter:
    """Monotonic generation number per stream."""

    def __init__(self):
        self._latest: Dict[str, int] = {}

    def issue(self, stream: str) -> int:
        generation = self._latest.get(stream, 0) + 1
        self._latest[stream] = generation
        return generation

    def is_current(self, stream: str, generation: int) -> bool:
        return self._latest.get(stream) == generation


def merge_latest_rows(
    existing: Sequence[RequestRecord],
    incoming: Sequence[RequestRecord],
) -> List[RequestRecord]:
    """Prepend unseen incoming rows; already-loaded rows are kept as they are."""
    seen = {row.identity for row in existing}
    fresh = []
    for row in incoming:
        if row.identity in seen:
            continue
        seen.add(row.identity)
        fresh.append(row)
    return fresh + list(existing)


class UsageStatisticsFeed:
    """Fetches usage statistics and keeps only the latest response."""

    STREAM = "usage_statistics"

    def __init__(self, backend: Backend, counter: Optional[GenerationCounter] = None):
        self.backend = backend
        self.counter = counter or GenerationCounter()
        self.latest: Optional[UsageStatistics] = None

    async def refresh(
        self,
        hours: int,
        providers: Optional[Sequence[str]] = None,
        models: Optional[Sequence[str]] = None,
        origins: Optional[Sequence[str]] = None,
    ) -> Optional[UsageStatistics]:
        """Fetch and apply statistics.

        Returns:
            The applied statistics, or None if a newer fetch superseded this one
        """
        generation = self.counter.issue(self.STREAM)
        stats = await self.backend.get_usage_statistics(hours, providers, models, origins)
        if not self.counter.is_current(self.STREAM, generation):
            logger.debug("Dropping stale usage statistics (generation %d)", generation)
            return None
        self.latest = stats
        return stats


class RequestLogFeed:
    """Newest-first request log with full reloads and merge-latest top-ups.

    Both paths share one stream, so a reload issued after a top-up wins and
    a stale top-up never lands on fresher rows.
    """

    STREAM = "request_log"

    def __init__(self, backend: Backend, counter: Optional[GenerationCounter] = None):
        self.backend = backend
        self.counter = counter or GenerationCounter()
        self.rows: List[RequestRecord] = []

    async def reload(self, limit: int) -> Optional[List[RequestRecord]]:
        """Replace the loaded rows with the newest ``limit`` records."""
        generation = self.counter.issue(self.STREAM)
        rows = await self.backend.get_recent_requests(limit)
        if not self.counter.is_current(self.STREAM, generation):
            logger.debug("Dropping stale request log reload (generation %d)", generation)
            return None
        self.rows = list(rows)
        return self.rows

    async def merge_latest(self, limit: int) -> Optional[List[RequestRecord]]:
        """Prepend unseen rows from the newest ``limit``; never truncates."""
        generation = self.counter.issue(self.STREAM)
        incoming = await self.backend.get_recent_requests(limit)
        if not self.counter.is_current(self.STREAM, generation):
            logger.debug("Dropping stale request log top-up (generation %d)", generation)
            return None
        self.rows = merge_latest_rows(self.rows, incoming)
        return self.rows


def compute_idle_refresh_delay(now: datetime, jitter_seconds: float) -> float:
    """Seconds until the next half-hour boundary plus jitter, at least 60s away."""
    now = utc(now)
    boundary = now.replace(second=0, microsecond=0)
    if now.minute < 30:
        boundary = boundary.replace(minute=30)
    else:
        boundary = boundary.replace(minute=0) + timedelta(hours=1)
    target = boundary + timedelta(seconds=jitter_seconds)
    min_target = now + timedelta(seconds=MIN_IDLE_LEAD_SECONDS)
    while target <= min_target:
        target += timedelta(seconds=HALF_HOUR_SECONDS)
    return (target - now).total_seconds()


def compute_active_refresh_delay(jitter_seconds: float) -> float:
    return ACTIVE_BASE_SECONDS + jitter_seconds


def next_idle_refresh_delay(now: Optional[datetime] = None) -> float:
    """Idle delay with up to five minutes of jitter either way."""
    jitter = random.uniform(-5, 5) * 60
    return compute_idle_refresh_delay(now or datetime.now(timezone.utc), jitter)


def next_active_refresh_delay() -> float:
    return compute_active_refresh_delay(random.uniform(-1, 1) * 60)

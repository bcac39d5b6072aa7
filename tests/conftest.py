"""
Shared fixtures: an in-memory backend that records every call.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import pytest

from spend_reconciler.core.currency import FxRateTable
from spend_reconciler.core.errors import TransportError
from spend_reconciler.storage.backend import Backend
from spend_reconciler.storage.models import (
    HistoryEntry,
    PricingMode,
    ProviderConfig,
    RequestRecord,
    SchedulePeriod,
    UsageStatistics,
)
from spend_reconciler.storage.prefs import PrefsStore

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeBackend(Backend):
    """Backend double: state lives in dicts, failures are opt-in per operation."""

    def __init__(
        self,
        configs: Optional[Dict[str, ProviderConfig]] = None,
        timelines: Optional[Dict[str, List[SchedulePeriod]]] = None,
        history: Optional[List[HistoryEntry]] = None,
        stats: Optional[UsageStatistics] = None,
        requests: Optional[List[RequestRecord]] = None,
    ):
        self.configs = dict(configs or {})
        self.timelines = {name: list(periods) for name, periods in (timelines or {}).items()}
        self.history = list(history or [])
        self.stats = stats
        self.requests = list(requests or [])
        self.calls: List[tuple] = []
        self.fail = set()

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation,) + args)
        if operation in self.fail:
            raise TransportError(operation, "backend unavailable")

    def writes(self) -> List[tuple]:
        return [call for call in self.calls if call[0].startswith("set_")]

    def _config(self, provider: str) -> ProviderConfig:
        return self.configs.get(provider) or ProviderConfig(name=provider)

    async def get_usage_statistics(self, hours, providers=None, models=None, origins=None):
        self._record("get_usage_statistics", hours, providers, models, origins)
        return self.stats

    async def get_provider_timeline(self, provider: str) -> List[SchedulePeriod]:
        self._record("get_provider_timeline", provider)
        return list(self.timelines.get(provider, []))

    async def set_provider_timeline(self, provider: str, periods: Sequence[SchedulePeriod]) -> None:
        self._record("set_provider_timeline", provider, list(periods))
        self.timelines[provider] = list(periods)

    async def set_provider_manual_pricing(self, provider, mode, amount_usd, package_expires_at=None):
        self._record("set_provider_manual_pricing", provider, mode, amount_usd, package_expires_at)
        self.configs[provider] = replace(
            self._config(provider),
            manual_pricing_mode=mode,
            manual_pricing_amount_usd=amount_usd,
            package_expires_at=package_expires_at,
        )

    async def set_provider_gap_fill(self, provider, mode, amount_usd=None):
        self._record("set_provider_gap_fill", provider, mode, amount_usd)
        self.configs[provider] = replace(self._config(provider), gap_fill_mode=mode, gap_fill_amount_usd=amount_usd)

    async def get_spend_history(self, days: int) -> List[HistoryEntry]:
        self._record("get_spend_history", days)
        return list(self.history)

    async def set_spend_history_entry(self, provider, day_key, total_used_usd=None, usd_per_req=None):
        self._record("set_spend_history_entry", provider, day_key, total_used_usd, usd_per_req)

    async def get_provider_configs(self) -> Dict[str, ProviderConfig]:
        self._record("get_provider_configs")
        return {
            name: replace(cfg, periods=tuple(self.timelines.get(name, cfg.periods)))
            for name, cfg in self.configs.items()
        }

    async def get_recent_requests(self, limit: int) -> List[RequestRecord]:
        self._record("get_recent_requests", limit)
        newest = sorted(self.requests, key=lambda r: r.timestamp, reverse=True)
        return newest[:limit]


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fx_table() -> FxRateTable:
    return FxRateTable(date="2024-03-15", rates={"USD": 1.0, "CNY": 7.2, "EUR": 0.9})


@pytest.fixture
def prefs(fx_table) -> PrefsStore:
    store = PrefsStore().init(load=lambda: None)
    store.set_fx_table(fx_table)
    return store


def package_period(amount, start, end=None, api_key_ref="-", period_id=None) -> SchedulePeriod:
    return SchedulePeriod(
        id=period_id,
        mode=PricingMode.PACKAGE_TOTAL,
        amount_usd=amount,
        api_key_ref=api_key_ref,
        started_at=start,
        ended_at=end,
    )

"""
Persistence/telemetry backend boundary.

The engine talks to its backend only through these operations. Every call may
fail; implementations raise TransportError and make no state change.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .models import (
    GapFillMode,
    HistoryEntry,
    PricingMode,
    ProviderConfig,
    RequestRecord,
    SchedulePeriod,
    UsageStatistics,
)


class Backend(ABC):
    """Abstract persistence/telemetry collaborator."""

    @abstractmethod
    async def get_usage_statistics(
        self,
        hours: int,
        providers: Optional[Sequence[str]] = None,
        models: Optional[Sequence[str]] = None,
        origins: Optional[Sequence[str]] = None,
    ) -> UsageStatistics:
        """Aggregated, priced usage for the trailing ``hours`` window."""

    @abstractmethod
    async def get_provider_timeline(self, provider: str) -> List[SchedulePeriod]:
        """All schedule periods stored for a provider."""

    @abstractmethod
    async def set_provider_timeline(self, provider: str, periods: Sequence[SchedulePeriod]) -> None:
        """Replace a provider's periods; omitted periods are deleted."""

    @abstractmethod
    async def set_provider_manual_pricing(
        self,
        provider: str,
        mode: PricingMode,
        amount_usd: Optional[float],
        package_expires_at: Optional[datetime] = None,
    ) -> None:
        """Persist the manual pricing mode and amount for a provider."""

    @abstractmethod
    async def set_provider_gap_fill(
        self,
        provider: str,
        mode: GapFillMode,
        amount_usd: Optional[float] = None,
    ) -> None:
        """Persist the gap-fill fallback for a provider."""

    @abstractmethod
    async def get_spend_history(self, days: int) -> List[HistoryEntry]:
        """Per-provider, per-day spend history for the last ``days`` days."""

    @abstractmethod
    async def set_spend_history_entry(
        self,
        provider: str,
        day_key: str,
        total_used_usd: Optional[float] = None,
        usd_per_req: Optional[float] = None,
    ) -> None:
        """Set or clear the manual override for one provider-day."""

    @abstractmethod
    async def get_provider_configs(self) -> Dict[str, ProviderConfig]:
        """Managed providers and their persisted pricing settings."""

    @abstractmethod
    async def get_recent_requests(self, limit: int) -> List[RequestRecord]:
        """The newest ``limit`` request records, newest first."""

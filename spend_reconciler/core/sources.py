"""
Pricing source taxonomy.

A closed set of known ``pricing_source`` kinds plus an explicit fallback for
labels this engine does not recognize. Each kind belongs to a precedence tier
and a human display category.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional


class PricingSource(Enum):
    """Known pricing source labels emitted by the resolution engine."""
    NONE = "none"
    MANUAL_PER_REQUEST = "manual_per_request"
    MANUAL_PER_REQUEST_TIMELINE = "manual_per_request_timeline"
    MANUAL_PACKAGE_TOTAL = "manual_package_total"
    MANUAL_PACKAGE_TIMELINE = "manual_package_timeline"
    MANUAL_PACKAGE_TIMELINE_WITH_HISTORY = "manual_package_timeline+manual_history"
    MANUAL_HISTORY = "manual_history"
    TOKEN_RATE = "token_rate"
    PROVIDER_TOKEN_RATE = "provider_token_rate"
    PROVIDER_BUDGET_API = "provider_budget_api"
    PROVIDER_BUDGET_API_WITH_HISTORY = "provider_budget_api+manual_history"
    PROVIDER_BUDGET_API_LATEST_DAY = "provider_budget_api_latest_day"
    GAP_FILL_PER_REQUEST = "gap_fill_per_request"
    GAP_FILL_TOTAL = "gap_fill_total"
    GAP_FILL_PER_DAY_AVERAGE = "gap_fill_per_day_average"


class SourceTier(IntEnum):
    """Resolution precedence; lower wins."""
    MANUAL_PER_REQUEST = 1
    MANUAL_PACKAGE = 2
    SHARED_ACCOUNT = 3
    GAP_FILL = 4
    UNCONFIGURED = 5


_TIERS = {
    PricingSource.MANUAL_PER_REQUEST: SourceTier.MANUAL_PER_REQUEST,
    PricingSource.MANUAL_PER_REQUEST_TIMELINE: SourceTier.MANUAL_PER_REQUEST,
    PricingSource.MANUAL_PACKAGE_TOTAL: SourceTier.MANUAL_PACKAGE,
    PricingSource.MANUAL_PACKAGE_TIMELINE: SourceTier.MANUAL_PACKAGE,
    PricingSource.MANUAL_PACKAGE_TIMELINE_WITH_HISTORY: SourceTier.MANUAL_PACKAGE,
    PricingSource.MANUAL_HISTORY: SourceTier.MANUAL_PACKAGE,
    PricingSource.TOKEN_RATE: SourceTier.SHARED_ACCOUNT,
    PricingSource.PROVIDER_TOKEN_RATE: SourceTier.SHARED_ACCOUNT,
    PricingSource.PROVIDER_BUDGET_API: SourceTier.SHARED_ACCOUNT,
    PricingSource.PROVIDER_BUDGET_API_WITH_HISTORY: SourceTier.SHARED_ACCOUNT,
    PricingSource.PROVIDER_BUDGET_API_LATEST_DAY: SourceTier.SHARED_ACCOUNT,
    PricingSource.GAP_FILL_PER_REQUEST: SourceTier.GAP_FILL,
    PricingSource.GAP_FILL_TOTAL: SourceTier.GAP_FILL,
    PricingSource.GAP_FILL_PER_DAY_AVERAGE: SourceTier.GAP_FILL,
    PricingSource.NONE: SourceTier.UNCONFIGURED,
}

_CATEGORIES = {
    PricingSource.NONE: "unconfigured",
    PricingSource.TOKEN_RATE: "monthly credit",
    PricingSource.PROVIDER_TOKEN_RATE: "monthly credit",
    PricingSource.PROVIDER_BUDGET_API: "monthly credit",
    PricingSource.PROVIDER_BUDGET_API_WITH_HISTORY: "monthly credit",
    PricingSource.PROVIDER_BUDGET_API_LATEST_DAY: "monthly credit",
    PricingSource.MANUAL_PER_REQUEST: "manual",
    PricingSource.MANUAL_PER_REQUEST_TIMELINE: "manual",
    PricingSource.MANUAL_PACKAGE_TOTAL: "manual package total",
    PricingSource.MANUAL_PACKAGE_TIMELINE: "scheduled",
    PricingSource.MANUAL_PACKAGE_TIMELINE_WITH_HISTORY: "scheduled + manual",
    PricingSource.MANUAL_HISTORY: "history manual",
    PricingSource.GAP_FILL_PER_REQUEST: "gap fill $/req",
    PricingSource.GAP_FILL_TOTAL: "gap fill total",
    PricingSource.GAP_FILL_PER_DAY_AVERAGE: "gap fill $/day",
}

_PER_REQUEST_COMPARABLE = {
    PricingSource.MANUAL_PER_REQUEST,
    PricingSource.MANUAL_PER_REQUEST_TIMELINE,
    PricingSource.GAP_FILL_PER_REQUEST,
}


@dataclass(frozen=True)
class SourceLabel:
    """A parsed pricing source: a known kind, or ``kind=None`` for Other(raw)."""
    kind: Optional[PricingSource]
    raw: str

    @property
    def is_other(self) -> bool:
        return self.kind is None

    @property
    def tier(self) -> SourceTier:
        if self.kind is None:
            return SourceTier.UNCONFIGURED
        return _TIERS[self.kind]

    @property
    def is_shared_account(self) -> bool:
        """Signals billed against one upstream account, subject to dedup."""
        if self.kind is None:
            return False
        return self.raw.startswith("manual_package_") or self.tier == SourceTier.SHARED_ACCOUNT

    @property
    def is_per_request_comparable(self) -> bool:
        return self.kind in _PER_REQUEST_COMPARABLE


def parse_pricing_source(raw: Optional[str]) -> SourceLabel:
    """Parse a backend label; unrecognized labels become Other(raw)."""
    text = (raw or "").strip()
    key = text.lower()
    if not key:
        return SourceLabel(PricingSource.NONE, "none")
    try:
        return SourceLabel(PricingSource(key), key)
    except ValueError:
        return SourceLabel(None, text)


def fmt_pricing_source(raw: Optional[str]) -> str:
    """Human category for a pricing source label; unknown labels pass through."""
    label = parse_pricing_source(raw)
    if label.kind is None:
        return label.raw
    return _CATEGORIES[label.kind]


def is_shared_account_source(raw: Optional[str]) -> bool:
    return parse_pricing_source(raw).is_shared_account


def is_per_request_comparable_source(raw: Optional[str]) -> bool:
    return parse_pricing_source(raw).is_per_request_comparable

"""
Shared-cost deduplication.

Provider aliases that bill against one upstream subscription report the same
cost. Within each such group a single keeper row feeds cross-provider totals
and averages; every other alias contributes zero.
"""

import math
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .sources import is_shared_account_source
from ..storage.models import UsageRow


@dataclass(frozen=True)
class SharedCostGroup:
    """Rows sharing one upstream key and a shared-account pricing source."""
    api_key_ref: str
    keeper: UsageRow
    members: Tuple[UsageRow, ...]

    @property
    def zeroed(self) -> List[UsageRow]:
        return [row for row in self.members if row.row_key != self.keeper.row_key]


@dataclass(frozen=True)
class SharedCostView:
    """Per-row values to feed into aggregates after deduplication."""
    zero_row_keys: FrozenSet[str]
    effective_daily_by_row_key: Dict[str, Optional[float]]
    effective_total_by_row_key: Dict[str, Optional[float]]

    def effective_total(self, row: UsageRow) -> Optional[float]:
        return self.effective_total_by_row_key.get(row.row_key)

    def effective_daily(self, row: UsageRow) -> Optional[float]:
        return self.effective_daily_by_row_key.get(row.row_key)


@dataclass(frozen=True)
class DisplayGroup:
    """Rows shown together: all rows of one upstream key, or of one provider."""
    id: str
    providers: Tuple[str, ...]
    api_key_ref: str
    rows: Tuple[UsageRow, ...]
    requests: int
    total_tokens: int
    effective_total_usd: Optional[float]
    effective_daily_usd: Optional[float]
    pricing_source: Optional[str]

    @property
    def display_name(self) -> str:
        return " / ".join(self.providers)

    @property
    def tokens_per_request(self) -> Optional[float]:
        return self.total_tokens / self.requests if self.requests > 0 else None

    @property
    def estimated_avg_request_cost_usd(self) -> Optional[float]:
        if self.effective_total_usd is None or self.requests <= 0:
            return None
        return self.effective_total_usd / self.requests

    @property
    def usd_per_million_tokens(self) -> Optional[float]:
        if self.effective_total_usd is None or self.total_tokens <= 0:
            return None
        return self.effective_total_usd * 1_000_000 / self.total_tokens


@dataclass(frozen=True)
class TotalsAndAverages:
    """Footer figures for the provider table."""
    total_requests: int
    total_tokens: int
    tokens_per_request: Optional[float]
    avg_usd_per_request: Optional[float]
    avg_usd_per_million_tokens: Optional[float]
    avg_estimated_daily_usd: Optional[float]
    avg_total_used_usd: Optional[float]


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return float(value)


def _keeper_order(row: UsageRow):
    return (-row.requests, row.api_key_ref, row.provider)


def shared_cost_groups(rows: Iterable[UsageRow]) -> List[SharedCostGroup]:
    """Groups with at least two shared-account rows on the same key."""
    by_key: Dict[str, List[UsageRow]] = {}
    for row in rows:
        if not is_shared_account_source(row.pricing_source):
            continue
        key_ref = (row.api_key_ref or "").strip()
        if not key_ref or key_ref == "-":
            continue
        by_key.setdefault(key_ref, []).append(row)
    groups = []
    for key_ref, members in by_key.items():
        if len(members) <= 1:
            continue
        keeper = sorted(members, key=_keeper_order)[0]
        groups.append(SharedCostGroup(api_key_ref=key_ref, keeper=keeper, members=tuple(members)))
    return groups


def build_shared_cost_view(rows: Sequence[UsageRow]) -> SharedCostView:
    """Zero every non-keeper row of each shared group for aggregation.

    Per-row display values are not touched; only the values fed into totals
    and averages change.
    """
    zero_keys = set()
    for group in shared_cost_groups(rows):
        zero_keys.update(row.row_key for row in group.zeroed)
    daily: Dict[str, Optional[float]] = {}
    total: Dict[str, Optional[float]] = {}
    for row in rows:
        if row.row_key in zero_keys:
            daily[row.row_key] = 0.0
            total[row.row_key] = 0.0
        else:
            daily[row.row_key] = _finite(row.estimated_daily_cost_usd)
            total[row.row_key] = _finite(row.total_used_cost_usd)
    return SharedCostView(
        zero_row_keys=frozenset(zero_keys),
        effective_daily_by_row_key=daily,
        effective_total_by_row_key=total,
    )


def aggregate_effective_total(rows: Sequence[UsageRow], view: SharedCostView) -> float:
    """Deduplicated sum of positive effective totals."""
    total = 0.0
    for row in rows:
        value = view.effective_total(row)
        if value is not None and value > 0:
            total += value
    return total


def priced_request_count(rows: Sequence[UsageRow], view: SharedCostView) -> int:
    """Requests of rows that carry a positive effective total after dedup."""
    count = 0
    for row in rows:
        value = view.effective_total(row)
        if value is not None and value > 0:
            count += row.requests
    return count


def build_display_groups(rows: Sequence[UsageRow], view: SharedCostView) -> List[DisplayGroup]:
    """Group rows by upstream key, or by provider for rows without one."""
    buckets: Dict[str, Tuple[str, List[str], List[UsageRow]]] = {}
    for row in rows:
        key_ref = (row.api_key_ref or "").strip()
        group_key = f"key:{key_ref}" if key_ref and key_ref != "-" else f"provider:{row.provider}"
        if group_key not in buckets:
            buckets[group_key] = (key_ref, [], [])
        _, providers, members = buckets[group_key]
        if row.provider not in providers:
            providers.append(row.provider)
        members.append(row)

    groups = []
    for key_ref, providers, members in buckets.values():
        totals = [v for v in (view.effective_total(r) for r in members) if v is not None]
        dailies = [v for v in (view.effective_daily(r) for r in members) if v is not None]
        sources = list(dict.fromkeys(r.pricing_source.strip() for r in members if r.pricing_source.strip()))
        if len(sources) == 1:
            source = sources[0]
        elif sources:
            source = "mixed"
        else:
            source = None
        groups.append(DisplayGroup(
            id=f"{'|'.join(providers)}::{key_ref or '-'}",
            providers=tuple(providers),
            api_key_ref=key_ref or "-",
            rows=tuple(members),
            requests=sum(r.requests for r in members),
            total_tokens=sum(r.total_tokens for r in members),
            effective_total_usd=sum(totals) if totals else None,
            effective_daily_usd=sum(dailies) if dailies else None,
            pricing_source=source,
        ))
    return groups


def _mean(values: Iterable[Optional[float]]) -> Optional[float]:
    valid = [v for v in values if v is not None and math.isfinite(v)]
    if not valid:
        return None
    return sum(valid) / len(valid)


def compute_totals_and_averages(rows: Sequence[UsageRow], view: SharedCostView) -> Optional[TotalsAndAverages]:
    """Table totals; zeroed alias rows are excluded from cost averages."""
    if not rows:
        return None
    total_requests = sum(r.requests for r in rows)
    total_tokens = sum(r.total_tokens for r in rows)
    kept = [r for r in rows if r.row_key not in view.zero_row_keys]
    return TotalsAndAverages(
        total_requests=total_requests,
        total_tokens=total_tokens,
        tokens_per_request=total_tokens / total_requests if total_requests > 0 else None,
        avg_usd_per_request=_mean(r.estimated_avg_request_cost_usd for r in rows),
        avg_usd_per_million_tokens=_mean(r.usd_per_million_tokens for r in rows),
        avg_estimated_daily_usd=_mean(view.effective_daily(r) for r in kept),
        avg_total_used_usd=_mean(view.effective_total(r) for r in kept),
    )

"""
Pricing resolution engine.

Computes the effective cost of a provider over a time window from every
available pricing signal, using a fixed precedence of source tiers. The first
tier that yields a candidate wins.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .sources import PricingSource, SourceLabel, SourceTier, parse_pricing_source
from .timeline import select_active_period
from .usage_math import estimated_avg_request_cost_usd, is_positive
from ..storage.models import (
    GapFillMode,
    PricingMode,
    ProviderConfig,
    SchedulePeriod,
    UsageRow,
    utc,
)

logger = logging.getLogger(__name__)

NOMINAL_CYCLE = timedelta(days=30)
HOURS_PER_CYCLE = 30 * 24
CONFLICT_EPSILON = 0.0005


def day_key(value: datetime) -> str:
    return utc(value).date().isoformat()


def day_range(key: str) -> Tuple[datetime, datetime]:
    start = datetime.strptime(key, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _overlap_seconds(start: datetime, end: datetime, since: datetime, now: datetime) -> float:
    lo = max(start, since)
    hi = min(end, now)
    return max(0.0, (hi - lo).total_seconds())


@dataclass(frozen=True)
class ManualDay:
    """Operator override for one provider-day."""
    day_key: str
    manual_total_usd: Optional[float] = None
    manual_usd_per_req: Optional[float] = None


@dataclass(frozen=True)
class CostSignals:
    """Every pricing signal known for one provider over [since, now)."""
    config: ProviderConfig
    since: datetime
    now: datetime
    requests: int = 0
    total_tokens: int = 0
    request_times: Tuple[datetime, ...] = ()
    requests_by_day: Mapping[str, int] = field(default_factory=dict)
    manual_days: Tuple[ManualDay, ...] = ()
    tracked_spend_usd: Optional[float] = None
    latest_day_spend_usd: Optional[float] = None
    token_rate_usd: Optional[float] = None

    @property
    def provider(self) -> str:
        return self.config.name

    @property
    def window_hours(self) -> float:
        return max(0.0, (utc(self.now) - utc(self.since)).total_seconds() / 3600.0)

    def daily_from_avg(self, avg_usd: Optional[float]) -> Optional[float]:
        """Project a per-request average onto 24 hours at the window's rate."""
        if avg_usd is None or self.window_hours <= 0:
            return None
        return self.requests / self.window_hours * 24.0 * avg_usd


@dataclass(frozen=True)
class _Candidate:
    source: PricingSource
    total_usd: float
    daily_usd: Optional[float] = None
    avg_usd: Optional[float] = None
    tracked_usd: Optional[float] = None
    gap_filled_usd: Optional[float] = None


@dataclass(frozen=True)
class ResolvedCost:
    """Effective cost of one provider over a window."""
    provider: str
    source: SourceLabel
    total_used_usd: Optional[float] = None
    estimated_daily_usd: Optional[float] = None
    avg_request_usd: Optional[float] = None
    tracked_usd: Optional[float] = None
    gap_filled_usd: Optional[float] = None
    conflict: bool = False

    @property
    def tier(self) -> SourceTier:
        return self.source.tier


def effective_pricing_mode(config: ProviderConfig, now: datetime) -> PricingMode:
    """Stored manual mode, else the mode of the current or most recent period."""
    if config.manual_pricing_mode != PricingMode.NONE:
        return config.manual_pricing_mode
    period = select_active_period(config.periods, now)
    if period is None:
        started = [p for p in config.periods if utc(p.started_at) <= utc(now)]
        period = max(started, key=lambda p: utc(p.started_at), default=None)
    return period.mode if period is not None else PricingMode.NONE


def per_request_amount_at(periods: Sequence[SchedulePeriod], instant: datetime) -> Optional[float]:
    """Per-request rate of the period covering ``instant``, if any."""
    period = select_active_period(periods, instant, PricingMode.PER_REQUEST)
    if period is None or not is_positive(period.amount_usd):
        return None
    return period.amount_usd


def package_total_in_window(periods: Sequence[SchedulePeriod], since: datetime, now: datetime) -> float:
    """Package fees attributed to [since, now) by overlap.

    A closed period spreads its fee over its own length; an open-ended one
    charges its fee per 30-day cycle.
    """
    since, now = utc(since), utc(now)
    total = 0.0
    for period in periods:
        if period.mode != PricingMode.PACKAGE_TOTAL or not is_positive(period.amount_usd):
            continue
        start = utc(period.started_at)
        if period.ended_at is None:
            overlap = _overlap_seconds(start, max(start, now), since, now)
            total += period.amount_usd * overlap / NOMINAL_CYCLE.total_seconds()
        else:
            end = utc(period.ended_at)
            length = (end - start).total_seconds()
            if length <= 0:
                continue
            total += period.amount_usd * _overlap_seconds(start, end, since, now) / length
    return total


def _requests_in_window_by_day(signals: CostSignals) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    since, now = utc(signals.since), utc(signals.now)
    for ts in signals.request_times:
        ts = utc(ts)
        if since <= ts < now:
            key = day_key(ts)
            counts[key] = counts.get(key, 0) + 1
    return counts


def manual_history_in_window(signals: CostSignals) -> float:
    """Manual day overrides attributed to the window.

    Day totals are prorated by the share of the day's requests inside the
    window (by time when the day has no requests); per-request overrides are
    multiplied by the requests inside the window.
    """
    since, now = utc(signals.since), utc(signals.now)
    in_window = _requests_in_window_by_day(signals)
    total = 0.0
    for day in signals.manual_days:
        day_start, day_end = day_range(day.day_key)
        overlap = _overlap_seconds(day_start, day_end, since, now)
        if overlap <= 0:
            continue
        time_ratio = overlap / (day_end - day_start).total_seconds()
        day_in_window = in_window.get(day.day_key, 0)
        day_total = max(signals.requests_by_day.get(day.day_key, 0), day_in_window)
        if is_positive(day.manual_total_usd):
            if day_total > 0:
                total += day.manual_total_usd * min(1.0, day_in_window / day_total)
            else:
                total += day.manual_total_usd * time_ratio
        elif is_positive(day.manual_usd_per_req):
            if day_in_window > 0:
                total += day.manual_usd_per_req * day_in_window
            else:
                total += day.manual_usd_per_req * day_total * time_ratio
    return total


def _per_request_candidates(signals: CostSignals) -> List[_Candidate]:
    cfg = signals.config
    if effective_pricing_mode(cfg, signals.now) != PricingMode.PER_REQUEST:
        return []
    has_timeline = any(p.mode == PricingMode.PER_REQUEST for p in cfg.periods)
    if has_timeline:
        priced = [per_request_amount_at(cfg.periods, ts) for ts in signals.request_times]
        priced = [amount for amount in priced if amount is not None]
        total = sum(priced)
        if priced and total > 0:
            avg = total / len(priced)
            return [_Candidate(PricingSource.MANUAL_PER_REQUEST_TIMELINE, total,
                               daily_usd=signals.daily_from_avg(avg), avg_usd=avg)]
    amount = cfg.manual_pricing_amount_usd
    if not is_positive(amount):
        return []
    return [_Candidate(PricingSource.MANUAL_PER_REQUEST, amount * signals.requests,
                       daily_usd=signals.daily_from_avg(amount), avg_usd=amount)]


def _package_candidates(signals: CostSignals) -> List[_Candidate]:
    cfg = signals.config
    if effective_pricing_mode(cfg, signals.now) != PricingMode.PACKAGE_TOTAL:
        return []
    candidates = []
    has_timeline = any(p.mode == PricingMode.PACKAGE_TOTAL for p in cfg.periods)
    scheduled = package_total_in_window(cfg.periods, signals.since, signals.now)
    manual = manual_history_in_window(signals)
    total = scheduled + manual
    if total > 0:
        active = select_active_period(cfg.periods, signals.now, PricingMode.PACKAGE_TOTAL)
        if active is not None:
            daily = active.amount_usd / 30.0
        elif signals.window_hours > 0:
            daily = total * 24.0 / signals.window_hours
        else:
            daily = None
        if scheduled > 0 and manual > 0:
            source = PricingSource.MANUAL_PACKAGE_TIMELINE_WITH_HISTORY
        elif scheduled > 0:
            source = PricingSource.MANUAL_PACKAGE_TIMELINE
        else:
            source = PricingSource.MANUAL_HISTORY
        candidates.append(_Candidate(source, total, daily_usd=daily,
                                     gap_filled_usd=manual if manual > 0 else None))
    amount = cfg.manual_pricing_amount_usd
    if not has_timeline and is_positive(amount):
        flat = amount * min(1.0, signals.window_hours / HOURS_PER_CYCLE)
        candidates.append(_Candidate(PricingSource.MANUAL_PACKAGE_TOTAL, flat, daily_usd=amount / 30.0))
    return candidates


def _shared_account_candidates(signals: CostSignals) -> List[_Candidate]:
    if effective_pricing_mode(signals.config, signals.now) != PricingMode.NONE:
        return []
    candidates = []
    tracked = signals.tracked_spend_usd if is_positive(signals.tracked_spend_usd) else 0.0
    manual = manual_history_in_window(signals)
    if tracked > 0 or manual > 0:
        if tracked > 0 and manual > 0:
            source = PricingSource.PROVIDER_BUDGET_API_WITH_HISTORY
        elif tracked > 0:
            source = PricingSource.PROVIDER_BUDGET_API
        else:
            source = PricingSource.MANUAL_HISTORY
        candidates.append(_Candidate(source, tracked + manual,
                                     tracked_usd=tracked or None,
                                     gap_filled_usd=manual or None))
    elif is_positive(signals.latest_day_spend_usd):
        spent = signals.latest_day_spend_usd
        candidates.append(_Candidate(PricingSource.PROVIDER_BUDGET_API_LATEST_DAY, spent, tracked_usd=spent))
    if is_positive(signals.token_rate_usd) and signals.total_tokens > 0:
        candidates.append(_Candidate(PricingSource.PROVIDER_TOKEN_RATE,
                                     signals.token_rate_usd * signals.total_tokens))

    resolved = []
    for candidate in candidates:
        avg = estimated_avg_request_cost_usd(candidate.total_usd, signals.requests)
        if avg is not None:
            daily = signals.daily_from_avg(avg)
        else:
            daily = signals.latest_day_spend_usd
        resolved.append(_Candidate(candidate.source, candidate.total_usd, daily_usd=daily, avg_usd=avg,
                                   tracked_usd=candidate.tracked_usd,
                                   gap_filled_usd=candidate.gap_filled_usd))
    return resolved


def _gap_fill_candidates(signals: CostSignals) -> List[_Candidate]:
    cfg = signals.config
    amount = cfg.gap_fill_amount_usd
    if not is_positive(amount):
        return []
    if cfg.gap_fill_mode == GapFillMode.PER_REQUEST:
        total = amount * signals.requests
        return [_Candidate(PricingSource.GAP_FILL_PER_REQUEST, total, daily_usd=signals.daily_from_avg(amount),
                           avg_usd=amount, gap_filled_usd=total)]
    if cfg.gap_fill_mode == GapFillMode.TOTAL:
        avg = estimated_avg_request_cost_usd(amount, signals.requests)
        return [_Candidate(PricingSource.GAP_FILL_TOTAL, amount, daily_usd=signals.daily_from_avg(avg),
                           avg_usd=avg, gap_filled_usd=amount)]
    if cfg.gap_fill_mode == GapFillMode.PER_DAY_AVERAGE:
        total = amount * signals.window_hours / 24.0
        return [_Candidate(PricingSource.GAP_FILL_PER_DAY_AVERAGE, total, daily_usd=amount,
                           avg_usd=estimated_avg_request_cost_usd(total, signals.requests),
                           gap_filled_usd=total)]
    return []


_TIERS = (
    (SourceTier.MANUAL_PER_REQUEST, _per_request_candidates),
    (SourceTier.MANUAL_PACKAGE, _package_candidates),
    (SourceTier.SHARED_ACCOUNT, _shared_account_candidates),
    (SourceTier.GAP_FILL, _gap_fill_candidates),
)


def resolve_cost(signals: CostSignals) -> ResolvedCost:
    """Resolve the effective cost for one provider.

    Tiers are evaluated top to bottom and the first tier with a candidate
    wins. Candidates within a tier have equal precedence: the first one in
    evaluation order is used, and disagreeing totals mark the result as a
    conflict.

    Args:
        signals: Pricing signals for the provider and window

    Returns:
        The resolved cost; an unconfigured result when no signal exists
    """
    for tier, collect in _TIERS:
        candidates = collect(signals)
        if not candidates:
            continue
        winner = candidates[0]
        conflict = any(abs(c.total_usd - winner.total_usd) > CONFLICT_EPSILON for c in candidates[1:])
        if conflict:
            logger.warning(
                "Conflicting %s pricing for %s: using %s (%.4f) over %s",
                tier.name.lower(),
                signals.provider,
                winner.source.value,
                winner.total_usd,
                ", ".join(f"{c.source.value}={c.total_usd:.4f}" for c in candidates[1:]),
            )
        avg = winner.avg_usd
        if avg is None:
            avg = estimated_avg_request_cost_usd(winner.total_usd, signals.requests)
        return ResolvedCost(
            provider=signals.provider,
            source=SourceLabel(winner.source, winner.source.value),
            total_used_usd=winner.total_usd,
            estimated_daily_usd=winner.daily_usd,
            avg_request_usd=avg,
            tracked_usd=winner.tracked_usd,
            gap_filled_usd=winner.gap_filled_usd,
            conflict=conflict,
        )
    return ResolvedCost(provider=signals.provider, source=parse_pricing_source(None))


def split_by_api_key(
    resolved: ResolvedCost,
    key_usage: Mapping[str, Tuple[int, int]],
    total_requests: int,
    fallback_api_key_ref: str = "-",
    total_tokens: int = 0,
) -> List[UsageRow]:
    """Spread a provider's resolved cost over its API keys by request share.

    Args:
        resolved: Provider-level resolved cost
        key_usage: (requests, total_tokens) per api_key_ref inside the window
        total_requests: Provider requests inside the window
        fallback_api_key_ref: Key used when no per-key usage exists
        total_tokens: Provider tokens, used with the fallback key

    Returns:
        One UsageRow per API key
    """
    usage = dict(key_usage) or {fallback_api_key_ref: (total_requests, total_tokens)}
    rows = []
    for key_ref, (key_requests, key_tokens) in sorted(usage.items()):
        ratio = key_requests / total_requests if total_requests > 0 else 1.0 / len(usage)
        total = resolved.total_used_usd * ratio if resolved.total_used_usd is not None else None
        daily = resolved.estimated_daily_usd * ratio if resolved.estimated_daily_usd is not None else None
        rows.append(UsageRow(
            provider=resolved.provider,
            api_key_ref=key_ref or "-",
            requests=key_requests,
            total_tokens=key_tokens,
            pricing_source=resolved.source.raw,
            total_used_cost_usd=total,
            estimated_daily_cost_usd=daily,
        ))
    return rows

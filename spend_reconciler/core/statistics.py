"""
Usage statistics assembly.

Turns raw request records and per-provider spend inputs into the priced
summary returned by get_usage_statistics.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .resolution import CostSignals, ManualDay, resolve_cost, split_by_api_key
from ..storage.models import (
    ModelUsage,
    ProviderConfig,
    RequestRecord,
    TimelineBucket,
    UsageCatalog,
    UsageRow,
    UsageStatistics,
    UsageSummary,
    utc,
)


@dataclass(frozen=True)
class SpendInputs:
    """Per-provider spend signals that do not come from request records."""
    manual_days: Mapping[str, Tuple[ManualDay, ...]] = field(default_factory=dict)
    tracked_usd: Mapping[str, float] = field(default_factory=dict)
    latest_day_usd: Mapping[str, float] = field(default_factory=dict)
    token_rate_usd: Mapping[str, float] = field(default_factory=dict)
    requests_by_day: Mapping[str, Mapping[str, int]] = field(default_factory=dict)


def _matches(value: str, allowed: Optional[Sequence[str]]) -> bool:
    return not allowed or value in allowed


def _bucket_size(window_hours: int) -> timedelta:
    return timedelta(hours=1) if window_hours <= 48 else timedelta(days=1)


def build_timeline(records: Sequence[RequestRecord], since: datetime, now: datetime,
                   window_hours: int) -> List[TimelineBucket]:
    """Contiguous buckets covering [since, now), empty ones included."""
    size = _bucket_size(window_hours)
    if size == timedelta(days=1):
        start = since.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        start = since.replace(minute=0, second=0, microsecond=0)
    counts: Dict[datetime, List[int]] = {}
    cursor = start
    while cursor < now:
        counts[cursor] = [0, 0]
        cursor += size
    for record in records:
        offset = (utc(record.timestamp) - start) // size
        key = start + offset * size
        if key in counts:
            counts[key][0] += 1
            counts[key][1] += record.total_tokens
    return [TimelineBucket(bucket_start=k, requests=v[0], total_tokens=v[1]) for k, v in counts.items()]


def build_usage_statistics(
    records: Sequence[RequestRecord],
    configs: Mapping[str, ProviderConfig],
    since: datetime,
    now: datetime,
    inputs: SpendInputs = SpendInputs(),
    providers: Optional[Sequence[str]] = None,
    models: Optional[Sequence[str]] = None,
    origins: Optional[Sequence[str]] = None,
) -> UsageStatistics:
    """Resolve and summarize usage for the window [since, now).

    Args:
        records: Request records (any range; filtered to the window here)
        configs: Provider pricing settings
        since: Window start
        now: Window end
        inputs: Spend signals per provider
        providers: Optional provider filter
        models: Optional model filter
        origins: Optional origin filter

    Returns:
        Priced summary, catalog and generation time
    """
    since, now = utc(since), utc(now)
    window_hours = max(1, int(round((now - since).total_seconds() / 3600)))
    in_window = [r for r in records if since <= utc(r.timestamp) < now]
    filtered = [
        r for r in in_window
        if _matches(r.provider, providers) and _matches(r.model, models) and _matches(r.origin, origins)
    ]

    by_provider: Dict[str, List[RequestRecord]] = defaultdict(list)
    for record in filtered:
        by_provider[record.provider].append(record)
    # budget-only providers still carry spend when no model/origin filter applies
    if not models and not origins:
        for name in list(inputs.tracked_usd) + list(inputs.latest_day_usd):
            if _matches(name, providers) and name not in by_provider:
                by_provider[name] = []

    rows: List[UsageRow] = []
    for name, provider_records in sorted(by_provider.items()):
        config = configs.get(name) or ProviderConfig(name=name)
        requests = len(provider_records)
        tokens = sum(r.total_tokens for r in provider_records)
        signals = CostSignals(
            config=config,
            since=since,
            now=now,
            requests=requests,
            total_tokens=tokens,
            request_times=tuple(r.timestamp for r in provider_records),
            requests_by_day=inputs.requests_by_day.get(name, {}),
            manual_days=tuple(inputs.manual_days.get(name, ())),
            tracked_spend_usd=inputs.tracked_usd.get(name),
            latest_day_spend_usd=inputs.latest_day_usd.get(name),
            token_rate_usd=inputs.token_rate_usd.get(name),
        )
        resolved = resolve_cost(signals)
        if requests == 0 and resolved.total_used_usd is None:
            continue

        key_usage: Dict[str, Tuple[int, int]] = {}
        key_io: Dict[str, Tuple[int, int]] = {}
        for record in provider_records:
            key_ref = record.api_key_ref or "-"
            key_requests, key_tokens = key_usage.get(key_ref, (0, 0))
            key_usage[key_ref] = (key_requests + 1, key_tokens + record.total_tokens)
            key_in, key_out = key_io.get(key_ref, (0, 0))
            key_io[key_ref] = (key_in + record.input_tokens, key_out + record.output_tokens)
        for row in split_by_api_key(resolved, key_usage, requests, config.api_key_ref, tokens):
            input_tokens, output_tokens = key_io.get(row.api_key_ref, (0, 0))
            rows.append(replace(row, input_tokens=input_tokens, output_tokens=output_tokens))
    rows.sort(key=lambda r: -r.requests)

    model_totals: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
    for record in filtered:
        model_totals[record.model][0] += 1
        model_totals[record.model][1] += record.total_tokens
    by_model = sorted(
        (ModelUsage(model=m, requests=v[0], total_tokens=v[1]) for m, v in model_totals.items()),
        key=lambda m: (-m.requests, m.model),
    )

    summary = UsageSummary(
        by_provider=tuple(rows),
        by_model=tuple(by_model),
        timeline=tuple(build_timeline(filtered, since, now, window_hours)),
        total_requests=len(filtered),
        total_tokens=sum(r.total_tokens for r in filtered),
    )
    catalog = UsageCatalog(
        providers=tuple(sorted({r.provider for r in in_window})),
        models=tuple(sorted({r.model for r in in_window})),
        origins=tuple(sorted({r.origin for r in in_window})),
    )
    return UsageStatistics(summary=summary, catalog=catalog, generated_at=now, window_hours=window_hours)

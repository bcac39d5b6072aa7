"""
Anomaly detection for usage and pricing patterns.

Flags request-volume spikes over the timeline and providers whose per-request
cost stands out from their peers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

from .sources import is_per_request_comparable_source
from ..storage.models import TimelineBucket, UsageRow, utc


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies."""
    WARNING = "warning"


@dataclass(frozen=True)
class AnomalyConfig:
    """Detection thresholds."""
    spike_ratio: float = 5.0
    min_buckets: int = 4
    price_ratio: float = 2.0
    price_abs_delta: float = 0.05
    min_requests: int = 3

    def __post_init__(self):
        """Validate thresholds are usable."""
        if self.spike_ratio <= 0:
            raise ValueError("spike_ratio must be positive")
        if self.min_buckets < 1:
            raise ValueError("min_buckets must be at least 1")
        if self.price_ratio <= 0:
            raise ValueError("price_ratio must be positive")
        if self.price_abs_delta < 0:
            raise ValueError("price_abs_delta cannot be negative")
        if self.min_requests < 1:
            raise ValueError("min_requests must be at least 1")


@dataclass(frozen=True)
class AnomalyEvent:
    """Detected anomaly with details and explanation."""
    rule: str  # "volume_spike" or "price_outlier"
    severity: AnomalySeverity
    observed_value: float
    baseline_value: float
    threshold: float
    message: str
    row_key: Optional[str] = None


@dataclass(frozen=True)
class UsageAnomalies:
    """Detector output ready for display."""
    events: List[AnomalyEvent]
    messages: List[str]
    high_cost_row_keys: FrozenSet[str]


def compute_exact_percentile(values: Sequence[float], percentile: int) -> float:
    """Compute exact percentile using linear interpolation.

    Uses the same method as numpy.percentile with interpolation='linear'
    for deterministic results.

    Args:
        values: Numeric values
        percentile: Percentile to compute (0-100)

    Returns:
        Exact percentile value
    """
    if not values:
        raise ValueError("Values list cannot be empty")
    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)
    position = (percentile / 100.0) * (n - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index
    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + fraction * (upper_value - lower_value)


def fmt_usd_maybe(value: Optional[float]) -> str:
    if value is None or value <= 0:
        return "-"
    if value >= 10:
        return f"${value:.2f}"
    return f"${value:.3f}"


def fmt_bucket_label(bucket_start: datetime, window_hours: int) -> str:
    """``HH:00`` for windows up to two days, ``DD-MM`` beyond."""
    start = utc(bucket_start)
    if window_hours <= 48:
        return start.strftime("%H:00")
    return start.strftime("%d-%m")


def detect_volume_spike(
    timeline: Sequence[TimelineBucket],
    provider_count: int,
    window_hours: int,
    config: AnomalyConfig = AnomalyConfig(),
) -> Optional[AnomalyEvent]:
    """Flag a bucket whose per-provider requests dwarf the median.

    Args:
        timeline: Request buckets for the window
        provider_count: Providers contributing to the timeline
        window_hours: Window length, used for the bucket label
        config: Detection thresholds

    Returns:
        The spike, or None
    """
    active = [bucket for bucket in timeline if bucket.requests > 0]
    if len(active) < config.min_buckets:
        return None
    divisor = max(1, provider_count)
    median = compute_exact_percentile([b.requests for b in active], 50) / divisor
    peak_bucket = max(active, key=lambda b: b.requests)
    peak = peak_bucket.requests / divisor
    threshold = median * config.spike_ratio
    if median <= 0 or peak < threshold:
        return None
    label = fmt_bucket_label(peak_bucket.bucket_start, window_hours)
    return AnomalyEvent(
        rule="volume_spike",
        severity=AnomalySeverity.WARNING,
        observed_value=peak,
        baseline_value=median,
        threshold=threshold,
        message=f"Request spike around {label}: {peak:.1f}/provider vs median {median:.1f}/provider",
    )


def detect_price_outliers(
    rows: Sequence[UsageRow],
    config: AnomalyConfig = AnomalyConfig(),
) -> List[AnomalyEvent]:
    """Flag rows whose $/request is far above the median of comparable rows.

    Both the relative and the absolute threshold must be met.
    """
    candidates = []
    for row in rows:
        if not is_per_request_comparable_source(row.pricing_source):
            continue
        if row.requests < config.min_requests:
            continue
        value = row.estimated_avg_request_cost_usd
        if value is None or value <= 0:
            continue
        candidates.append((row, value))
    if len(candidates) < 2:
        return []

    median = compute_exact_percentile([value for _, value in candidates], 50)
    threshold = median * config.price_ratio
    events = []
    for row, value in candidates:
        if value >= threshold and value - median >= config.price_abs_delta:
            events.append(AnomalyEvent(
                rule="price_outlier",
                severity=AnomalySeverity.WARNING,
                observed_value=value,
                baseline_value=median,
                threshold=threshold,
                message=f"High $/req: {row.provider} at {fmt_usd_maybe(value)} vs median {fmt_usd_maybe(median)}",
                row_key=row.row_key,
            ))
    return events


def dedupe_messages(messages: Sequence[str]) -> List[str]:
    """Number repeated messages so each instance stays distinct."""
    seen: Dict[str, int] = {}
    out = []
    for message in messages:
        count = seen.get(message, 0) + 1
        seen[message] = count
        out.append(message if count == 1 else f"{message} ({count})")
    return out


def compute_usage_anomalies(
    rows: Sequence[UsageRow],
    timeline: Sequence[TimelineBucket],
    window_hours: int,
    provider_count: Optional[int] = None,
    config: AnomalyConfig = AnomalyConfig(),
) -> UsageAnomalies:
    """Run both detectors over the currently windowed data."""
    if provider_count is None:
        provider_count = len({row.provider for row in rows if row.requests > 0})
    events = []
    spike = detect_volume_spike(timeline, provider_count, window_hours, config)
    if spike is not None:
        events.append(spike)
    outliers = detect_price_outliers(rows, config)
    events.extend(outliers)
    return UsageAnomalies(
        events=events,
        messages=dedupe_messages([event.message for event in events]),
        high_cost_row_keys=frozenset(event.row_key for event in outliers if event.row_key),
    )

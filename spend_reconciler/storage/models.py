"""
Data models for storage layer.

Defines telemetry rows, schedule periods, spend history entries and the
shapes exchanged with the persistence/telemetry backend.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..core.usage_math import (
    estimated_avg_request_cost_usd,
    round3,
    tokens_per_request,
    usd_per_million_tokens,
)


class PricingMode(Enum):
    """How an operator bills a provider."""
    NONE = "none"
    PER_REQUEST = "per_request"
    PACKAGE_TOTAL = "package_total"


class GapFillMode(Enum):
    """Fallback estimate used only when no other pricing signal exists."""
    NONE = "none"
    PER_REQUEST = "per_request"
    TOTAL = "total"
    PER_DAY_AVERAGE = "per_day_average"


def utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: Union[None, str, int, float, datetime]) -> Optional[datetime]:
    """Parse an ISO string, unix milliseconds or datetime into aware UTC.

    Returns None for empty or unparsable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return utc(value)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    try:
        return utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def _opt_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class RequestRecord:
    """Immutable telemetry record for a single upstream request.

    Append-only: once written, these records are never modified.
    """
    timestamp: datetime
    provider: str
    api_key_ref: str
    model: str
    origin: str = "windows"
    session_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @property
    def identity(self) -> Tuple:
        """Composite identity used to merge freshly fetched rows."""
        return (
            utc(self.timestamp).isoformat(),
            self.provider,
            self.api_key_ref,
            self.model,
            self.origin,
            self.session_id or "",
            self.input_tokens,
            self.output_tokens,
            self.total_tokens,
        )


@dataclass(frozen=True)
class UsageRow:
    """Aggregated telemetry for one (provider, api_key_ref, window).

    Per-request and per-token cost figures are derived properties.
    """
    provider: str
    api_key_ref: str = "-"
    requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    pricing_source: str = "none"
    total_used_cost_usd: Optional[float] = None
    estimated_daily_cost_usd: Optional[float] = None

    @property
    def row_key(self) -> str:
        key_ref = (self.api_key_ref or "").strip() or "-"
        return f"{self.provider}::{key_ref}"

    @property
    def estimated_total_cost_usd(self) -> float:
        return round3(self.total_used_cost_usd or 0.0)

    @property
    def estimated_avg_request_cost_usd(self) -> Optional[float]:
        return estimated_avg_request_cost_usd(self.total_used_cost_usd, self.requests)

    @property
    def usd_per_million_tokens(self) -> Optional[float]:
        return usd_per_million_tokens(self.total_used_cost_usd, self.total_tokens)

    @property
    def tokens_per_request(self) -> Optional[float]:
        return tokens_per_request(self.total_tokens, self.requests)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRow":
        """Build a row from a backend payload; derived fields are ignored."""
        return cls(
            provider=str(data["provider"]),
            api_key_ref=str(data.get("api_key_ref") or "-"),
            requests=int(data.get("requests") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            pricing_source=str(data.get("pricing_source") or "none"),
            total_used_cost_usd=_opt_float(data.get("total_used_cost_usd")),
            estimated_daily_cost_usd=_opt_float(data.get("estimated_daily_cost_usd")),
        )


@dataclass(frozen=True)
class ModelUsage:
    model: str
    requests: int
    total_tokens: int


@dataclass(frozen=True)
class TimelineBucket:
    bucket_start: datetime
    requests: int
    total_tokens: int


@dataclass(frozen=True)
class UsageSummary:
    by_provider: Tuple[UsageRow, ...] = ()
    by_model: Tuple[ModelUsage, ...] = ()
    timeline: Tuple[TimelineBucket, ...] = ()
    total_requests: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class UsageCatalog:
    providers: Tuple[str, ...] = ()
    models: Tuple[str, ...] = ()
    origins: Tuple[str, ...] = ()


@dataclass(frozen=True)
class UsageStatistics:
    """Response shape of get_usage_statistics."""
    summary: UsageSummary
    catalog: UsageCatalog
    generated_at: datetime
    window_hours: int = 24


@dataclass(frozen=True)
class SchedulePeriod:
    """A persisted billing period for one upstream key.

    started_at is inclusive, ended_at exclusive; ended_at None means the
    period is open-ended.
    """
    mode: PricingMode
    amount_usd: float
    api_key_ref: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    id: Optional[str] = None

    def __post_init__(self):
        """Reject modes that cannot carry a timeline."""
        if self.mode == PricingMode.NONE:
            raise ValueError("schedule period mode must be per_request or package_total")

    def is_active(self, now: datetime) -> bool:
        now = utc(now)
        return utc(self.started_at) <= now and (self.ended_at is None or now < utc(self.ended_at))

    def is_upcoming(self, now: datetime) -> bool:
        return utc(self.started_at) > utc(now)

    def identity_key(self) -> str:
        """Key that identifies the same underlying period across aliases."""
        end_key = "open" if self.ended_at is None else utc(self.ended_at).isoformat()
        return "|".join([
            self.api_key_ref,
            self.mode.value,
            utc(self.started_at).isoformat(),
            end_key,
            f"{self.amount_usd:.8f}",
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "amount_usd": self.amount_usd,
            "api_key_ref": self.api_key_ref,
            "started_at": utc(self.started_at).isoformat(),
            "ended_at": utc(self.ended_at).isoformat() if self.ended_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_api_key_ref: str = "-") -> "SchedulePeriod":
        started_at = parse_instant(data.get("started_at", data.get("started_at_unix_ms")))
        if started_at is None:
            raise ValueError("schedule period is missing started_at")
        mode_raw = data.get("mode") or PricingMode.PACKAGE_TOTAL.value
        return cls(
            id=data.get("id") or None,
            mode=PricingMode(mode_raw),
            amount_usd=float(data.get("amount_usd") or 0.0),
            api_key_ref=(str(data.get("api_key_ref") or "").strip() or default_api_key_ref),
            started_at=started_at,
            ended_at=parse_instant(data.get("ended_at", data.get("ended_at_unix_ms"))),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """Spend history for one (provider, day)."""
    provider: str
    day_key: str
    req_count: int = 0
    total_tokens: int = 0
    tracked_total_usd: Optional[float] = None
    scheduled_total_usd: Optional[float] = None
    scheduled_package_total_usd: Optional[float] = None
    manual_total_usd: Optional[float] = None
    manual_usd_per_req: Optional[float] = None
    effective_total_usd: Optional[float] = None
    effective_usd_per_req: Optional[float] = None
    source: str = "none"

    @property
    def key(self) -> str:
        return f"{self.provider}|{self.day_key}"


@dataclass(frozen=True)
class ProviderConfig:
    """Persisted pricing settings for one provider."""
    name: str
    api_key_ref: str = "-"
    manual_pricing_mode: PricingMode = PricingMode.NONE
    manual_pricing_amount_usd: Optional[float] = None
    package_expires_at: Optional[datetime] = None
    gap_fill_mode: GapFillMode = GapFillMode.NONE
    gap_fill_amount_usd: Optional[float] = None
    periods: Tuple[SchedulePeriod, ...] = field(default_factory=tuple)

"""
Billing-period timeline management.

Loads the schedule periods of every managed provider into one editable view
(periods shared by aliases of one upstream key collapse into a single row),
validates edited rows, persists only the providers whose rows changed, and
activates package-total pricing without touching past periods.
"""

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .currency import (
    FxRateTable,
    format_draft_amount,
    normalize_currency_code,
    parse_positive_amount,
    to_display,
    to_usd,
)
from .errors import InvalidRowsError, TransportError
from .pricing_draft import PricingDraft, resolve_pricing_amount_usd
from ..storage.backend import Backend
from ..storage.models import GapFillMode, PricingMode, ProviderConfig, SchedulePeriod, parse_instant, utc
from ..storage.prefs import PrefsStore

logger = logging.getLogger(__name__)

DRAFT_TIME_FORMAT = "%Y-%m-%dT%H:%M"
DEFAULT_PACKAGE_DAYS = 30
_UNSHARED_KEYS = ("", "-", "set")


@dataclass(frozen=True)
class ScheduleDraft:
    """Editable form of one schedule period, shared by its alias providers."""
    provider: str
    group_providers: Tuple[str, ...] = ()
    id: str = ""
    mode: PricingMode = PricingMode.PACKAGE_TOTAL
    api_key_ref: str = "-"
    start_text: str = ""
    end_text: str = ""
    amount_text: str = ""
    currency: str = "USD"

    @property
    def targets(self) -> List[str]:
        """Providers this row is persisted to, in first-seen order."""
        names = [name.strip() for name in (self.provider,) + tuple(self.group_providers)]
        return list(dict.fromkeys(name for name in names if name))


def format_draft_instant(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return utc(value).strftime(DRAFT_TIME_FORMAT)


def parse_draft_instant(text: Optional[str]) -> Optional[datetime]:
    """Parse ``YYYY-MM-DDTHH:MM`` (UTC) or any ISO instant."""
    raw = (text or "").strip()
    if not raw:
        return None
    try:
        return datetime.strptime(raw, DRAFT_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return parse_instant(raw)


def _row_signature_fields(row: ScheduleDraft) -> Dict[str, str]:
    return {
        "id": row.id.strip(),
        "mode": row.mode.value,
        "apiKeyRef": row.api_key_ref.strip(),
        "start": row.start_text.strip(),
        "end": row.end_text.strip(),
        "amount": row.amount_text.strip(),
        "currency": normalize_currency_code(row.currency),
    }


def schedule_rows_signature(rows: Sequence[ScheduleDraft]) -> str:
    """Signature of the whole editable view."""
    encoded = []
    for row in rows:
        fields = _row_signature_fields(row)
        fields["provider"] = row.provider.strip()
        fields["groupProviders"] = sorted({name.strip() for name in row.group_providers if name.strip()})
        encoded.append(fields)
    return json.dumps(encoded, sort_keys=True)


def schedule_signatures_by_provider(
    rows: Sequence[ScheduleDraft],
    providers: Optional[Iterable[str]] = None,
) -> Dict[str, str]:
    """Per-provider signatures; a row counts for its provider and every alias."""
    grouped: Dict[str, List[ScheduleDraft]] = {}
    for row in rows:
        for target in row.targets:
            grouped.setdefault(target, []).append(row)
    names = list(dict.fromkeys(providers)) if providers else list(grouped)
    signatures = {}
    for name in names:
        encoded = sorted(
            (_row_signature_fields(row) for row in grouped.get(name, [])),
            key=lambda f: (f["start"], f["end"], f["id"]),
        )
        signatures[name] = json.dumps(encoded, sort_keys=True)
    return signatures


def linked_providers_for_api_key(
    configs: Mapping[str, ProviderConfig],
    api_key_ref: str,
    fallback_provider: str,
) -> List[str]:
    """Providers billed against ``api_key_ref``, fallback provider first if absent."""
    key = (api_key_ref or "").strip()
    if key in _UNSHARED_KEYS:
        return [fallback_provider]
    names = sorted(name for name, cfg in configs.items() if cfg.api_key_ref == key)
    if not names:
        return [fallback_provider]
    if fallback_provider not in names:
        names.insert(0, fallback_provider)
    return names


def schedule_draft_from_period(
    provider: str,
    period: SchedulePeriod,
    currency: str,
    table: FxRateTable,
    group_providers: Optional[Sequence[str]] = None,
) -> ScheduleDraft:
    """Editable row for a stored period.

    Open-ended package periods are shown with a nominal 30-day end.
    """
    currency = normalize_currency_code(currency)
    end = period.ended_at
    if end is None and period.mode == PricingMode.PACKAGE_TOTAL:
        end = utc(period.started_at) + timedelta(days=DEFAULT_PACKAGE_DAYS)
    return ScheduleDraft(
        provider=provider,
        group_providers=tuple(group_providers or (provider,)),
        id=period.id or "",
        mode=period.mode,
        api_key_ref=period.api_key_ref,
        start_text=format_draft_instant(period.started_at),
        end_text=format_draft_instant(end),
        amount_text=format_draft_amount(to_display(period.amount_usd, currency, table)),
        currency=currency,
    )


def new_schedule_draft(
    provider: str,
    api_key_ref: str,
    currency: str,
    table: FxRateTable,
    seed_amount_usd: Optional[float] = None,
    mode: PricingMode = PricingMode.PACKAGE_TOTAL,
    group_providers: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> ScheduleDraft:
    """Fresh row starting at today's midnight (UTC) and ending 30 days later."""
    now = utc(now or datetime.now(timezone.utc))
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    currency = normalize_currency_code(currency)
    amount_text = ""
    if seed_amount_usd is not None and seed_amount_usd > 0:
        amount_text = format_draft_amount(to_display(seed_amount_usd, currency, table))
    return ScheduleDraft(
        provider=provider,
        group_providers=tuple(group_providers or (provider,)),
        mode=mode,
        api_key_ref=api_key_ref or "-",
        start_text=format_draft_instant(start),
        end_text=format_draft_instant(start + timedelta(days=DEFAULT_PACKAGE_DAYS)),
        amount_text=amount_text,
        currency=currency,
    )


def merge_periods_into_drafts(
    periods_by_provider: Mapping[str, Sequence[SchedulePeriod]],
    configs: Mapping[str, ProviderConfig],
    currency_for,
    table: FxRateTable,
) -> List[ScheduleDraft]:
    """Collapse alias copies of the same period into one row each.

    Args:
        periods_by_provider: Stored periods, keyed by provider
        configs: Managed providers, used to find key aliases
        currency_for: Callable mapping (provider, api_key_ref) to a currency
        table: FX table for display amounts

    Returns:
        Rows sorted by (provider, start, end)
    """
    rows: Dict[str, ScheduleDraft] = {}
    for provider, periods in periods_by_provider.items():
        for period in sorted(periods, key=lambda p: utc(p.started_at)):
            linked = linked_providers_for_api_key(configs, period.api_key_ref, provider)
            key = period.identity_key()
            existing = rows.get(key)
            if existing is not None:
                merged = list(dict.fromkeys(list(existing.group_providers) + linked + [provider]))
                rows[key] = replace(existing, group_providers=tuple(merged))
                continue
            canonical = linked[0]
            rows[key] = schedule_draft_from_period(
                canonical,
                period,
                currency_for(provider, period.api_key_ref),
                table,
                group_providers=linked,
            )
    return sorted(rows.values(), key=lambda r: (r.provider, r.start_text, r.end_text))


def parse_schedule_rows_for_save(
    rows: Sequence[ScheduleDraft],
    table: FxRateTable,
) -> Dict[str, List[SchedulePeriod]]:
    """Validate rows and group them into per-provider period lists.

    The batch is accepted or rejected as a whole.

    Args:
        rows: Editable rows
        table: FX table used to convert amounts into USD

    Returns:
        Periods keyed by provider, each list sorted by start

    Raises:
        InvalidRowsError: If any row is incomplete, inverted, duplicated or
            overlaps another period of the same provider
    """
    grouped: Dict[str, List[SchedulePeriod]] = {}
    seen_by_provider: Dict[str, set] = {}
    key_windows = set()

    for row in rows:
        providers = row.targets
        if not providers:
            raise InvalidRowsError("provider is required")
        if row.mode not in (PricingMode.PACKAGE_TOTAL, PricingMode.PER_REQUEST):
            raise InvalidRowsError("mode must be monthly fee or $/request")
        start = parse_draft_instant(row.start_text)
        end = parse_draft_instant(row.end_text)
        amount = parse_positive_amount(row.amount_text)
        if start is None or amount is None:
            raise InvalidRowsError("complete each row with valid start and amount")
        if end is not None and start >= end:
            raise InvalidRowsError("each row start must be earlier than expires")

        key_ref = row.api_key_ref.strip() or "-"
        end_key = "open" if end is None else end.isoformat()
        window_key = (key_ref, start.isoformat(), end_key)
        if key_ref != "-" and window_key in key_windows:
            raise InvalidRowsError(f"duplicate start/expires for API key {key_ref}")
        key_windows.add(window_key)

        amount_usd = to_usd(amount, row.currency, table)
        dedupe_key = f"{row.mode.value}|{key_ref}|{start.isoformat()}|{end_key}|{amount_usd:.8f}"
        for provider in providers:
            seen = seen_by_provider.setdefault(provider, set())
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)
            grouped.setdefault(provider, []).append(SchedulePeriod(
                id=row.id.strip() or None,
                mode=row.mode,
                amount_usd=amount_usd,
                api_key_ref=key_ref,
                started_at=start,
                ended_at=end,
            ))

    for provider, periods in grouped.items():
        periods.sort(key=lambda p: p.started_at)
        for prev, cur in zip(periods, periods[1:]):
            if prev.ended_at is None or prev.ended_at > cur.started_at:
                raise InvalidRowsError(f"periods overlap for {provider}")
    return grouped


def select_active_period(
    periods: Sequence[SchedulePeriod],
    now: datetime,
    mode: Optional[PricingMode] = None,
) -> Optional[SchedulePeriod]:
    """The active period at ``now``.

    Overlapping periods are tolerated: the latest start wins, and on equal
    starts the later entry in input order wins.
    """
    winner = None
    for period in periods:
        if mode is not None and period.mode != mode:
            continue
        if not period.is_active(now):
            continue
        if winner is None or utc(period.started_at) >= utc(winner.started_at):
            winner = period
    return winner


def _package_periods(periods: Sequence[SchedulePeriod]) -> List[SchedulePeriod]:
    """Positive package periods, newest first."""
    eligible = [p for p in periods if p.mode == PricingMode.PACKAGE_TOTAL and p.amount_usd > 0]
    return sorted(eligible, key=lambda p: utc(p.started_at), reverse=True)


def rewrite_active_or_upcoming(
    periods: Sequence[SchedulePeriod],
    amount_usd: float,
    now: datetime,
) -> List[SchedulePeriod]:
    """Apply a new amount to active or upcoming package periods only."""
    rewritten = []
    for period in periods:
        in_window = period.mode == PricingMode.PACKAGE_TOTAL and (
            period.is_upcoming(now) or period.is_active(now)
        )
        rewritten.append(replace(period, amount_usd=amount_usd) if in_window else period)
    return rewritten


class TimelineManager:
    """Loads, validates and persists schedule rows across managed providers."""

    def __init__(self, backend: Backend, prefs: PrefsStore):
        self.backend = backend
        self.prefs = prefs
        self.rows: List[ScheduleDraft] = []
        self.last_saved_signature = schedule_rows_signature([])
        self.last_saved_by_provider: Dict[str, str] = {}
        self._configs: Dict[str, ProviderConfig] = {}

    async def _refresh_configs(self) -> Dict[str, ProviderConfig]:
        self._configs = await self.backend.get_provider_configs()
        return self._configs

    def _currency_for(self, provider: str, api_key_ref: Optional[str] = None) -> str:
        cfg = self._configs.get(provider)
        key_label = cfg.api_key_ref if cfg else None
        return self.prefs.read_preferred_currency(provider, api_key_ref, key_label)

    async def load(self, provider: str) -> List[ScheduleDraft]:
        """Load the merged editable view for ``provider`` and its peers.

        Raises:
            TransportError: If the backend cannot be read
        """
        configs = await self._refresh_configs()
        names = list(dict.fromkeys([provider] + sorted(configs)))
        names = [name for name in names if name in configs]
        periods_by_provider = {}
        for name in names:
            periods_by_provider[name] = await self.backend.get_provider_timeline(name)
        table = self.prefs.fx_table
        self.rows = merge_periods_into_drafts(periods_by_provider, configs, self._currency_for, table)
        self.last_saved_signature = schedule_rows_signature(self.rows)
        self.last_saved_by_provider = schedule_signatures_by_provider(self.rows, names)
        logger.debug("Loaded %d schedule rows across %d providers", len(self.rows), len(names))
        return self.rows

    def new_row(self, provider: str, seed_amount_usd: Optional[float] = None,
                mode: PricingMode = PricingMode.PACKAGE_TOTAL,
                now: Optional[datetime] = None) -> ScheduleDraft:
        cfg = self._configs.get(provider)
        key_ref = cfg.api_key_ref if cfg else "-"
        return new_schedule_draft(
            provider,
            key_ref,
            self._currency_for(provider, key_ref),
            self.prefs.fx_table,
            seed_amount_usd=seed_amount_usd,
            mode=mode,
            group_providers=linked_providers_for_api_key(self._configs, key_ref, provider),
            now=now,
        )

    async def save(self, rows: Sequence[ScheduleDraft]) -> List[str]:
        """Persist changed providers with full-replace semantics.

        Returns:
            Providers that were written

        Raises:
            InvalidRowsError: If the batch does not validate (nothing is sent)
            TransportError: If a backend write fails
        """
        periods_by_provider = parse_schedule_rows_for_save(rows, self.prefs.fx_table)
        previous = self.last_saved_by_provider
        current = schedule_signatures_by_provider(rows)
        written = []
        for provider in list(dict.fromkeys(list(previous) + list(current))):
            if self._configs and provider not in self._configs:
                continue
            if previous.get(provider, "[]") == current.get(provider, "[]"):
                continue
            await self.backend.set_provider_timeline(provider, periods_by_provider.get(provider, []))
            written.append(provider)
        self.rows = list(rows)
        self.last_saved_by_provider = current
        self.last_saved_signature = schedule_rows_signature(rows)
        if written:
            logger.info("Persisted timelines for %s", ", ".join(written))
        return written

    async def activate_package_total(
        self,
        provider: str,
        draft: PricingDraft,
        now: Optional[datetime] = None,
    ) -> Optional[float]:
        """Switch ``provider`` to package-total pricing.

        Active or upcoming package periods are rewritten in place with the new
        amount; past periods are left untouched. Without such a period a flat
        package price is stored instead. Gap fill is cleared either way.

        Args:
            provider: Provider to activate
            draft: Pricing draft supplying the amount, if any
            now: Reference instant

        Returns:
            The USD amount applied, or None if no amount could be resolved

        Raises:
            TransportError: If a backend write fails
        """
        now = utc(now or datetime.now(timezone.utc))
        try:
            periods = await self.backend.get_provider_timeline(provider)
        except TransportError as e:
            logger.warning("Could not read timeline for %s, assuming none: %s", provider, e)
            periods = []

        packages = _package_periods(periods)
        active = select_active_period(packages, now)
        upcoming = next((p for p in packages if p.is_upcoming(now)), None)

        cfg = self._configs.get(provider)
        if cfg is None:
            cfg = (await self._refresh_configs()).get(provider)
        fallback = cfg.manual_pricing_amount_usd if cfg else None
        amount_usd = resolve_pricing_amount_usd(draft, self.prefs.fx_table, fallback)
        if amount_usd is None and packages:
            amount_usd = packages[0].amount_usd
        if amount_usd is None:
            return None

        if active is not None or upcoming is not None:
            await self.backend.set_provider_timeline(provider, rewrite_active_or_upcoming(periods, amount_usd, now))
        else:
            await self.backend.set_provider_manual_pricing(provider, PricingMode.PACKAGE_TOTAL, amount_usd, None)
        await self.backend.set_provider_gap_fill(provider, GapFillMode.NONE, None)
        logger.info("Activated package pricing for %s at $%.4f", provider, amount_usd)
        return amount_usd

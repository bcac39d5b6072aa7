"""
Spend history editing.

An operator may override one provider-day either by total or by per-request
rate. A total override can never claim less than what tracked telemetry and
scheduled packages already attribute to that day.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Dict, List, Optional

from .autosave import DebounceScheduler
from .currency import format_draft_amount, parse_positive_amount
from .errors import HistoryFloorError, TransportError
from ..storage.backend import Backend
from ..storage.models import HistoryEntry

logger = logging.getLogger(__name__)

HISTORY_EPSILON = 0.0005
HISTORY_DAYS = 180
HISTORY_UNIT = "history:edit"


class HistoryField(Enum):
    """Mutually exclusive edit targets of a history row."""
    EFFECTIVE = "effective"
    PER_REQ = "per_req"


@dataclass(frozen=True)
class HistoryDraft:
    effective_text: str = ""
    per_req_text: str = ""


@dataclass(frozen=True)
class HistoryWrite:
    """Arguments for set_spend_history_entry."""
    provider: str
    day_key: str
    total_used_usd: Optional[float] = None
    usd_per_req: Optional[float] = None


def _positive(value: Optional[float]) -> bool:
    return value is not None and value > 0


def history_effective_display_value(entry: HistoryEntry) -> Optional[float]:
    """Effective total shown for a day, or None when nothing is attributed."""
    if _positive(entry.effective_total_usd):
        return entry.effective_total_usd
    total = (entry.tracked_total_usd or 0.0) + (entry.scheduled_total_usd or 0.0) + (entry.manual_total_usd or 0.0)
    return total if total > 0 else None


def history_per_req_display_value(entry: HistoryEntry) -> Optional[float]:
    if _positive(entry.effective_usd_per_req):
        return entry.effective_usd_per_req
    if _positive(entry.manual_usd_per_req):
        return entry.manual_usd_per_req
    if entry.req_count <= 0:
        return None
    total = history_effective_display_value(entry)
    if total is None:
        return None
    return total / entry.req_count


def history_draft_from_entry(entry: HistoryEntry) -> HistoryDraft:
    effective = history_effective_display_value(entry)
    per_req = history_per_req_display_value(entry)
    return HistoryDraft(
        effective_text=format_draft_amount(effective) if effective is not None else "",
        per_req_text=format_draft_amount(per_req) if per_req is not None else "",
    )


def fmt_history_source(source: Optional[str]) -> str:
    """Short display label for a history source."""
    if not source or source == "none":
        return "none"
    if source in ("manual_per_request", "manual_total"):
        return "manual"
    if source in ("tracked+manual_per_request", "tracked+manual_total"):
        return "tracked+manual"
    if source == "scheduled_package_total":
        return "scheduled"
    return source


def derive_history_entry(entry: HistoryEntry) -> HistoryEntry:
    """Fill effective figures and source from the raw components.

    The manual addition is the total override, else the per-request override
    times the day's requests.
    """
    tracked = entry.tracked_total_usd if _positive(entry.tracked_total_usd) else None
    scheduled = entry.scheduled_total_usd if _positive(entry.scheduled_total_usd) else None
    manual_total = entry.manual_total_usd if _positive(entry.manual_total_usd) else None
    manual_per_req = entry.manual_usd_per_req if _positive(entry.manual_usd_per_req) else None

    if manual_total is not None:
        manual_additional = manual_total
    elif manual_per_req is not None:
        manual_additional = manual_per_req * entry.req_count
    else:
        manual_additional = None

    parts = [v for v in (tracked, scheduled, manual_additional) if v is not None]
    effective_total = sum(parts) if parts else None
    if manual_per_req is not None:
        effective_per_req = manual_per_req
    elif effective_total is not None and entry.req_count > 0:
        effective_per_req = effective_total / entry.req_count
    else:
        effective_per_req = None

    if tracked is not None and manual_total is not None:
        source = "tracked+manual_total"
    elif tracked is not None and manual_per_req is not None:
        source = "tracked+manual_per_request"
    elif tracked is not None and scheduled is not None:
        source = "tracked+scheduled"
    elif tracked is not None:
        source = "tracked"
    elif manual_total is not None:
        source = "manual_total"
    elif manual_per_req is not None:
        source = "manual_per_request"
    elif scheduled is not None:
        source = "scheduled_package_total"
    else:
        source = "none"

    return HistoryEntry(
        provider=entry.provider,
        day_key=entry.day_key,
        req_count=entry.req_count,
        total_tokens=entry.total_tokens,
        tracked_total_usd=entry.tracked_total_usd,
        scheduled_total_usd=entry.scheduled_total_usd,
        scheduled_package_total_usd=entry.scheduled_package_total_usd,
        manual_total_usd=manual_total,
        manual_usd_per_req=manual_per_req,
        effective_total_usd=effective_total,
        effective_usd_per_req=effective_per_req,
        source=source,
    )


def _close_enough(a: float, b: float, epsilon: float) -> bool:
    return abs(a - b) < epsilon


def plan_history_edit(
    entry: HistoryEntry,
    draft: HistoryDraft,
    field: HistoryField,
    epsilon: float = HISTORY_EPSILON,
) -> Optional[HistoryWrite]:
    """Work out the override write for an edited history cell.

    Args:
        entry: The row as last loaded
        draft: Edited texts
        field: Which cell was edited
        epsilon: Tolerance for floating rounding

    Returns:
        The write to send, or None when the edit changes nothing

    Raises:
        HistoryFloorError: If the requested total is below tracked + scheduled
    """
    if field == HistoryField.PER_REQ:
        requested = parse_positive_amount(draft.per_req_text)
        current = history_per_req_display_value(entry)
        if requested is None or (current is not None and _close_enough(requested, current, epsilon)):
            return None
        return HistoryWrite(entry.provider, entry.day_key, total_used_usd=None, usd_per_req=requested)

    requested = parse_positive_amount(draft.effective_text)
    current = history_effective_display_value(entry)
    if requested is None or (current is not None and _close_enough(requested, current, epsilon)):
        return None
    minimum = (entry.tracked_total_usd or 0.0) + (entry.scheduled_total_usd or 0.0)
    if requested < minimum - epsilon:
        raise HistoryFloorError(minimum, requested)
    delta = requested - minimum
    return HistoryWrite(
        entry.provider,
        entry.day_key,
        total_used_usd=delta if delta > epsilon else None,
        usd_per_req=None,
    )


class HistoryEditor:
    """Loads history rows, keeps per-row drafts and writes overrides."""

    def __init__(
        self,
        backend: Backend,
        scheduler: Optional[DebounceScheduler] = None,
        days: int = HISTORY_DAYS,
        epsilon: float = HISTORY_EPSILON,
        delay: Optional[float] = None,
        on_saved=None,
    ):
        self.backend = backend
        self.scheduler = scheduler or DebounceScheduler()
        self.days = days
        self.epsilon = epsilon
        self.delay = delay
        self.on_saved = on_saved
        self.entries: List[HistoryEntry] = []
        self.drafts: Dict[str, HistoryDraft] = {}
        self.last_error = ""

    async def refresh(self, days: Optional[int] = None) -> List[HistoryEntry]:
        """Reload entries and rebuild every draft from them."""
        self.entries = await self.backend.get_spend_history(days or self.days)
        self.drafts = {entry.key: history_draft_from_entry(entry) for entry in self.entries}
        return self.entries

    def edit(self, entry: HistoryEntry, draft: HistoryDraft) -> None:
        self.drafts[entry.key] = draft

    async def save(self, entry: HistoryEntry, field: HistoryField) -> bool:
        """Persist the edited cell of ``entry``.

        Returns:
            True if a write was made

        Raises:
            HistoryFloorError: If the edit is below the tracked + scheduled floor
            TransportError: If the backend write fails
        """
        draft = self.drafts.get(entry.key) or history_draft_from_entry(entry)
        write = plan_history_edit(entry, draft, field, self.epsilon)
        if write is None:
            logger.debug("No history change to save for %s", entry.key)
            return False
        await self.backend.set_spend_history_entry(
            write.provider,
            write.day_key,
            total_used_usd=write.total_used_usd,
            usd_per_req=write.usd_per_req,
        )
        logger.info("History saved: %s %s", entry.provider, entry.day_key)
        await self.refresh()
        if self.on_saved is not None:
            await self.on_saved()
        return True

    async def _save_quietly(self, entry: HistoryEntry, field: HistoryField) -> None:
        try:
            await self.save(entry, field)
            self.last_error = ""
        except (HistoryFloorError, TransportError) as e:
            logger.warning("History auto-save failed for %s: %s", entry.key, e)
            self.last_error = str(e)

    def queue(self, entry: HistoryEntry, field: HistoryField) -> None:
        """Debounce a save of ``entry`` under the single history unit."""
        self.scheduler.schedule(HISTORY_UNIT, partial(self._save_quietly, entry, field), self.delay)

    def close(self) -> None:
        self.scheduler.cancel_all()

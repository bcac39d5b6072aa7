"""
Debounced, signature-diffed auto-save.

Edits reschedule a per-unit timer (last edit wins). When the timer fires the
draft is persisted unless its signature already matches the last persisted
one. A save that fires while the same unit is in flight is deferred and
queued again when the in-flight save resolves.
"""

import asyncio
import logging
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .currency import parse_positive_amount, to_usd
from .errors import PricingAmountError, ReconcileError, TransportError, ValidationError
from .pricing_draft import PricingDraft, draft_with_amount_usd, pricing_draft_signature
from .timeline import ScheduleDraft, TimelineManager, schedule_rows_signature
from ..storage.backend import Backend
from ..storage.models import GapFillMode, PricingMode
from ..storage.prefs import PrefsStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.6
SCHEDULE_UNIT = "schedule:rows"

OnSaved = Callable[[], Awaitable[None]]


class SaveState(Enum):
    """Save state of one unit."""
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    INVALID = "invalid"
    ERROR = "error"


class DebounceScheduler:
    """Timer-keyed task queue: scheduling under a key cancels the prior task.

    Cancelled tasks never run their callback; nothing is flushed on cancel.
    """

    def __init__(self, default_delay: float = DEFAULT_DEBOUNCE_SECONDS):
        self.default_delay = default_delay
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule(self, key: str, fn: Callable[[], Awaitable[None]], delay: Optional[float] = None) -> asyncio.Task:
        self.cancel(key)
        wait = self.default_delay if delay is None else delay
        task = asyncio.get_running_loop().create_task(self._run(key, fn, wait))
        self._tasks[key] = task
        return task

    async def _run(self, key: str, fn: Callable[[], Awaitable[None]], delay: float) -> None:
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        # once fired, a task can no longer be cancelled by a reschedule
        if self._tasks.get(key) is current:
            del self._tasks[key]
        self._running.add(current)
        try:
            await fn()
        except ReconcileError as e:
            logger.error("Debounced task %s failed: %s", key, e)
        except Exception:
            logger.exception("Debounced task %s crashed", key)
        finally:
            self._running.discard(current)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for key in list(self._tasks):
            if self.cancel(key):
                cancelled += 1
        return cancelled

    def pending(self) -> List[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    async def drain(self) -> None:
        """Wait until every scheduled task has fired and finished."""
        while self._tasks or self._running:
            tasks = list(self._tasks.values()) + list(self._running)
            await asyncio.gather(*tasks, return_exceptions=True)


class SaveTracker:
    """Per-unit save state, last persisted signature and in-flight set."""

    def __init__(self):
        self.states: Dict[str, SaveState] = {}
        self.errors: Dict[str, str] = {}
        self.persisted: Dict[str, str] = {}
        self.in_flight: Set[str] = set()

    def state(self, unit: str) -> SaveState:
        return self.states.get(unit, SaveState.IDLE)

    def set_state(self, units: Sequence[str], state: SaveState, error: str = "") -> None:
        for unit in units:
            self.states[unit] = state
            self.errors[unit] = error

    def persisted_signature(self, unit: str) -> Optional[str]:
        return self.persisted.get(unit)

    def record_persisted(self, unit: str, signature: str) -> None:
        self.persisted[unit] = signature

    def begin(self, unit: str) -> bool:
        """Mark ``unit`` in flight; False if it already was."""
        if unit in self.in_flight:
            return False
        self.in_flight.add(unit)
        return True

    def end(self, unit: str) -> None:
        self.in_flight.discard(unit)


async def _notify(on_saved: Optional[OnSaved]) -> None:
    if on_saved is None:
        return
    try:
        await on_saved()
    except TransportError as e:
        logger.warning("Refresh after save failed: %s", e)


class PricingAutoSaver:
    """Auto-saves per-request and "none" pricing drafts.

    Package-total drafts are never committed from a debounce; they go through
    ``confirm_package_activation``.
    """

    def __init__(
        self,
        backend: Backend,
        timelines: TimelineManager,
        prefs: PrefsStore,
        scheduler: Optional[DebounceScheduler] = None,
        tracker: Optional[SaveTracker] = None,
        delay: Optional[float] = None,
        on_saved: Optional[OnSaved] = None,
    ):
        self.backend = backend
        self.timelines = timelines
        self.prefs = prefs
        self.scheduler = scheduler or DebounceScheduler()
        self.tracker = tracker or SaveTracker()
        self.delay = delay
        self.on_saved = on_saved
        self._deferred: Dict[str, PricingDraft] = {}

    @staticmethod
    def unit_key(providers: Sequence[str]) -> str:
        return "pricing:" + "|".join(providers)

    def queue(self, providers: Sequence[str], draft: PricingDraft) -> SaveState:
        """Record an edit and schedule its save if anything changed."""
        targets = [p for p in dict.fromkeys(p.strip() for p in providers) if p]
        if not targets:
            return SaveState.IDLE
        if draft.mode == PricingMode.PACKAGE_TOTAL:
            self.tracker.set_state(targets, SaveState.IDLE)
            return SaveState.IDLE
        signature = pricing_draft_signature(draft)
        if all(self.tracker.persisted_signature(p) == signature for p in targets):
            self.tracker.set_state(targets, SaveState.SAVED)
            return SaveState.SAVED
        self.tracker.set_state(targets, SaveState.IDLE)
        self.scheduler.schedule(self.unit_key(targets), partial(self.save, targets, draft), self.delay)
        return SaveState.IDLE

    async def save(self, providers: Sequence[str], draft: PricingDraft) -> bool:
        """Persist a per-request or "none" draft for every provider.

        A save that fires while another one for the same providers is in
        flight is deferred; the latest deferred draft is queued again once
        the in-flight save resolves.

        Returns:
            True if the draft was persisted
        """
        unit = self.unit_key(providers)
        if not self.tracker.begin(unit):
            logger.debug("Deferring pricing save for %s: already in flight", unit)
            self._deferred[unit] = draft
            return False
        try:
            saved = await self._persist(providers, draft)
        finally:
            self.tracker.end(unit)
        deferred = self._deferred.pop(unit, None)
        if deferred is not None:
            self.queue(providers, deferred)
        if saved:
            await _notify(self.on_saved)
        return saved

    async def _persist(self, providers: Sequence[str], draft: PricingDraft) -> bool:
        try:
            amount_usd = None
            if draft.mode == PricingMode.PER_REQUEST:
                amount = parse_positive_amount(draft.amount_text)
                if amount is None:
                    raise PricingAmountError()
                amount_usd = to_usd(amount, draft.currency, self.prefs.fx_table)
            elif draft.mode != PricingMode.NONE:
                raise PricingAmountError("Package pricing must be confirmed through the timeline")
            self.tracker.set_state(providers, SaveState.SAVING)
            for provider in providers:
                await self.backend.set_provider_manual_pricing(provider, draft.mode, amount_usd, None)
                await self.backend.set_provider_gap_fill(provider, GapFillMode.NONE, None)
        except ValidationError as e:
            self.tracker.set_state(providers, SaveState.INVALID, str(e))
            return False
        except TransportError as e:
            logger.error("Pricing auto-save failed for %s: %s", ", ".join(providers), e)
            self.tracker.set_state(providers, SaveState.ERROR, str(e))
            return False

        signature = pricing_draft_signature(draft)
        for provider in providers:
            self.tracker.record_persisted(provider, signature)
        self.tracker.set_state(providers, SaveState.SAVED)
        return True

    async def confirm_package_activation(self, provider: str, draft: PricingDraft, now=None) -> bool:
        """Activate package-total pricing for ``provider`` through the timeline."""
        self.tracker.set_state([provider], SaveState.SAVING)
        try:
            amount_usd = await self.timelines.activate_package_total(provider, draft, now=now)
        except TransportError as e:
            logger.error("Package activation failed for %s: %s", provider, e)
            self.tracker.set_state([provider], SaveState.ERROR, str(e))
            return False
        if amount_usd is None:
            self.tracker.set_state([provider], SaveState.IDLE)
            return False
        saved = draft_with_amount_usd(draft, amount_usd, self.prefs.fx_table)
        self.tracker.record_persisted(provider, pricing_draft_signature(saved))
        self.tracker.set_state([provider], SaveState.SAVED)
        await _notify(self.on_saved)
        return True

    def close(self) -> None:
        self.scheduler.cancel_all()


class ScheduleAutoSaver:
    """Auto-saves the editable schedule rows as the single unit ``schedule:rows``."""

    def __init__(
        self,
        timelines: TimelineManager,
        scheduler: Optional[DebounceScheduler] = None,
        tracker: Optional[SaveTracker] = None,
        delay: Optional[float] = None,
        on_saved: Optional[OnSaved] = None,
    ):
        self.timelines = timelines
        self.scheduler = scheduler or DebounceScheduler()
        self.tracker = tracker or SaveTracker()
        self.delay = delay
        self.on_saved = on_saved
        self._deferred: Optional[List[ScheduleDraft]] = None

    @property
    def state(self) -> SaveState:
        return self.tracker.state(SCHEDULE_UNIT)

    @property
    def error(self) -> str:
        return self.tracker.errors.get(SCHEDULE_UNIT, "")

    def queue(self, rows: Sequence[ScheduleDraft]) -> SaveState:
        rows = list(rows)
        if schedule_rows_signature(rows) == self.timelines.last_saved_signature:
            self.tracker.set_state([SCHEDULE_UNIT], SaveState.SAVED)
            return SaveState.SAVED
        self.tracker.set_state([SCHEDULE_UNIT], SaveState.IDLE)
        self.scheduler.schedule(SCHEDULE_UNIT, partial(self.save, rows), self.delay)
        return SaveState.IDLE

    async def save(self, rows: Sequence[ScheduleDraft]) -> bool:
        if not self.tracker.begin(SCHEDULE_UNIT):
            logger.debug("Deferring schedule save: already in flight")
            self._deferred = list(rows)
            return False
        try:
            saved = await self._persist(rows)
        finally:
            self.tracker.end(SCHEDULE_UNIT)
        deferred, self._deferred = self._deferred, None
        if deferred is not None:
            self.queue(deferred)
        if saved:
            await _notify(self.on_saved)
        return saved

    async def _persist(self, rows: Sequence[ScheduleDraft]) -> bool:
        try:
            self.tracker.set_state([SCHEDULE_UNIT], SaveState.SAVING)
            await self.timelines.save(rows)
        except ValidationError as e:
            self.tracker.set_state([SCHEDULE_UNIT], SaveState.INVALID, str(e))
            return False
        except TransportError as e:
            logger.error("Scheduled auto-save failed: %s", e)
            self.tracker.set_state([SCHEDULE_UNIT], SaveState.ERROR, str(e))
            return False
        self.tracker.record_persisted(SCHEDULE_UNIT, self.timelines.last_saved_signature)
        self.tracker.set_state([SCHEDULE_UNIT], SaveState.SAVED)
        return True

    def close(self) -> None:
        self.scheduler.cancel_all()

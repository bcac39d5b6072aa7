"""
Daily FX rate refresh.

Fetches USD-based rates from an ordered list of public endpoints at most once
per calendar day. Fetch failures keep the previous table.
"""

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx

from .currency import FxRateTable
from ..storage.prefs import PrefsStore

logger = logging.getLogger(__name__)

DEFAULT_FX_ENDPOINTS = (
    "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/usd.json",
    "https://latest.currency-api.pages.dev/v1/currencies/usd.json",
)

_CODE_RE = re.compile(r"^[A-Z]{3}$")


def today_key(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).date().isoformat()


def parse_fx_payload(payload: Any, today: str) -> Optional[FxRateTable]:
    """Parse ``{"date": ..., "usd": {"eur": 0.9, ...}}`` into a rate table.

    Returns None when the payload carries no usable USD table.
    """
    if not isinstance(payload, dict):
        return None
    usd_map = payload.get("usd")
    if not isinstance(usd_map, dict):
        return None
    rates = {"USD": 1.0}
    for code, value in usd_map.items():
        norm = str(code).strip().upper()
        if not _CODE_RE.match(norm):
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if not math.isfinite(value) or value <= 0:
            continue
        rates[norm] = float(value)
    rates["USD"] = 1.0
    date = payload.get("date")
    date = date[:10] if isinstance(date, str) and date else today
    return FxRateTable(date=date, rates=rates)


async def refresh_fx_rates_daily(
    store: PrefsStore,
    force: bool = False,
    endpoints: Sequence[str] = DEFAULT_FX_ENDPOINTS,
    client: Optional[httpx.AsyncClient] = None,
    today: Optional[str] = None,
    timeout: float = 10.0,
) -> FxRateTable:
    """Refresh the cached FX table unless a same-day entry exists.

    Args:
        store: Prefs store holding the cached table
        force: Refetch even when today's table is cached
        endpoints: Rate endpoints, tried in order
        client: Optional shared HTTP client
        today: ISO day override
        timeout: Per-request timeout in seconds

    Returns:
        The table now in effect (fresh, or the previous one on failure)
    """
    today = today or today_key()
    cached = store.fx_table
    usd_rate = cached.rates.get("USD")
    if not force and cached.date == today and usd_rate is not None and math.isfinite(usd_rate):
        return cached

    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        for endpoint in endpoints:
            try:
                response = await http_client.get(endpoint, headers={"Cache-Control": "no-store"})
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("FX fetch failed for %s: %s", endpoint, e)
                continue
            table = parse_fx_payload(payload, today)
            if table is None or table.rates.get("USD", 0) <= 0:
                logger.warning("FX payload from %s is not usable", endpoint)
                continue
            store.set_fx_table(table)
            store.persist()
            logger.info("FX rates refreshed for %s (%d currencies)", table.date, len(table.rates))
            return table
    finally:
        if owns_client:
            await http_client.aclose()

    logger.warning("All FX endpoints failed; keeping table from %s", cached.date or "defaults")
    return cached

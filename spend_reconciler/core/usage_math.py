"""
Derived usage figures.

Per-request and per-token cost figures are always derived from an effective
total, never stored.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


def round3(value: float) -> float:
    """Round a USD amount to 3 decimal places (half-up)."""
    return float(Decimal(str(value)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP))


def is_positive(value: Optional[float]) -> bool:
    """True for finite numbers greater than zero."""
    if value is None:
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return number == number and number not in (float("inf"), float("-inf")) and number > 0


def estimated_avg_request_cost_usd(total_usd: Optional[float], requests: int) -> Optional[float]:
    """Average cost per request, or None when there is no total or no requests."""
    if total_usd is None or requests <= 0:
        return None
    return total_usd / requests


def usd_per_million_tokens(total_usd: Optional[float], total_tokens: int) -> Optional[float]:
    """Cost per million tokens, or None when there is no total or no tokens."""
    if total_usd is None or total_tokens <= 0:
        return None
    return total_usd / total_tokens * 1_000_000


def tokens_per_request(total_tokens: int, requests: int) -> Optional[float]:
    if requests <= 0:
        return None
    return total_tokens / requests

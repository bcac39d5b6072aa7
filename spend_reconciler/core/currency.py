"""
Currency conversion and normalization.

Converts between canonical USD amounts and a provider's display currency using
a daily FX rate table. Missing rates degrade to USD-equivalent instead of
failing.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

PREFERRED_CURRENCIES = ("USD", "CNY", "EUR", "JPY", "GBP", "HKD", "SGD", "MYR")


def normalize_currency_code(code: Optional[str]) -> str:
    """Uppercase a currency code, map RMB to CNY, fall back to USD."""
    raw = (code or "").strip().upper()
    if raw == "RMB":
        raw = "CNY"
    return raw if _CURRENCY_RE.match(raw) else "USD"


def currency_label(code: str) -> str:
    """Display label for a normalized code (CNY is shown as RMB)."""
    return "RMB" if code == "CNY" else code


@dataclass(frozen=True)
class FxRateTable:
    """Rates relative to USD for one calendar day."""
    date: str = ""
    rates: Mapping[str, float] = field(default_factory=lambda: {"USD": 1.0})

    def rate(self, code: str) -> float:
        """Rate for a currency; unknown or invalid rates count as 1."""
        value = self.rates.get(normalize_currency_code(code))
        if value is None or not math.isfinite(value) or value <= 0:
            return 1.0
        return float(value)

    def to_dict(self) -> Dict:
        return {"date": self.date, "rates": dict(self.rates)}

    @classmethod
    def from_dict(cls, data: Mapping) -> Optional["FxRateTable"]:
        """Parse a cached table; returns None when the shape is unusable."""
        if not isinstance(data, Mapping):
            return None
        rates = data.get("rates")
        date = data.get("date")
        if not isinstance(rates, Mapping) or not isinstance(date, str):
            return None
        clean: Dict[str, float] = {}
        for code, value in rates.items():
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                continue
            clean[str(code).upper()] = float(value)
        if "USD" not in clean:
            return None
        return cls(date=date[:10], rates=clean)


def to_display(usd_amount: float, currency: str, table: FxRateTable) -> float:
    """Convert a canonical USD amount into the display currency."""
    return usd_amount * table.rate(currency)


def to_usd(amount: float, currency: str, table: FxRateTable) -> float:
    """Convert an amount in the given currency into canonical USD."""
    return amount / table.rate(currency)


def convert_between(amount: float, from_currency: str, to_currency: str, table: FxRateTable) -> float:
    return to_display(to_usd(amount, from_currency, table), to_currency, table)


def build_currency_options(table: FxRateTable) -> List[str]:
    """Currency codes for a picker: preferred codes first, then alphabetical."""
    codes = sorted({code.upper() for code in table.rates if _CURRENCY_RE.match(code.upper())})
    head = [code for code in PREFERRED_CURRENCIES if code in codes]
    tail = [code for code in codes if code not in head]
    return head + tail


def format_draft_amount(value: Optional[float]) -> str:
    """Format an amount for an editable field; empty for non-positive values."""
    if value is None or not math.isfinite(value) or value <= 0:
        return ""
    text = f"{value:.4f}"
    return text.rstrip("0").rstrip(".")


def parse_positive_amount(text: Optional[str]) -> Optional[float]:
    """Parse free-form numeric text; returns None unless finite and > 0."""
    raw = (text or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value

"""
Per-provider pricing drafts.

A draft is the editable pricing configuration for a provider (mode, amount
text in the display currency, currency). Its signature is the unit of change
detection for auto-save.
"""

import json
from dataclasses import dataclass
from typing import Optional

from .currency import (
    FxRateTable,
    format_draft_amount,
    normalize_currency_code,
    parse_positive_amount,
    to_display,
    to_usd,
)
from ..storage.models import PricingMode, ProviderConfig
from ..storage.prefs import PrefsStore


@dataclass(frozen=True)
class PricingDraft:
    """Editable pricing configuration for one provider."""
    mode: PricingMode = PricingMode.NONE
    amount_text: str = ""
    currency: str = "USD"


def pricing_draft_signature(draft: PricingDraft) -> str:
    """Stable encoding of mode, trimmed amount and normalized currency."""
    return json.dumps(
        {
            "mode": draft.mode.value,
            "amountText": draft.amount_text.strip(),
            "currency": normalize_currency_code(draft.currency),
        },
        sort_keys=True,
    )


def build_pricing_draft(
    provider: ProviderConfig,
    prefs: PrefsStore,
    table: FxRateTable,
) -> PricingDraft:
    """Open an editor draft from persisted provider settings."""
    currency = prefs.read_preferred_currency(provider.name, provider.api_key_ref)
    amount_text = ""
    if provider.manual_pricing_amount_usd is not None and provider.manual_pricing_amount_usd > 0:
        amount_text = format_draft_amount(to_display(provider.manual_pricing_amount_usd, currency, table))
    return PricingDraft(mode=provider.manual_pricing_mode, amount_text=amount_text, currency=currency)


def resolve_pricing_amount_usd(
    draft: PricingDraft,
    table: FxRateTable,
    fallback_amount_usd: Optional[float] = None,
) -> Optional[float]:
    """USD amount for a draft, falling back to a known positive amount."""
    amount = parse_positive_amount(draft.amount_text)
    if amount is not None:
        return to_usd(amount, draft.currency, table)
    if fallback_amount_usd is not None and fallback_amount_usd > 0:
        return fallback_amount_usd
    return None


def draft_with_amount_usd(draft: PricingDraft, amount_usd: float, table: FxRateTable) -> PricingDraft:
    """Copy of ``draft`` whose amount text shows ``amount_usd`` in its currency."""
    return PricingDraft(
        mode=draft.mode,
        amount_text=format_draft_amount(to_display(amount_usd, draft.currency, table)),
        currency=normalize_currency_code(draft.currency),
    )

"""
Local preference and FX cache store.

An explicitly injected, versioned store with an init(load) / persist(save)
lifecycle. Malformed or stale files degrade to defaults and are never surfaced
as errors.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from ..core.currency import FxRateTable, normalize_currency_code

logger = logging.getLogger(__name__)

PREFS_VERSION = 1

Loader = Callable[[], Optional[Dict[str, Any]]]
Saver = Callable[[Dict[str, Any]], None]


def currency_pref_key_by_api_key(api_key_ref: Optional[str]) -> Optional[str]:
    key = (api_key_ref or "").strip()
    if not key or key in ("-", "set"):
        return None
    return f"key:{key}"


def currency_pref_key_by_provider(provider: str) -> str:
    return f"provider:{provider}"


class PrefsStore:
    """Process-wide prefs (FX table, preferred currencies), passed explicitly.

    Hydrated lazily on first access; last write wins on persist.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._data: Dict[str, Any] = self._defaults()
        self._initialized = False

    @staticmethod
    def _defaults() -> Dict[str, Any]:
        return {"version": PREFS_VERSION, "fx": FxRateTable().to_dict(), "currency": {}}

    def _load_file(self) -> Optional[Dict[str, Any]]:
        if self.path is None or not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_file(self, data: Dict[str, Any]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)

    def init(self, load: Optional[Loader] = None) -> "PrefsStore":
        """Hydrate the store from ``load`` (defaults to the JSON file)."""
        loader = load or self._load_file
        try:
            raw = loader()
        except (OSError, ValueError) as e:
            logger.warning("Failed to read prefs, using defaults: %s", e)
            raw = None
        self._data = self._coerce(raw)
        self._initialized = True
        return self

    def persist(self, save: Optional[Saver] = None) -> bool:
        """Write the current state; failures are logged and reported as False."""
        saver = save or self._save_file
        try:
            saver(self.snapshot())
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to persist prefs: %s", e)
            return False
        return True

    def snapshot(self) -> Dict[str, Any]:
        self._ensure_initialized()
        return {
            "version": PREFS_VERSION,
            "fx": dict(self._data["fx"]),
            "currency": dict(self._data["currency"]),
        }

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.init()

    def _coerce(self, raw: Any) -> Dict[str, Any]:
        data = self._defaults()
        if raw is None:
            return data
        if not isinstance(raw, dict) or raw.get("version") != PREFS_VERSION:
            logger.warning("Ignoring prefs with unexpected shape or version")
            return data
        table = FxRateTable.from_dict(raw.get("fx") or {})
        if table is not None:
            data["fx"] = table.to_dict()
        currency = raw.get("currency")
        if isinstance(currency, dict):
            data["currency"] = {
                str(k): normalize_currency_code(v) for k, v in currency.items() if isinstance(v, str)
            }
        return data

    @property
    def fx_table(self) -> FxRateTable:
        self._ensure_initialized()
        return FxRateTable.from_dict(self._data["fx"]) or FxRateTable()

    def set_fx_table(self, table: FxRateTable) -> None:
        self._ensure_initialized()
        self._data["fx"] = table.to_dict()

    def read_preferred_currency(
        self,
        provider: str,
        api_key_ref: Optional[str] = None,
        provider_key_label: Optional[str] = None,
    ) -> str:
        """Preferred display currency: by API key, then provider key, then provider."""
        self._ensure_initialized()
        keys = [
            currency_pref_key_by_api_key(api_key_ref),
            currency_pref_key_by_api_key(provider_key_label),
            currency_pref_key_by_provider(provider),
        ]
        prefs = self._data["currency"]
        for key in keys:
            if key and prefs.get(key):
                return normalize_currency_code(prefs[key])
        return "USD"

    def persist_preferred_currency(
        self,
        providers: Iterable[str],
        currency: str,
        api_key_ref: Optional[str] = None,
        key_label_for: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._ensure_initialized()
        normalized = normalize_currency_code(currency)
        keys = set()
        by_key = currency_pref_key_by_api_key(api_key_ref)
        if by_key:
            keys.add(by_key)
        for provider in providers:
            if key_label_for is not None:
                by_provider_key = currency_pref_key_by_api_key(key_label_for(provider))
                if by_provider_key:
                    keys.add(by_provider_key)
            keys.add(currency_pref_key_by_provider(provider))
        for key in keys:
            self._data["currency"][key] = normalized

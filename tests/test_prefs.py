"""
Tests for the local preference store.
"""

import json

from spend_reconciler.core.currency import FxRateTable
from spend_reconciler.storage.prefs import PREFS_VERSION, PrefsStore


class TestPrefsLifecycle:
    """Test init/persist and degradation to defaults."""

    def test_round_trip_through_file(self, tmp_path):
        path = tmp_path / "prefs.json"
        store = PrefsStore(str(path)).init()
        store.set_fx_table(FxRateTable(date="2024-03-15", rates={"USD": 1.0, "EUR": 0.9}))
        store.persist_preferred_currency(["alpha"], "eur", api_key_ref="k1")
        assert store.persist() is True

        reloaded = PrefsStore(str(path)).init()
        assert reloaded.fx_table.rate("EUR") == 0.9
        assert reloaded.read_preferred_currency("alpha") == "EUR"
        assert json.loads(path.read_text())["version"] == PREFS_VERSION

    def test_malformed_file_degrades_to_defaults(self, tmp_path):
        path = tmp_path / "prefs.json"
        path.write_text("{not json")
        store = PrefsStore(str(path)).init()
        assert store.fx_table == FxRateTable()
        assert store.read_preferred_currency("alpha") == "USD"

    def test_wrong_version_is_ignored(self):
        raw = {"version": PREFS_VERSION + 1, "fx": {"date": "2024-03-15", "rates": {"USD": 1.0, "EUR": 0.9}}}
        store = PrefsStore().init(load=lambda: raw)
        assert store.fx_table.rate("EUR") == 1.0

    def test_persist_failure_reports_false(self):
        def broken(data):
            raise OSError("read-only")

        store = PrefsStore().init(load=lambda: None)
        assert store.persist(broken) is False

    def test_lazy_init(self):
        """Reading before init hydrates from the (absent) file."""
        assert PrefsStore().fx_table == FxRateTable()


class TestPreferredCurrency:
    """Test currency preference lookup order."""

    def test_api_key_preference_wins(self):
        store = PrefsStore().init(load=lambda: None)
        store.persist_preferred_currency(["alpha"], "CNY", api_key_ref="k1")
        store.persist_preferred_currency(["beta"], "EUR")
        assert store.read_preferred_currency("beta", api_key_ref="k1") == "CNY"
        assert store.read_preferred_currency("beta") == "EUR"

    def test_shared_placeholders_are_not_keys(self):
        store = PrefsStore().init(load=lambda: None)
        store.persist_preferred_currency(["alpha"], "EUR", api_key_ref="-")
        assert "key:-" not in store.snapshot()["currency"]
        assert store.read_preferred_currency("alpha") == "EUR"

    def test_provider_key_label_fallback(self):
        store = PrefsStore().init(load=lambda: None)
        store.persist_preferred_currency(["alpha"], "rmb", api_key_ref="team")
        assert store.read_preferred_currency("gamma", provider_key_label="team") == "CNY"

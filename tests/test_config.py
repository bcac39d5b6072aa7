"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for engine configs.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from spend_reconciler.config.loader import (
    AutosaveConfig,
    EngineConfig,
    FxConfig,
    HistoryConfig,
    load_engine_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_data = {
            "database": "data/spend.db",
            "prefs_path": "data/prefs.json",
            "autosave": {"debounce_ms": 250},
            "fx": {"endpoints": ["https://rates.example/usd.json"]},
            "history": {"days": 90, "epsilon": 0.001},
            "anomaly": {"spike_ratio": 3, "min_requests": 5},
        }

        config = load_engine_config(self._write_config(config_data))

        assert config.database == "data/spend.db"
        assert config.prefs_path == "data/prefs.json"
        assert config.autosave.debounce_seconds == 0.25
        assert config.fx.endpoints == ("https://rates.example/usd.json",)
        assert config.history.days == 90
        assert config.history.epsilon == 0.001
        assert config.anomaly.spike_ratio == 3.0
        assert config.anomaly.min_requests == 5
        # untouched thresholds keep their defaults
        assert config.anomaly.price_ratio == 2.0

    def test_empty_file_gives_defaults(self):
        """Test that an empty file means every default."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        assert load_engine_config(config_path) == EngineConfig.default()

    def test_partial_config(self):
        """Test that missing sections fall back to defaults."""
        config = load_engine_config(self._write_config({"history": {"days": 30}}))
        assert config.history.days == 30
        assert config.autosave == AutosaveConfig()
        assert config.fx == FxConfig()

    def test_missing_file_raises_error(self):
        """Test that a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_engine_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises_error(self):
        """Test that broken YAML raises YAMLError."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("history: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_engine_config(config_path)

    def test_non_mapping_rejected(self):
        """Test that a top-level list is rejected."""
        with pytest.raises(ValueError, match="must be a mapping"):
            load_engine_config(self._write_config(["database"]))

    def test_unknown_top_level_key(self):
        """Test that unknown keys are rejected, not ignored."""
        with pytest.raises(ValueError, match="Unknown keys in config"):
            load_engine_config(self._write_config({"budget": {"daily": 1}}))

    def test_unknown_section_key(self):
        """Test that unknown section keys are rejected."""
        with pytest.raises(ValueError, match="Unknown keys in autosave"):
            load_engine_config(self._write_config({"autosave": {"delay": 10}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'history' must be a dictionary"):
            load_engine_config(self._write_config({"history": 5}))

    def test_wrong_types(self):
        """Test that booleans and strings are not accepted as numbers."""
        with pytest.raises(ValueError, match="must be a number"):
            load_engine_config(self._write_config({"history": {"days": True}}))
        with pytest.raises(ValueError, match="must be a number"):
            load_engine_config(self._write_config({"anomaly": {"spike_ratio": "high"}}))
        with pytest.raises(ValueError, match="must be an integer"):
            load_engine_config(self._write_config({"autosave": {"debounce_ms": 12.5}}))

    def test_blank_database(self):
        with pytest.raises(ValueError, match="non-empty string"):
            load_engine_config(self._write_config({"database": "  "}))

    def test_fx_endpoints_must_be_https(self):
        with pytest.raises(ValueError, match="https"):
            load_engine_config(self._write_config({"fx": {"endpoints": ["http://plain.example"]}}))
        with pytest.raises(ValueError, match="list of urls"):
            load_engine_config(self._write_config({"fx": {"endpoints": "https://one.example"}}))


class TestConfigValidation:
    """Test dataclass-level validation."""

    def test_debounce_bounds(self):
        with pytest.raises(ValueError, match="debounce_ms"):
            AutosaveConfig(debounce_ms=10)
        with pytest.raises(ValueError, match="debounce_ms"):
            AutosaveConfig(debounce_ms=10000)
        assert AutosaveConfig().debounce_ms == 600

    def test_history_positive(self):
        with pytest.raises(ValueError, match="history.days"):
            HistoryConfig(days=0)
        with pytest.raises(ValueError, match="history.epsilon"):
            HistoryConfig(epsilon=0)

    def test_fx_not_empty(self):
        with pytest.raises(ValueError, match="must not be empty"):
            FxConfig(endpoints=())

    def test_anomaly_thresholds_validated(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("anomaly:\n  price_ratio: -1\n", encoding="utf-8")
        with pytest.raises(ValueError, match="price_ratio"):
            load_engine_config(str(config_path))

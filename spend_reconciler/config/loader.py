"""
Configuration management and loading.

Handles engine settings: storage paths, auto-save timing, FX endpoints,
history editing and anomaly thresholds.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from ..core.anomaly import AnomalyConfig
from ..core.autosave import DEFAULT_DEBOUNCE_SECONDS
from ..core.fx import DEFAULT_FX_ENDPOINTS
from ..core.history import HISTORY_DAYS, HISTORY_EPSILON
from ..storage.db import DEFAULT_DB_PATH

DEFAULT_PREFS_PATH = ".spend-reconciler-prefs.json"
MIN_DEBOUNCE_MS = 50
MAX_DEBOUNCE_MS = 5000


@dataclass(frozen=True)
class AutosaveConfig:
    """Debounce timing for auto-saved edits."""
    debounce_ms: int = int(DEFAULT_DEBOUNCE_SECONDS * 1000)

    def __post_init__(self):
        """Validate debounce is within bounds."""
        if not MIN_DEBOUNCE_MS <= self.debounce_ms <= MAX_DEBOUNCE_MS:
            raise ValueError(f"debounce_ms must be between {MIN_DEBOUNCE_MS} and {MAX_DEBOUNCE_MS}")

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0


@dataclass(frozen=True)
class FxConfig:
    """Daily FX refresh sources, tried in order."""
    endpoints: Tuple[str, ...] = DEFAULT_FX_ENDPOINTS

    def __post_init__(self):
        """Validate endpoints are https urls."""
        if not self.endpoints:
            raise ValueError("fx.endpoints must not be empty")
        for url in self.endpoints:
            if not url.startswith("https://"):
                raise ValueError(f"fx endpoint must be an https url: {url}")


@dataclass(frozen=True)
class HistoryConfig:
    """History editor window and rounding tolerance."""
    days: int = HISTORY_DAYS
    epsilon: float = HISTORY_EPSILON

    def __post_init__(self):
        """Validate history values are positive."""
        if self.days <= 0:
            raise ValueError("history.days must be > 0")
        if self.epsilon <= 0:
            raise ValueError("history.epsilon must be > 0")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    database: str = DEFAULT_DB_PATH
    prefs_path: str = DEFAULT_PREFS_PATH
    autosave: AutosaveConfig = field(default_factory=AutosaveConfig)
    fx: FxConfig = field(default_factory=FxConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _number(data: Dict, key: str, path: str, integer: bool = False) -> Any:
    value = data[key]
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if integer:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"'{key}' in {path} must be an integer")
        return int(value)
    return float(value)


def _string(raw: Dict, key: str) -> str:
    value = raw[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' must be a non-empty string")
    return value


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Every section is optional; unknown keys, wrong types and non-positive
    thresholds are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return EngineConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _check_keys(raw_config, {'database', 'prefs_path', 'autosave', 'fx', 'history', 'anomaly'}, "config")

    kwargs: Dict[str, Any] = {}
    if 'database' in raw_config:
        kwargs['database'] = _string(raw_config, 'database')
    if 'prefs_path' in raw_config:
        kwargs['prefs_path'] = _string(raw_config, 'prefs_path')

    autosave_data = _section(raw_config, 'autosave')
    _check_keys(autosave_data, {'debounce_ms'}, "autosave")
    if 'debounce_ms' in autosave_data:
        kwargs['autosave'] = AutosaveConfig(debounce_ms=_number(autosave_data, 'debounce_ms', "autosave", True))

    fx_data = _section(raw_config, 'fx')
    _check_keys(fx_data, {'endpoints'}, "fx")
    if 'endpoints' in fx_data:
        endpoints = fx_data['endpoints']
        if not isinstance(endpoints, list) or not all(isinstance(url, str) for url in endpoints):
            raise ValueError("'endpoints' in fx must be a list of urls")
        kwargs['fx'] = FxConfig(endpoints=tuple(endpoints))

    history_data = _section(raw_config, 'history')
    _check_keys(history_data, {'days', 'epsilon'}, "history")
    history_kwargs = {}
    if 'days' in history_data:
        history_kwargs['days'] = _number(history_data, 'days', "history", True)
    if 'epsilon' in history_data:
        history_kwargs['epsilon'] = _number(history_data, 'epsilon', "history")
    if history_kwargs:
        kwargs['history'] = HistoryConfig(**history_kwargs)

    anomaly_data = _section(raw_config, 'anomaly')
    integer_keys = {'min_buckets', 'min_requests'}
    float_keys = {'spike_ratio', 'price_ratio', 'price_abs_delta'}
    _check_keys(anomaly_data, integer_keys | float_keys, "anomaly")
    if anomaly_data:
        kwargs['anomaly'] = AnomalyConfig(**{
            key: _number(anomaly_data, key, "anomaly", key in integer_keys)
            for key in anomaly_data
        })

    return EngineConfig(**kwargs)

"""
Configuration loader for Sentiment Fusion.

This module provides Pydantic models for strong validation of settings
and a loader function that merges a YAML configuration file with
environment variables.

Design Principles:
- Strict Schema: every option is a field on a frozen Pydantic model, so a
  `Settings` value is immutable once validated. Reconfiguration builds a new
  value and swaps it wholesale through `SettingsHolder`.
- Defaults First: a YAML file only needs to carry what differs from
  `default_settings()`; it is deep-merged on top of the defaults.
- Environment Overrides: any setting can be overridden by an environment
  variable, e.g. `alerts.sentiment_spike.threshold` by
  `SENTIMENT_FUSION_ALERTS__SENTIMENT_SPIKE__THRESHOLD`.
- Clear Errors: Pydantic `ValidationError` is wrapped in `ConfigError`
  with one line per failing location.
"""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .types import DIRECTIONAL_SOURCES, AlertType, Severity, SignalMode, SourceName, Window

ENV_PREFIX = "SENTIMENT_FUSION"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Sources -----------------------------------------------------------------

class SourceSettings(_Frozen):
    """Per-source toggle, staleness horizon and declared value range."""
    enabled: bool = True
    expected_interval_sec: float = Field(..., gt=0)
    min_value: float = -1.0
    max_value: Optional[float] = 1.0  # None = unbounded above

    @model_validator(mode="after")
    def _range_ordered(self):
        if self.max_value is not None and self.max_value < self.min_value:
            raise ValueError("max_value must be >= min_value")
        return self


def _default_sources() -> Dict[SourceName, SourceSettings]:
    return {
        SourceName.NEWS: SourceSettings(expected_interval_sec=3600),
        SourceName.SOCIAL: SourceSettings(expected_interval_sec=300),
        SourceName.ORDER_BOOK: SourceSettings(expected_interval_sec=60),
        SourceName.OPTIONS: SourceSettings(expected_interval_sec=900),
        # daily snapshot, tolerate a late publication
        SourceName.FEAR_GREED: SourceSettings(expected_interval_sec=36 * 3600, min_value=0.0, max_value=100.0),
        SourceName.VOLATILITY_INDEX: SourceSettings(expected_interval_sec=900, min_value=0.0, max_value=200.0),
        SourceName.SOCIAL_VOLUME: SourceSettings(expected_interval_sec=900, min_value=0.0, max_value=None),
    }


# --- Signals -----------------------------------------------------------------

class SignalSettings(_Frozen):
    """Composite weights for one signal. Weights are renormalized at use time."""
    mode: SignalMode = SignalMode.COMPOSITE
    weights: Dict[SourceName, float] = Field(..., min_length=1)
    confidence_weighted: bool = False

    @field_validator("weights")
    @classmethod
    def _weights_non_negative(cls, v: Dict[SourceName, float]):
        if any(w < 0 for w in v.values()):
            raise ValueError("weights must be >= 0")
        if not any(w > 0 for w in v.values()):
            raise ValueError("at least one weight must be > 0")
        return v

    @model_validator(mode="after")
    def _level_has_one_source(self):
        if self.mode == SignalMode.LEVEL and len([w for w in self.weights.values() if w > 0]) != 1:
            raise ValueError("a level signal must reference exactly one source")
        return self

    @property
    def sources(self) -> Tuple[SourceName, ...]:
        return tuple(s for s, w in self.weights.items() if w > 0)


def _default_signals() -> Dict[str, SignalSettings]:
    return {
        "sentiment": SignalSettings(weights={
            SourceName.NEWS: 0.30,
            SourceName.SOCIAL: 0.25,
            SourceName.ORDER_BOOK: 0.15,
            SourceName.OPTIONS: 0.20,
            SourceName.FEAR_GREED: 0.10,
        }),
        "fear_greed": SignalSettings(mode=SignalMode.LEVEL, weights={SourceName.FEAR_GREED: 1.0}),
        "volatility": SignalSettings(mode=SignalMode.LEVEL, weights={SourceName.VOLATILITY_INDEX: 1.0}),
        "social_volume": SignalSettings(mode=SignalMode.LEVEL, weights={SourceName.SOCIAL_VOLUME: 1.0}),
    }


# --- Smoothing / regime ------------------------------------------------------

class SmoothingSettings(_Frozen):
    """EMA periods in update ticks plus the rolling daily SMA span."""
    fast: int = Field(5, gt=0)
    medium: int = Field(20, gt=0)
    slow: int = Field(60, gt=0)
    daily_span_sec: int = Field(24 * 3600, gt=0)
    daily_max_samples: int = Field(100_000, gt=0)  # > 1 Hz for a full 24 h span

    def period(self, window: Window) -> int:
        return int(getattr(self, window.value))


class RegimeSettings(_Frozen):
    """Volatility bucket breakpoints: LOW < b0 <= NORMAL < b1 <= HIGH < b2 <= EXTREME."""
    signal: str = "volatility"
    window: Window = Window.MEDIUM
    breakpoints: Tuple[float, float, float] = (15.0, 25.0, 35.0)

    @field_validator("breakpoints")
    @classmethod
    def _strictly_increasing(cls, v):
        if not (v[0] < v[1] < v[2]):
            raise ValueError("breakpoints must be strictly increasing")
        return v


# --- Alerts ------------------------------------------------------------------

class AlertRuleSettings(_Frozen):
    enabled: bool = True
    signal: str
    window: str = "raw"   # "raw" or a smoothing window id
    threshold: float
    threshold_high: Optional[float] = None
    severity: Severity = Severity.WARNING
    cooldown_sec: float = Field(900, ge=0)
    min_samples: int = Field(10, ge=1)

    @field_validator("window")
    @classmethod
    def _known_window(cls, v: str) -> str:
        if v != "raw" and v not in {w.value for w in Window}:
            raise ValueError(f"window must be 'raw' or one of {[w.value for w in Window]}")
        return v


class AlertSettings(_Frozen):
    """One rule per alert type. Evaluation order is fixed by the engine."""
    fear_greed_extreme: AlertRuleSettings = AlertRuleSettings(
        signal="fear_greed", threshold=20.0, threshold_high=80.0,
        severity=Severity.WARNING, cooldown_sec=3600)
    sentiment_spike: AlertRuleSettings = AlertRuleSettings(
        signal="sentiment", threshold=0.75, severity=Severity.WARNING, cooldown_sec=900)
    volatility_regime_change: AlertRuleSettings = AlertRuleSettings(
        signal="volatility", window="medium", threshold=0.0,
        severity=Severity.WARNING, cooldown_sec=1800)
    social_volume_anomaly: AlertRuleSettings = AlertRuleSettings(
        signal="social_volume", window="daily", threshold=3.0,
        severity=Severity.INFO, cooldown_sec=1800, min_samples=10)
    sentiment_divergence: AlertRuleSettings = AlertRuleSettings(
        signal="sentiment", window="slow", threshold=0.5,
        severity=Severity.INFO, cooldown_sec=1800)

    def rule(self, alert_type: AlertType) -> AlertRuleSettings:
        return getattr(self, alert_type.value.lower())


# --- Runtime / publisher / logging ---------------------------------------------

class RuntimeSettings(_Frozen):
    partitions: int = Field(8, gt=0)
    queue_capacity: int = Field(1024, gt=0)
    eviction_horizon_sec: int = Field(6 * 3600, gt=0)
    latency_budget_ms: int = Field(100, gt=0)


class WebhookSettings(_Frozen):
    enabled: bool = False
    url: Optional[str] = None
    timeout_sec: float = Field(5.0, gt=0)


class TelegramSettings(_Frozen):
    enabled: bool = False
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    dry_run: bool = True


class PublisherSettings(_Frozen):
    queue_capacity: int = Field(1000, gt=0)
    max_retries: int = Field(3, ge=0)
    backoff_base_sec: float = Field(0.2, ge=0)
    backoff_max_sec: float = Field(5.0, ge=0)
    send_timeout_sec: float = Field(5.0, gt=0)
    publish_snapshots: bool = True
    log_sink: bool = True
    webhook: WebhookSettings = WebhookSettings()
    telegram: TelegramSettings = TelegramSettings()


class LoggingSettings(_Frozen):
    """Settings for logging configuration."""
    level: str = Field("INFO", description="The logging level, e.g., DEBUG, INFO, WARNING.")
    serialize: bool = False
    file: Optional[str] = None
    rotation: str = "50 MB"


class Settings(_Frozen):
    """The root Pydantic model for the entire configuration."""
    sources: Dict[SourceName, SourceSettings] = Field(default_factory=_default_sources)
    signals: Dict[str, SignalSettings] = Field(default_factory=_default_signals)
    smoothing: SmoothingSettings = SmoothingSettings()
    regime: RegimeSettings = RegimeSettings()
    alerts: AlertSettings = AlertSettings()
    runtime: RuntimeSettings = RuntimeSettings()
    publisher: PublisherSettings = PublisherSettings()
    logging: LoggingSettings = LoggingSettings()

    @model_validator(mode="after")
    def _references_resolve(self):
        for alert_type in AlertType:
            rule = self.alerts.rule(alert_type)
            if rule.enabled and rule.signal not in self.signals:
                raise ValueError(f"alert {alert_type.value} references unknown signal '{rule.signal}'")
        if self.regime.signal not in self.signals:
            raise ValueError(f"regime references unknown signal '{self.regime.signal}'")
        for name, sig in self.signals.items():
            missing = [s.value for s in sig.sources if s not in self.sources]
            if missing:
                raise ValueError(f"signal '{name}' references unconfigured sources {missing}")
            if sig.mode == SignalMode.COMPOSITE:
                undirected = [s.value for s in sig.sources if s not in DIRECTIONAL_SOURCES]
                if undirected:
                    raise ValueError(f"composite signal '{name}' cannot blend non-directional sources {undirected}")
        return self

    def source(self, name: SourceName) -> Optional[SourceSettings]:
        return self.sources.get(name)

    def signals_for_source(self, source: SourceName) -> Tuple[str, ...]:
        return tuple(name for name, sig in self.signals.items() if source in sig.sources)


class SettingsHolder:
    """Single mutable slot holding the current immutable `Settings`.

    Readers take `holder.current` once per unit of work; `swap` replaces the
    whole value so a reader never observes a half-applied configuration.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._epoch = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> Settings:
        return self._settings

    @property
    def epoch(self) -> int:
        return self._epoch

    def swap(self, settings: Settings) -> Settings:
        if not isinstance(settings, Settings):
            raise ConfigError("swap() requires a validated Settings instance")
        with self._lock:
            previous = self._settings
            self._settings = settings
            self._epoch += 1
        logger.info(f"[Config] settings swapped (epoch={self._epoch})")
        return previous


# --- Helper Functions ---

def _load_config_from_yaml(path: Path) -> Dict[str, Any]:
    """Loads the YAML configuration file."""
    if not path.is_file():
        raise ConfigError(f"Configuration file not found at: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML file at {path}: {e}") from e


def _get_env_overrides(prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    """
    Parses environment variables and converts them into a nested dict.
    e.g., SENTIMENT_FUSION_RUNTIME__PARTITIONS=16 becomes
    {'runtime': {'partitions': 16}}
    """
    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix + "_"):
            continue
        parts = key.removeprefix(prefix).strip("_").lower().split("__")
        if 'bot_token' in parts or 'chat_id' in parts:
            parsed_value: Any = value
        elif (value.startswith('[') and value.endswith(']')) or \
             (value.startswith('{') and value.endswith('}')) or \
             value.lower() in ['true', 'false', 'null'] or \
             value.lstrip('-').replace('.', '', 1).isdigit():
            try:
                parsed_value = json.loads(value)
            except json.JSONDecodeError:
                parsed_value = value
        else:
            parsed_value = value

        d = overrides
        for part in parts[:-1]:
            d = d.setdefault(part, {})
        d[parts[-1]] = parsed_value
    return overrides


def _merge_configs(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merges the override dict into the base dict.
    Overwrites values and lists; dictionaries are merged key by key.
    """
    for key, value in overrides.items():
        if isinstance(value, dict) and key in base and isinstance(base[key], dict):
            base[key] = _merge_configs(base[key], value)
        else:
            base[key] = value
    return base


def _validate(config: Dict[str, Any]) -> Settings:
    try:
        return Settings.model_validate(config)
    except ValidationError as e:
        error_details = e.errors()
        error_msg = f"Configuration validation failed with {len(error_details)} error(s):\n"
        for error in error_details:
            loc = " -> ".join(map(str, error['loc'])) if error['loc'] else "root"
            error_msg += f"  - Location: {loc}\n    Message: {error['msg']}\n"
        logger.error(error_msg)
        raise ConfigError("Failed to validate settings.") from e


# --- Public API ---

def default_settings() -> Settings:
    """Fully defaulted settings; no file or environment involved."""
    return Settings()


def settings_from_dict(config: Dict[str, Any], base: Optional[Settings] = None) -> Settings:
    """Validate a (possibly partial) dict merged over `base` (defaults when omitted)."""
    base = (base or default_settings()).model_dump(mode="json")
    return _validate(_merge_configs(base, config or {}))


def load_settings(path: str = "settings.yaml", *, use_env: bool = True) -> Settings:
    """
    Loads, validates, and returns the application settings.

    Steps:
    1. Loads the configuration from the YAML file.
    2. Scans environment variables for overrides (prefixed "SENTIMENT_FUSION_").
    3. Deep-merges both over `default_settings()`.
    4. Validates the result against the `Settings` model.

    Raises:
        ConfigError: If the file is not found, cannot be parsed, or if
                     validation fails.
    """
    logger.info(f"Loading settings from '{path}'...")
    yaml_config = _load_config_from_yaml(Path(path))
    if not isinstance(yaml_config, dict):
        raise ConfigError(f"YAML file '{path}' must contain a mapping at the top level.")
    if use_env:
        yaml_config = _merge_configs(yaml_config, _get_env_overrides())
    settings = settings_from_dict(yaml_config)
    logger.success("Settings loaded and validated successfully.")
    return settings


__all__ = [
    "Settings",
    "SettingsHolder",
    "SourceSettings",
    "SignalSettings",
    "SmoothingSettings",
    "RegimeSettings",
    "AlertRuleSettings",
    "AlertSettings",
    "RuntimeSettings",
    "PublisherSettings",
    "WebhookSettings",
    "TelegramSettings",
    "LoggingSettings",
    "default_settings",
    "settings_from_dict",
    "load_settings",
]

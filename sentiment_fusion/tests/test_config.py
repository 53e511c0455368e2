"""
Tests for the configuration loading and validation logic.
"""
import pytest
import yaml
from pydantic import ValidationError

from sentiment_fusion.core.config import (
    ConfigError,
    Settings,
    SettingsHolder,
    default_settings,
    load_settings,
    settings_from_dict,
)
from sentiment_fusion.core.types import AlertType, Severity, SignalMode, SourceName, Window


def test_defaults_are_valid_and_complete():
    s = default_settings()
    assert set(s.sources) == set(SourceName)
    sent = s.signals["sentiment"]
    assert sent.mode == SignalMode.COMPOSITE
    assert sum(sent.weights.values()) == pytest.approx(1.0)
    assert s.signals["volatility"].sources == (SourceName.VOLATILITY_INDEX,)
    spike = s.alerts.rule(AlertType.SENTIMENT_SPIKE)
    assert spike.threshold == 0.75 and spike.cooldown_sec == 900 and spike.severity == Severity.WARNING
    fg = s.alerts.rule(AlertType.FEAR_GREED_EXTREME)
    assert (fg.threshold, fg.threshold_high) == (20.0, 80.0)
    assert s.smoothing.period(Window.FAST) == 5
    assert s.regime.breakpoints == (15.0, 25.0, 35.0)


def test_signals_for_source():
    s = default_settings()
    assert set(s.signals_for_source(SourceName.FEAR_GREED)) == {"sentiment", "fear_greed"}
    assert s.signals_for_source(SourceName.NEWS) == ("sentiment",)


def test_settings_are_frozen():
    s = default_settings()
    with pytest.raises(ValidationError):
        s.smoothing.fast = 3


def test_load_settings_merges_yaml_over_defaults(tmp_path):
    cfg = {"smoothing": {"fast": 3}, "alerts": {"sentiment_spike": {"threshold": 0.6}}}
    p = tmp_path / "settings.yaml"
    p.write_text(yaml.safe_dump(cfg))
    s = load_settings(str(p), use_env=False)
    assert s.smoothing.fast == 3
    assert s.smoothing.medium == 20
    assert s.alerts.sentiment_spike.threshold == 0.6
    assert s.alerts.sentiment_spike.cooldown_sec == 900


def test_env_overrides(tmp_path, monkeypatch):
    p = tmp_path / "settings.yaml"
    p.write_text(yaml.safe_dump({"runtime": {"partitions": 2}}))
    monkeypatch.setenv("SENTIMENT_FUSION_RUNTIME__PARTITIONS", "4")
    monkeypatch.setenv("SENTIMENT_FUSION_ALERTS__SENTIMENT_SPIKE__ENABLED", "false")
    monkeypatch.setenv("SENTIMENT_FUSION_PUBLISHER__TELEGRAM__CHAT_ID", "12345")
    s = load_settings(str(p))
    assert s.runtime.partitions == 4
    assert s.alerts.sentiment_spike.enabled is False
    assert s.publisher.telegram.chat_id == "12345"


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_settings(str(tmp_path / "nope.yaml"))


def test_bad_yaml_raises(tmp_path):
    p = tmp_path / "settings.yaml"
    p.write_text("smoothing: [unclosed")
    with pytest.raises(ConfigError):
        load_settings(str(p), use_env=False)


@pytest.mark.parametrize("override", [
    {"signals": {"sentiment": {"weights": {"news": -0.1}}}},
    {"signals": {"bad": {"weights": {"news": 0.0}}}},
    {"signals": {"vol2": {"mode": "level", "weights": {"volatility_index": 0.5, "social_volume": 0.5}}}},
    {"signals": {"sentiment": {"weights": {"volatility_index": 0.2}}}},
    {"alerts": {"sentiment_spike": {"signal": "does_not_exist"}}},
    {"alerts": {"sentiment_spike": {"window": "weekly"}}},
    {"regime": {"breakpoints": [25, 15, 35]}},
    {"smoothing": {"fast": 0}},
    {"sources": {"news": {"expected_interval_sec": 0}}},
])
def test_invalid_configs_raise_config_error(override):
    with pytest.raises(ConfigError):
        settings_from_dict(override)


def test_settings_holder_swap_is_atomic_replacement():
    a = default_settings()
    holder = SettingsHolder(a)
    b = settings_from_dict({"smoothing": {"fast": 2}})
    prev = holder.swap(b)
    assert prev is a
    assert holder.current is b
    assert holder.epoch == 1
    with pytest.raises(ConfigError):
        holder.swap({"smoothing": {"fast": 2}})


def test_settings_model_validate_roundtrip():
    s = default_settings()
    again = Settings.model_validate(s.model_dump(mode="json"))
    assert again == s

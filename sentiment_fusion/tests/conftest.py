"""
Pytest Fixtures for the Sentiment Fusion Test Suite

Shared settings and small factories for observations and alerts. Settings
are built in-process from dicts merged over the defaults, so no test depends
on a `settings.yaml` on disk.
"""
import pytest

from sentiment_fusion.core.config import Settings, default_settings, settings_from_dict
from sentiment_fusion.core.types import Alert, AlertType, Severity

from .factories import T0


@pytest.fixture(scope="session")
def settings_fixture() -> Settings:
    """Defaults with the log sink off, so publisher tests only see their own sinks."""
    return settings_from_dict({"publisher": {"log_sink": False}})


@pytest.fixture
def four_source_settings() -> Settings:
    """Sentiment composite over exactly the four sentiment sources."""
    return settings_from_dict({
        "signals": {"sentiment": {"weights": {"fear_greed": 0.0}}},
        "publisher": {"log_sink": False},
    })


@pytest.fixture
def fast_settings() -> Settings:
    """`fast` tracks the raw value (period 1) so single updates move it."""
    return settings_from_dict({
        "smoothing": {"fast": 1},
        "regime": {"window": "fast"},
        "publisher": {"log_sink": False},
    })


@pytest.fixture
def defaults() -> Settings:
    return default_settings()


@pytest.fixture
def make_alert():
    def _make(entity="AAPL", ts=T0, alert_type=AlertType.SENTIMENT_SPIKE, value=0.8):
        return Alert(
            ts=ts,
            severity=Severity.WARNING,
            alert_type=alert_type,
            entity=entity,
            signal="sentiment",
            current_value=value,
            threshold=0.75,
            description=f"{entity} sentiment spiked to {value:+.2f}",
            metadata={"contributing_sources": ["news"], "weights": {"news": 1.0},
                      "confidence": 1.0, "recommendation": "Confirm with price"},
        )
    return _make

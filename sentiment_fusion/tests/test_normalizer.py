import json
from datetime import datetime, timezone

import pytest

from sentiment_fusion.core.config import settings_from_dict
from sentiment_fusion.core.errors import ObservationValidationError
from sentiment_fusion.core.types import SourceName
from sentiment_fusion.ingest.normalizer import ObservationNormalizer, to_epoch_ms

from .factories import T0, obs


@pytest.fixture
def normalizer(settings_fixture):
    return ObservationNormalizer(settings_fixture)


def test_dict_payload_with_aliases(normalizer):
    o = normalizer.normalize({"symbol": " aapl ", "source": "NEWS", "score": 0.5, "timestamp": 1_700_000_000})
    assert o.entity == "AAPL"
    assert o.source == SourceName.NEWS
    assert o.value == 0.5
    assert o.ts == T0
    assert o.confidence == 1.0


def test_metadata_and_confidence_pass_through(normalizer):
    o = normalizer.normalize({"entity": "MSFT", "source": "social", "value": -0.2, "ts": T0,
                              "confidence": 0.6, "meta": {"posts": 12}})
    assert o.confidence == 0.6
    assert o.metadata == {"posts": 12}


@pytest.mark.parametrize("raw,expected", [
    (1_700_000_000, T0),
    (1_700_000_000.5, T0 + 500),
    (T0, T0),
    ("1700000000", T0),
    ("2023-11-14T22:13:20Z", T0),
    (datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc), T0),
])
def test_to_epoch_ms(raw, expected):
    assert to_epoch_ms(raw) == expected


@pytest.mark.parametrize("raw", [True, None, "yesterday", -5, [1], float("nan"), float("inf"), "NaN", "-Infinity"])
def test_to_epoch_ms_rejects(raw):
    with pytest.raises(ObservationValidationError):
        to_epoch_ms(raw)


@pytest.mark.parametrize("payload", [
    {"entity": "AAPL", "source": "news", "value": 1.5, "ts": T0},
    {"entity": "AAPL", "source": "fear_greed", "value": 120, "ts": T0},
    {"entity": "AAPL", "source": "volatility_index", "value": -1, "ts": T0},
    {"entity": "AAPL", "source": "reddit", "value": 0.1, "ts": T0},
    {"entity": "AAPL", "source": "news", "ts": T0},
    {"entity": "", "source": "news", "value": 0.1, "ts": T0},
    {"entity": "AAPL", "source": "news", "value": float("nan"), "ts": T0},
    {"entity": "AAPL", "source": "news", "value": 0.1, "ts": T0, "confidence": 1.5},
])
def test_invalid_payloads_rejected(normalizer, payload):
    with pytest.raises(ObservationValidationError):
        normalizer.normalize(payload)


def test_unbounded_source_accepts_large_values(normalizer):
    o = normalizer.normalize({"entity": "GME", "source": "social_volume", "value": 1e7, "ts": T0})
    assert o.value == 1e7


def test_observation_instance_is_range_checked(normalizer):
    assert normalizer.normalize(obs("options", -0.9)).value == -0.9
    with pytest.raises(ObservationValidationError) as ei:
        normalizer.normalize(obs("options", -1.2))
    assert ei.value.source == "options"
    assert ei.value.entity == "AAPL"


def test_non_mapping_payload_rejected(normalizer):
    with pytest.raises(ObservationValidationError):
        normalizer.normalize(["AAPL", "news", 0.1])


def test_non_finite_timestamp_in_payload_rejected(normalizer):
    payload = json.loads('{"entity": "AAPL", "source": "news", "value": 0.1, "ts": NaN}')
    with pytest.raises(ObservationValidationError, match="finite"):
        normalizer.normalize(payload)


def test_disabled_source_rejected_at_boundary():
    s = settings_from_dict({"sources": {"social": {"enabled": False}}})
    n = ObservationNormalizer(s)
    with pytest.raises(ObservationValidationError, match="disabled") as ei:
        n.normalize({"entity": "AAPL", "source": "social", "value": 0.1, "ts": T0})
    assert ei.value.source == "social"
    assert n.normalize({"entity": "AAPL", "source": "news", "value": 0.1, "ts": T0}).value == 0.1

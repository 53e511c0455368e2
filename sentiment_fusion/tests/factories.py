"""Plain factories shared by the tests (importable, unlike conftest)."""
from sentiment_fusion.core.types import SourceName, SourceObservation

T0 = 1_700_000_000_000  # epoch ms
SEC = 1_000
MIN = 60 * SEC


def obs(source, value, ts=T0, entity="AAPL", confidence=1.0) -> SourceObservation:
    return SourceObservation(
        entity=entity,
        source=SourceName(source),
        value=value,
        ts=ts,
        confidence=confidence,
    )

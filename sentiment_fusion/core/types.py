"""
Custom Type Definitions
-----------------------

Canonical records shared by every stage of the fusion pipeline.

- SourceObservation: one normalized reading from one upstream source for one
  entity. Pydantic model, frozen, validated on construction.
- FusionResult / NoData: the two possible outcomes of fusing a signal.
- SignalEvent: crossover / regime transitions detected after smoothing.
- Alert: an emitted, immutable alert record handed to the publisher.
- SnapshotValue: the read-path answer for one (entity, signal, window).
"""
from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# A simple type alias for a tradable instrument identifier (e.g. "AAPL").
Entity = str


class SourceName(str, Enum):
    NEWS = "news"
    SOCIAL = "social"
    ORDER_BOOK = "order_book"
    OPTIONS = "options"
    FEAR_GREED = "fear_greed"
    VOLATILITY_INDEX = "volatility_index"
    SOCIAL_VOLUME = "social_volume"


# Sources whose value already is a directional score in [-1, 1].
SENTIMENT_SOURCES = frozenset({
    SourceName.NEWS,
    SourceName.SOCIAL,
    SourceName.ORDER_BOOK,
    SourceName.OPTIONS,
})

# Sources that can take part in a composite (have a normalized direction).
DIRECTIONAL_SOURCES = SENTIMENT_SOURCES | {SourceName.FEAR_GREED}


class Window(str, Enum):
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"
    DAILY = "daily"


EMA_WINDOWS = (Window.FAST, Window.MEDIUM, Window.SLOW)
ALL_WINDOWS = (Window.FAST, Window.MEDIUM, Window.SLOW, Window.DAILY)


class SignalMode(str, Enum):
    COMPOSITE = "composite"  # weighted blend of normalized values
    LEVEL = "level"          # raw value of a single source


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AlertType(str, Enum):
    SENTIMENT_SPIKE = "SENTIMENT_SPIKE"
    SENTIMENT_DIVERGENCE = "SENTIMENT_DIVERGENCE"
    VOLATILITY_REGIME_CHANGE = "VOLATILITY_REGIME_CHANGE"
    SOCIAL_VOLUME_ANOMALY = "SOCIAL_VOLUME_ANOMALY"
    FEAR_GREED_EXTREME = "FEAR_GREED_EXTREME"


class EventKind(str, Enum):
    BULLISH_CROSSOVER = "BULLISH_CROSSOVER"
    BEARISH_CROSSOVER = "BEARISH_CROSSOVER"
    REGIME_CHANGE = "REGIME_CHANGE"
    VOLATILITY_REGIME_CHANGE = "VOLATILITY_REGIME_CHANGE"


class VolatilityRegime(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    EXTREME = "EXTREME"

    @property
    def rank(self) -> int:
        return VOLATILITY_REGIME_ORDER.index(self)


VOLATILITY_REGIME_ORDER = (
    VolatilityRegime.LOW,
    VolatilityRegime.NORMAL,
    VolatilityRegime.HIGH,
    VolatilityRegime.EXTREME,
)


def now_ms() -> int:
    return int(time.time() * 1000)


class SourceObservation(BaseModel):
    """
    One reading from one source for one entity.

    `value` is in the source's declared range; range checks against the
    configured bounds happen at the ingestion boundary (see ingest.normalizer),
    this model only guarantees structural validity.
    """
    model_config = ConfigDict(frozen=True)

    entity: str
    source: SourceName
    value: float
    ts: int                 # epoch milliseconds
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity")
    @classmethod
    def _entity_not_blank(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if not v:
            raise ValueError("entity must be a non-empty identifier")
        return v

    @field_validator("value")
    @classmethod
    def _value_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("value must be finite")
        return v

    @property
    def normalized(self) -> Optional[float]:
        """Directional score in [-1, 1], or None for non-directional sources."""
        if self.source in SENTIMENT_SOURCES:
            return float(self.value)
        if self.source == SourceName.FEAR_GREED:
            return max(-1.0, min(1.0, (float(self.value) - 50.0) / 50.0))
        return None

    def same_reading(self, other: "SourceObservation") -> bool:
        return (
            self.entity == other.entity
            and self.source == other.source
            and self.ts == other.ts
            and self.value == other.value
        )


@dataclass(frozen=True)
class NoData:
    """Fusion outcome when no source is available. Never smoothed as zero."""
    signal: str
    reason: str = "no_sources"


@dataclass(frozen=True)
class FusionResult:
    signal: str
    value: float
    ts: int
    included: Tuple[str, ...]
    weights: Dict[str, float]            # renormalized, sums to 1
    confidence: float
    coverage: float                      # included configured weight / total configured weight
    excluded: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SignalEvent:
    kind: EventKind
    entity: str
    signal: str
    ts: int
    windows: Tuple[str, str]
    direction: str                       # "up" | "down"
    previous: Tuple[Optional[float], Optional[float]] = (None, None)
    current: Tuple[Optional[float], Optional[float]] = (None, None)
    from_bucket: Optional[VolatilityRegime] = None
    to_bucket: Optional[VolatilityRegime] = None
    breakpoint: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["from_bucket"] = self.from_bucket.value if self.from_bucket else None
        d["to_bucket"] = self.to_bucket.value if self.to_bucket else None
        return d


@dataclass(frozen=True)
class Alert:
    """Immutable alert record. Ownership passes to the publisher on emit."""
    ts: int
    severity: Severity
    alert_type: AlertType
    entity: str
    signal: str
    current_value: float
    threshold: float
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "severity": self.severity.value,
            "alert_type": self.alert_type.value,
            "entity": self.entity,
            "signal": self.signal,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "description": self.description,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SnapshotValue:
    entity: str
    signal: str
    window: str
    value: float
    updated_ts: int

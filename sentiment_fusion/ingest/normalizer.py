"""Observation Normalizer boundary.

Turns loosely-shaped provider payloads (already decoded to dicts by the
per-source connectors) into validated `SourceObservation` records and
enforces each source's declared value range. Anything rejected here never
reaches the fusion stage and leaves no trace in entity state.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Union

from loguru import logger
from pydantic import ValidationError

from sentiment_fusion.core.config import Settings
from sentiment_fusion.core.errors import ObservationValidationError
from sentiment_fusion.core.types import SourceName, SourceObservation

# Accepted aliases for the canonical keys.
_ENTITY_KEYS = ("entity", "ticker", "symbol")
_VALUE_KEYS = ("value", "score", "metric")
_TS_KEYS = ("ts", "timestamp", "time")

# Epoch values above this are already milliseconds.
_MS_CUTOFF = 10_000_000_000


def to_epoch_ms(raw: Any) -> int:
    """Accept epoch seconds, epoch milliseconds, ISO-8601 strings or datetimes."""
    if isinstance(raw, datetime):
        dt = raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(raw, str):
        try:
            return to_epoch_ms(float(raw))
        except ValueError:
            pass
        try:
            return to_epoch_ms(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError as e:
            raise ObservationValidationError(f"unparseable timestamp {raw!r}") from e
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ObservationValidationError(f"unsupported timestamp type {type(raw).__name__}")
    if not math.isfinite(raw):
        raise ObservationValidationError(f"timestamp must be finite, got {raw!r}")
    if raw < 0:
        raise ObservationValidationError("timestamp must be >= 0")
    return int(raw) if raw >= _MS_CUTOFF else int(raw * 1000)


def _first(payload: Mapping[str, Any], keys) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


def validate_range(obs: SourceObservation, settings: Settings) -> SourceObservation:
    """Check `obs.value` against the configured range of an enabled source."""
    src_cfg = settings.source(obs.source)
    if src_cfg is None:
        raise ObservationValidationError(
            f"source '{obs.source.value}' is not configured", source=obs.source.value, entity=obs.entity)
    if not src_cfg.enabled:
        raise ObservationValidationError(
            f"source '{obs.source.value}' is disabled", source=obs.source.value, entity=obs.entity)
    if obs.value < src_cfg.min_value or (src_cfg.max_value is not None and obs.value > src_cfg.max_value):
        raise ObservationValidationError(
            f"{obs.source.value} value {obs.value} outside [{src_cfg.min_value}, {src_cfg.max_value}]",
            source=obs.source.value, entity=obs.entity)
    return obs


class ObservationNormalizer:
    """Canonicalizes dict payloads and validates ranges against current settings."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def normalize(self, payload: Union[SourceObservation, Mapping[str, Any]]) -> SourceObservation:
        if isinstance(payload, SourceObservation):
            return validate_range(payload, self.settings)
        if not isinstance(payload, Mapping):
            raise ObservationValidationError(f"unsupported payload type {type(payload).__name__}")

        source = payload.get("source")
        entity = _first(payload, _ENTITY_KEYS)
        value = _first(payload, _VALUE_KEYS)
        raw_ts = _first(payload, _TS_KEYS)
        if source is None or entity is None or value is None or raw_ts is None:
            raise ObservationValidationError(
                "payload requires source, entity, value and ts", source=source, entity=entity)
        try:
            SourceName(str(source).lower())
        except ValueError as e:
            raise ObservationValidationError(f"unknown source {source!r}", source=str(source), entity=entity) from e

        fields: Dict[str, Any] = {
            "entity": entity,
            "source": str(source).lower(),
            "value": value,
            "ts": to_epoch_ms(raw_ts),
            "metadata": dict(payload.get("metadata") or payload.get("meta") or {}),
        }
        if payload.get("confidence") is not None:
            fields["confidence"] = payload["confidence"]
        try:
            obs = SourceObservation(**fields)
        except ValidationError as e:
            msgs = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            logger.debug(f"[Normalizer] rejected payload entity={entity} source={source}: {msgs}")
            raise ObservationValidationError(msgs, source=str(source), entity=str(entity)) from e
        return validate_range(obs, self.settings)


__all__ = ["ObservationNormalizer", "validate_range", "to_epoch_ms"]

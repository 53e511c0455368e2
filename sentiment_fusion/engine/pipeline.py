"""Per-entity pipeline: fusion -> smoothing -> detection -> alerts.

One `EntityPipeline` holds the state of every entity routed to one
partition and is only mutated by that partition's worker. `process` runs
one observation through all stages under `lock`; snapshot readers take the
same lock to copy state out.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from sentiment_fusion.core.config import Settings
from sentiment_fusion.core.errors import FusionInputError
from sentiment_fusion.core.types import (
    ALL_WINDOWS,
    Alert,
    NoData,
    SignalEvent,
    SnapshotValue,
    SourceName,
    SourceObservation,
    now_ms,
)

from .alerts import AlertEngine
from .crossover import CrossoverDetector
from .fusion import SignalFusion
from .smoothing import SignalState, SmoothingEngine

OUT_OF_ORDER = "out_of_order"
DUPLICATE = "duplicate"


@dataclass
class PipelineResult:
    entity: str
    ts: int
    alerts: List[Alert] = field(default_factory=list)
    events: List[SignalEvent] = field(default_factory=list)
    snapshots: List[SignalState] = field(default_factory=list)
    no_data: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    suppressed: int = 0
    rejected_reason: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.rejected_reason is not None


class EntityPipeline:
    def __init__(self, settings: Settings):
        self.lock = threading.Lock()
        self._settings = settings
        self.fusion = SignalFusion()
        self.smoothing = SmoothingEngine()
        self.detector = CrossoverDetector()
        self.alerts = AlertEngine(settings)
        self._latest: Dict[str, Dict[SourceName, SourceObservation]] = {}
        self._last_ts: Dict[str, int] = {}
        self.counters: Dict[str, int] = {
            "processed": 0,
            OUT_OF_ORDER: 0,
            DUPLICATE: 0,
            "no_data": 0,
            "stale_updates": 0,
            "fusion_errors": 0,
            "alerts_emitted": 0,
            "events": 0,
        }

    def _inc(self, key: str, n: int = 1) -> None:
        self.counters[key] = self.counters.get(key, 0) + n

    def _touch(self, entity: str, ts: int) -> None:
        last = self._last_ts.get(entity)
        if last is None or ts > last:
            self._last_ts[entity] = ts

    # ------------------------------------------------------------------
    def process(self, obs: SourceObservation, settings: Settings) -> PipelineResult:
        with self.lock:
            return self._process_locked(obs, settings)

    def _process_locked(self, obs: SourceObservation, settings: Settings) -> PipelineResult:
        if settings is not self._settings:
            self.alerts.reconfigure(settings)
            self._settings = settings

        entity = obs.entity
        result = PipelineResult(entity=entity, ts=obs.ts)
        latest = self._latest.setdefault(entity, {})
        prior = latest.get(obs.source)
        # ordering is per (entity, source): sources publish on independent cadences
        if prior is not None and obs.ts < prior.ts:
            self._inc(OUT_OF_ORDER)
            result.rejected_reason = OUT_OF_ORDER
            logger.debug(f"[Pipeline] {entity} {obs.source.value} out of order ts={obs.ts} < {prior.ts}")
            return result
        if prior is not None and prior.same_reading(obs):
            self._inc(DUPLICATE)
            result.rejected_reason = DUPLICATE
            return result

        latest[obs.source] = obs
        self._touch(entity, obs.ts)
        self._inc("processed")

        updated: List[str] = []
        for signal in settings.signals_for_source(obs.source):
            current = self.smoothing.get(entity, signal)
            if current is not None and current.last_ts is not None and obs.ts < current.last_ts:
                # a late slow-cadence reading is kept as latest but cannot rewind this signal
                self._inc("stale_updates")
                result.stale.append(signal)
                continue
            try:
                outcome = self.fusion.fuse(entity, signal, latest, settings, now_ts=obs.ts)
            except FusionInputError as e:
                self._inc("fusion_errors")
                result.errors.append(f"{signal}: {e}")
                logger.warning(f"[Pipeline] {entity}/{signal} fusion rejected input: {e}")
                continue
            if isinstance(outcome, NoData):
                self._inc("no_data")
                result.no_data.append(signal)
                continue
            state = self.smoothing.update(entity, signal, outcome.value, obs.ts, settings.smoothing, fusion=outcome)
            if state is None:
                continue
            result.events.extend(self.detector.detect(state, settings.regime))
            updated.append(signal)

        suppressed_before = self.alerts.suppressed_total
        result.alerts = self.alerts.evaluate(
            entity, self.smoothing.signals(entity), result.events, obs.ts, updated=updated)
        result.suppressed = self.alerts.suppressed_total - suppressed_before
        result.snapshots = [self.smoothing.get(entity, s).copy() for s in updated]
        self._inc("events", len(result.events))
        self._inc("alerts_emitted", len(result.alerts))
        return result

    # --- read path -------------------------------------------------------
    def snapshot(self, entity: str, window: str, signal: str = "sentiment") -> Union[SnapshotValue, NoData]:
        window = getattr(window, "value", window)
        with self.lock:
            state = self.smoothing.get(entity, signal)
            if state is None:
                return NoData(signal=signal, reason="unknown_entity")
            wv = state.windows.get(window)
            if wv is None:
                return NoData(signal=signal, reason="no_value")
            return SnapshotValue(entity=entity, signal=signal, window=window, value=wv.value, updated_ts=wv.updated_ts)

    def snapshot_all(self, entity: str) -> Dict[str, Dict[str, SnapshotValue]]:
        with self.lock:
            states = self.smoothing.snapshot(entity)
        out: Dict[str, Dict[str, SnapshotValue]] = {}
        for name, st in states.items():
            out[name] = {
                w.value: SnapshotValue(entity, name, w.value, st.windows[w.value].value, st.windows[w.value].updated_ts)
                for w in ALL_WINDOWS if w.value in st.windows
            }
        return out

    def signal_state(self, entity: str, signal: str) -> Optional[SignalState]:
        with self.lock:
            st = self.smoothing.get(entity, signal)
            return st.copy() if st is not None else None

    def backfill(self, entity: str, signal: str, series: Sequence[Tuple[int, float]],
                 settings: Settings) -> Optional[SignalState]:
        """Seed one signal from history; the entity counts as active from the last sample."""
        with self.lock:
            state = self.smoothing.backfill(entity, signal, series, settings.smoothing)
            if state is None:
                return None
            if state.last_ts is not None:
                self._touch(entity, state.last_ts)
            return state.copy()

    # --- lifecycle ---------------------------------------------------------
    def entities(self) -> List[str]:
        with self.lock:
            return list(self._last_ts.keys())

    def last_ts(self, entity: str) -> Optional[int]:
        return self._last_ts.get(entity)

    def evict(self, entity: str) -> bool:
        with self.lock:
            known = entity in self._last_ts or self.smoothing.has_entity(entity)
            self._latest.pop(entity, None)
            self._last_ts.pop(entity, None)
            self.smoothing.evict(entity)
            self.alerts.history.evict(entity)
        if known:
            logger.info(f"[Pipeline] evicted {entity}")
        return known

    def evict_inactive(self, horizon_ms: int, now_ts: Optional[int] = None) -> List[str]:
        """Drop entities whose last observation is older than `now_ts - horizon_ms`."""
        now_ts = now_ms() if now_ts is None else now_ts
        with self.lock:
            idle = [e for e, ts in self._last_ts.items() if now_ts - ts > horizon_ms]
        for entity in idle:
            self.evict(entity)
        return idle


__all__ = ["EntityPipeline", "PipelineResult", "OUT_OF_ORDER", "DUPLICATE"]

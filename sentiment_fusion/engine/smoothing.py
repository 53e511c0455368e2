"""Multi-window smoothing of fused signal values.

Each (entity, signal) pair owns one `SignalState`:
  * `fast` / `medium` / `slow`: EMA over N update ticks, alpha = 2/(N+1),
    seeded with the first raw value.
  * `daily`: simple mean of the raw values seen over the trailing
    `daily_span_sec`, kept as a (ts, value) buffer plus its running sum and
    pruned on every update. `daily_max_samples` caps the buffer; every
    in-span sample the cap pushes out is counted in `daily_truncated`.

Before a window is overwritten its old value is copied into
`state.previous`, which is what the crossover detector compares against.
Updates older than the state's last timestamp are refused; equal
timestamps are allowed.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from loguru import logger

from sentiment_fusion.core.config import SmoothingSettings
from sentiment_fusion.core.mathutils import buffer_sum, ema_alpha, ema_step, rolling_ema, rolling_time_sma
from sentiment_fusion.core.types import EMA_WINDOWS, FusionResult, Window

# re-sum the daily buffer exactly every N updates to bound float drift
_RESUM_EVERY = 4096


@dataclass
class WindowValue:
    value: float
    updated_ts: int


@dataclass
class SignalState:
    entity: str
    signal: str
    raw: Optional[float] = None
    last_ts: Optional[int] = None
    windows: Dict[str, WindowValue] = field(default_factory=dict)
    previous: Dict[str, Optional[float]] = field(default_factory=dict)
    daily_buffer: Deque[Tuple[int, float]] = field(default_factory=deque)
    daily_sum: float = 0.0
    daily_truncated: int = 0  # in-span samples dropped by daily_max_samples
    updates: int = 0
    fusion: Optional[FusionResult] = None

    def value(self, window: str) -> Optional[float]:
        if window == "raw":
            return self.raw
        wv = self.windows.get(window)
        return wv.value if wv is not None else None

    def prev(self, window: str) -> Optional[float]:
        return self.previous.get(window)

    def copy(self) -> "SignalState":
        """Independent copy for readers; FusionResult is frozen and shared."""
        return SignalState(
            entity=self.entity,
            signal=self.signal,
            raw=self.raw,
            last_ts=self.last_ts,
            windows={k: WindowValue(v.value, v.updated_ts) for k, v in self.windows.items()},
            previous=dict(self.previous),
            daily_buffer=deque(self.daily_buffer),
            daily_sum=self.daily_sum,
            daily_truncated=self.daily_truncated,
            updates=self.updates,
            fusion=self.fusion,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "signal": self.signal,
            "raw": self.raw,
            "last_ts": self.last_ts,
            "windows": {k: {"value": v.value, "updated_ts": v.updated_ts} for k, v in self.windows.items()},
            "previous": dict(self.previous),
            "updates": self.updates,
            "daily_samples": len(self.daily_buffer),
            "contributing_sources": list(self.fusion.included) if self.fusion else [],
        }


class SmoothingEngine:
    """Owns the SignalStates of the entities routed to one partition."""

    def __init__(self):
        self._states: Dict[str, Dict[str, SignalState]] = {}
        self.stale_rejected = 0
        self.daily_truncated = 0

    # ------------------------------------------------------------------
    def update(
        self,
        entity: str,
        signal: str,
        raw_value: float,
        ts: int,
        cfg: SmoothingSettings,
        fusion: Optional[FusionResult] = None,
    ) -> Optional[SignalState]:
        """Apply one raw value; returns the updated state or None when `ts` is stale."""
        state = self._get_or_create(entity, signal, cfg)
        if state.last_ts is not None and ts < state.last_ts:
            self.stale_rejected += 1
            logger.debug(f"[Smoothing] {entity}/{signal} stale update ts={ts} < last_ts={state.last_ts}")
            return None
        raw = float(raw_value)

        for window in EMA_WINDOWS:
            key = window.value
            current = state.windows.get(key)
            prior = current.value if current is not None else None
            state.previous[key] = prior
            state.windows[key] = WindowValue(ema_step(prior, raw, ema_alpha(cfg.period(window))), ts)

        self._update_daily(state, raw, ts, cfg)
        state.raw = raw
        state.last_ts = ts
        state.updates += 1
        if fusion is not None:
            state.fusion = fusion
        return state

    def _update_daily(self, state: SignalState, raw: float, ts: int, cfg: SmoothingSettings) -> None:
        key = Window.DAILY.value
        current = state.windows.get(key)
        state.previous[key] = current.value if current is not None else None
        buf = state.daily_buffer
        cutoff = ts - cfg.daily_span_sec * 1000
        while buf and buf[0][0] < cutoff:
            state.daily_sum -= buf.popleft()[1]
        if len(buf) >= cfg.daily_max_samples:
            # samples still inside the span are lost: daily becomes a mean of the newest ones
            if state.daily_truncated == 0:
                logger.warning(f"[Smoothing] {state.entity}/{state.signal} daily buffer hit "
                               f"daily_max_samples={cfg.daily_max_samples}; dropping in-span samples")
            while len(buf) >= cfg.daily_max_samples:
                state.daily_sum -= buf.popleft()[1]
                state.daily_truncated += 1
                self.daily_truncated += 1
        buf.append((ts, raw))
        state.daily_sum += raw
        if state.updates % _RESUM_EVERY == 0:
            state.daily_sum = buffer_sum(buf)
        state.windows[key] = WindowValue(state.daily_sum / len(buf), ts)

    # ------------------------------------------------------------------
    def backfill(
        self,
        entity: str,
        signal: str,
        series: Sequence[Tuple[int, float]],
        cfg: SmoothingSettings,
    ) -> Optional[SignalState]:
        """Seed state from an ordered history of (ts, raw) pairs.

        On a fresh state with no more than `daily_max_samples` samples this
        uses the vectorized forms; otherwise it replays the samples through
        `update`. Both produce the same window values as
        feeding the samples one by one.
        """
        if not series:
            return self.get(entity, signal)
        ts_list = [int(t) for t, _ in series]
        if any(b < a for a, b in zip(ts_list, ts_list[1:])):
            raise ValueError("backfill series must be in non-decreasing timestamp order")

        existing = self.get(entity, signal)
        if (existing is not None and existing.updates > 0) or len(series) > cfg.daily_max_samples:
            # the vectorized daily mean knows nothing about daily_max_samples
            state = existing or self._get_or_create(entity, signal, cfg)
            for t, v in series:
                state = self.update(entity, signal, v, t, cfg) or state
            return state

        state = self._get_or_create(entity, signal, cfg)
        values = pd.Series([float(v) for _, v in series])
        for window in EMA_WINDOWS:
            ema = rolling_ema(values, cfg.period(window))
            state.windows[window.value] = WindowValue(float(ema.iloc[-1]), ts_list[-1])
            state.previous[window.value] = float(ema.iloc[-2]) if len(ema) > 1 else None

        sma = rolling_time_sma(pd.Series(values.to_numpy(), index=ts_list), cfg.daily_span_sec * 1000)
        state.windows[Window.DAILY.value] = WindowValue(float(sma.iloc[-1]), ts_list[-1])
        state.previous[Window.DAILY.value] = float(sma.iloc[-2]) if len(sma) > 1 else None
        cutoff = ts_list[-1] - cfg.daily_span_sec * 1000
        state.daily_buffer = deque((t, float(v)) for t, v in series if t >= cutoff)
        state.daily_sum = buffer_sum(state.daily_buffer)
        state.raw = float(values.iloc[-1])
        state.last_ts = ts_list[-1]
        state.updates = len(series)
        logger.info(f"[Smoothing] backfilled {entity}/{signal} with {len(series)} samples")
        return state

    # ------------------------------------------------------------------
    def _get_or_create(self, entity: str, signal: str, cfg: SmoothingSettings) -> SignalState:
        per_entity = self._states.setdefault(entity, {})
        state = per_entity.get(signal)
        if state is None:
            state = SignalState(entity=entity, signal=signal)
            per_entity[signal] = state
        return state

    def get(self, entity: str, signal: str) -> Optional[SignalState]:
        return self._states.get(entity, {}).get(signal)

    def signals(self, entity: str) -> Dict[str, SignalState]:
        return self._states.get(entity, {})

    def snapshot(self, entity: str) -> Dict[str, SignalState]:
        return {name: st.copy() for name, st in self._states.get(entity, {}).items()}

    def has_entity(self, entity: str) -> bool:
        return entity in self._states

    def entities(self) -> List[str]:
        return list(self._states.keys())

    def evict(self, entity: str) -> bool:
        return self._states.pop(entity, None) is not None


__all__ = ["SignalState", "WindowValue", "SmoothingEngine"]

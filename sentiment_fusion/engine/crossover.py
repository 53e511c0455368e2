"""Crossover and regime detection on freshly smoothed signal state.

All inputs come from `SignalState.previous` (values before this update) and
`SignalState.windows` (values after it); the detector keeps nothing of its
own. A crossover needs a strict sign change of (a - b): a new tie never
fires, and nothing fires until both windows have a previous value.
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from sentiment_fusion.core.config import RegimeSettings
from sentiment_fusion.core.types import EventKind, SignalEvent, VolatilityRegime, Window

from .smoothing import SignalState

# (lead window, reference window, kind when the lead moves up, kind when down)
_PAIRS: Tuple[Tuple[Window, Window, EventKind, EventKind], ...] = (
    (Window.FAST, Window.MEDIUM, EventKind.BULLISH_CROSSOVER, EventKind.BEARISH_CROSSOVER),
    (Window.MEDIUM, Window.SLOW, EventKind.REGIME_CHANGE, EventKind.REGIME_CHANGE),
    (Window.MEDIUM, Window.DAILY, EventKind.REGIME_CHANGE, EventKind.REGIME_CHANGE),
)


def cross_direction(prev_a: Optional[float], prev_b: Optional[float],
                    cur_a: Optional[float], cur_b: Optional[float]) -> Optional[str]:
    """'up' when a moves from <= b to > b, 'down' from >= b to < b, else None."""
    if None in (prev_a, prev_b, cur_a, cur_b):
        return None
    if prev_a <= prev_b and cur_a > cur_b:
        return "up"
    if prev_a >= prev_b and cur_a < cur_b:
        return "down"
    return None


def classify_volatility(value: Optional[float], breakpoints: Sequence[float]) -> Optional[VolatilityRegime]:
    """Map a smoothed volatility level to LOW < NORMAL < HIGH < EXTREME."""
    if value is None:
        return None
    low, high, extreme = breakpoints
    if value < low:
        return VolatilityRegime.LOW
    if value < high:
        return VolatilityRegime.NORMAL
    if value < extreme:
        return VolatilityRegime.HIGH
    return VolatilityRegime.EXTREME


def _crossed_breakpoint(a: VolatilityRegime, b: VolatilityRegime, breakpoints: Sequence[float]) -> float:
    """Breakpoint nearest to the destination bucket on the path a -> b."""
    if b.rank > a.rank:
        return float(breakpoints[b.rank - 1])
    return float(breakpoints[b.rank])


class CrossoverDetector:

    def detect(self, state: SignalState, regime: RegimeSettings) -> List[SignalEvent]:
        events: List[SignalEvent] = []
        if state.last_ts is None:
            return events
        for lead, ref, up_kind, down_kind in _PAIRS:
            pa, pb = state.prev(lead.value), state.prev(ref.value)
            ca, cb = state.value(lead.value), state.value(ref.value)
            direction = cross_direction(pa, pb, ca, cb)
            if direction is None:
                continue
            events.append(SignalEvent(
                kind=up_kind if direction == "up" else down_kind,
                entity=state.entity,
                signal=state.signal,
                ts=state.last_ts,
                windows=(lead.value, ref.value),
                direction=direction,
                previous=(pa, pb),
                current=(ca, cb),
            ))
        if state.signal == regime.signal:
            ev = self.volatility_regime_event(state, regime)
            if ev is not None:
                events.append(ev)
        return events

    @staticmethod
    def volatility_regime_event(state: SignalState, regime: RegimeSettings) -> Optional[SignalEvent]:
        window = regime.window.value
        prev_v, cur_v = state.prev(window), state.value(window)
        before = classify_volatility(prev_v, regime.breakpoints)
        after = classify_volatility(cur_v, regime.breakpoints)
        if before is None or after is None or before == after:
            return None
        return SignalEvent(
            kind=EventKind.VOLATILITY_REGIME_CHANGE,
            entity=state.entity,
            signal=state.signal,
            ts=state.last_ts,
            windows=(window, window),
            direction="up" if after.rank > before.rank else "down",
            previous=(prev_v, None),
            current=(cur_v, None),
            from_bucket=before,
            to_bucket=after,
            breakpoint=_crossed_breakpoint(before, after, regime.breakpoints),
        )


__all__ = ["CrossoverDetector", "classify_volatility", "cross_direction"]

"""Threshold alert rules with per-(entity, type) cooldown.

State machine per (entity, alert type):

    QUIET --(condition met and cooldown expired)--> FIRED
    FIRED --(cooldown elapsed)--> QUIET

A condition met while FIRED is suppressed: it is counted and stamped as
`last_evaluated_ts` but no alert is emitted. Rules run in the fixed order
of `RULE_ORDER`, so simultaneous alerts for one entity come out in a
reproducible order. Severity is part of the rule, never computed.

Rules only look at signals that changed in the current cycle; a level that
stopped updating cannot keep re-firing after each cooldown.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from sentiment_fusion.core.config import AlertRuleSettings, Settings
from sentiment_fusion.core.types import Alert, AlertType, EventKind, Severity, SignalEvent

from .smoothing import SignalState

RULE_ORDER: Tuple[AlertType, ...] = (
    AlertType.FEAR_GREED_EXTREME,
    AlertType.SENTIMENT_SPIKE,
    AlertType.VOLATILITY_REGIME_CHANGE,
    AlertType.SOCIAL_VOLUME_ANOMALY,
    AlertType.SENTIMENT_DIVERGENCE,
)

QUIET = "QUIET"
FIRED = "FIRED"


@dataclass(frozen=True)
class AlertRule:
    alert_type: AlertType
    signal: str
    window: str
    comparison: str          # ">=", "abs>=", "outside", "event", "ratio>=", "diverge>="
    threshold: float
    threshold_high: Optional[float]
    severity: Severity
    cooldown_sec: float
    min_samples: int = 1
    enabled: bool = True

    @property
    def cooldown_ms(self) -> int:
        return int(self.cooldown_sec * 1000)


_COMPARISONS = {
    AlertType.FEAR_GREED_EXTREME: "outside",
    AlertType.SENTIMENT_SPIKE: "abs>=",
    AlertType.VOLATILITY_REGIME_CHANGE: "event",
    AlertType.SOCIAL_VOLUME_ANOMALY: "ratio>=",
    AlertType.SENTIMENT_DIVERGENCE: "diverge>=",
}


def build_rules(settings: Settings) -> List[AlertRule]:
    """Static rule set in evaluation order."""
    rules = []
    for alert_type in RULE_ORDER:
        cfg: AlertRuleSettings = settings.alerts.rule(alert_type)
        rules.append(AlertRule(
            alert_type=alert_type,
            signal=cfg.signal,
            window=cfg.window,
            comparison=_COMPARISONS[alert_type],
            threshold=float(cfg.threshold),
            threshold_high=float(cfg.threshold_high) if cfg.threshold_high is not None else None,
            severity=cfg.severity,
            cooldown_sec=float(cfg.cooldown_sec),
            min_samples=int(cfg.min_samples),
            enabled=cfg.enabled,
        ))
    return rules


# --- History -----------------------------------------------------------------

@dataclass
class AlertRecord:
    last_fired_ts: Optional[int] = None
    last_evaluated_ts: Optional[int] = None
    last_condition_ts: Optional[int] = None
    fired: int = 0
    suppressed: int = 0


class AlertHistory:
    """Per (entity, alert type) bookkeeping, owned by the alert engine."""

    def __init__(self):
        self._records: Dict[Tuple[str, AlertType], AlertRecord] = {}

    def get(self, entity: str, alert_type: AlertType) -> Optional[AlertRecord]:
        return self._records.get((entity, alert_type))

    def _rec(self, entity: str, alert_type: AlertType) -> AlertRecord:
        return self._records.setdefault((entity, alert_type), AlertRecord())

    def cooldown_expired(self, entity: str, alert_type: AlertType, ts: int, cooldown_ms: int) -> bool:
        rec = self._records.get((entity, alert_type))
        if rec is None or rec.last_fired_ts is None:
            return True
        return (ts - rec.last_fired_ts) >= cooldown_ms

    def state(self, entity: str, alert_type: AlertType, ts: int, cooldown_ms: int) -> str:
        return QUIET if self.cooldown_expired(entity, alert_type, ts, cooldown_ms) else FIRED

    def mark_evaluated(self, entity: str, alert_type: AlertType, ts: int) -> None:
        self._rec(entity, alert_type).last_evaluated_ts = ts

    def mark_fired(self, entity: str, alert_type: AlertType, ts: int) -> None:
        rec = self._rec(entity, alert_type)
        rec.last_fired_ts = ts
        rec.last_condition_ts = ts
        rec.fired += 1

    def mark_suppressed(self, entity: str, alert_type: AlertType, ts: int) -> None:
        rec = self._rec(entity, alert_type)
        rec.last_condition_ts = ts
        rec.suppressed += 1

    def evict(self, entity: str) -> int:
        keys = [k for k in self._records if k[0] == entity]
        for k in keys:
            del self._records[k]
        return len(keys)

    def for_entity(self, entity: str) -> Dict[str, Dict[str, Any]]:
        return {
            t.value: vars(rec).copy()
            for (e, t), rec in self._records.items() if e == entity
        }


# --- Conditions ----------------------------------------------------------------

@dataclass
class Trigger:
    current_value: float
    threshold: float
    description: str
    recommendation: str
    extra: Dict[str, Any] = field(default_factory=dict)


def _fear_greed(rule: AlertRule, state: SignalState, events: Sequence[SignalEvent]) -> Optional[Trigger]:
    v = state.value(rule.window)
    if v is None:
        return None
    if v <= rule.threshold:
        return Trigger(v, rule.threshold,
                       f"{state.entity} fear & greed at {v:.0f} (extreme fear, <= {rule.threshold:.0f})",
                       "Extreme fear: contrarian long watch, tighten short exposure",
                       {"branch": "extreme_fear"})
    if rule.threshold_high is not None and v >= rule.threshold_high:
        return Trigger(v, rule.threshold_high,
                       f"{state.entity} fear & greed at {v:.0f} (extreme greed, >= {rule.threshold_high:.0f})",
                       "Extreme greed: consider trimming longs, watch for reversal",
                       {"branch": "extreme_greed"})
    return None


def _spike(rule: AlertRule, state: SignalState, events: Sequence[SignalEvent]) -> Optional[Trigger]:
    v = state.value(rule.window)
    if v is None:
        return None
    if v >= rule.threshold:
        return Trigger(v, rule.threshold,
                       f"{state.entity} {state.signal} spiked to {v:+.2f} (>= {rule.threshold:+.2f})",
                       "Strong bullish sentiment: confirm with price before chasing",
                       {"direction": "bullish"})
    if v <= -rule.threshold:
        return Trigger(v, -rule.threshold,
                       f"{state.entity} {state.signal} dropped to {v:+.2f} (<= {-rule.threshold:+.2f})",
                       "Strong bearish sentiment: review long exposure",
                       {"direction": "bearish"})
    return None


def _volatility_regime(rule: AlertRule, state: SignalState, events: Sequence[SignalEvent]) -> Optional[Trigger]:
    ev = next((e for e in events
               if e.kind == EventKind.VOLATILITY_REGIME_CHANGE and e.signal == rule.signal), None)
    if ev is None or ev.current[0] is None:
        return None
    rec = ("Volatility rising: reduce position size, widen stops"
           if ev.direction == "up" else "Volatility easing: normal sizing can resume")
    return Trigger(float(ev.current[0]), float(ev.breakpoint or 0.0),
                   f"{state.entity} volatility regime {ev.from_bucket.value} -> {ev.to_bucket.value} "
                   f"({ev.current[0]:.2f})",
                   rec,
                   {"from_regime": ev.from_bucket.value, "to_regime": ev.to_bucket.value,
                    "direction": ev.direction})


def _social_volume(rule: AlertRule, state: SignalState, events: Sequence[SignalEvent]) -> Optional[Trigger]:
    raw = state.raw
    # baseline excludes the current sample: daily mean before this update
    baseline = state.prev(rule.window)
    if raw is None or baseline is None or baseline <= 0:
        return None
    if len(state.daily_buffer) - 1 < rule.min_samples:
        return None
    ratio = raw / baseline
    if ratio < rule.threshold:
        return None
    return Trigger(ratio, rule.threshold,
                   f"{state.entity} social volume {raw:.0f} is {ratio:.1f}x its {rule.window} average ({baseline:.1f})",
                   "Unusual social activity: check news flow before acting",
                   {"raw_volume": raw, "baseline": baseline})


def _divergence(rule: AlertRule, state: SignalState, events: Sequence[SignalEvent]) -> Optional[Trigger]:
    fast = state.value("fast")
    ref = state.value(rule.window)
    if fast is None or ref is None or fast * ref >= 0:
        return None
    gap = fast - ref
    if abs(gap) < rule.threshold:
        return None
    turning = "bullish" if gap > 0 else "bearish"
    return Trigger(gap, rule.threshold,
                   f"{state.entity} short-term {state.signal} ({fast:+.2f}) diverges from {rule.window} trend ({ref:+.2f})",
                   f"Sentiment turning {turning} against the prevailing trend: watch for confirmation",
                   {"fast": fast, "reference": ref, "reference_window": rule.window, "direction": turning})


_CONDITIONS: Dict[AlertType, Callable[[AlertRule, SignalState, Sequence[SignalEvent]], Optional[Trigger]]] = {
    AlertType.FEAR_GREED_EXTREME: _fear_greed,
    AlertType.SENTIMENT_SPIKE: _spike,
    AlertType.VOLATILITY_REGIME_CHANGE: _volatility_regime,
    AlertType.SOCIAL_VOLUME_ANOMALY: _social_volume,
    AlertType.SENTIMENT_DIVERGENCE: _divergence,
}


# --- Engine --------------------------------------------------------------------

class AlertEngine:
    """Evaluates the static rule set for one entity per pipeline cycle."""

    def __init__(self, settings: Settings):
        self.rules = build_rules(settings)
        self.history = AlertHistory()
        self.suppressed_total = 0

    def reconfigure(self, settings: Settings) -> None:
        # history survives: cooldowns keep running across a config swap
        self.rules = build_rules(settings)

    def evaluate(
        self,
        entity: str,
        signals: Mapping[str, SignalState],
        events: Sequence[SignalEvent],
        now_ts: int,
        updated: Optional[Iterable[str]] = None,
    ) -> List[Alert]:
        if not signals:
            return []
        changed = set(signals.keys()) if updated is None else set(updated)
        out: List[Alert] = []
        for rule in self.rules:
            if not rule.enabled or rule.signal not in changed:
                continue
            state = signals.get(rule.signal)
            if state is None or state.last_ts is None:
                continue
            trigger = _CONDITIONS[rule.alert_type](rule, state, events)
            self.history.mark_evaluated(entity, rule.alert_type, now_ts)
            if trigger is None:
                continue
            if not self.history.cooldown_expired(entity, rule.alert_type, now_ts, rule.cooldown_ms):
                self.history.mark_suppressed(entity, rule.alert_type, now_ts)
                self.suppressed_total += 1
                logger.debug(f"[Alerts] {entity} {rule.alert_type.value} suppressed (cooldown)")
                continue
            alert = self._build(entity, rule, state, trigger, events, now_ts)
            self.history.mark_fired(entity, rule.alert_type, now_ts)
            out.append(alert)
        return out

    @staticmethod
    def _build(entity: str, rule: AlertRule, state: SignalState, trigger: Trigger,
               events: Sequence[SignalEvent], now_ts: int) -> Alert:
        fusion = state.fusion
        metadata: Dict[str, Any] = {
            "contributing_sources": list(fusion.included) if fusion else [],
            "weights": dict(fusion.weights) if fusion else {},
            "confidence": round(fusion.confidence, 4) if fusion else 0.0,
            "coverage": round(fusion.coverage, 4) if fusion else 0.0,
            "recommendation": trigger.recommendation,
            "window": rule.window,
            "events": [e.kind.value for e in events if e.signal == state.signal],
        }
        metadata.update(trigger.extra)
        return Alert(
            ts=now_ts,
            severity=rule.severity,
            alert_type=rule.alert_type,
            entity=entity,
            signal=state.signal,
            current_value=float(trigger.current_value),
            threshold=float(trigger.threshold),
            description=trigger.description,
            metadata=metadata,
        )


__all__ = ["AlertEngine", "AlertHistory", "AlertRecord", "AlertRule", "RULE_ORDER", "build_rules", "QUIET", "FIRED"]

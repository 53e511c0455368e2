"""Source fusion for composite sentiment signals.

Blends the latest observation of each configured source into one value per
(entity, signal). Sources without a fresh observation are left out and the
remaining weights are renormalized to sum to 1; with nothing left the result
is `NoData`, never a zero score.

Staleness is judged against the time of the update being processed
(`now_ts`), not wall-clock time, so replays are deterministic.
"""
from __future__ import annotations

import math
from typing import Dict, List, Mapping, Tuple, Union

from loguru import logger

from sentiment_fusion.core.config import Settings
from sentiment_fusion.core.errors import FusionInputError
from sentiment_fusion.core.types import FusionResult, NoData, SignalMode, SourceName, SourceObservation

FusionOutcome = Union[FusionResult, NoData]


class SignalFusion:
    """Stateless; the settings snapshot is passed per call."""

    def fuse(
        self,
        entity: str,
        signal: str,
        observations: Mapping[SourceName, SourceObservation],
        settings: Settings,
        now_ts: int,
    ) -> FusionOutcome:
        sig_cfg = settings.signals.get(signal)
        if sig_cfg is None:
            raise FusionInputError(f"unknown signal '{signal}'")

        configured = {s: float(w) for s, w in sig_cfg.weights.items() if w > 0}
        total_configured = sum(configured.values())
        picked: List[Tuple[SourceName, float, float, SourceObservation]] = []  # (src, eff_w, value, obs)
        excluded: List[str] = []
        stale = 0

        for src, w in configured.items():
            src_cfg = settings.source(src)
            obs = observations.get(src)
            if src_cfg is None or not src_cfg.enabled or obs is None:
                excluded.append(src.value)
                continue
            if now_ts - obs.ts > src_cfg.expected_interval_sec * 1000.0:
                excluded.append(src.value)
                stale += 1
                continue
            value = self._checked_value(obs, sig_cfg.mode, settings)
            eff_w = w * obs.confidence if sig_cfg.confidence_weighted else w
            if eff_w <= 0:
                excluded.append(src.value)
                continue
            picked.append((src, eff_w, value, obs))

        if not picked:
            reason = "all_stale" if stale else "no_sources"
            logger.debug(f"[Fusion] {entity}/{signal} no data ({reason})")
            return NoData(signal=signal, reason=reason)

        w_sum = sum(p[1] for p in picked)
        weights: Dict[str, float] = {src.value: eff_w / w_sum for src, eff_w, _, _ in picked}
        value = sum(weights[src.value] * v for src, _, v, _ in picked)
        if sig_cfg.mode == SignalMode.COMPOSITE:
            value = max(-1.0, min(1.0, value))
        src_conf = sum(weights[src.value] * obs.confidence for src, _, _, obs in picked)
        coverage = sum(configured[src] for src, _, _, _ in picked) / total_configured

        return FusionResult(
            signal=signal,
            value=float(value),
            ts=int(now_ts),
            included=tuple(src.value for src, _, _, _ in picked),
            weights=weights,
            confidence=float(src_conf * coverage),
            coverage=float(coverage),
            excluded=tuple(excluded),
        )

    @staticmethod
    def _checked_value(obs: SourceObservation, mode: SignalMode, settings: Settings) -> float:
        src_cfg = settings.source(obs.source)
        v = float(obs.value)
        if not math.isfinite(v) or v < src_cfg.min_value or (src_cfg.max_value is not None and v > src_cfg.max_value):
            raise FusionInputError(f"{obs.entity}/{obs.source.value} value {v} outside declared range")
        if mode == SignalMode.LEVEL:
            return v
        norm = obs.normalized
        if norm is None:
            raise FusionInputError(f"source {obs.source.value} has no directional value for a composite")
        return norm


__all__ = ["SignalFusion", "FusionOutcome"]

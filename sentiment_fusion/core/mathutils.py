"""
Core Mathematical Utilities for Signal Smoothing

Scalar helpers used on the hot path (one update at a time) plus vectorized
Pandas equivalents used for backfill and for cross-checking the incremental
path in tests.

Design Principles:
- Pure Functions: no side effects; state lives in SignalState.
- One precision: everything is Python float / float64.
- The incremental and vectorized forms produce the same numbers: the EMA is
  seeded with the first raw value (`adjust=False`).
"""
from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd


def ema_alpha(period: int) -> float:
    """Smoothing factor for an EMA over `period` ticks: 2 / (N + 1)."""
    if period <= 0:
        raise ValueError("EMA 'period' must be a positive integer.")
    return 2.0 / (period + 1.0)


def ema_step(previous: Optional[float], raw: float, alpha: float) -> float:
    """One EMA update. A missing previous value seeds the series with `raw`."""
    if previous is None:
        return float(raw)
    return alpha * float(raw) + (1.0 - alpha) * float(previous)


def rolling_ema(data: pd.Series, period: int) -> pd.Series:
    """
    Calculates the Exponential Moving Average (EMA) for a given data series.

    Args:
        data: A Pandas Series of raw signal values in update order.
        period: The EMA period in ticks.

    Returns:
        A Pandas Series containing the EMA values.
    """
    if not isinstance(data, pd.Series):
        raise TypeError("Input 'data' must be a Pandas Series.")
    if period <= 0:
        raise ValueError("EMA 'period' must be a positive integer.")

    return data.astype("float64").ewm(span=period, adjust=False).mean()


def buffer_sum(samples: Iterable[Tuple[int, float]]) -> float:
    """Pairwise (numpy) sum of the values of a (ts, value) buffer."""
    vals = np.fromiter((v for _, v in samples), dtype=np.float64)
    return float(vals.sum())


def rolling_time_sma(data: pd.Series, span_ms: int) -> pd.Series:
    """
    Time-based rolling simple moving average.

    `data` must be indexed by epoch-millisecond timestamps. The window for a
    row at time t covers (t - span_ms, t], i.e. samples strictly older than
    the span are pruned.
    """
    if not isinstance(data, pd.Series):
        raise TypeError("Input 'data' must be a Pandas Series.")
    idx = pd.to_datetime(data.index, unit="ms")
    s = pd.Series(data.to_numpy(dtype="float64"), index=idx)
    out = s.rolling(pd.Timedelta(milliseconds=span_ms + 1), closed="right").mean()
    return pd.Series(out.to_numpy(), index=data.index)

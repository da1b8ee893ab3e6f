"""Stateless gating and smoothing helpers used once per scan cycle."""
from __future__ import annotations

from typing import Iterable

import numpy as np


def _as_array(samples: Iterable[float] | np.ndarray) -> np.ndarray:
    if isinstance(samples, np.ndarray):
        return samples
    return np.asarray(list(samples), dtype=np.float64)


def ema(previous: float | None, current: float | None, alpha: float) -> float | None:
    """Exponential moving average step.

    Cold start (no previous value) passes ``current`` through unchanged.
    A missing ``current`` yields None: a miss clears the smoothed value
    rather than holding the last one.
    """
    if previous is None:
        return current
    if current is None:
        return None
    return alpha * current + (1.0 - alpha) * previous


def max_abs(samples: Iterable[float] | np.ndarray) -> float:
    arr = _as_array(samples)
    if arr.size == 0:
        return 0.0
    return float(np.max(np.abs(arr)))


def rms_level(samples: Iterable[float] | np.ndarray) -> float:
    arr = _as_array(samples)
    if arr.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(arr.astype(np.float64) ** 2)))

from __future__ import annotations

import numpy as np
import scipy.signal


def generate_chirp(sample_rate: int, duration_ms: float, f0: float, f1: float) -> np.ndarray:
    """Linear frequency sweep from f0 to f1, full scale.

    out[i] = sin(2*pi*(f0*t + 0.5*k*t**2)) with t = i / sample_rate and
    k = (f1 - f0) / T. Always at least one sample long.
    """
    duration = duration_ms / 1000.0
    n = max(1, int(round(sample_rate * duration)))
    if duration <= 0:
        # sin(phi(0)) == 0
        return np.zeros(n, dtype=np.float32)
    t = np.arange(n, dtype=np.float64) / float(sample_rate)
    # phi=-90 turns scipy's cosine sweep into a sine starting at zero phase
    sweep = scipy.signal.chirp(t, f0=f0, f1=f1, t1=duration, method="linear", phi=-90)
    return sweep.astype(np.float32)


def instantaneous_frequency(signal: np.ndarray, sample_rate: int) -> np.ndarray:
    """Per-sample frequency estimate (Hz) from the analytic signal phase."""
    phase = np.unwrap(np.angle(scipy.signal.hilbert(np.asarray(signal, dtype=np.float64))))
    return np.diff(phase) * sample_rate / (2.0 * np.pi)

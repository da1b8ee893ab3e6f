from __future__ import annotations

from typing import NamedTuple

import numpy as np
import scipy.signal

# Floor for squared norms so that silent segments never divide by zero.
NORM_EPSILON = 1e-12

# Scores closer than this to the best one are treated as equal.
TIE_TOLERANCE = 1e-9


class CorrelationResult(NamedTuple):
    lag: int
    correlation: float


NO_CORRELATION = CorrelationResult(-1, 0.0)


def correlation_profile(template: np.ndarray, snapshot: np.ndarray) -> np.ndarray:
    """Normalized cross-correlation of template against every valid lag.

    Entry ``k`` is dot(template, snapshot[k:k+m]) divided by the L2 norms of
    the template and of that snapshot segment, so the score does not depend
    on echo amplitude. Length is ``len(snapshot) - len(template) + 1``; empty
    when the snapshot is shorter than the template.

    Dot products go through scipy's correlate (FFT for long inputs), and
    the sliding segment energies come from a cumulative sum of squares, so
    the cost stays well below the direct O(N*M) loop.
    """
    t = np.asarray(template, dtype=np.float64)
    s = np.asarray(snapshot, dtype=np.float64)
    m = t.shape[0]
    n = s.shape[0]
    if m == 0 or n < m:
        return np.zeros(0, dtype=np.float64)

    dots = scipy.signal.correlate(s, t, mode="valid")

    energy = np.concatenate(([0.0], np.cumsum(s * s)))
    seg_energy = energy[m:] - energy[:-m]

    t_norm = np.sqrt(max(NORM_EPSILON, float(np.dot(t, t))))
    s_norm = np.sqrt(np.maximum(NORM_EPSILON, seg_energy))

    return np.clip(dots / (t_norm * s_norm), -1.0, 1.0)


def normalized_cross_correlation(
    template: np.ndarray,
    snapshot: np.ndarray,
    blind_ms: float,
    sample_rate: int,
) -> CorrelationResult:
    """Matched filter: best alignment of the probe template within a snapshot.

    Lags below the blind zone (direct speaker-to-mic leakage) are skipped.
    The strictly highest score wins; on ties the earliest lag is kept.

    Args:
        template: Probe waveform (chirp template)
        snapshot: Recorded window, oldest sample first
        blind_ms: Length of the excluded blind zone in milliseconds
        sample_rate: Sample rate of both signals

    Returns:
        CorrelationResult(lag, correlation); lag is -1 (with correlation 0)
        when the snapshot is shorter than the template or the blind zone
        leaves no lag to test.
    """
    if len(snapshot) < len(template) or len(template) == 0:
        return NO_CORRELATION

    blind_samples = max(0, int(round(blind_ms / 1000.0 * sample_rate)))
    profile = correlation_profile(template, snapshot)
    if blind_samples >= profile.shape[0]:
        return NO_CORRELATION

    # FFT dots and cumulative-sum energies leave rounding noise on equal
    # scores; anything within TIE_TOLERANCE of the peak counts as a tie.
    search = profile[blind_samples:]
    best = blind_samples + int(np.flatnonzero(search >= search.max() - TIE_TOLERANCE)[0])
    return CorrelationResult(best, float(profile[best]))

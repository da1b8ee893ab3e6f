"""DSP helpers: probe synthesis, matched filtering, smoothing and gating."""

from echoscan.dsp.chirp import generate_chirp
from echoscan.dsp.correlation import (
    CorrelationResult,
    correlation_profile,
    normalized_cross_correlation,
)
from echoscan.dsp.smoothing import ema, max_abs, rms_level
from echoscan.dsp.tone import generate_sine

__all__ = [
    "generate_chirp",
    "generate_sine",
    "CorrelationResult",
    "correlation_profile",
    "normalized_cross_correlation",
    "ema",
    "max_abs",
    "rms_level",
]

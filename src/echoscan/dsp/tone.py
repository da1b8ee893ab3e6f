from __future__ import annotations

import numpy as np


def generate_sine(freq: float = 440.0, duration: float = 1.0, amplitude: float = 0.3, sample_rate: int = 48000) -> np.ndarray:
    t = np.arange(max(1, int(round(sample_rate * duration)))) / float(sample_rate)
    signal = amplitude * np.sin(2 * np.pi * freq * t)
    return signal.astype(np.float32)

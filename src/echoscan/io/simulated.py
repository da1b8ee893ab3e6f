"""Simulated duplex device for running the engine without audio hardware."""
from __future__ import annotations

from typing import Callable

import numpy as np

from echoscan.dsp.smoothing import rms_level


class SimulatedEchoDevice:
    """Capture stream and playback sink in one object.

    Every emitted waveform comes back on the capture side as a single
    recording window: optional direct leakage at lag 0, an attenuated echo
    after ``echo_delay_ms`` and optional white noise. The window is pushed
    to the connected sink in ``frames_per_buffer`` blocks during ``play``,
    so the last window in the ring starts exactly at the emission.
    """

    def __init__(
        self,
        sample_rate: int = 48000,
        echo_delay_ms: float = 10.0,
        echo_gain: float = 0.5,
        record_ms: float = 200.0,
        leakage_gain: float = 0.0,
        noise_level: float = 0.0,
        frames_per_buffer: int = 512,
        seed: int | None = None,
    ):
        self.sample_rate = int(sample_rate)
        self.echo_delay_ms = float(echo_delay_ms)
        self.echo_gain = float(echo_gain)
        self.record_frames = max(1, int(round(self.sample_rate * record_ms / 1000.0)))
        self.leakage_gain = float(leakage_gain)
        self.noise_level = float(noise_level)
        self.frames_per_buffer = max(1, int(frames_per_buffer))
        self.emissions = 0
        self.closed = False
        self._rng = np.random.default_rng(seed)
        self._sink: Callable[[np.ndarray], None] | None = None
        self._level = 0.0

    @property
    def echo_delay_samples(self) -> int:
        return int(round(self.echo_delay_ms / 1000.0 * self.sample_rate))

    def connect(self, sink: Callable[[np.ndarray], None]):
        self._sink = sink

    def disconnect(self):
        self._sink = None

    def level(self) -> float:
        return self._level

    def close(self):
        self._sink = None
        self.closed = True

    def render(self, samples: np.ndarray) -> np.ndarray:
        """Recording window produced by one emission."""
        signal = np.asarray(samples, dtype=np.float32)
        window = np.zeros(self.record_frames, dtype=np.float32)
        if self.leakage_gain:
            n = min(len(signal), self.record_frames)
            window[:n] += self.leakage_gain * signal[:n]
        delay = self.echo_delay_samples
        if self.echo_gain and delay < self.record_frames:
            n = min(len(signal), self.record_frames - delay)
            window[delay:delay + n] += self.echo_gain * signal[:n]
        if self.noise_level:
            window += self._rng.normal(0.0, self.noise_level, self.record_frames).astype(np.float32)
        return window

    def play(self, samples: np.ndarray, gain: float = 1.0):
        if self.closed:
            raise RuntimeError("Simulated device is closed")
        self.emissions += 1
        window = self.render(np.asarray(samples, dtype=np.float32) * np.float32(gain))
        self._level = rms_level(window)
        sink = self._sink
        if sink is None:
            return
        for start in range(0, len(window), self.frames_per_buffer):
            sink(window[start:start + self.frames_per_buffer])

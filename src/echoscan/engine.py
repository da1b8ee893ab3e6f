"""Ranging engine: chirp emission, echo capture, matched filtering, smoothing.

The engine owns one scan loop running on a background thread. Audio comes
in through a capture collaborator that feeds the ring buffer from its own
callback; chirps go out through a playback collaborator. Results are pushed
to an optional callback and to a bounded queue read with ``results()``.

Collaborator interfaces (duck typed):
- capture: ``sample_rate``, ``connect(sink)``, ``disconnect()``, optional
  ``level()`` and ``close()``
- playback: ``play(samples, gain=1.0)``, optional ``close()``
"""
from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterator

import numpy as np

from echoscan.config import EngineConfig
from echoscan.dsp.chirp import generate_chirp
from echoscan.dsp.correlation import normalized_cross_correlation
from echoscan.dsp.smoothing import ema, max_abs
from echoscan.dsp.tone import generate_sine
from echoscan.errors import ConfigurationError, StateError, TransientPlaybackError
from echoscan.io.ring_buffer import RingBuffer

logger = logging.getLogger(__name__)

# Speed of sound in air (m/s), 20°C, no temperature compensation
SPEED_OF_SOUND = 343.0

# Minimum normalized correlation accepted as an echo
DETECTION_THRESHOLD = 0.1

TEST_BEEP_GAIN = 0.3
RESULT_QUEUE_SIZE = 64


class EngineState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ARMED = "armed"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RangeSample:
    """Result of one scan cycle."""

    raw_distance_m: float | None
    smoothed_distance_m: float | None
    confidence: float
    mic_rms: float
    lag_samples: int = -1
    peak_amplitude: float = 0.0
    cycle: int = 0
    timestamp: float = 0.0

    @property
    def detected(self) -> bool:
        return self.raw_distance_m is not None

    def to_dict(self) -> dict:
        return asdict(self)


def lag_to_distance(lag_samples: float, sample_rate: int, sound_speed: float = SPEED_OF_SOUND) -> float:
    """Round-trip lag to one-way distance: R = (c * t) / 2."""
    return (lag_samples / float(sample_rate)) * sound_speed / 2.0


class RangeEstimator:
    """Active acoustic rangefinder.

    Lifecycle: ``initialize()`` arms the engine (template, ring buffer,
    audio wiring), ``start_continuous_scan()`` runs the scan loop and
    ``stop()`` ends the session and releases audio resources. A stopped
    engine cannot be restarted; create a new one.
    """

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or EngineConfig()
        self._state = EngineState.UNINITIALIZED
        self._state_lock = threading.Lock()

        self.capture = None
        self.playback = None
        self.sample_rate: int | None = None
        self.template: np.ndarray | None = None
        self.ring: RingBuffer | None = None
        self.window_length = 0

        self._running = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._on_result: Callable[[RangeSample], None] | None = None
        self._results: queue.Queue[RangeSample] = queue.Queue(maxsize=RESULT_QUEUE_SIZE)
        self._last_smoothed: float | None = None
        self._cycle = 0

        # Debug metrics
        self.last_mic_rms = 0.0
        self.last_peak_corr = 0.0
        self.last_raw_distance: float | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def smoothed_distance(self) -> float | None:
        return self._last_smoothed

    def initialize(self, capture, playback=None):
        """Generate the template, allocate the ring buffer and wire audio.

        Args:
            capture: Open capture stream (see module docstring)
            playback: Playback sink; defaults to ``capture`` when it can play

        Raises:
            ConfigurationError: No capture stream, no playback sink or no
                usable sample rate
            StateError: The engine was already initialized
        """
        if capture is None:
            raise ConfigurationError("initialize() requires a capture stream")
        if playback is None:
            if not callable(getattr(capture, "play", None)):
                raise ConfigurationError("initialize() requires a playback sink")
            playback = capture

        sample_rate = int(getattr(capture, "sample_rate", 0) or 0)
        if sample_rate <= 0:
            raise ConfigurationError(f"capture stream reports invalid sample rate {sample_rate}")

        with self._state_lock:
            if self._state is not EngineState.UNINITIALIZED:
                raise StateError(f"initialize() called in state {self._state.value}")

            cfg = self.config
            self.sample_rate = sample_rate
            self.template = generate_chirp(sample_rate, cfg.pulse_ms, cfg.start_freq, cfg.end_freq)
            self.window_length = cfg.window_length(sample_rate)
            self.ring = RingBuffer(cfg.ring_capacity(sample_rate))
            self.capture = capture
            self.playback = playback
            capture.connect(self.ring.write)
            self._state = EngineState.ARMED

        if self.window_length < len(self.template):
            logger.warning(
                "Recording window (%d samples) is shorter than the chirp (%d samples); "
                "no echo can be detected",
                self.window_length,
                len(self.template),
            )
        logger.info(
            "Engine armed: sr=%d Hz, template=%d samples, window=%d samples, ring=%d samples",
            sample_rate,
            len(self.template),
            self.window_length,
            self.ring.capacity,
        )

    def start_continuous_scan(self, on_result: Callable[[RangeSample], None] | None = None) -> threading.Thread:
        """Start the scan loop on a background thread.

        ``on_result`` is called once per cycle from the scan thread. Results
        are also available through ``results()``.
        """
        with self._state_lock:
            if self._state is EngineState.UNINITIALIZED:
                raise StateError("start_continuous_scan() called before initialize()")
            if self._state is EngineState.RUNNING:
                raise StateError("scan loop is already running")
            if self._state is EngineState.STOPPED:
                raise StateError("engine is stopped; create a new RangeEstimator")
            self._state = EngineState.RUNNING
            self._last_smoothed = None
            self._cycle = 0
            self._on_result = on_result
            self._stop_event.clear()
            self._running = True
            self._thread = threading.Thread(target=self._scan_loop, name="echoscan-scan", daemon=True)
            self._thread.start()
        return self._thread

    def stop(self):
        """End the session and release audio resources.

        Safe to call repeatedly, from any thread (including ``on_result``)
        and before the scan was ever started. Once it returns from a thread
        other than the scan thread, no further results are delivered.
        """
        with self._state_lock:
            if self._state in (EngineState.UNINITIALIZED, EngineState.STOPPED):
                return
            self._state = EngineState.STOPPED
            self._running = False
            self._stop_event.set()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=self.config.cycle_interval_ms / 1000.0 + 1.0)
            if thread.is_alive():
                logger.warning("Scan thread did not stop cleanly")

        self._release()
        self._last_smoothed = None
        logger.info("Engine stopped after %d cycles", self._cycle)

    def _release(self):
        capture, playback = self.capture, self.playback
        steps = []
        if capture is not None:
            steps.append(("disconnect capture", getattr(capture, "disconnect", None)))
            steps.append(("close capture", getattr(capture, "close", None)))
        if playback is not None and playback is not capture:
            steps.append(("close playback", getattr(playback, "close", None)))

        for name, step in steps:
            if not callable(step):
                continue
            try:
                step()
            except Exception as e:
                logger.warning("Failed to %s: %s", name, e)

        self.capture = None
        self.playback = None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the scan thread exits. Returns True if it has."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def results(self, timeout: float | None = None) -> Iterator[RangeSample]:
        """Yield results as they arrive.

        Ends once the loop has stopped and the queue is drained, or when no
        result arrives within ``timeout`` seconds.
        """
        poll = 0.05
        waited = 0.0
        while True:
            try:
                sample = self._results.get(timeout=poll)
            except queue.Empty:
                if not self._running:
                    return
                waited += poll
                if timeout is not None and waited >= timeout:
                    return
                continue
            waited = 0.0
            yield sample

    def play_test_beep(self, duration_ms: float = 1000.0, frequency_hz: float = 440.0) -> bool:
        """Emit a sine tone through the playback sink.

        Independent of the scan loop; allowed once the engine is armed.
        Returns False (after logging) when the sink refuses the tone.
        """
        with self._state_lock:
            if self._state not in (EngineState.ARMED, EngineState.RUNNING):
                raise StateError(f"play_test_beep() needs an initialized engine (state: {self._state.value})")
            sample_rate = self.sample_rate

        tone = generate_sine(
            freq=frequency_hz,
            duration=duration_ms / 1000.0,
            amplitude=TEST_BEEP_GAIN,
            sample_rate=sample_rate,
        )
        try:
            self._emit(tone)
        except TransientPlaybackError as e:
            logger.warning("%s", e)
            return False
        logger.info("Test beep: %.0f Hz for %.0f ms", frequency_hz, duration_ms)
        return True

    def _emit(self, samples: np.ndarray, gain: float = 1.0):
        playback = self.playback
        if playback is None:
            raise TransientPlaybackError("Playback sink is not available")
        try:
            playback.play(samples, gain=gain)
        except Exception as e:
            raise TransientPlaybackError(f"Emission failed: {e}") from e

    def _read_level(self) -> float:
        level = getattr(self.capture, "level", None)
        if not callable(level):
            return 0.0
        try:
            return float(level())
        except Exception as e:
            logger.debug("Level tap failed: %s", e)
            return 0.0

    def _scan_loop(self):
        cfg = self.config
        rec_s = cfg.rec_ms / 1000.0
        idle_s = max(0.0, cfg.cycle_interval_ms - cfg.rec_ms) / 1000.0
        logger.info("Scan loop started (interval %.0f ms)", cfg.cycle_interval_ms)

        while self._running:
            try:
                sample = self._run_cycle(rec_s)
            except Exception:
                logger.exception("Scan cycle failed")
                sample = None
            if sample is not None:
                self._deliver(sample)
            if self._stop_event.wait(idle_s):
                break

        logger.info("Scan loop exited after %d cycles", self._cycle)

    def _run_cycle(self, rec_s: float) -> RangeSample | None:
        cfg = self.config
        sample_rate = self.sample_rate
        template = self.template
        ring = self.ring

        mic_rms = self._read_level()

        try:
            self._emit(template, gain=1.0)
        except TransientPlaybackError as e:
            logger.warning("Chirp skipped: %s", e)

        # Let the echo arrive; stop() cuts the wait short.
        if self._stop_event.wait(rec_s):
            return None

        snap = ring.snapshot(self.window_length)
        peak = max_abs(snap)
        self._cycle += 1

        lag = -1
        corr = 0.0
        raw = None
        if peak >= cfg.noise_gate:
            lag, corr = normalized_cross_correlation(template, snap, cfg.blind_ms, sample_rate)
            if lag > 0 and corr >= DETECTION_THRESHOLD:
                raw = lag_to_distance(lag, sample_rate)

        smoothed = ema(self._last_smoothed, raw, cfg.smoothing_alpha)
        self._last_smoothed = smoothed

        self.last_mic_rms = mic_rms
        self.last_peak_corr = corr
        self.last_raw_distance = raw

        return RangeSample(
            raw_distance_m=raw,
            smoothed_distance_m=smoothed,
            confidence=float(corr),
            mic_rms=float(mic_rms),
            lag_samples=int(lag),
            peak_amplitude=float(peak),
            cycle=self._cycle,
            timestamp=time.monotonic(),
        )

    def _deliver(self, sample: RangeSample):
        if not self._running:
            return
        try:
            self._results.put_nowait(sample)
        except queue.Full:
            # Drop the oldest result; the newest is what a reader wants.
            try:
                self._results.get_nowait()
            except queue.Empty:
                pass
            self._results.put_nowait(sample)

        callback = self._on_result
        if callback is not None:
            try:
                callback(sample)
            except Exception:
                logger.exception("Result callback raised")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

import threading
import time
import unittest

import numpy as np

from echoscan.config import EngineConfig
from echoscan.engine import (
    SPEED_OF_SOUND,
    EngineState,
    RangeEstimator,
    RangeSample,
    lag_to_distance,
)
from echoscan.errors import ConfigurationError, StateError
from echoscan.io.simulated import SimulatedEchoDevice

SR = 48000

# Short pulses and windows keep each cycle around 70 ms.
FAST_CONFIG = EngineConfig(
    pulse_ms=10,
    start_freq=15000,
    end_freq=17000,
    rec_ms=50,
    blind_ms=2,
    noise_gate=0.05,
    smoothing_alpha=0.5,
    settle_ms=20,
    min_interval_ms=0,
)


def _device(**kwargs):
    params = dict(sample_rate=SR, echo_delay_ms=10.0, echo_gain=0.5, record_ms=FAST_CONFIG.rec_ms)
    params.update(kwargs)
    return SimulatedEchoDevice(**params)


def _collect(engine, count, timeout=3.0):
    samples = []
    for sample in engine.results(timeout=timeout):
        samples.append(sample)
        if len(samples) >= count:
            break
    return samples


class ToneDevice(SimulatedEchoDevice):
    """Loud tone unrelated to the chirp: passes the gate, fails correlation."""

    def render(self, samples):
        t = np.arange(self.record_frames) / self.sample_rate
        return (0.5 * np.sin(2 * np.pi * 1000.0 * t)).astype(np.float32)


class FlakyDevice(SimulatedEchoDevice):
    """Refuses the first emission."""

    def play(self, samples, gain=1.0):
        if self.emissions == 0 and not getattr(self, "_failed", False):
            self._failed = True
            raise RuntimeError("device busy")
        super().play(samples, gain=gain)


class CaptureOnly:
    sample_rate = SR

    def __init__(self):
        self.sink = None

    def connect(self, sink):
        self.sink = sink

    def disconnect(self):
        self.sink = None


class BrokenCapture(SimulatedEchoDevice):
    def disconnect(self):
        raise RuntimeError("graph already torn down")

    def close(self):
        raise RuntimeError("context lost")


class RecordingPlayback:
    def __init__(self):
        self.played = []
        self.closed = False

    def play(self, samples, gain=1.0):
        self.played.append((np.asarray(samples).copy(), gain))

    def close(self):
        self.closed = True


class TestLagToDistance(unittest.TestCase):
    def test_round_trip_conversion(self):
        self.assertAlmostEqual(lag_to_distance(480, 48000), (480 / 48000) * 343.0 / 2)
        self.assertAlmostEqual(lag_to_distance(480, 48000), 1.715)
        self.assertEqual(SPEED_OF_SOUND, 343.0)


class TestStateMachine(unittest.TestCase):
    def test_initial_state(self):
        engine = RangeEstimator(FAST_CONFIG)
        self.assertIs(engine.state, EngineState.UNINITIALIZED)
        self.assertFalse(engine.running)

    def test_initialize_arms_engine(self):
        engine = RangeEstimator(FAST_CONFIG)
        device = _device()
        engine.initialize(device)
        self.assertIs(engine.state, EngineState.ARMED)
        self.assertEqual(engine.sample_rate, SR)
        self.assertEqual(len(engine.template), 480)
        self.assertEqual(engine.window_length, 2400)
        self.assertGreaterEqual(engine.ring.capacity, engine.window_length)
        engine.stop()

    def test_initialize_requires_capture(self):
        engine = RangeEstimator(FAST_CONFIG)
        with self.assertRaises(ConfigurationError):
            engine.initialize(None)
        self.assertIs(engine.state, EngineState.UNINITIALIZED)

    def test_initialize_requires_playback(self):
        engine = RangeEstimator(FAST_CONFIG)
        with self.assertRaises(ConfigurationError):
            engine.initialize(CaptureOnly())

    def test_separate_playback_sink(self):
        engine = RangeEstimator(FAST_CONFIG)
        capture = CaptureOnly()
        playback = RecordingPlayback()
        engine.initialize(capture, playback)
        self.assertIsNotNone(capture.sink)
        self.assertTrue(engine.play_test_beep(duration_ms=100, frequency_hz=440))
        tone, gain = playback.played[0]
        self.assertEqual(len(tone), 4800)
        self.assertLessEqual(np.max(np.abs(tone)), 0.3 + 1e-6)
        engine.stop()
        self.assertTrue(playback.closed)
        self.assertIsNone(capture.sink)

    def test_double_initialize_rejected(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        with self.assertRaises(StateError):
            engine.initialize(_device())
        engine.stop()

    def test_start_before_initialize_rejected(self):
        engine = RangeEstimator(FAST_CONFIG)
        with self.assertRaises(StateError):
            engine.start_continuous_scan()

    def test_second_start_rejected(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        engine.start_continuous_scan()
        try:
            with self.assertRaises(StateError):
                engine.start_continuous_scan()
        finally:
            engine.stop()

    def test_stopped_engine_is_terminal(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        engine.stop()
        self.assertIs(engine.state, EngineState.STOPPED)
        with self.assertRaises(StateError):
            engine.start_continuous_scan()
        with self.assertRaises(StateError):
            engine.initialize(_device())
        with self.assertRaises(StateError):
            engine.play_test_beep()

    def test_stop_is_safe_before_start_and_repeated(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.stop()
        engine.stop()
        self.assertIs(engine.state, EngineState.UNINITIALIZED)

        device = _device()
        engine.initialize(device)
        engine.stop()
        engine.stop()
        self.assertIs(engine.state, EngineState.STOPPED)
        self.assertTrue(device.closed)

    def test_test_beep_requires_initialize(self):
        engine = RangeEstimator(FAST_CONFIG)
        with self.assertRaises(StateError):
            engine.play_test_beep()

    def test_test_beep_failure_is_reported_not_raised(self):
        engine = RangeEstimator(FAST_CONFIG)
        device = FlakyDevice(sample_rate=SR, record_ms=FAST_CONFIG.rec_ms)
        engine.initialize(device)
        self.assertFalse(engine.play_test_beep(duration_ms=50))
        self.assertTrue(engine.play_test_beep(duration_ms=50))
        engine.stop()

    def test_context_manager_stops(self):
        device = _device()
        with RangeEstimator(FAST_CONFIG) as engine:
            engine.initialize(device)
            engine.start_continuous_scan()
        self.assertIs(engine.state, EngineState.STOPPED)
        self.assertFalse(engine.running)


class TestScanLoop(unittest.TestCase):
    def test_echo_at_10ms_gives_1715_mm(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        engine.start_continuous_scan()
        try:
            samples = _collect(engine, 3)
        finally:
            engine.stop()

        self.assertEqual(len(samples), 3)
        for sample in samples:
            self.assertIsInstance(sample, RangeSample)
            self.assertEqual(sample.lag_samples, 480)
            self.assertAlmostEqual(sample.raw_distance_m, 1.715, delta=0.01)
            self.assertGreater(sample.confidence, 0.9)
            self.assertAlmostEqual(sample.smoothed_distance_m, 1.715, delta=0.01)
            self.assertTrue(sample.detected)
        self.assertEqual([s.cycle for s in samples], [1, 2, 3])
        self.assertAlmostEqual(engine.last_raw_distance, 1.715, delta=0.01)

    def test_silent_stream_reports_no_detection(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device(echo_gain=0.0))
        engine.start_continuous_scan()
        try:
            samples = _collect(engine, 2)
        finally:
            engine.stop()

        self.assertEqual(len(samples), 2)
        for sample in samples:
            self.assertIsNone(sample.raw_distance_m)
            self.assertIsNone(sample.smoothed_distance_m)
            self.assertEqual(sample.confidence, 0)
            self.assertEqual(sample.lag_samples, -1)
            self.assertFalse(sample.detected)

    def test_loud_unrelated_signal_is_weak_detection(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(ToneDevice(sample_rate=SR, record_ms=FAST_CONFIG.rec_ms))
        engine.start_continuous_scan()
        try:
            samples = _collect(engine, 2)
        finally:
            engine.stop()

        for sample in samples:
            self.assertGreater(sample.peak_amplitude, FAST_CONFIG.noise_gate)
            self.assertIsNone(sample.raw_distance_m)
            self.assertLess(sample.confidence, 0.1)
            # Raw correlation is kept for diagnostics
            self.assertGreaterEqual(sample.lag_samples, 0)

    def test_callback_receives_results(self):
        received = []
        done = threading.Event()

        def on_result(sample):
            received.append(sample)
            if len(received) >= 2:
                done.set()

        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        engine.start_continuous_scan(on_result)
        try:
            self.assertTrue(done.wait(3.0))
        finally:
            engine.stop()
        self.assertAlmostEqual(received[0].raw_distance_m, 1.715, delta=0.01)
        self.assertIn("raw_distance_m", received[0].to_dict())

    def test_no_results_after_stop(self):
        received = []
        first = threading.Event()

        def on_result(sample):
            received.append(sample)
            first.set()

        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        engine.start_continuous_scan(on_result)
        self.assertTrue(first.wait(3.0))
        engine.stop()
        count = len(received)
        time.sleep(3 * FAST_CONFIG.cycle_interval_ms / 1000.0)
        self.assertEqual(len(received), count)
        self.assertTrue(engine.wait(1.0))

    def test_stop_from_callback(self):
        received = []
        engine = RangeEstimator(FAST_CONFIG)

        def on_result(sample):
            received.append(sample)
            engine.stop()

        engine.initialize(_device())
        engine.start_continuous_scan(on_result)
        self.assertTrue(engine.wait(3.0))
        self.assertEqual(len(received), 1)
        self.assertIs(engine.state, EngineState.STOPPED)

    def test_failed_chirp_does_not_stop_loop(self):
        engine = RangeEstimator(FAST_CONFIG)
        device = FlakyDevice(sample_rate=SR, echo_delay_ms=10.0, echo_gain=0.5, record_ms=FAST_CONFIG.rec_ms)
        engine.initialize(device)
        engine.start_continuous_scan()
        try:
            samples = _collect(engine, 3)
        finally:
            engine.stop()

        self.assertEqual(len(samples), 3)
        # Nothing was emitted in the first cycle, so nothing came back.
        self.assertIsNone(samples[0].raw_distance_m)
        self.assertAlmostEqual(samples[-1].raw_distance_m, 1.715, delta=0.01)

    def test_smoothing_follows_ema(self):
        engine = RangeEstimator(FAST_CONFIG)
        device = _device()
        engine.initialize(device)
        delays = iter([20.0, 30.0])

        def on_result(sample):
            try:
                device.echo_delay_ms = next(delays)
            except StopIteration:
                pass

        # First emission uses 10 ms, later ones follow the callback.
        engine.start_continuous_scan(on_result)
        try:
            samples = _collect(engine, 3)
        finally:
            engine.stop()

        first, second, third = samples
        alpha = FAST_CONFIG.smoothing_alpha
        self.assertAlmostEqual(first.smoothed_distance_m, first.raw_distance_m)
        expected = alpha * second.raw_distance_m + (1 - alpha) * first.smoothed_distance_m
        self.assertAlmostEqual(second.smoothed_distance_m, expected, places=6)
        expected = alpha * third.raw_distance_m + (1 - alpha) * second.smoothed_distance_m
        self.assertAlmostEqual(third.smoothed_distance_m, expected, places=6)

    def test_miss_clears_smoothed_value(self):
        engine = RangeEstimator(FAST_CONFIG)
        device = _device()
        engine.initialize(device)

        def on_result(sample):
            # Silence every cycle after the first detection
            device.echo_gain = 0.0

        engine.start_continuous_scan(on_result)
        try:
            samples = _collect(engine, 2)
        finally:
            engine.stop()

        self.assertIsNotNone(samples[0].smoothed_distance_m)
        self.assertIsNone(samples[1].raw_distance_m)
        self.assertIsNone(samples[1].smoothed_distance_m)

    def test_teardown_continues_past_failures(self):
        engine = RangeEstimator(FAST_CONFIG)
        capture = BrokenCapture(sample_rate=SR, record_ms=FAST_CONFIG.rec_ms)
        playback = RecordingPlayback()
        engine.initialize(capture, playback)
        engine.start_continuous_scan()
        engine.stop()
        self.assertTrue(playback.closed)
        self.assertIsNone(engine.capture)
        self.assertIsNone(engine.playback)
        self.assertIs(engine.state, EngineState.STOPPED)

    def test_results_ends_after_stop(self):
        engine = RangeEstimator(FAST_CONFIG)
        engine.initialize(_device())
        engine.start_continuous_scan()
        _collect(engine, 1)
        engine.stop()
        # Drains what is left, then ends instead of blocking
        list(engine.results(timeout=1.0))
        self.assertEqual(list(engine.results(timeout=0.1)), [])


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import atexit
import threading
import time
import weakref
from typing import Callable

import numpy as np
import sounddevice as sd

from echoscan.config import AudioDeviceConfig

_open_streams: "weakref.WeakSet[_StreamOwner]" = weakref.WeakSet()


class _StreamOwner:
    stream: sd.InputStream | sd.OutputStream | None = None

    def _start(self, stream):
        # Small delay helps some drivers stabilize.
        time.sleep(0.05)
        self.stream = stream
        self.stream.start()
        time.sleep(0.05)
        _open_streams.add(self)

    def close(self):
        if self.stream is None:
            return
        try:
            self.stream.stop()
            time.sleep(0.05)
            self.stream.close()
        finally:
            self.stream = None
            _open_streams.discard(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class InputCapture(_StreamOwner):
    """Continuous mono capture that hands every block to a connected sink.

    The sink runs inside the PortAudio callback, so it must be fast and must
    not raise. The RMS of the latest block doubles as the level-metering tap.
    """

    def __init__(self, cfg: AudioDeviceConfig):
        self.cfg = cfg
        self.sample_rate = int(cfg.sample_rate)
        self.stream = None
        self.xruns = 0
        self._sink: Callable[[np.ndarray], None] | None = None
        self._level = 0.0

    def _callback(self, indata, frames, time_info, status):  # noqa: ANN001
        # Keep callback lean; no logging.
        if status:
            self.xruns += 1
        mono = indata[:, 0]
        sink = self._sink
        if sink is not None:
            sink(mono)
        if frames:
            self._level = float(np.sqrt(np.dot(mono, mono) / frames))

    def connect(self, sink: Callable[[np.ndarray], None]):
        self._sink = sink
        if self.stream is None:
            self._start(
                sd.InputStream(
                    samplerate=self.cfg.sample_rate,
                    blocksize=self.cfg.frames_per_buffer,
                    dtype="float32",
                    channels=self.cfg.channels_rec,
                    device=self.cfg.rec_device,
                    latency=self.cfg.latency,
                    callback=self._callback,
                )
            )

    def disconnect(self):
        self._sink = None

    def level(self) -> float:
        return self._level


class OutputPlayback(_StreamOwner):
    """Persistent output stream that mixes queued waveforms into its callback.

    Keeping one stream open avoids recreating driver buffers for every
    chirp. ``play`` only schedules the waveform; emission starts with the
    next audio block.
    """

    def __init__(self, cfg: AudioDeviceConfig):
        self.cfg = cfg
        self.sample_rate = int(cfg.sample_rate)
        self.stream = None
        self._job_lock = threading.Lock()
        self._jobs: list[dict] = []
        self._start(
            sd.OutputStream(
                samplerate=self.cfg.sample_rate,
                blocksize=self.cfg.frames_per_buffer,
                dtype="float32",
                channels=self.cfg.channels_play,
                device=self.cfg.play_device,
                latency=self.cfg.latency,
                callback=self._callback,
            )
        )

    def _callback(self, outdata, frames, time_info, status):  # noqa: ANN001
        # Keep callback lean; no logging.
        outdata[:] = 0
        with self._job_lock:
            jobs = list(self._jobs)
        if not jobs:
            return

        finished = []
        for job in jobs:
            idx = job["idx"]
            end = min(idx + frames, job["total"])
            n = end - idx
            if n > 0:
                outdata[:n, :] += job["play"][idx:end].reshape(-1, 1)
            job["idx"] = end
            if end >= job["total"]:
                finished.append(job)

        if finished:
            done_ids = {id(job) for job in finished}
            with self._job_lock:
                self._jobs = [job for job in self._jobs if id(job) not in done_ids]
            for job in finished:
                job["done"].set()
        np.clip(outdata, -1.0, 1.0, out=outdata)

    def play(self, samples: np.ndarray, gain: float = 1.0, wait: bool = False) -> threading.Event:
        if self.stream is None:
            raise RuntimeError("Playback stream is closed")
        signal = (np.asarray(samples, dtype=np.float32) * np.float32(gain)).astype(np.float32)
        done = threading.Event()
        if signal.size == 0:
            done.set()
            return done
        job = {"play": signal, "idx": 0, "total": int(signal.shape[0]), "done": done}
        with self._job_lock:
            self._jobs.append(job)
        if wait:
            timeout_s = job["total"] / float(self.sample_rate) + 1.0
            if not done.wait(timeout=timeout_s):
                raise TimeoutError("Timed out waiting for playback")
        return done

    def close(self):
        with self._job_lock:
            jobs, self._jobs = self._jobs, []
        for job in jobs:
            job["done"].set()
        super().close()


def close_all_streams():
    for owner in list(_open_streams):
        try:
            owner.close()
        except sd.PortAudioError:
            pass


atexit.register(close_all_streams)


def list_devices() -> list[dict]:
    devices = sd.query_devices()
    return [dict(d) for d in devices]


def default_devices() -> dict:
    return {
        "default_input": sd.default.device[0],
        "default_output": sd.default.device[1],
    }


def monitor_microphone(cfg: AudioDeviceConfig, callback):
    def _callback(indata, frames, time_info, status):  # noqa: ANN001, ANN202
        if status:
            callback(None, str(status))
            return
        callback(indata[:, 0].copy(), None)

    with sd.InputStream(
        channels=cfg.channels_rec,
        samplerate=cfg.sample_rate,
        blocksize=cfg.frames_per_buffer,
        device=cfg.rec_device,
        dtype="float32",
        callback=_callback,
    ):
        sd.sleep(int(1e9))

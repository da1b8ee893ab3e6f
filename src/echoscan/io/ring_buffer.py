from __future__ import annotations

import numpy as np


class RingBuffer:
    """Fixed-capacity circular sample store fed from the audio callback.

    Single producer (``write``, called on the audio thread) and single
    consumer (``snapshot``, called by the scan loop). No lock is taken: the
    array is never reallocated, and the cursor is published with a single
    attribute store after each copy completes. A reader can still race the
    newest few samples at the snapshot boundary; that error is far below
    ranging tolerance.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = int(capacity)
        self._data = np.zeros(self.capacity, dtype=np.float32)
        self._cursor = 0
        self.total_written = 0
        self.dropped_chunks = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def write(self, chunk: np.ndarray):
        """Copy a chunk in at the cursor, overwriting the oldest samples.

        Runs inside the audio callback: no allocation, no blocking, and it
        never raises. A chunk that cannot be written is counted in
        ``dropped_chunks`` instead.
        """
        try:
            n = len(chunk)
            if n == 0:
                return
            cap = self.capacity
            cursor = self._cursor
            # Only the newest `cap` samples of an oversized chunk survive.
            if n > cap:
                src = chunk[n - cap:]
                start = (cursor + n - cap) % cap
            else:
                src = chunk
                start = cursor
            count = len(src)
            first = min(count, cap - start)
            self._data[start:start + first] = src[:first]
            if first < count:
                self._data[:count - first] = src[first:]
            self.total_written += n
            self._cursor = (cursor + n) % cap
        except Exception:
            self.dropped_chunks += 1

    def snapshot(self, length: int) -> np.ndarray:
        """Linear copy of the last ``length`` samples, oldest first."""
        if length < 0 or length > self.capacity:
            raise ValueError(f"snapshot length must be in [0, {self.capacity}], got {length}")
        out = np.empty(length, dtype=np.float32)
        if length == 0:
            return out
        end = self._cursor
        start = (end - length) % self.capacity
        if start + length <= self.capacity:
            out[:] = self._data[start:start + length]
        else:
            first = self.capacity - start
            out[:first] = self._data[start:]
            out[first:] = self._data[:length - first]
        return out

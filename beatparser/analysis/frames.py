"""Overlapping frame analysis: short-time energy and banded spectra."""

from __future__ import annotations

import math
from collections.abc import Iterator

import numpy as np
from scipy.signal import get_window

from beatparser.analysis.models import Frame


def frame_count(n_samples: int, window_size: int, hop_size: int) -> int:
    """Number of frames for *n_samples*, counting a zero-padded final frame."""
    if n_samples <= 0:
        return 0
    if n_samples <= window_size:
        return 1
    return 1 + math.ceil((n_samples - window_size) / hop_size)


class FrameAnalyzer:
    """Lazy, restartable sequence of analysis frames over one buffer.

    Windows of ``window_size`` samples start every ``hop_size`` samples. The
    last window is zero-padded so that every input sample belongs to at
    least one frame. Iterating twice yields identical frames; no state is
    kept between iterations.
    """

    def __init__(
        self,
        audio: np.ndarray,
        window_size: int,
        hop_size: int,
        n_bands: int = 8,
    ) -> None:
        if window_size <= 0 or hop_size <= 0:
            raise ValueError("window_size and hop_size must be positive")
        self.audio = audio
        self.window_size = window_size
        self.hop_size = hop_size
        self.n_bands = max(1, min(n_bands, window_size // 2 + 1))
        self._window = get_window("hann", window_size, fftbins=True)
        n_bins = window_size // 2 + 1
        self._band_edges = np.linspace(0, n_bins, self.n_bands + 1).astype(int)
        self._band_widths = np.diff(self._band_edges)

    def __len__(self) -> int:
        return frame_count(len(self.audio), self.window_size, self.hop_size)

    def __iter__(self) -> Iterator[Frame]:
        for index in range(len(self)):
            yield self._frame(index)

    def chunks(self, size: int) -> Iterator[list[Frame]]:
        """Yield consecutive lists of at most *size* frames."""
        chunk: list[Frame] = []
        for frame in self:
            chunk.append(frame)
            if len(chunk) >= size:
                yield chunk
                chunk = []
        if chunk:
            yield chunk

    def samples_covered(self, n_frames: int) -> int:
        """Input samples fully consumed after the first *n_frames* frames."""
        if n_frames <= 0:
            return 0
        return min(len(self.audio), (n_frames - 1) * self.hop_size + self.window_size)

    def _frame(self, index: int) -> Frame:
        start = index * self.hop_size
        segment = self.audio[start:start + self.window_size]
        samples = np.zeros(self.window_size, dtype=np.float64)
        samples[:len(segment)] = segment

        energy = float(np.dot(samples, samples))
        magnitude = np.abs(np.fft.rfft(samples * self._window))
        bands = np.add.reduceat(magnitude, self._band_edges[:-1]) / self._band_widths
        return Frame(index=index, start=start, energy=energy, bands=bands)

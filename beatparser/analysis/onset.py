"""Onset strength from successive frame features."""

from collections.abc import Iterable

import numpy as np

from beatparser.analysis.models import Frame


class OnsetDetector:
    """Accumulates positive-part energy and band-wise spectral flux frame by frame.

    Frames may be fed in several batches (the engine feeds one chunk at a
    time between checkpoints); only the previous frame is retained.
    """

    def __init__(self, onset_weight: float = 0.4, spectral_weight: float = 0.2):
        self.onset_weight = onset_weight
        self.spectral_weight = spectral_weight
        self._energy_flux: list[float] = []
        self._spectral_flux: list[float] = []
        self._prev: Frame | None = None

    def feed(self, frames: Iterable[Frame]) -> None:
        for frame in frames:
            if self._prev is None:
                self._energy_flux.append(0.0)
                self._spectral_flux.append(0.0)
            else:
                self._energy_flux.append(max(0.0, frame.energy - self._prev.energy))
                diff = frame.bands - self._prev.bands
                self._spectral_flux.append(float(np.sum(diff[diff > 0])))
            self._prev = frame

    def envelope(self) -> np.ndarray:
        """Combined onset strength, one value per frame, peak-normalized to 1."""
        energy = _normalize(np.asarray(self._energy_flux, dtype=np.float64))
        spectral = _normalize(np.asarray(self._spectral_flux, dtype=np.float64))

        w_energy, w_spectral = self.onset_weight, self.spectral_weight
        if w_energy + w_spectral <= 0:
            w_energy = w_spectral = 1.0
        combined = (w_energy * energy + w_spectral * spectral) / (w_energy + w_spectral)
        return _normalize(combined)


def _normalize(values: np.ndarray) -> np.ndarray:
    max_val = values.max() if len(values) else 0.0
    if max_val > 0:
        return values / max_val
    return values


def onset_strength(
    frames: Iterable[Frame],
    onset_weight: float = 0.4,
    spectral_weight: float = 0.2,
) -> np.ndarray:
    """Onset strength aligned 1:1 with *frames*; the first value is 0.

    Returns a non-negative array; 0 means no onset evidence at that frame.
    """
    detector = OnsetDetector(onset_weight, spectral_weight)
    detector.feed(frames)
    return detector.envelope()

"""Peak normalization and rumble removal ahead of frame analysis.

Both steps keep the input dtype, so a float32 buffer stays float32 all the
way into the frame analyzer.
"""

from __future__ import annotations

import functools
import logging

import numpy as np
from scipy.signal import butter, sosfilt

logger = logging.getLogger(__name__)

FILTER_ORDER = 4
DEFAULT_CUTOFF = 60.0  # Hz


@functools.lru_cache(maxsize=16)
def _highpass_sos(sr: int, cutoff: float) -> np.ndarray:
    return butter(N=FILTER_ORDER, Wn=cutoff, btype="high", fs=sr, output="sos")


def normalize(audio: np.ndarray) -> np.ndarray:
    """Scale *audio* so its largest absolute sample is 1; silence passes through."""
    peak = float(np.max(np.abs(audio))) if audio.size else 0.0
    if peak == 0.0:
        return audio
    return (audio / peak).astype(audio.dtype, copy=False)


def high_pass_filter(audio: np.ndarray, sr: int, cutoff: float = DEFAULT_CUTOFF) -> np.ndarray:
    """Butterworth high-pass removing content below *cutoff* Hz.

    A cutoff at or above the Nyquist frequency cannot be designed; the audio
    is then returned unfiltered.
    """
    if cutoff <= 0 or cutoff >= sr / 2:
        logger.warning(f"High-pass cutoff {cutoff} Hz outside (0, {sr / 2}) Hz; filter skipped")
        return audio
    return sosfilt(_highpass_sos(sr, float(cutoff)), audio).astype(audio.dtype, copy=False)


def preprocess(
    audio: np.ndarray,
    sr: int,
    normalization: bool = True,
    filtering: bool = False,
    cutoff: float = DEFAULT_CUTOFF,
) -> np.ndarray:
    if normalization:
        audio = normalize(audio)
    if filtering:
        audio = high_pass_filter(audio, sr, cutoff)
    return audio

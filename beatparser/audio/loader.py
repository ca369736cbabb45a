"""Audio file decoding."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Union

import librosa
import numpy as np

from beatparser.errors import AudioNotFoundError, CorruptAudioError, UnsupportedFormatError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = (".wav", ".mp3", ".flac", ".ogg", ".m4a")


def file_extension(path: Union[str, Path]) -> str:
    """Final extension of *path*, lower-cased ("" when there is none)."""
    return Path(path).suffix.lower()


def check_format(path: Union[str, Path]) -> str:
    """Raise ``UnsupportedFormatError`` unless *path* has an allowed extension."""
    ext = file_extension(path)
    if ext not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(
            f"Unsupported audio format '{ext or '(none)'}' for {os.path.basename(path)}. "
            f"Supported: {', '.join(SUPPORTED_FORMATS)}",
            extension=ext,
        )
    return ext


def decode(path: Union[str, Path], sr: int = 44100) -> tuple[np.ndarray, int]:
    """Decode an audio file to a mono float32 array resampled to *sr*.

    The extension is checked before the file is opened. Error messages carry
    the base name only, never the full path.

    Raises
    ------
    AudioNotFoundError
        The file does not exist.
    UnsupportedFormatError
        The extension is not one of ``SUPPORTED_FORMATS``.
    CorruptAudioError
        The decoder could not read the file.
    """
    name = os.path.basename(path)
    check_format(path)
    if not os.path.isfile(path):
        raise AudioNotFoundError(f"Audio file not found: {name}", filename=name)

    try:
        audio, sample_rate = librosa.load(path, sr=sr, mono=True)
    except Exception as e:
        logger.warning(f"Decoding {name} failed: {type(e).__name__}")
        raise CorruptAudioError(f"Could not decode audio file: {name}", filename=name) from e
    return audio, sample_rate

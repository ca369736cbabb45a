"""Audio buffer validation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import numpy as np

from beatparser.errors import InvalidInputError, InvalidInputReason

# float32 buffers are analyzed in place; everything else becomes float64.
_PASSTHROUGH_DTYPE = np.dtype(np.float32)
_CANONICAL_DTYPE = np.dtype(np.float64)


def _as_array(data) -> np.ndarray:
    if data is None:
        raise InvalidInputError(
            "Audio data is required", InvalidInputReason.WRONG_TYPE, actual_type="None",
        )
    if isinstance(data, (str, bytes, bytearray, Mapping)) or not isinstance(
        data, (np.ndarray, Sequence)
    ):
        raise InvalidInputError(
            f"Audio data must be an array or numeric sequence, got {type(data).__name__}",
            InvalidInputReason.WRONG_TYPE,
            actual_type=type(data).__name__,
        )

    if isinstance(data, np.ndarray):
        arr = data
    else:
        try:
            arr = np.asarray(data, dtype=_CANONICAL_DTYPE)
        except (TypeError, ValueError):
            raise InvalidInputError(
                "Audio data contains unsupported element types",
                InvalidInputReason.UNSUPPORTED_BUFFER_TYPE,
            ) from None

    if arr.ndim != 1:
        raise InvalidInputError(
            f"Audio data must be one-dimensional (mono), got {arr.ndim} dimensions",
            InvalidInputReason.UNSUPPORTED_BUFFER_TYPE,
            ndim=arr.ndim,
        )
    if arr.dtype == _PASSTHROUGH_DTYPE or arr.dtype == _CANONICAL_DTYPE:
        return arr
    if arr.dtype.kind in "fiu":
        return arr.astype(_CANONICAL_DTYPE)
    raise InvalidInputError(
        f"Unsupported audio buffer type: {arr.dtype}",
        InvalidInputReason.UNSUPPORTED_BUFFER_TYPE,
        dtype=str(arr.dtype),
    )


def validate_audio(data, min_length: int = 2048) -> np.ndarray:
    """Validate *data* and return it as a canonical 1-D float array.

    Raises
    ------
    InvalidInputError
        With ``reason`` set to the first failed check: wrong type,
        unsupported element type, empty, shorter than *min_length*, or
        containing NaN/Infinity.
    """
    arr = _as_array(data)

    n = len(arr)
    if n == 0:
        raise InvalidInputError(
            "Invalid or empty audio data provided", InvalidInputReason.EMPTY, actual=0,
        )
    if n < min_length:
        raise InvalidInputError(
            f"Audio data too short. Minimum length: {min_length} samples (got {n})",
            InvalidInputReason.TOO_SHORT,
            minimum=min_length,
            actual=n,
        )

    bad = ~np.isfinite(arr)
    if bad.any():
        index = int(np.argmax(bad))
        raise InvalidInputError(
            f"Audio data contains invalid values (NaN or Infinity) at index {index}",
            InvalidInputReason.NON_FINITE,
            index=index,
        )
    return arr

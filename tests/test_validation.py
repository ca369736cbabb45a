"""Tests for audio buffer validation and error sanitizing."""

import numpy as np
import pytest

from beatparser.analysis.validation import validate_audio
from beatparser.errors import InvalidInputError, InvalidInputReason, is_sensitive, sanitize_message


def test_none_is_wrong_type():
    with pytest.raises(InvalidInputError) as exc:
        validate_audio(None)
    assert exc.value.reason is InvalidInputReason.WRONG_TYPE


@pytest.mark.parametrize("data", ["abc", b"\x00\x01", {"a": 1}, 3.0, 42])
def test_non_sequences_are_wrong_type(data):
    with pytest.raises(InvalidInputError) as exc:
        validate_audio(data)
    assert exc.value.reason is InvalidInputReason.WRONG_TYPE


def test_empty_buffer():
    with pytest.raises(InvalidInputError) as exc:
        validate_audio([])
    assert exc.value.reason is InvalidInputReason.EMPTY


def test_too_short_message_names_minimum():
    with pytest.raises(InvalidInputError) as exc:
        validate_audio(np.zeros(100), min_length=2048)
    err = exc.value
    assert err.reason is InvalidInputReason.TOO_SHORT
    assert "2048" in str(err)
    assert err.minimum == 2048
    assert err.actual == 100


def test_non_finite_reports_first_index():
    data = np.zeros(4096)
    data[1000] = np.inf
    data[3000] = np.nan
    with pytest.raises(InvalidInputError) as exc:
        validate_audio(data)
    assert exc.value.reason is InvalidInputReason.NON_FINITE
    assert "invalid values" in str(exc.value)
    assert exc.value.index == 1000


def test_check_order_short_before_non_finite():
    with pytest.raises(InvalidInputError) as exc:
        validate_audio([np.nan] * 10, min_length=2048)
    assert exc.value.reason is InvalidInputReason.TOO_SHORT


@pytest.mark.parametrize("data", [
    np.zeros(4096, dtype=np.complex128),
    np.zeros(4096, dtype=bool),
    np.zeros((2, 4096)),
    np.array(["x"] * 4096),
])
def test_unsupported_buffer_types(data):
    with pytest.raises(InvalidInputError) as exc:
        validate_audio(data)
    assert exc.value.reason is InvalidInputReason.UNSUPPORTED_BUFFER_TYPE


def test_float32_is_kept_without_copy():
    data = np.zeros(4096, dtype=np.float32)
    assert validate_audio(data) is data


def test_integer_and_list_input_become_float64():
    ints = validate_audio(np.arange(4096, dtype=np.int16))
    assert ints.dtype == np.float64
    values = validate_audio([0.0] * 4096)
    assert values.dtype == np.float64
    assert len(values) == 4096


def test_sanitize_hides_paths_and_internals():
    assert sanitize_message("failed reading /home/user/audio/take1.wav", "Failed") == "Failed"
    assert sanitize_message("object has __class__ attribute", "Failed") == "Failed"
    assert sanitize_message("bad sample rate", "Failed") == "bad sample rate"
    assert sanitize_message("", "Failed") == "Failed"


def test_sanitize_hides_environment_values(monkeypatch):
    monkeypatch.setenv("BEATPARSER_TEST_TOKEN", "tok-9f8e7d6c")
    assert is_sensitive("auth with tok-9f8e7d6c failed")
    assert sanitize_message("auth with tok-9f8e7d6c failed", "Plugin failed") == "Plugin failed"


def test_sanitize_ignores_ordinary_environment_values(monkeypatch):
    monkeypatch.setenv("BEATPARSER_UNIT_LABEL", "samples")
    message = "Audio data too short. Minimum length: 2048 samples (got 10)"
    assert not is_sensitive(message)
    assert sanitize_message(message, "Invalid input") == message

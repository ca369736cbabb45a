"""Shared test fixtures for beat parser tests."""

import numpy as np
import pytest
from fastapi.testclient import TestClient

from beatparser.main import app

SR = 44100
HOP = 512


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


def generate_click_track(
    bpm: float,
    beats_per_bar: int = 4,
    duration_seconds: float = 10.0,
    sr: int = SR,
    accent_ratio: float = 1.0,
    offset: float = 0.25,
    grid: int | None = HOP,
) -> np.ndarray:
    """Generate a synthetic click track, optionally with accented downbeats.

    Clicks start *offset* seconds in. With *grid* set, every click is snapped
    to a multiple of *grid* samples so that it enters the analysis window at
    the same point of the hop and all clicks give the same onset strength.

    Returns mono float32 audio at the given sample rate.
    """
    n_samples = int(duration_seconds * sr)
    audio = np.zeros(n_samples, dtype=np.float32)

    beat_interval = 60.0 / bpm  # seconds per beat
    click_duration = 0.02  # 20ms click
    click_samples = int(click_duration * sr)

    # Create click sound (short sine burst with envelope)
    t_click = np.arange(click_samples) / sr
    click = np.sin(2 * np.pi * 1000 * t_click) * np.exp(-t_click * 100)

    beat = 0
    time = offset
    while time < duration_seconds:
        sample_pos = int(time * sr)
        if grid:
            sample_pos = int(round(sample_pos / grid)) * grid
        is_downbeat = (beat % beats_per_bar) == 0
        amplitude = accent_ratio if is_downbeat else 1.0

        end = min(sample_pos + click_samples, n_samples)
        length = end - sample_pos
        if length > 0:
            audio[sample_pos:end] += click[:length] * amplitude

        time += beat_interval
        beat += 1

    # Normalize
    peak = np.max(np.abs(audio))
    if peak > 0:
        audio = audio / peak

    return audio


def click_times(bpm: float, duration_seconds: float = 10.0, offset: float = 0.25,
                sr: int = SR, grid: int = HOP) -> np.ndarray:
    """Onset times (seconds) of the clicks written by ``generate_click_track``."""
    times = np.arange(offset, duration_seconds, 60.0 / bpm)
    return np.round(np.floor(times * sr) / grid) * grid / sr


@pytest.fixture
def click_120():
    """Click track at 120 BPM, 10 seconds."""
    return generate_click_track(bpm=120, duration_seconds=10)


@pytest.fixture
def click_100():
    """Click track at 100 BPM, 10 seconds."""
    return generate_click_track(bpm=100, duration_seconds=10)


@pytest.fixture
def noise():
    """Two seconds of seeded white noise."""
    rng = np.random.default_rng(1234)
    return (rng.standard_normal(2 * SR) * 0.1).astype(np.float32)

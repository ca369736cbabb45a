"""Tests for frame analysis and onset strength."""

import numpy as np
import pytest

from beatparser.analysis.frames import FrameAnalyzer, frame_count
from beatparser.analysis.onset import OnsetDetector, onset_strength
from tests.conftest import HOP, SR


@pytest.mark.parametrize("n, expected", [
    (0, 0),
    (100, 1),
    (2048, 1),
    (2049, 2),
    (2048 + 512, 2),
    (2048 + 513, 3),
])
def test_frame_count(n, expected):
    assert frame_count(n, 2048, 512) == expected


def test_frames_cover_every_sample():
    audio = np.ones(2048 + 700)
    analyzer = FrameAnalyzer(audio, 2048, 512)
    frames = list(analyzer)
    assert len(frames) == len(analyzer) == 3
    assert frames[-1].start == 1024
    # last window is zero-padded: 1724 real samples of value 1
    assert frames[-1].energy == pytest.approx(1724.0)
    assert analyzer.samples_covered(len(frames)) == len(audio)


def test_frames_are_restartable():
    rng = np.random.default_rng(0)
    audio = rng.standard_normal(10000)
    analyzer = FrameAnalyzer(audio, 1024, 256)
    first = [f.energy for f in analyzer]
    second = [f.energy for f in analyzer]
    assert first == second


def test_band_count_and_chunks():
    analyzer = FrameAnalyzer(np.zeros(20000), 2048, 512, n_bands=8)
    chunks = list(analyzer.chunks(10))
    assert sum(len(c) for c in chunks) == len(analyzer)
    assert all(len(c) == 10 for c in chunks[:-1])
    assert chunks[0][0].bands.shape == (8,)


def test_onset_strength_aligned_and_normalized(click_120):
    frames = FrameAnalyzer(click_120, 2048, 512)
    envelope = onset_strength(frames)
    assert len(envelope) == len(frames)
    assert envelope[0] == 0.0
    assert envelope.min() >= 0.0
    assert envelope.max() == pytest.approx(1.0)


def test_silence_gives_zero_envelope():
    envelope = onset_strength(FrameAnalyzer(np.zeros(10000), 2048, 512))
    assert np.all(envelope == 0.0)


def test_incremental_feed_matches_single_pass(click_120):
    analyzer = FrameAnalyzer(click_120, 2048, 512)
    detector = OnsetDetector()
    for chunk in analyzer.chunks(64):
        detector.feed(chunk)
    np.testing.assert_allclose(detector.envelope(), onset_strength(analyzer))


def test_zero_weights_fall_back_to_equal_weighting(click_120):
    frames = list(FrameAnalyzer(click_120, 2048, 512))
    envelope = onset_strength(frames, onset_weight=0.0, spectral_weight=0.0)
    assert envelope.max() == pytest.approx(1.0)


def test_band_means_match_spectrum():
    rng = np.random.default_rng(3)
    analyzer = FrameAnalyzer(rng.standard_normal(4096), 1024, 512, n_bands=4)
    frame = next(iter(analyzer))
    assert frame.bands.shape == (4,)
    assert np.all(frame.bands >= 0)


def test_spectral_flux_alone_marks_tone_onset():
    t = np.arange(SR) / SR
    audio = np.where(t >= 0.5, np.sin(2 * np.pi * 3000 * t), 0.0)
    frames = FrameAnalyzer(audio, 2048, HOP)
    envelope = onset_strength(frames, onset_weight=0.0, spectral_weight=1.0)
    onset_frame = int(np.argmax(envelope))
    assert abs(onset_frame * HOP / SR - 0.5) < 2048 / SR
    # a steady tone has no band-wise flux once it is fully inside the window
    assert np.all(envelope[onset_frame + 5:] < 0.01)

"""Beat candidate detection and reduction to a bounded picture set."""

import bisect
import logging
import math

import librosa
import numpy as np
from scipy.signal import find_peaks

from beatparser.analysis.models import Beat, BeatCandidate, Tempo
from beatparser.analysis.options import ParseOptions

logger = logging.getLogger(__name__)


def detect_candidates(
    onset_strength: np.ndarray,
    threshold: float,
    hop_size: int,
    sample_rate: int,
) -> list[BeatCandidate]:
    """Peaks of the onset envelope at or above *threshold*.

    Plateaus resolve to their middle sample (``scipy.signal.find_peaks``).
    Confidence is the peak's prominence relative to its height, so an
    isolated peak scores 1 and a bump on a ridge scores low.
    """
    envelope = np.asarray(onset_strength, dtype=np.float64)
    if len(envelope) < 3:
        return []

    peaks, props = find_peaks(envelope, height=threshold, prominence=0)
    if len(peaks) == 0:
        return []

    heights = props["peak_heights"]
    prominences = props["prominences"]
    times = librosa.frames_to_time(peaks, sr=sample_rate, hop_length=hop_size)

    candidates = []
    for frame, t, height, prominence in zip(peaks, times, heights, prominences):
        confidence = float(np.clip(prominence / height, 0.0, 1.0)) if height > 0 else 0.0
        candidates.append(BeatCandidate(
            timestamp=float(t),
            strength=float(height),
            confidence=confidence,
            frame=int(frame),
        ))
    return candidates


def merge_candidates(candidates: list[BeatCandidate], min_interval: float = 0.05) -> list[BeatCandidate]:
    """Sort and de-duplicate candidates closer than *min_interval* seconds.

    Of two colliding candidates the more confident one is kept, so the
    result has strictly increasing timestamps.
    """
    merged: list[BeatCandidate] = []
    for cand in sorted(candidates, key=lambda c: c.timestamp):
        if merged and cand.timestamp - merged[-1].timestamp < max(min_interval, 1e-9):
            if cand.confidence > merged[-1].confidence:
                merged[-1] = cand
            continue
        merged.append(cand)
    return merged


def _by_energy(candidates: list[BeatCandidate], target: int) -> list[BeatCandidate]:
    ranked = sorted(range(len(candidates)), key=lambda i: (-candidates[i].strength, i))
    keep = sorted(ranked[:target])
    return [candidates[i] for i in keep]


def _uniform(candidates: list[BeatCandidate], target: int) -> list[BeatCandidate]:
    indices = np.round(np.linspace(0, len(candidates) - 1, target)).astype(int)
    return [candidates[i] for i in sorted(set(indices.tolist()))]


def _adaptive(
    candidates: list[BeatCandidate], target: int, max_iterations: int,
) -> list[BeatCandidate]:
    """Keep candidates above the lowest confidence threshold that leaves at most *target*.

    The threshold is bisected over the distinct confidences, so it settles
    in about log2(n) steps; the count above a threshold only shrinks as the
    threshold rises.
    """
    thresholds = sorted({c.confidence for c in candidates})

    def above(threshold: float) -> list[BeatCandidate]:
        return [c for c in candidates if c.confidence > threshold]

    # The highest confidence keeps nothing, so hi always satisfies the target.
    lo, hi = 0, len(thresholds) - 1
    for _ in range(max_iterations):
        if lo >= hi:
            break
        mid = (lo + hi) // 2
        if len(above(thresholds[mid])) <= target:
            hi = mid
        else:
            lo = mid + 1
    if lo >= hi:
        kept = above(thresholds[hi])
        if kept:
            return kept
    logger.debug("Adaptive selection did not converge, falling back to energy")
    return _by_energy(candidates, target)


def _grid_indices(n_grid: int, target: int) -> list[int]:
    """*target* grid indices spread evenly over [0, n_grid), both ends included."""
    count = min(target, n_grid)
    if count == 1:
        return [0]
    return [int(round(k * (n_grid - 1) / (count - 1))) for k in range(count)]


def _regular(
    candidates: list[BeatCandidate],
    tempo: Tempo | None,
    target: int,
    duration: float,
    grid_tolerance: float,
) -> list[BeatCandidate]:
    if tempo is None or tempo.bpm <= 0:
        return _uniform(candidates, target)

    period = tempo.period
    phase = float(tempo.metadata.get("phase", 0.0)) % period
    n_grid = int(math.floor((duration - phase) / period)) + 1 if duration >= phase else 1
    points = [phase + k * period for k in _grid_indices(n_grid, target)]

    times = [c.timestamp for c in candidates]
    used: set[int] = set()
    tolerance = grid_tolerance * period
    selected = []
    for point in points:
        best = None
        pos = bisect.bisect_left(times, point)
        for i in (pos - 1, pos, pos + 1):
            if 0 <= i < len(times) and i not in used and abs(times[i] - point) <= tolerance:
                if best is None or abs(times[i] - point) < abs(times[best] - point):
                    best = i
        if best is None:
            selected.append(BeatCandidate(
                timestamp=point, strength=0.0, confidence=0.0, source="synthetic",
            ))
        else:
            used.add(best)
            selected.append(candidates[best])
    return selected


def reduce_candidates(
    candidates: list[BeatCandidate],
    tempo: Tempo | None,
    target: int,
    method: str = "adaptive",
    duration: float = 0.0,
    max_iterations: int = 20,
    grid_tolerance: float = 0.25,
) -> list[BeatCandidate]:
    """Reduce time-ordered *candidates* to at most *target* pictures.

    ``target == 0`` means no limit. Every method returns candidates in
    ascending time order and is deterministic for identical input.
    """
    if target <= 0 or len(candidates) <= target:
        return list(candidates)

    if method == "uniform":
        return _uniform(candidates, target)
    if method == "energy":
        return _by_energy(candidates, target)
    if method == "adaptive":
        return _adaptive(candidates, target, max_iterations)
    if method == "regular":
        return _regular(candidates, tempo, target, duration, grid_tolerance)
    raise ValueError(f"Unknown selection method: {method}")


def select_beats(
    onset_strength: np.ndarray,
    tempo: Tempo | None,
    options: ParseOptions,
    confidence_threshold: float = 0.6,
    max_iterations: int = 20,
    grid_tolerance: float = 0.25,
) -> list[Beat]:
    """Detect, filter by ``options.min_confidence`` and reduce to beats.

    *options* must be resolved (``ParseOptions.resolve``). An empty list is
    a valid outcome.
    """
    candidates = detect_candidates(
        onset_strength, confidence_threshold, options.hop_size, options.sample_rate,
    )
    candidates = [c for c in candidates if c.confidence >= options.min_confidence]
    duration = len(onset_strength) * options.hop_size / options.sample_rate
    reduced = reduce_candidates(
        candidates,
        tempo,
        options.target_picture_count,
        options.selection_method,
        duration=duration,
        max_iterations=max_iterations,
        grid_tolerance=grid_tolerance,
    )
    return [c.to_beat() for c in reduced]

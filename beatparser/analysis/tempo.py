"""Tempo estimation from the onset strength envelope."""

import logging
import math
from dataclasses import dataclass

import librosa
import numpy as np

from beatparser.analysis.models import Tempo, TimeSignature

logger = logging.getLogger(__name__)

DEFAULT_BPM = 120.0

# Harmonic weights of the comb response: lag, 2*lag, 3*lag.
_HARMONIC_WEIGHTS = (1.0, 1.0 / 2, 1.0 / 3)
# Weight of the half-period penalty; favours the fundamental over its
# sub-harmonics (a 120 BPM click also correlates at 60 BPM).
_HALF_PERIOD_PENALTY = 0.5


@dataclass
class TempoCandidate:
    lag: float  # frames per beat
    bpm: float
    score: float


def lag_range(sample_rate: int, hop_size: int, min_tempo: float, max_tempo: float) -> tuple[int, int]:
    """Integer lags (in frames) whose tempo lies within [min_tempo, max_tempo]."""
    frames_per_minute = 60.0 * sample_rate / hop_size
    lo = max(1, math.ceil(frames_per_minute / max_tempo))
    hi = math.floor(frames_per_minute / min_tempo)
    return lo, hi


def distance_to_range(bpm: float, preferred_range: tuple[float, float]) -> float:
    lo, hi = preferred_range
    if bpm < lo:
        return lo - bpm
    if bpm > hi:
        return bpm - hi
    return 0.0


def resolve_tempo_tie(
    candidates: list[TempoCandidate],
    epsilon: float = 0.05,
    preferred_range: tuple[float, float] = (90.0, 140.0),
) -> TempoCandidate:
    """Pick the winning tempo candidate.

    Candidates whose score is within *epsilon* (relative to the best score)
    of the best are near-ties. Among near-ties the candidate closest to
    *preferred_range* wins (distance 0 inside the range); remaining ties go
    to the higher score, then to the shorter lag.
    """
    if not candidates:
        raise ValueError("no tempo candidates")
    best = max(c.score for c in candidates)
    cutoff = best - epsilon * abs(best)
    near = [c for c in candidates if c.score >= cutoff]
    return min(
        near,
        key=lambda c: (distance_to_range(c.bpm, preferred_range), -c.score, c.lag),
    )


def _autocorrelation(envelope: np.ndarray, max_lag: int) -> np.ndarray | None:
    """Mean-removed autocorrelation summed over each lag and its two neighbours.

    Beat periods that are not a whole number of frames alternate between two
    adjacent lags; summing the neighbours keeps that energy at one lag.
    Normalized so that lag 0 is 1.
    """
    x = envelope - np.mean(envelope)
    norm = float(np.dot(x, x))
    if norm < 1e-10:
        return None
    ac = librosa.autocorrelate(x, max_size=min(len(x), max_lag + 2))
    if len(ac) < 3:
        return ac / ac[0]
    summed = np.empty_like(ac)
    summed[1:-1] = ac[:-2] + ac[1:-1] + ac[2:]
    summed[0] = ac[0] + 2 * ac[1]  # autocorrelation is symmetric around 0
    summed[-1] = ac[-2] + ac[-1]
    if summed[0] < 1e-10:
        return ac / ac[0]
    return summed / summed[0]


def _ac_at(ac: np.ndarray, lag: float) -> float:
    """Linearly interpolated autocorrelation; 0 beyond the computed range."""
    if lag >= len(ac) - 1:
        return 0.0
    i = int(lag)
    frac = lag - i
    return float(ac[i] * (1 - frac) + ac[i + 1] * frac)


def comb_response(ac: np.ndarray, lag: int) -> float:
    """Harmonic comb response of the autocorrelation at *lag*, in [-1, 1]."""
    total = 0.0
    weight_sum = 0.0
    for h, w in enumerate(_HARMONIC_WEIGHTS, start=1):
        if lag * h >= len(ac):
            break
        total += w * ac[lag * h]
        weight_sum += w
    if weight_sum == 0:
        return 0.0
    score = total / weight_sum
    if lag >= 2:
        score -= _HALF_PERIOD_PENALTY * max(0.0, _ac_at(ac, lag / 2))
    return max(-1.0, min(1.0, score))


def _local_peaks(scores: np.ndarray) -> list[int]:
    peaks = []
    n = len(scores)
    for i in range(n):
        left = scores[i - 1] if i > 0 else -np.inf
        right = scores[i + 1] if i < n - 1 else -np.inf
        if scores[i] > left and scores[i] >= right:
            peaks.append(i)
    if not peaks and n:
        peaks.append(int(np.argmax(scores)))
    return peaks


def _refine_lag(scores: np.ndarray, i: int) -> float:
    """Parabolic interpolation of the peak position, offset in [-0.5, 0.5]."""
    if i == 0 or i == len(scores) - 1:
        return 0.0
    a, b, c = scores[i - 1], scores[i], scores[i + 1]
    denom = a - 2 * b + c
    if denom == 0:
        return 0.0
    return float(np.clip(0.5 * (a - c) / denom, -0.5, 0.5))


def estimate_phase(envelope: np.ndarray, lag: int) -> int:
    """Grid offset (frames) in [0, lag) with the strongest mean onset strength."""
    if lag <= 1 or len(envelope) == 0:
        return 0
    means = [float(np.mean(envelope[p::lag])) for p in range(min(lag, len(envelope)))]
    return int(np.argmax(means))


def estimate_tempo(
    onset_strength: np.ndarray,
    sample_rate: int,
    hop_size: int,
    min_tempo: float = 60.0,
    max_tempo: float = 200.0,
    tempo_weight: float = 0.4,
    tie_epsilon: float = 0.05,
    preferred_range: tuple[float, float] = (90.0, 140.0),
) -> Tempo:
    """Estimate tempo by scoring candidate beat periods.

    Only lags whose tempo lies in [min_tempo, max_tempo] are considered.
    Each lag is scored by its comb response (weighted by *tempo_weight*);
    the local maxima of that score curve are the tempo candidates and the
    winner is chosen by ``resolve_tempo_tie``. Confidence is the relative
    margin between the winner and the runner-up, scaled by the winner's
    periodicity strength.
    """
    envelope = np.asarray(onset_strength, dtype=np.float64)
    lo, hi = lag_range(sample_rate, hop_size, min_tempo, max_tempo)
    hi = min(hi, len(envelope) - 1)
    if lo > hi:
        logger.info("Onset envelope too short for tempo estimation")
        return Tempo(bpm=DEFAULT_BPM, confidence=0.0, metadata={"method": "default"})

    ac = _autocorrelation(envelope, hi * len(_HARMONIC_WEIGHTS))
    if ac is None:
        logger.info(f"No onset energy; tempo defaults to {DEFAULT_BPM:.0f} BPM")
        return Tempo(bpm=DEFAULT_BPM, confidence=0.0, metadata={"method": "default"})

    lags = np.arange(lo, hi + 1)
    scores = np.array([tempo_weight * comb_response(ac, int(lag)) for lag in lags])
    frames_per_minute = 60.0 * sample_rate / hop_size

    candidates = []
    for i in _local_peaks(scores):
        lag = float(lags[i]) + _refine_lag(scores, i)
        candidates.append(TempoCandidate(
            lag=lag,
            bpm=frames_per_minute / lag,
            score=float(scores[i]),
        ))

    chosen = resolve_tempo_tie(candidates, tie_epsilon, preferred_range)
    others = sorted(
        (c for c in candidates if c is not chosen), key=lambda c: c.score, reverse=True,
    )
    if others and chosen.score > 0:
        margin = (chosen.score - others[0].score) / abs(chosen.score)
    elif chosen.score > 0:
        margin = 1.0
    else:
        margin = 0.0
    strength = chosen.score / tempo_weight
    confidence = float(np.clip(margin, 0.0, 1.0) * np.clip(strength, 0.0, 1.0))

    phase_frames = estimate_phase(envelope, int(round(chosen.lag)))
    time_signature = estimate_time_signature(envelope, chosen.lag, phase_frames)

    return Tempo(
        bpm=round(chosen.bpm, 2),
        confidence=round(confidence, 4),
        time_signature=time_signature,
        metadata={
            "method": "autocorrelation",
            "phase": phase_frames * hop_size / sample_rate,
            "lag": chosen.lag,
            "alternatives": [
                {"bpm": round(c.bpm, 2), "score": round(c.score, 4)} for c in others[:3]
            ],
        },
    )


def estimate_time_signature(
    onset_strength: np.ndarray,
    lag: float,
    phase: int = 0,
) -> TimeSignature:
    """Bar length from the periodicity of accents on the beat grid.

    Samples the envelope at each beat position and autocorrelates those
    accents at bar lengths 2-7; the shortest strongly periodic length is the
    numerator. Falls back to 4/4 when fewer than 8 beats are available or
    the accents are flat.
    """
    if lag <= 0:
        return TimeSignature(4, 4)
    positions = np.arange(phase, len(onset_strength), lag)
    if len(positions) < 8:
        return TimeSignature(4, 4)

    accents = []
    for pos in positions:
        i = int(round(pos))
        accents.append(float(np.max(onset_strength[max(0, i - 2):i + 3])))
    be = np.asarray(accents)
    be -= np.mean(be)
    norm = np.sum(be ** 2)
    if norm < 1e-10:
        return TimeSignature(4, 4)

    n = len(be)
    autocorr = np.correlate(be, be, mode="full")[n - 1:]
    autocorr = autocorr / autocorr[0]

    raw_peaks: dict[int, float] = {}
    for beats_per_bar in range(2, 8):
        if beats_per_bar >= n:
            continue
        peak = float(autocorr[beats_per_bar])
        if peak > 0.02:
            raw_peaks[beats_per_bar] = peak
    if not raw_peaks:
        return TimeSignature(4, 4)

    # Shortest strong period is the bar; its multiples are penalized.
    fundamentals: set[int] = set()
    for bpb in sorted(raw_peaks):
        if any(bpb % f == 0 for f in fundamentals):
            continue
        if raw_peaks[bpb] > 0.05:
            fundamentals.add(bpb)
            raw_peaks[bpb] *= 1.4
            for mult in range(2, 5):
                if bpb * mult in raw_peaks:
                    raw_peaks[bpb * mult] *= 0.5

    numerator = max(raw_peaks, key=lambda k: raw_peaks[k])
    if numerator == 2:
        numerator = 4  # 2/4 and 4/4 are indistinguishable from accents alone
    return TimeSignature(numerator, 4)


def estimate_from_ibi(
    timestamps: list[float],
    min_tempo: float = 60.0,
    max_tempo: float = 200.0,
) -> Tempo | None:
    """Estimate tempo from inter-beat intervals of candidate timestamps."""
    if len(timestamps) < 3:
        return None

    ibis = np.diff(np.asarray(timestamps, dtype=np.float64))
    valid = ibis[(ibis >= 60.0 / max_tempo) & (ibis <= 60.0 / min_tempo)]
    if len(valid) < 2:
        return None

    median_ibi = float(np.median(valid))
    bpm = 60.0 / median_ibi

    # Confidence based on consistency of IBIs
    cv = float(np.std(valid)) / median_ibi
    confidence = max(0.0, min(1.0, 1.0 - cv * 2))

    return Tempo(
        bpm=round(bpm, 2),
        confidence=round(confidence, 4),
        time_signature=TimeSignature(4, 4),
        metadata={"method": "inter_beat", "phase": float(timestamps[0]) % median_ibi},
    )

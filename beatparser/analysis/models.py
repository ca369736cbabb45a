"""Core data models for beat parsing."""

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass
class Frame:
    """One analysis window."""
    index: int
    start: int  # first sample of the window
    energy: float  # sum of squared samples (float64 accumulation)
    bands: np.ndarray  # mean spectral magnitude per band


@dataclass
class BeatCandidate:
    """A detected onset peak before selection."""
    timestamp: float  # seconds
    strength: float  # raw onset strength, >= 0
    confidence: float  # normalized prominence, 0.0-1.0
    frame: int = 0
    source: str = "onset"

    def to_beat(self) -> "Beat":
        metadata: dict[str, Any] = {"frame": self.frame, "source": self.source}
        if self.source == "synthetic":
            metadata["synthetic"] = True
        return Beat(
            timestamp=self.timestamp,
            confidence=self.confidence,
            strength=self.strength,
            metadata=metadata,
        )


@dataclass
class Beat:
    """A selected beat."""
    timestamp: float  # seconds
    confidence: float  # 0.0-1.0
    strength: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TimeSignature:
    numerator: int = 4
    denominator: int = 4

    @property
    def label(self) -> str:
        return f"{self.numerator}/{self.denominator}"


@dataclass
class Tempo:
    """Estimated tempo."""
    bpm: float
    confidence: float  # 0.0-1.0
    time_signature: TimeSignature | None = None
    # phase (seconds), alternatives ([{"bpm", "score"}]), method
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def period(self) -> float:
        """Beat period in seconds."""
        return 60.0 / self.bpm


@dataclass
class ParseResult:
    """Complete result of one parse call."""
    beats: list[Beat]
    tempo: Tempo | None
    metadata: dict[str, Any] = field(default_factory=dict)

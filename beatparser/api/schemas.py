"""Pydantic response models for API and serialized results."""

from typing import Any

from pydantic import BaseModel

from beatparser.analysis.models import Beat, ParseResult, Tempo


class BeatResponse(BaseModel):
    timestamp: float
    confidence: float
    strength: float
    metadata: dict[str, Any] = {}

    @classmethod
    def from_beat(cls, beat: Beat) -> "BeatResponse":
        return cls(
            timestamp=beat.timestamp,
            confidence=beat.confidence,
            strength=beat.strength,
            metadata=beat.metadata,
        )


class TimeSignatureResponse(BaseModel):
    numerator: int
    denominator: int


class TempoResponse(BaseModel):
    bpm: float
    confidence: float
    time_signature: TimeSignatureResponse | None = None
    metadata: dict[str, Any] = {}

    @classmethod
    def from_tempo(cls, tempo: Tempo) -> "TempoResponse":
        ts = tempo.time_signature
        return cls(
            bpm=tempo.bpm,
            confidence=tempo.confidence,
            time_signature=TimeSignatureResponse(
                numerator=ts.numerator, denominator=ts.denominator,
            ) if ts else None,
            metadata=tempo.metadata,
        )


class ParseResultResponse(BaseModel):
    beats: list[BeatResponse]
    tempo: TempoResponse | None = None
    metadata: dict[str, Any] = {}

    @classmethod
    def from_result(cls, result: ParseResult, include_metadata: bool = True) -> "ParseResultResponse":
        return cls(
            beats=[BeatResponse.from_beat(b) for b in result.beats],
            tempo=TempoResponse.from_tempo(result.tempo) if result.tempo else None,
            metadata=result.metadata if include_metadata else {},
        )


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str

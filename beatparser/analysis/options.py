"""Parser-wide configuration and per-call options."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from beatparser.config import settings
from beatparser.errors import ConfigError

logger = logging.getLogger(__name__)

SelectionMethod = Literal["uniform", "adaptive", "energy", "regular"]
OutputFormat = Literal["json", "xml", "csv"]


class BeatParserConfig(BaseModel):
    """Parser-wide defaults. Immutable; ``BeatParser.update_config`` builds a new one."""

    model_config = ConfigDict(frozen=True, extra="ignore", arbitrary_types_allowed=True)

    sample_rate: int = Field(default_factory=lambda: settings.sample_rate, gt=0)
    frame_size: int = Field(default_factory=lambda: settings.frame_size, gt=0)
    hop_size: int = Field(default_factory=lambda: settings.hop_size, gt=0)
    min_tempo: float = Field(default_factory=lambda: settings.min_tempo, gt=0)
    max_tempo: float = Field(default_factory=lambda: settings.max_tempo, gt=0)
    onset_weight: float = Field(default_factory=lambda: settings.onset_weight, ge=0)
    tempo_weight: float = Field(default_factory=lambda: settings.tempo_weight, gt=0)
    spectral_weight: float = Field(default_factory=lambda: settings.spectral_weight, ge=0)
    confidence_threshold: float = Field(
        default_factory=lambda: settings.confidence_threshold, ge=0, le=1,
    )
    spectral_bands: int = Field(default_factory=lambda: settings.spectral_bands, gt=0)

    tempo_tie_epsilon: float = Field(default_factory=lambda: settings.tempo_tie_epsilon, ge=0)
    preferred_tempo_min: float = Field(default_factory=lambda: settings.preferred_tempo_min, gt=0)
    preferred_tempo_max: float = Field(default_factory=lambda: settings.preferred_tempo_max, gt=0)

    adaptive_max_iterations: int = Field(
        default_factory=lambda: settings.adaptive_max_iterations, gt=0,
    )
    grid_tolerance: float = Field(default_factory=lambda: settings.grid_tolerance, gt=0, le=0.5)

    enable_preprocessing: bool = True
    enable_normalization: bool = True
    enable_filtering: bool = False

    output_format: OutputFormat = "json"
    include_metadata: bool = True

    plugins: tuple[Any, ...] = ()

    @model_validator(mode="after")
    def _check_ranges(self) -> "BeatParserConfig":
        if self.min_tempo >= self.max_tempo:
            raise ValueError(
                f"min_tempo ({self.min_tempo}) must be below max_tempo ({self.max_tempo})"
            )
        if self.preferred_tempo_min > self.preferred_tempo_max:
            raise ValueError("preferred_tempo_min must not exceed preferred_tempo_max")
        return self


class ParseOptions(BaseModel):
    """Per-call tuning. Unset analysis fields fall back to the parser config."""

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    min_confidence: float = Field(default_factory=lambda: settings.min_confidence, ge=0, le=1)
    window_size: int | None = Field(default=None, gt=0)
    hop_size: int | None = Field(default=None, gt=0)
    sample_rate: int | None = Field(default=None, gt=0)
    target_picture_count: int = Field(default=0, ge=0)
    selection_method: SelectionMethod = "adaptive"
    filename: str | None = None
    progress_callback: Callable[[int], Any] | None = Field(default=None, exclude=True)
    # Set by the worker runtime; checked between frame chunks.
    cancel_event: Any = Field(default=None, exclude=True)

    def resolve(self, config: BeatParserConfig) -> "ParseOptions":
        """Fill unset analysis fields from *config*."""
        resolved = self.model_copy(update={
            "window_size": self.window_size or config.frame_size,
            "hop_size": self.hop_size or config.hop_size,
            "sample_rate": self.sample_rate or config.sample_rate,
        })
        if resolved.hop_size > resolved.window_size:
            logger.warning(
                f"hop_size {resolved.hop_size} exceeds window_size {resolved.window_size}; "
                "some samples will not be analyzed"
            )
        return resolved

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class StreamingOptions(ParseOptions):
    chunk_size: int | None = Field(default=None, gt=0)
    overlap: float = Field(default=0.1, ge=0, lt=1)


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "config"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def build_config(config: BeatParserConfig | Mapping[str, Any] | None = None, **overrides: Any) -> BeatParserConfig:
    """Copy recognized keys from *config* and *overrides* into a new config."""
    if isinstance(config, BeatParserConfig):
        data = dict(config)
    elif config is None:
        data = {}
    elif isinstance(config, Mapping):
        data = dict(config)
    else:
        raise ConfigError(f"Config must be a mapping, got {type(config).__name__}")
    data.update(overrides)

    unknown = set(data) - set(BeatParserConfig.model_fields)
    if unknown:
        logger.debug(f"Ignoring unknown config keys: {sorted(unknown)}")
    data = {k: v for k, v in data.items() if k in BeatParserConfig.model_fields}
    if "plugins" in data and data["plugins"] is not None:
        data["plugins"] = tuple(data["plugins"])
    try:
        return BeatParserConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_validation_message(e)}") from None


def build_options(options: Any = None, cls: type[ParseOptions] = ParseOptions) -> ParseOptions:
    """Coerce ``None``, a mapping or an options model into *cls*."""
    if options is None:
        return cls()
    if isinstance(options, cls):
        return options
    if isinstance(options, BaseModel):
        options = {k: getattr(options, k) for k in type(options).model_fields}
    if not isinstance(options, Mapping):
        raise ConfigError(f"Options must be a mapping, got {type(options).__name__}")
    try:
        return cls.model_validate(dict(options))
    except ValidationError as e:
        raise ConfigError(f"Invalid options: {_validation_message(e)}") from None

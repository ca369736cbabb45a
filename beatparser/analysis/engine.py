"""Parser orchestrator - combines validation, analysis, selection and plugins."""

import asyncio
import inspect
import logging
import os
import time
from collections.abc import AsyncIterable, Iterable
from dataclasses import replace
from enum import Enum
from typing import Any

import numpy as np

from beatparser.analysis.frames import FrameAnalyzer
from beatparser.analysis.models import Beat, BeatCandidate, ParseResult, Tempo
from beatparser.analysis.onset import OnsetDetector
from beatparser.analysis.options import (
    BeatParserConfig,
    ParseOptions,
    StreamingOptions,
    build_config,
    build_options,
)
from beatparser.analysis.output import format_result
from beatparser.analysis.plugins import PluginPipeline
from beatparser.analysis.selection import (
    detect_candidates,
    merge_candidates,
    reduce_candidates,
    select_beats,
)
from beatparser.analysis.tempo import DEFAULT_BPM, estimate_from_ibi, estimate_tempo
from beatparser.analysis.validation import validate_audio
from beatparser.audio.loader import SUPPORTED_FORMATS, check_format, decode
from beatparser.audio.preprocessing import preprocess
from beatparser.errors import (
    ConfigLockedError,
    InvalidInputError,
    InvalidInputReason,
    OperationCancelledError,
    ParserStateError,
    PluginHookError,
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Frames analyzed between progress reports / cancellation checks.
FRAME_CHUNK = 64

# Stream candidates closer than this (seconds) are the same beat.
STREAM_MERGE_INTERVAL = 0.05


class ParserState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    FAILED = "failed"
    CLEANED = "cleaned"


class BeatParser:
    """Beat detection pipeline with a plugin hook chain.

    Configuration and plugin registration are open until ``initialize()``
    (called automatically by the first parse). Parses are coroutines; each
    call works on its own buffers, so concurrent parses on one parser are
    independent.
    """

    def __init__(self, config: Any = None, **overrides: Any):
        self._config = build_config(config, **overrides)
        self._plugins = PluginPipeline(self._config.plugins)
        self._state = ParserState.UNINITIALIZED
        self._init_lock = asyncio.Lock()

    @property
    def state(self) -> ParserState:
        return self._state

    @staticmethod
    def get_version() -> str:
        return VERSION

    @staticmethod
    def get_supported_formats() -> list[str]:
        return list(SUPPORTED_FORMATS)

    def get_config(self) -> BeatParserConfig:
        return self._config

    def update_config(self, **partial: Any) -> BeatParserConfig:
        if self._state is not ParserState.UNINITIALIZED:
            raise ConfigLockedError("Cannot update configuration after parser initialization")
        if "plugins" in partial:
            logger.warning("Ignoring 'plugins' in update_config; use add_plugin instead")
            partial.pop("plugins")
        self._config = build_config(self._config, **partial)
        return self._config

    def add_plugin(self, plugin: Any) -> None:
        self._plugins.add(plugin)

    def remove_plugin(self, name: str) -> None:
        if self._plugins.remove(name):
            logger.info(f"Removed plugin {name}")

    def get_plugins(self) -> list[dict[str, str]]:
        return self._plugins.describe()

    async def initialize(self) -> None:
        """Run plugin ``initialize`` hooks once; later calls are no-ops."""
        async with self._init_lock:
            if self._state is ParserState.INITIALIZED:
                return
            self._check_usable()
            self._plugins.freeze()
            logger.info(f"Initializing parser with {len(self._plugins)} plugin(s)")
            try:
                await self._plugins.run_initialize(self._config)
            except PluginHookError as e:
                self._state = ParserState.FAILED
                logger.error(f"Parser initialization failed: {e.message}")
                raise
            self._state = ParserState.INITIALIZED

    def _check_usable(self) -> None:
        if self._state is ParserState.FAILED:
            raise ParserStateError("Parser initialization failed; create a new parser")
        if self._state is ParserState.CLEANED:
            raise ParserStateError("Parser has been cleaned up")

    async def _ensure_ready(self) -> None:
        if self._state is ParserState.UNINITIALIZED:
            await self.initialize()
        self._check_usable()

    async def cleanup(self) -> list[PluginHookError]:
        """Run plugin ``cleanup`` hooks; never raises. Idempotent."""
        if self._state is ParserState.CLEANED:
            return []
        errors = await self._plugins.run_cleanup()
        self._state = ParserState.CLEANED
        if errors:
            logger.warning(f"Cleanup finished with {len(errors)} plugin error(s)")
        return errors

    def format_result(self, result: ParseResult) -> str:
        return format_result(result, self._config.output_format, self._config.include_metadata)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    async def parse_file(self, path: str, options: Any = None) -> ParseResult:
        """Decode an audio file and parse it."""
        check_format(path)
        opts = build_options(options)
        await self._ensure_ready()

        logger.info(f"Loading {os.path.basename(path)}")
        audio, sr = await asyncio.to_thread(decode, path, self._config.sample_rate)
        opts = opts.model_copy(update={
            "filename": opts.filename or os.path.basename(path),
            "sample_rate": sr,
        })
        return await self.parse_buffer(audio, opts)

    async def parse_buffer(self, data: Any, options: Any = None) -> ParseResult:
        """Detect beats and tempo in a mono sample buffer."""
        opts = build_options(options).resolve(self._config)
        await self._ensure_ready()
        audio = validate_audio(data, self._config.frame_size)
        plugins = self._plugins.snapshot()
        cfg = self._config
        started = time.perf_counter()

        sr = opts.sample_rate
        logger.info(f"Parsing {len(audio) / sr:.1f}s of audio at {sr}Hz")

        if cfg.enable_preprocessing:
            audio = preprocess(audio, sr, cfg.enable_normalization, cfg.enable_filtering)
        audio = await PluginPipeline.run_process_audio(plugins, audio, cfg, cfg.frame_size)

        # Step 1: Frame analysis and onset strength
        logger.info("Step 1: Onset strength")
        envelope = await self._onset_envelope(audio, opts, report_progress=True)

        # Step 2: Tempo estimation
        logger.info("Step 2: Tempo estimation")
        tempo = estimate_tempo(
            envelope,
            sr,
            opts.hop_size,
            cfg.min_tempo,
            cfg.max_tempo,
            tempo_weight=cfg.tempo_weight,
            tie_epsilon=cfg.tempo_tie_epsilon,
            preferred_range=(cfg.preferred_tempo_min, cfg.preferred_tempo_max),
        )
        logger.info(f"  Tempo: {tempo.bpm:.1f} BPM (confidence={tempo.confidence:.2f})")

        # Step 3: Beat selection
        logger.info("Step 3: Beat selection")
        beats = select_beats(
            envelope,
            tempo,
            opts,
            cfg.confidence_threshold,
            max_iterations=cfg.adaptive_max_iterations,
            grid_tolerance=cfg.grid_tolerance,
        )
        beats = await PluginPipeline.run_process_beats(plugins, beats, cfg)
        logger.info(f"  {len(beats)} beats selected ({opts.selection_method})")

        return self._result(beats, tempo, opts, len(audio), started, plugins, algorithm="full")

    async def parse_stream(self, stream: Any, options: Any = None) -> ParseResult:
        """Parse a sync or async iterable of sample chunks.

        Chunks are re-blocked to ``chunk_size`` samples; each block is
        analyzed together with the last ``overlap * chunk_size`` samples of
        the previous one. Candidates from all blocks are merged and the
        tempo is derived from their inter-beat intervals.
        """
        opts = build_options(options, StreamingOptions).resolve(self._config)
        if isinstance(stream, (str, bytes, bytearray)) or not (
            isinstance(stream, (Iterable, AsyncIterable))
        ):
            raise InvalidInputError(
                f"Stream must be an iterable of audio chunks, got {type(stream).__name__}",
                InvalidInputReason.WRONG_TYPE,
                actual_type=type(stream).__name__,
            )
        await self._ensure_ready()
        plugins = self._plugins.snapshot()
        cfg = self._config
        started = time.perf_counter()

        sr = opts.sample_rate
        chunk_size = max(opts.chunk_size or sr, opts.window_size)
        overlap = int(opts.overlap * chunk_size)
        logger.info(f"Parsing stream in blocks of {chunk_size} samples (overlap {overlap})")

        candidates: list[BeatCandidate] = []
        carry = np.zeros(0)
        processed = 0
        async for block in _reblock(stream, chunk_size):
            if processed == 0 and len(block) < cfg.frame_size:
                raise InvalidInputError(
                    f"Audio data too short. Minimum length: {cfg.frame_size} samples "
                    f"(got {len(block)})",
                    InvalidInputReason.TOO_SHORT,
                    minimum=cfg.frame_size,
                    actual=len(block),
                )
            analysis = np.concatenate([carry, block]) if len(carry) else block
            offset = (processed - len(carry)) / sr

            if cfg.enable_preprocessing:
                analysis = preprocess(analysis, sr, cfg.enable_normalization, cfg.enable_filtering)
            analysis = await PluginPipeline.run_process_audio(plugins, analysis, cfg)
            envelope = await self._onset_envelope(analysis, opts, report_progress=False)
            for cand in detect_candidates(envelope, cfg.confidence_threshold, opts.hop_size, sr):
                timestamp = cand.timestamp + offset
                candidates.append(replace(
                    cand,
                    timestamp=timestamp,
                    frame=int(round(timestamp * sr / opts.hop_size)),
                    source="stream",
                ))

            processed += len(block)
            carry = analysis[-overlap:] if overlap else np.zeros(0)
            await self._checkpoint(opts, processed)

        if processed == 0:
            raise InvalidInputError(
                "Invalid or empty audio data provided", InvalidInputReason.EMPTY, actual=0,
            )

        merged = merge_candidates(candidates, STREAM_MERGE_INTERVAL)
        tempo = estimate_from_ibi([c.timestamp for c in merged], cfg.min_tempo, cfg.max_tempo)
        if tempo is None:
            tempo = Tempo(bpm=DEFAULT_BPM, confidence=0.0, metadata={"method": "default"})
        logger.info(f"  Stream tempo: {tempo.bpm:.1f} BPM from {len(merged)} candidates")

        kept = [c for c in merged if c.confidence >= opts.min_confidence]
        reduced = reduce_candidates(
            kept,
            tempo,
            opts.target_picture_count,
            opts.selection_method,
            duration=processed / sr,
            max_iterations=cfg.adaptive_max_iterations,
            grid_tolerance=cfg.grid_tolerance,
        )
        beats = await PluginPipeline.run_process_beats(plugins, [c.to_beat() for c in reduced], cfg)
        return self._result(beats, tempo, opts, processed, started, plugins, algorithm="stream")

    async def _onset_envelope(
        self, audio: np.ndarray, opts: ParseOptions, report_progress: bool,
    ) -> np.ndarray:
        analyzer = FrameAnalyzer(audio, opts.window_size, opts.hop_size, self._config.spectral_bands)
        detector = OnsetDetector(self._config.onset_weight, self._config.spectral_weight)
        n_frames = 0
        for chunk in analyzer.chunks(FRAME_CHUNK):
            detector.feed(chunk)
            n_frames += len(chunk)
            if report_progress:
                await self._checkpoint(opts, analyzer.samples_covered(n_frames))
            elif opts.cancelled:
                raise OperationCancelledError("Operation cancelled")
        return detector.envelope()

    @staticmethod
    async def _checkpoint(opts: ParseOptions, samples_processed: int) -> None:
        if opts.cancelled:
            raise OperationCancelledError("Operation cancelled")
        if opts.progress_callback is not None:
            try:
                result = opts.progress_callback(samples_processed)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Progress callback failed: {type(e).__name__}: {e}")
        await asyncio.sleep(0)

    def _result(
        self,
        beats: list[Beat],
        tempo: Tempo,
        opts: ParseOptions,
        n_samples: int,
        started: float,
        plugins: tuple,
        algorithm: str,
    ) -> ParseResult:
        metadata: dict[str, Any] = {
            "processing_time_ms": round((time.perf_counter() - started) * 1000, 3),
            "samples_processed": n_samples,
            "sample_rate": opts.sample_rate,
            "audio_length": n_samples / opts.sample_rate,
            "parameters": {
                "window_size": opts.window_size,
                "hop_size": opts.hop_size,
                "min_confidence": opts.min_confidence,
                "target_picture_count": opts.target_picture_count,
                "selection_method": opts.selection_method,
            },
            "algorithms_used": [
                "hann_stft",
                "energy_flux",
                "spectral_flux",
                "inter_beat_interval" if algorithm == "stream" else "comb_autocorrelation",
                f"{opts.selection_method}_selection",
            ],
            "plugins_used": [{"name": p.name, "version": p.version} for p in plugins],
        }
        if opts.filename:
            metadata["filename"] = opts.filename
        return ParseResult(beats=beats, tempo=tempo, metadata=metadata)


async def _chunks(stream: Any):
    if isinstance(stream, AsyncIterable):
        async for chunk in stream:
            yield chunk
    else:
        for chunk in stream:
            yield chunk


async def _reblock(stream: Any, size: int):
    """Yield validated float blocks of exactly *size* samples (last may be shorter)."""
    pending: list[np.ndarray] = []
    pending_len = 0
    async for chunk in _chunks(stream):
        if hasattr(chunk, "__len__") and len(chunk) == 0:
            continue
        arr = validate_audio(chunk, min_length=1).astype(np.float64, copy=False)
        pending.append(arr)
        pending_len += len(arr)
        while pending_len >= size:
            joined = np.concatenate(pending)
            yield joined[:size]
            rest = joined[size:]
            pending = [rest] if len(rest) else []
            pending_len = len(rest)
    if pending_len:
        yield np.concatenate(pending)

"""Plugin registration and hook execution.

A plugin is any object with non-empty ``name`` and ``version`` strings and
any subset of the hooks below. Hooks may be plain callables or coroutines.

    initialize(config) -> None
    process_audio(audio, config) -> audio
    process_beats(beats, config) -> beats
    cleanup() -> None
"""

from __future__ import annotations

import inspect
import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np

from beatparser.analysis.models import Beat
from beatparser.analysis.validation import validate_audio
from beatparser.errors import (
    BeatParserError,
    DuplicatePluginError,
    InvalidPluginError,
    LateRegistrationError,
    PluginHookError,
    sanitize_message,
)

logger = logging.getLogger(__name__)

HOOKS = ("initialize", "process_audio", "process_beats", "cleanup")


@runtime_checkable
class BeatParserPlugin(Protocol):
    name: str
    version: str


@dataclass
class Plugin:
    """Plugin assembled from plain callables."""
    name: str
    version: str
    initialize: Callable[..., Any] | None = None
    process_audio: Callable[..., Any] | None = None
    process_beats: Callable[..., Any] | None = None
    cleanup: Callable[..., Any] | None = None


def coerce_plugin(plugin: Any) -> BeatParserPlugin:
    """Wrap mappings into ``Plugin`` and check name/version."""
    if isinstance(plugin, Mapping):
        plugin = Plugin(
            name=plugin.get("name", ""),
            version=plugin.get("version", ""),
            **{hook: plugin.get(hook) for hook in HOOKS},
        )
    if not isinstance(plugin, BeatParserPlugin):
        raise InvalidPluginError(f"Plugin must define name and version, got {type(plugin).__name__}")
    name = plugin.name
    version = plugin.version
    if not isinstance(name, str) or not name.strip():
        raise InvalidPluginError("Plugin must have a non-empty name")
    if not isinstance(version, str) or not version.strip():
        raise InvalidPluginError(f"Plugin '{name}' must have a non-empty version", plugin_name=name)
    for hook in HOOKS:
        fn = getattr(plugin, hook, None)
        if fn is not None and not callable(fn):
            raise InvalidPluginError(f"Plugin '{name}' hook {hook} is not callable", plugin_name=name)
    return plugin


def _hook_error(plugin: BeatParserPlugin, hook: str, exc: BaseException) -> PluginHookError:
    fallback = f"Plugin '{plugin.name}' failed in {hook}"
    detail = exc.message if isinstance(exc, BeatParserError) else str(exc)
    message = sanitize_message(f"{fallback}: {detail}", fallback)
    return PluginHookError(message, plugin_name=plugin.name, hook=hook, cause=exc)


async def _call(plugin: Any, hook: str, *args: Any) -> Any:
    fn = getattr(plugin, hook, None)
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _check_beats(beats: Any) -> list[Beat]:
    if not isinstance(beats, (list, tuple)):
        raise TypeError(f"expected a list of beats, got {type(beats).__name__}")
    for beat in beats:
        if not isinstance(beat, Beat):
            raise TypeError(f"expected Beat, got {type(beat).__name__}")
        if not math.isfinite(beat.timestamp) or beat.timestamp < 0:
            raise ValueError(f"beat timestamp must be finite and non-negative, got {beat.timestamp}")
        if not 0.0 <= beat.confidence <= 1.0:
            raise ValueError(f"beat confidence must be within [0, 1], got {beat.confidence}")
    return sorted(beats, key=lambda b: b.timestamp)


class PluginPipeline:
    """Ordered, uniquely-named plugin registry.

    Registration closes once ``freeze()`` is called (at parser
    initialization). Removal is always allowed; the registry is replaced
    rather than mutated, so callers holding a ``snapshot()`` are unaffected.
    """

    def __init__(self, plugins: tuple | list = ()) -> None:
        self._plugins: tuple[BeatParserPlugin, ...] = ()
        self._frozen = False
        for plugin in plugins:
            self.add(plugin)

    def __len__(self) -> int:
        return len(self._plugins)

    def freeze(self) -> None:
        self._frozen = True

    def add(self, plugin: Any) -> None:
        if self._frozen:
            raise LateRegistrationError("Cannot add plugins after parser initialization")
        plugin = coerce_plugin(plugin)
        if any(p.name == plugin.name for p in self._plugins):
            raise DuplicatePluginError(
                f"Plugin with name '{plugin.name}' is already registered",
                plugin_name=plugin.name,
            )
        self._plugins = self._plugins + (plugin,)
        logger.debug(f"Registered plugin {plugin.name} {plugin.version}")

    def remove(self, name: str) -> bool:
        remaining = tuple(p for p in self._plugins if p.name != name)
        removed = len(remaining) != len(self._plugins)
        self._plugins = remaining
        return removed

    def snapshot(self) -> tuple[BeatParserPlugin, ...]:
        return self._plugins

    def describe(self) -> list[dict[str, str]]:
        return [{"name": p.name, "version": p.version} for p in self._plugins]

    async def run_initialize(self, config: Any) -> None:
        for plugin in self._plugins:
            if getattr(plugin, "initialize", None) is None:
                continue
            try:
                await _call(plugin, "initialize", config)
            except Exception as e:
                raise _hook_error(plugin, "initialize", e) from e

    @staticmethod
    async def run_process_audio(
        plugins: tuple[Any, ...], audio: np.ndarray, config: Any, min_length: int = 1,
    ) -> np.ndarray:
        for plugin in plugins:
            if getattr(plugin, "process_audio", None) is None:
                continue
            try:
                result = await _call(plugin, "process_audio", audio, config)
                audio = validate_audio(result, min_length)
            except Exception as e:
                raise _hook_error(plugin, "process_audio", e) from e
        return audio

    @staticmethod
    async def run_process_beats(
        plugins: tuple[Any, ...], beats: list[Beat], config: Any,
    ) -> list[Beat]:
        for plugin in plugins:
            if getattr(plugin, "process_beats", None) is None:
                continue
            try:
                result = await _call(plugin, "process_beats", beats, config)
                beats = _check_beats(result)
            except Exception as e:
                raise _hook_error(plugin, "process_beats", e) from e
        return beats

    async def run_cleanup(self) -> list[PluginHookError]:
        """Run every cleanup hook; failures are logged and returned."""
        errors = []
        for plugin in self._plugins:
            if getattr(plugin, "cleanup", None) is None:
                continue
            try:
                await _call(plugin, "cleanup")
            except Exception as e:
                err = _hook_error(plugin, "cleanup", e)
                logger.warning(err.message)
                errors.append(err)
        return errors

"""Tests for plugin registration and hook execution."""

import numpy as np
import pytest

from beatparser.analysis.models import Beat
from beatparser.analysis.plugins import Plugin, PluginPipeline, coerce_plugin
from beatparser.errors import (
    DuplicatePluginError,
    InvalidPluginError,
    LateRegistrationError,
    PluginHookError,
)


def test_mapping_is_wrapped():
    plugin = coerce_plugin({"name": "gain", "version": "1.0", "process_audio": lambda a, c: a})
    assert isinstance(plugin, Plugin)
    assert plugin.process_beats is None


@pytest.mark.parametrize("plugin", [
    {"name": "", "version": "1.0"},
    {"name": "x", "version": ""},
    {"version": "1.0"},
    object(),
    Plugin(name="x", version="1.0", cleanup="not callable"),
])
def test_invalid_plugins_rejected(plugin):
    with pytest.raises(InvalidPluginError):
        PluginPipeline().add(plugin)


def test_duplicate_name_rejected():
    pipeline = PluginPipeline([Plugin(name="p", version="1")])
    with pytest.raises(DuplicatePluginError, match="Plugin with name 'p' is already registered"):
        pipeline.add(Plugin(name="p", version="2"))


def test_frozen_pipeline_rejects_additions_but_allows_removal():
    pipeline = PluginPipeline([Plugin(name="a", version="1")])
    pipeline.freeze()
    with pytest.raises(LateRegistrationError, match="Cannot add plugins after parser initialization"):
        pipeline.add(Plugin(name="b", version="1"))
    assert pipeline.remove("a") is True
    assert pipeline.remove("missing") is False
    assert len(pipeline) == 0


def test_remove_does_not_affect_snapshot():
    pipeline = PluginPipeline([Plugin(name="a", version="1"), Plugin(name="b", version="1")])
    snapshot = pipeline.snapshot()
    pipeline.remove("a")
    assert [p.name for p in snapshot] == ["a", "b"]
    assert pipeline.describe() == [{"name": "b", "version": "1"}]


@pytest.mark.asyncio
async def test_process_audio_chain_in_order():
    calls = []

    def halve(audio, config):
        calls.append("halve")
        return audio * 0.5

    async def offset(audio, config):
        calls.append("offset")
        return audio + 1.0

    plugins = (Plugin("halve", "1", process_audio=halve), Plugin("offset", "1", process_audio=offset))
    out = await PluginPipeline.run_process_audio(plugins, np.ones(16), None)
    assert calls == ["halve", "offset"]
    np.testing.assert_allclose(out, 1.5)


@pytest.mark.asyncio
async def test_invalid_hook_output_is_a_hook_error():
    plugins = (Plugin("broken", "1", process_audio=lambda a, c: a * np.nan),)
    with pytest.raises(PluginHookError) as exc:
        await PluginPipeline.run_process_audio(plugins, np.ones(16), None)
    assert exc.value.plugin_name == "broken"
    assert exc.value.hook == "process_audio"


@pytest.mark.asyncio
async def test_process_beats_validated_and_sorted():
    beats = [Beat(timestamp=1.0, confidence=0.5, strength=1.0), Beat(timestamp=0.5, confidence=0.9, strength=1.0)]
    out = await PluginPipeline.run_process_beats(
        (Plugin("rev", "1", process_beats=lambda b, c: list(reversed(b))),), beats, None,
    )
    assert [b.timestamp for b in out] == [0.5, 1.0]

    bad = (Plugin("bad", "1", process_beats=lambda b, c: [Beat(timestamp=0.1, confidence=2.0, strength=0.0)]),)
    with pytest.raises(PluginHookError):
        await PluginPipeline.run_process_beats(bad, beats, None)


@pytest.mark.asyncio
async def test_hook_error_message_is_sanitized():
    def leaky(beats, config):
        raise RuntimeError("cannot open /var/lib/secret/keys.db")

    with pytest.raises(PluginHookError) as exc:
        await PluginPipeline.run_process_beats((Plugin("leaky", "1", process_beats=leaky),), [], None)
    assert "/var/lib" not in str(exc.value)
    assert "leaky" in str(exc.value)
    assert isinstance(exc.value.cause, RuntimeError)


@pytest.mark.asyncio
async def test_cleanup_runs_all_hooks_and_collects_errors():
    ran = []

    def fail():
        ran.append("fail")
        raise ValueError("boom")

    pipeline = PluginPipeline([
        Plugin("first", "1", cleanup=fail),
        Plugin("second", "1", cleanup=lambda: ran.append("second")),
    ])
    errors = await pipeline.run_cleanup()
    assert ran == ["fail", "second"]
    assert len(errors) == 1
    assert errors[0].plugin_name == "first"
    assert errors[0].hook == "cleanup"

"""Tests for result rendering."""

import csv
import io
import json
import xml.etree.ElementTree as ET

import pytest

from beatparser.analysis.models import Beat, ParseResult, Tempo, TimeSignature
from beatparser.analysis.output import format_result


@pytest.fixture
def result():
    return ParseResult(
        beats=[
            Beat(timestamp=0.5, confidence=0.9, strength=1.0),
            Beat(timestamp=1.0, confidence=0.75, strength=0.8, metadata={"source": "synthetic"}),
        ],
        tempo=Tempo(bpm=120.0, confidence=0.8, time_signature=TimeSignature(3, 4)),
        metadata={"filename": "song.wav", "samples_processed": 44100, "parameters": {"hop_size": 512}},
    )


def test_csv(result):
    rows = list(csv.reader(io.StringIO(format_result(result, "csv"))))
    assert rows[0] == ["timestamp", "confidence", "strength"]
    assert [float(r[0]) for r in rows[1:]] == [0.5, 1.0]


def test_json(result):
    data = json.loads(format_result(result, "json"))
    assert data["tempo"]["bpm"] == 120.0
    assert data["tempo"]["time_signature"] == {"numerator": 3, "denominator": 4}
    assert data["metadata"]["filename"] == "song.wav"
    assert len(data["beats"]) == 2

    assert json.loads(format_result(result, "json", include_metadata=False))["metadata"] == {}


def test_xml(result):
    root = ET.fromstring(format_result(result, "xml"))
    assert root.tag == "parseResult"
    assert root.find("tempo").get("timeSignature") == "3/4"
    assert root.find("beats").get("count") == "2"
    assert root.find("metadata/filename").text == "song.wav"
    # nested values are not rendered
    assert root.find("metadata/parameters") is None


def test_placeholder_result_without_tempo():
    placeholder = ParseResult(beats=[], tempo=None, metadata={"error": "failed"})
    assert json.loads(format_result(placeholder, "json"))["tempo"] is None
    assert ET.fromstring(format_result(placeholder, "xml")).find("tempo") is None


def test_unknown_format(result):
    with pytest.raises(ValueError):
        format_result(result, "yaml")

"""Rendering of parse results as JSON, CSV or XML."""

import csv
import io
import xml.etree.ElementTree as ET

from beatparser.analysis.models import ParseResult
from beatparser.api.schemas import ParseResultResponse

CSV_COLUMNS = ("timestamp", "confidence", "strength")


def to_json(result: ParseResult, include_metadata: bool = True) -> str:
    return ParseResultResponse.from_result(result, include_metadata).model_dump_json(indent=2)


def to_csv(result: ParseResult) -> str:
    """One row per beat: ``timestamp,confidence,strength``."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for beat in result.beats:
        writer.writerow([f"{beat.timestamp:.6f}", f"{beat.confidence:.4f}", f"{beat.strength:.4f}"])
    return buf.getvalue()


def to_xml(result: ParseResult, include_metadata: bool = True) -> str:
    root = ET.Element("parseResult")
    if result.tempo is not None:
        tempo = ET.SubElement(root, "tempo", {
            "bpm": f"{result.tempo.bpm:g}",
            "confidence": f"{result.tempo.confidence:g}",
        })
        if result.tempo.time_signature is not None:
            tempo.set("timeSignature", result.tempo.time_signature.label)

    beats = ET.SubElement(root, "beats", {"count": str(len(result.beats))})
    for beat in result.beats:
        ET.SubElement(beats, "beat", {
            "timestamp": f"{beat.timestamp:.6f}",
            "confidence": f"{beat.confidence:.4f}",
            "strength": f"{beat.strength:.4f}",
        })

    if include_metadata:
        meta = ET.SubElement(root, "metadata")
        for key, value in result.metadata.items():
            if isinstance(value, (str, int, float, bool)):
                ET.SubElement(meta, key).text = str(value)
    return ET.tostring(root, encoding="unicode")


def format_result(result: ParseResult, fmt: str = "json", include_metadata: bool = True) -> str:
    if fmt == "json":
        return to_json(result, include_metadata)
    if fmt == "csv":
        return to_csv(result)
    if fmt == "xml":
        return to_xml(result, include_metadata)
    raise ValueError(f"Unknown output format: {fmt}")

"""File upload endpoint for beat parsing."""

import logging
import os
import tempfile

from fastapi import APIRouter, File, HTTPException, Query, UploadFile

from beatparser.analysis.engine import BeatParser
from beatparser.analysis.options import ParseOptions, SelectionMethod
from beatparser.api.schemas import ParseResultResponse
from beatparser.audio.loader import SUPPORTED_FORMATS, file_extension
from beatparser.config import settings
from beatparser.errors import DecodeError, InvalidInputError, PluginError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/parse", response_model=ParseResultResponse)
async def parse_file(
    file: UploadFile = File(...),
    target_picture_count: int = Query(0, ge=0),
    selection_method: SelectionMethod = Query("adaptive"),
    min_confidence: float | None = Query(None, ge=0, le=1),
):
    """Detect beats and tempo in an uploaded audio file."""
    # Validate file
    ext = file_extension(file.filename or "")
    if ext not in SUPPORTED_FORMATS:
        raise HTTPException(400, f"Unsupported format. Use: {', '.join(SUPPORTED_FORMATS)}")

    content = await file.read()
    if len(content) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(400, f"File too large (max {settings.max_upload_mb} MB)")

    options = {
        "target_picture_count": target_picture_count,
        "selection_method": selection_method,
        "filename": os.path.basename(file.filename or ""),
    }
    if min_confidence is not None:
        options["min_confidence"] = min_confidence

    # Write to temp file (librosa needs a file path for some formats)
    tmp_path = None
    parser = BeatParser()
    try:
        with tempfile.NamedTemporaryFile(suffix=ext, delete=False) as tmp:
            tmp.write(content)
            tmp_path = tmp.name

        result = await parser.parse_file(tmp_path, ParseOptions(**options))
        return ParseResultResponse.from_result(result)
    except (InvalidInputError, DecodeError) as e:
        raise HTTPException(422, e.message)
    except PluginError as e:
        logger.warning(f"Parse of {options['filename']} failed in plugin: {e.code}")
        raise HTTPException(500, "Parse failed")
    except Exception:
        logger.exception(f"Parse of {options['filename']} failed")
        raise HTTPException(500, "Parse failed")
    finally:
        await parser.cleanup()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError as e:
                logger.debug(f"Could not remove temp file: {e.strerror}")

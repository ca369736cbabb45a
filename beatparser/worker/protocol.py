"""Messages exchanged between the offload client and a worker runtime.

Every message has an operation ``id``, a ``type`` and a ``payload``. For one
id the worker sends any number of ``progress`` messages followed by exactly
one ``result`` or ``error``. Errors travel as ``(code, message, context)``
and are rebuilt on the client as the matching ``BeatParserError`` subclass.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from beatparser.errors import (
    ERROR_TYPES,
    BeatParserError,
    MessageCorruptError,
    sanitize_message,
)

CANCEL_ALL = "all"


class MessageType(str, Enum):
    PARSE_BUFFER = "parse-buffer"
    PARSE_STREAM = "parse-stream"
    BATCH_PROCESS = "batch-process"
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    CANCEL = "cancel"


REQUEST_TYPES = frozenset({
    MessageType.PARSE_BUFFER,
    MessageType.PARSE_STREAM,
    MessageType.BATCH_PROCESS,
})


class WorkerMessage(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(min_length=1)
    type: MessageType
    payload: Any = None


class _Payload(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class ParseBufferPayload(_Payload):
    audio_data: Any
    options: dict[str, Any] = {}
    config: dict[str, Any] = {}


class ParseStreamPayload(_Payload):
    chunks: list[Any]
    options: dict[str, Any] = {}
    config: dict[str, Any] = {}


class BatchProcessPayload(_Payload):
    audio_buffers: list[Any]
    options: dict[str, Any] = {}
    config: dict[str, Any] = {}


class ProgressPayload(_Payload):
    current: int = 0
    total: int = 0
    stage: str = ""
    percentage: Any = 0.0


class ErrorPayload(_Payload):
    code: str
    message: str
    context: dict[str, Any] = {}


REQUEST_PAYLOADS: dict[MessageType, type[_Payload]] = {
    MessageType.PARSE_BUFFER: ParseBufferPayload,
    MessageType.PARSE_STREAM: ParseStreamPayload,
    MessageType.BATCH_PROCESS: BatchProcessPayload,
}


def new_operation_id() -> str:
    return uuid.uuid4().hex


def parse_message(raw: Any) -> WorkerMessage:
    """Validate a message received as a model or a plain mapping."""
    if isinstance(raw, WorkerMessage):
        return raw
    try:
        return WorkerMessage.model_validate(raw)
    except ValidationError as e:
        raise MessageCorruptError(f"Malformed worker message ({e.error_count()} error(s))") from None


def parse_payload(message: WorkerMessage) -> _Payload:
    """Typed payload of a request message."""
    cls = REQUEST_PAYLOADS[message.type]
    if isinstance(message.payload, cls):
        return message.payload
    try:
        return cls.model_validate(message.payload)
    except ValidationError as e:
        raise MessageCorruptError(
            f"Malformed {message.type.value} payload ({e.error_count()} error(s))"
        ) from None


def _plain_context(context: dict[str, Any]) -> dict[str, Any]:
    return {
        k: v for k, v in context.items()
        if isinstance(v, (str, int, float, bool)) or v is None
    }


def error_to_payload(exc: BaseException) -> ErrorPayload:
    """Flatten an exception for the wire; messages are sanitized."""
    if isinstance(exc, BeatParserError):
        return ErrorPayload(
            code=exc.code,
            message=sanitize_message(exc.message, "Operation failed"),
            context=_plain_context(exc.context),
        )
    return ErrorPayload(
        code=BeatParserError.code,
        message=sanitize_message(f"{type(exc).__name__}: {exc}", "Internal worker error"),
    )


def error_from_payload(payload: Any) -> BeatParserError:
    """Rebuild the typed exception described by an error payload."""
    if not isinstance(payload, ErrorPayload):
        try:
            payload = ErrorPayload.model_validate(payload)
        except ValidationError:
            return MessageCorruptError("Malformed error payload")
    cls = ERROR_TYPES.get(payload.code, BeatParserError)
    try:
        err = cls(payload.message, **payload.context)
    except TypeError:
        err = BeatParserError(payload.message, **payload.context)
    if err.code != payload.code:
        err.code = payload.code
    return err


def request_message(msg_type: MessageType, payload: Any, op_id: str | None = None) -> WorkerMessage:
    return WorkerMessage(id=op_id or new_operation_id(), type=msg_type, payload=payload)


def progress_message(op_id: str, current: int, total: int, stage: str, percentage: float) -> WorkerMessage:
    return WorkerMessage(
        id=op_id,
        type=MessageType.PROGRESS,
        payload=ProgressPayload(current=current, total=total, stage=stage, percentage=percentage),
    )


def result_message(op_id: str, result: Any) -> WorkerMessage:
    return WorkerMessage(id=op_id, type=MessageType.RESULT, payload=result)


def error_message(op_id: str, exc: BaseException) -> WorkerMessage:
    return WorkerMessage(id=op_id, type=MessageType.ERROR, payload=error_to_payload(exc))


def cancel_message(op_id: str = CANCEL_ALL) -> WorkerMessage:
    return WorkerMessage(id=op_id, type=MessageType.CANCEL)

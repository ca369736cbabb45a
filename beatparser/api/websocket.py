"""WebSocket endpoint exposing the offload protocol to remote clients."""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from beatparser.analysis.models import ParseResult
from beatparser.api.schemas import ParseResultResponse
from beatparser.worker.protocol import MessageType, WorkerMessage
from beatparser.worker.runtime import WorkerRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


def _result_payload(payload: Any) -> Any:
    if isinstance(payload, ParseResult):
        return ParseResultResponse.from_result(payload).model_dump(mode="json")
    if isinstance(payload, list):
        return [_result_payload(p) for p in payload]
    return payload


def message_to_json(message: WorkerMessage) -> dict:
    """Convert an outgoing worker message to plain JSON data."""
    payload = message.payload
    if message.type is MessageType.RESULT:
        payload = _result_payload(payload)
    elif hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    return {"id": message.id, "type": message.type.value, "payload": payload}


def _strip_plugins(raw: Any) -> Any:
    payload = raw.get("payload") if isinstance(raw, dict) else None
    if isinstance(payload, dict) and isinstance(payload.get("config"), dict):
        payload["config"].pop("plugins", None)
    return raw


@router.websocket("/ws/offload")
async def offload(websocket: WebSocket):
    """Run offload requests for one connection.

    Protocol:
    - Client sends JSON worker messages, e.g.
      {"id": "a1", "type": "parse-buffer", "payload": {"audio_data": [...], "options": {...}}}
      or {"id": "a1", "type": "cancel"}
    - Server replies with {"id", "type": "progress" | "result" | "error", "payload"}
    """
    await websocket.accept()

    loop = asyncio.get_running_loop()
    outgoing: asyncio.Queue[WorkerMessage] = asyncio.Queue()

    def post(message: WorkerMessage) -> None:
        loop.call_soon_threadsafe(outgoing.put_nowait, message)

    runtime = WorkerRuntime(post)

    async def sender() -> None:
        while True:
            message = await outgoing.get()
            await websocket.send_json(message_to_json(message))

    send_task = asyncio.create_task(sender())
    try:
        while True:
            raw = await websocket.receive_json()
            runtime.receive(_strip_plugins(raw))
    except WebSocketDisconnect:
        logger.info("Offload client disconnected")
    finally:
        runtime.shutdown(wait=False)
        send_task.cancel()

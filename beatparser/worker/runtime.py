"""Worker-side execution of offloaded parse requests."""

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from beatparser.analysis.engine import BeatParser
from beatparser.analysis.models import ParseResult
from beatparser.analysis.options import ParseOptions, StreamingOptions, build_options
from beatparser.config import settings
from beatparser.errors import (
    BeatParserError,
    MessageCorruptError,
    OperationCancelledError,
    sanitize_message,
)
from beatparser.worker.protocol import (
    CANCEL_ALL,
    REQUEST_TYPES,
    BatchProcessPayload,
    MessageType,
    ParseBufferPayload,
    ParseStreamPayload,
    WorkerMessage,
    error_message,
    parse_message,
    parse_payload,
    progress_message,
    result_message,
)

logger = logging.getLogger(__name__)


class WorkerState:
    """Active operations of one runtime: cancel flags and last progress."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancel: dict[str, threading.Event] = {}
        self._progress: dict[str, float] = {}

    def begin(self, op_id: str) -> threading.Event | None:
        """Register *op_id*; None if it is already active."""
        with self._lock:
            if op_id in self._cancel:
                return None
            event = threading.Event()
            self._cancel[op_id] = event
            self._progress[op_id] = 0.0
            return event

    def end(self, op_id: str) -> None:
        with self._lock:
            self._cancel.pop(op_id, None)
            self._progress.pop(op_id, None)

    def cancel(self, op_id: str) -> list[str]:
        """Set the cancel flag of *op_id* (or of every operation for ``"all"``)."""
        with self._lock:
            if op_id == CANCEL_ALL:
                targets = list(self._cancel)
            else:
                targets = [op_id] if op_id in self._cancel else []
            for target in targets:
                self._cancel[target].set()
            return targets

    def is_cancelled(self, op_id: str) -> bool:
        with self._lock:
            event = self._cancel.get(op_id)
            return event is not None and event.is_set()

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._cancel)

    def advance(self, op_id: str, percentage: float) -> float:
        """Record progress for *op_id*, never moving backwards."""
        with self._lock:
            last = self._progress.get(op_id, 0.0)
            value = max(last, min(100.0, percentage))
            self._progress[op_id] = value
            return value


class WorkerRuntime:
    """Executes request messages and posts progress/result/error messages.

    ``receive`` never blocks: requests run on a thread pool, each in its own
    event loop with a fresh ``BeatParser``. Cancellation is cooperative;
    a cancelled operation posts nothing further.
    """

    def __init__(self, post: Callable[[WorkerMessage], Any], max_workers: int | None = None):
        self._post = post
        self.state = WorkerState()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.worker_threads,
            thread_name_prefix="beatparser-worker",
        )
        self._closed = False

    def receive(self, raw: Any) -> None:
        try:
            message = parse_message(raw)
        except MessageCorruptError as e:
            op_id = raw.get("id") if isinstance(raw, dict) else None
            logger.warning(f"Dropping malformed message: {e.message}")
            if isinstance(op_id, str) and op_id:
                self._emit(error_message(op_id, e))
            return

        if message.type is MessageType.CANCEL:
            cancelled = self.state.cancel(message.id)
            logger.info(f"Cancel {message.id}: {len(cancelled)} operation(s) flagged")
            return
        if message.type not in REQUEST_TYPES:
            logger.warning(f"Ignoring unexpected {message.type.value} message {message.id}")
            return
        if self._closed:
            logger.warning(f"Runtime closed; rejecting {message.id}")
            return

        event = self.state.begin(message.id)
        if event is None:
            logger.warning(f"Operation {message.id} is already running; duplicate ignored")
            return
        self._executor.submit(self._run, message, event)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self.state.cancel(CANCEL_ALL)
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _emit(self, message: WorkerMessage) -> None:
        try:
            self._post(message)
        except Exception as e:
            logger.warning(f"Failed to post {message.type.value} for {message.id}: {e}")

    def _run(self, message: WorkerMessage, cancel_event: threading.Event) -> None:
        op_id = message.id
        try:
            result = asyncio.run(self._execute(message, cancel_event))
        except OperationCancelledError:
            logger.info(f"Operation {op_id} cancelled")
        except Exception as e:
            if not cancel_event.is_set():
                if not isinstance(e, BeatParserError):
                    logger.exception(f"Operation {op_id} failed")
                self._emit(error_message(op_id, e))
        else:
            if not cancel_event.is_set():
                self._emit(result_message(op_id, result))
        finally:
            self.state.end(op_id)

    def _progress(self, op_id: str, stage: str, total: int) -> Callable[[int], None]:
        def report(current: int) -> None:
            if self.state.is_cancelled(op_id):
                return
            pct = self.state.advance(op_id, 100.0 * current / total if total else 100.0)
            self._emit(progress_message(op_id, current, total, stage, pct))
        return report

    @staticmethod
    def _checkpoint(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise OperationCancelledError("Operation cancelled")

    async def _execute(self, message: WorkerMessage, cancel_event: threading.Event) -> Any:
        payload = parse_payload(message)
        self._checkpoint(cancel_event)
        parser = BeatParser(payload.config)
        try:
            await parser.initialize()
            if message.type is MessageType.PARSE_BUFFER:
                return await self._parse_buffer(parser, message.id, payload, cancel_event)
            if message.type is MessageType.PARSE_STREAM:
                return await self._parse_stream(parser, message.id, payload, cancel_event)
            return await self._process_batch(parser, message.id, payload, cancel_event)
        finally:
            await parser.cleanup()

    async def _parse_buffer(
        self, parser: BeatParser, op_id: str, payload: ParseBufferPayload, cancel_event: threading.Event,
    ) -> ParseResult:
        total = len(payload.audio_data) if hasattr(payload.audio_data, "__len__") else 0
        opts = build_options(payload.options).model_copy(update={
            "progress_callback": self._progress(op_id, "parse", total),
            "cancel_event": cancel_event,
        })
        return await parser.parse_buffer(payload.audio_data, opts)

    async def _parse_stream(
        self, parser: BeatParser, op_id: str, payload: ParseStreamPayload, cancel_event: threading.Event,
    ) -> ParseResult:
        total = sum(len(c) for c in payload.chunks if hasattr(c, "__len__"))
        opts = build_options(payload.options, StreamingOptions).model_copy(update={
            "progress_callback": self._progress(op_id, "stream", total),
            "cancel_event": cancel_event,
        })
        return await parser.parse_stream(payload.chunks, opts)

    async def _process_batch(
        self, parser: BeatParser, op_id: str, payload: BatchProcessPayload, cancel_event: threading.Event,
    ) -> list[ParseResult]:
        base = build_options(payload.options)
        total = len(payload.audio_buffers)
        report = self._progress(op_id, "batch", total)
        results = []
        for i, buffer in enumerate(payload.audio_buffers):
            self._checkpoint(cancel_event)
            filename = base.filename or f"buffer_{i}"
            opts: ParseOptions = base.model_copy(update={
                "filename": filename,
                "cancel_event": cancel_event,
            })
            try:
                results.append(await parser.parse_buffer(buffer, opts))
            except OperationCancelledError:
                raise
            except Exception as e:
                code = e.code if isinstance(e, BeatParserError) else BeatParserError.code
                detail = e.message if isinstance(e, BeatParserError) else str(e)
                logger.warning(f"Batch item {i} of {op_id} failed: {code}")
                results.append(ParseResult(
                    beats=[],
                    tempo=None,
                    metadata={
                        "error": sanitize_message(detail, "Processing failed"),
                        "error_code": code,
                        "filename": filename,
                    },
                ))
            report(i + 1)
        return results


def serve(inbox, outbox, max_workers: int | None = None) -> None:
    """Child-process entry point: feed *inbox* messages to a runtime until ``None``."""
    runtime = WorkerRuntime(outbox.put, max_workers)
    logger.info("Worker process started")
    while True:
        message = inbox.get()
        if message is None:
            break
        runtime.receive(message)
    runtime.shutdown(wait=True)

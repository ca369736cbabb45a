"""Asyncio client that offloads parse requests to a worker runtime.

Every submitted operation gets an entry in the pending map holding its
future, its timeout timer and its progress callback. All ways an operation
can end (result, error, timeout, cancel, worker crash) go through
``_settle``, which removes the entry and resolves the future exactly once;
messages arriving for an id that is no longer pending are ignored.
"""

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from beatparser.analysis.models import ParseResult
from beatparser.analysis.options import BeatParserConfig, build_config
from beatparser.config import settings
from beatparser.errors import (
    MessageCorruptError,
    OperationCancelledError,
    OperationTimeoutError,
    WorkerCrashedError,
    WorkerTransportError,
    WorkerUnavailableError,
    sanitize_message,
)
from beatparser.worker.protocol import (
    CANCEL_ALL,
    BatchProcessPayload,
    MessageType,
    ParseBufferPayload,
    ParseStreamPayload,
    ProgressPayload,
    WorkerMessage,
    cancel_message,
    error_from_payload,
    parse_message,
    request_message,
)
from beatparser.worker.transport import ThreadWorkerTransport, WorkerTransport

logger = logging.getLogger(__name__)

# Batch timeouts scale by one base timeout per this many buffers.
BATCH_TIMEOUT_GROUP = 5
# Upper bound on a single retry delay when backing off exponentially.
MAX_RETRY_DELAY = 30.0

ProgressCallback = Callable[[ProgressPayload], Any]


@dataclass
class _Pending:
    future: asyncio.Future
    timer: asyncio.TimerHandle | None
    progress_callback: ProgressCallback | None
    started_at: float


@dataclass
class OffloadOperation:
    """Handle for one submitted request; awaiting it yields the result."""
    id: str
    future: asyncio.Future

    def __await__(self):
        return self.future.__await__()


def _coerce_percentage(value: Any) -> float:
    try:
        pct = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(pct):
        return 0.0
    return max(0.0, min(100.0, pct))


def _options_dict(options: Any) -> tuple[dict[str, Any], ProgressCallback | None]:
    if options is None:
        return {}, None
    if isinstance(options, BaseModel):
        callback = getattr(options, "progress_callback", None)
        return options.model_dump(exclude_none=True), callback
    data = dict(options)
    callback = data.pop("progress_callback", None)
    data.pop("cancel_event", None)
    return data, callback


class OffloadClient:
    """Submits parse work to a worker and tracks it until it settles."""

    def __init__(
        self,
        transport_factory: Callable[[], WorkerTransport] = ThreadWorkerTransport,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        retry_backoff: float | None = None,
        config: BeatParserConfig | dict[str, Any] | None = None,
    ):
        self.transport_factory = transport_factory
        self.timeout = settings.worker_timeout if timeout is None else timeout
        self.max_retries = settings.worker_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.worker_retry_delay if retry_delay is None else retry_delay
        self.retry_backoff = settings.worker_retry_backoff if retry_backoff is None else retry_backoff
        self.config = build_config(config)
        self._transport: WorkerTransport | None = None
        self._transport_failed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: dict[str, _Pending] = {}

    async def __aenter__(self) -> "OffloadClient":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.terminate()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Start the transport; idempotent while it is healthy."""
        if self._transport is not None and not self._transport_failed:
            return
        self._close_transport()
        self._loop = asyncio.get_running_loop()
        try:
            transport = self.transport_factory()
            transport.start(self._receive_threadsafe, self._fail_threadsafe)
        except Exception as e:
            logger.error(f"Worker failed to start: {type(e).__name__}")
            raise WorkerUnavailableError(
                sanitize_message(f"Worker failed to start: {e}", "Worker failed to start"),
            ) from e
        self._transport = transport
        self._transport_failed = False
        logger.info(f"Offload worker started ({type(transport).__name__})")

    def terminate(self) -> None:
        """Cancel every pending operation and close the transport."""
        for op_id in list(self._pending):
            self._settle(op_id, error=OperationCancelledError(
                "Worker terminated", operation_id=op_id,
            ))
        self._close_transport()

    def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            transport.close()
        except Exception as e:
            logger.warning(f"Error closing worker transport: {type(e).__name__}: {e}")

    def pending_operation_count(self) -> int:
        return len(self._pending)

    def is_busy(self) -> bool:
        return bool(self._pending)

    # ------------------------------------------------------------------
    # Submission and settlement
    # ------------------------------------------------------------------

    def submit(
        self,
        msg_type: MessageType,
        payload: Any,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> OffloadOperation:
        """Post one request without retrying; the returned handle is awaitable."""
        if self._transport is None or self._loop is None:
            raise WorkerUnavailableError("Offload client is not initialized")
        loop = self._loop
        message = request_message(msg_type, payload)
        op_id = message.id
        timeout = self.timeout if timeout is None else timeout

        future = loop.create_future()
        timer = None
        if timeout and timeout > 0:
            timer = loop.call_later(timeout, self._expire, op_id, timeout)
        self._pending[op_id] = _Pending(future, timer, progress_callback, loop.time())
        future.add_done_callback(lambda f: self._abandon(op_id, f))

        try:
            self._transport.post(message)
        except WorkerCrashedError as e:
            self._transport_failed = True
            self._settle(op_id, error=e)
        except WorkerTransportError as e:
            self._settle(op_id, error=e)
        except Exception as e:
            self._settle(op_id, error=WorkerTransportError(
                sanitize_message(f"Failed to post message: {e}", "Failed to post message"),
            ))
        return OffloadOperation(op_id, future)

    def _settle(self, op_id: str, result: Any = None, error: BaseException | None = None) -> bool:
        entry = self._pending.pop(op_id, None)
        if entry is None:
            logger.debug(f"Ignoring settlement of unknown operation {op_id}")
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if self._loop is not None:
            elapsed = self._loop.time() - entry.started_at
            outcome = "ok" if error is None else type(error).__name__
            logger.debug(f"Operation {op_id} settled after {elapsed:.3f}s ({outcome})")
        if not entry.future.done():
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(result)
        return True

    def _abandon(self, op_id: str, future: asyncio.Future) -> None:
        # The awaiting task was cancelled: stop tracking and tell the worker.
        if future.cancelled() and self._settle(op_id):
            self._post_cancel(op_id)

    def _expire(self, op_id: str, timeout: float) -> None:
        error = OperationTimeoutError(
            f"Operation timed out after {timeout}s", operation_id=op_id, timeout=timeout,
        )
        if self._settle(op_id, error=error):
            logger.warning(f"Operation {op_id} timed out after {timeout}s")
            self._post_cancel(op_id)

    def _post_cancel(self, op_id: str) -> None:
        if self._transport is None:
            return
        try:
            self._transport.post(cancel_message(op_id))
        except Exception as e:
            logger.warning(f"Failed to post cancel for {op_id}: {type(e).__name__}")

    def cancel(self, op_id: str | None = None) -> int:
        """Reject *op_id* (or every pending operation) and ask the worker to stop.

        Results that arrive afterwards are ignored. Returns the number of
        operations rejected.
        """
        targets = [op_id] if op_id is not None else list(self._pending)
        count = 0
        for target in targets:
            if self._settle(target, error=OperationCancelledError(
                "Operation cancelled", operation_id=target,
            )):
                count += 1
        if count:
            self._post_cancel(op_id if op_id is not None else CANCEL_ALL)
        return count

    # ------------------------------------------------------------------
    # Incoming messages
    # ------------------------------------------------------------------

    def _receive_threadsafe(self, message: WorkerMessage) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._receive, message)
        except RuntimeError:
            logger.debug("Event loop closed; dropping worker message")

    def _fail_threadsafe(self, error: BaseException) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._fail_all, error)
        except RuntimeError:
            logger.debug("Event loop closed; dropping worker failure")

    def _fail_all(self, error: BaseException) -> None:
        self._transport_failed = True
        for op_id in list(self._pending):
            self._settle(op_id, error=error)

    def _receive(self, raw: Any) -> None:
        try:
            message = parse_message(raw)
        except MessageCorruptError as e:
            logger.warning(f"Dropping malformed worker message: {e.message}")
            return

        entry = self._pending.get(message.id)
        if entry is None:
            logger.debug(f"Ignoring {message.type.value} for unknown operation {message.id}")
            return

        if message.type is MessageType.PROGRESS:
            self._forward_progress(entry, message.payload)
        elif message.type is MessageType.RESULT:
            self._settle(message.id, result=message.payload)
        elif message.type is MessageType.ERROR:
            self._settle(message.id, error=error_from_payload(message.payload))
        else:
            logger.warning(f"Unexpected {message.type.value} message from worker")

    @staticmethod
    def _forward_progress(entry: _Pending, payload: Any) -> None:
        if entry.progress_callback is None:
            return
        if isinstance(payload, ProgressPayload):
            data = payload.model_dump()
        elif isinstance(payload, dict):
            data = dict(payload)
        else:
            data = {}
        data["percentage"] = _coerce_percentage(data.get("percentage"))
        try:
            progress = ProgressPayload.model_validate(data)
        except ValueError:
            progress = ProgressPayload(percentage=data["percentage"])
        try:
            entry.progress_callback(progress)
        except Exception as e:
            logger.warning(f"Progress callback failed: {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Requests with retry
    # ------------------------------------------------------------------

    async def _request(
        self,
        msg_type: MessageType,
        payload: Any,
        progress_callback: ProgressCallback | None,
        timeout: float | None,
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            await self.initialize()
            operation = self.submit(msg_type, payload, progress_callback, timeout)
            try:
                return await operation
            except WorkerTransportError as e:
                if attempt > self.max_retries:
                    logger.error(f"{msg_type.value} failed after {attempt} attempt(s): {e.code}")
                    raise
                delay = self._retry_delay(attempt)
                logger.warning(
                    f"{msg_type.value} attempt {attempt}/{self.max_retries + 1} failed "
                    f"({e.code}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    def _retry_delay(self, attempt: int) -> float:
        """Delay before retry *attempt*; constant unless a backoff factor above 1 is set."""
        return min(self.retry_delay * self.retry_backoff ** (attempt - 1), MAX_RETRY_DELAY)

    def _config_dict(self, config: Any) -> dict[str, Any]:
        cfg = self.config if config is None else build_config(config)
        return dict(cfg)

    async def parse_buffer(
        self,
        audio_data: Any,
        options: Any = None,
        config: Any = None,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> ParseResult:
        opts, callback = _options_dict(options)
        payload = ParseBufferPayload(audio_data=audio_data, options=opts, config=self._config_dict(config))
        return await self._request(
            MessageType.PARSE_BUFFER, payload, progress_callback or callback, timeout,
        )

    async def parse_stream(
        self,
        chunks: Any,
        options: Any = None,
        config: Any = None,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> ParseResult:
        opts, callback = _options_dict(options)
        payload = ParseStreamPayload(chunks=list(chunks), options=opts, config=self._config_dict(config))
        return await self._request(
            MessageType.PARSE_STREAM, payload, progress_callback or callback, timeout,
        )

    async def process_batch(
        self,
        audio_buffers: list[Any],
        options: Any = None,
        config: Any = None,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> list[ParseResult]:
        """Parse several buffers in one request; failed items become placeholders."""
        opts, callback = _options_dict(options)
        base = self.timeout if timeout is None else timeout
        scaled = base * max(1, math.ceil(len(audio_buffers) / BATCH_TIMEOUT_GROUP))
        payload = BatchProcessPayload(
            audio_buffers=list(audio_buffers), options=opts, config=self._config_dict(config),
        )
        return await self._request(
            MessageType.BATCH_PROCESS, payload, progress_callback or callback, scaled,
        )


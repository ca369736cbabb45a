"""Transports carrying worker messages between a client and a runtime."""

import logging
import multiprocessing
import queue
import threading
from collections.abc import Callable
from typing import Any

from beatparser.errors import WorkerCrashedError, WorkerTransportError
from beatparser.worker.protocol import WorkerMessage
from beatparser.worker.runtime import WorkerRuntime, serve

logger = logging.getLogger(__name__)

MessageHandler = Callable[[WorkerMessage], None]
FailureHandler = Callable[[BaseException], None]


class WorkerTransport:
    """Base transport. ``start`` wires the callbacks; ``post`` sends to the worker.

    Callbacks are invoked from a transport-owned thread; receivers must hop
    to their own event loop.
    """

    def start(self, on_message: MessageHandler, on_failure: FailureHandler) -> None:
        raise NotImplementedError

    def post(self, message: WorkerMessage) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class ThreadWorkerTransport(WorkerTransport):
    """Runs a ``WorkerRuntime`` in this process on its thread pool."""

    def __init__(self, max_workers: int | None = None):
        self.max_workers = max_workers
        self._runtime: WorkerRuntime | None = None

    def start(self, on_message: MessageHandler, on_failure: FailureHandler) -> None:
        self._runtime = WorkerRuntime(on_message, self.max_workers)

    def post(self, message: WorkerMessage) -> None:
        if self._runtime is None:
            raise WorkerTransportError("Worker transport is not running")
        self._runtime.receive(message)

    def close(self) -> None:
        runtime, self._runtime = self._runtime, None
        if runtime is not None:
            runtime.shutdown(wait=False)


def _without_plugins(message: WorkerMessage) -> WorkerMessage:
    config = getattr(message.payload, "config", None)
    if not config or not config.get("plugins"):
        return message
    logger.warning(f"Plugins are not sent to worker processes; dropped for {message.id}")
    payload = message.payload.model_copy(update={
        "config": {k: v for k, v in config.items() if k != "plugins"},
    })
    return message.model_copy(update={"payload": payload})


class ProcessWorkerTransport(WorkerTransport):
    """Runs a ``WorkerRuntime`` in a child process fed by multiprocessing queues.

    A reader thread forwards outgoing messages and reports a
    ``WorkerCrashedError`` if the child exits while the transport is open.
    """

    poll_interval = 0.1

    def __init__(self, max_workers: int | None = None, start_method: str = "spawn"):
        self.max_workers = max_workers
        self._ctx = multiprocessing.get_context(start_method)
        self._process = None
        self._inbox = None
        self._outbox = None
        self._reader: threading.Thread | None = None
        self._closing = threading.Event()

    def start(self, on_message: MessageHandler, on_failure: FailureHandler) -> None:
        self._inbox = self._ctx.Queue()
        self._outbox = self._ctx.Queue()
        self._process = self._ctx.Process(
            target=serve,
            args=(self._inbox, self._outbox, self.max_workers),
            daemon=True,
        )
        self._process.start()
        self._reader = threading.Thread(
            target=self._read, args=(on_message, on_failure), daemon=True,
            name="beatparser-transport-reader",
        )
        self._reader.start()
        logger.info(f"Started worker process pid={self._process.pid}")

    def _read(self, on_message: MessageHandler, on_failure: FailureHandler) -> None:
        while not self._closing.is_set():
            try:
                message = self._outbox.get(timeout=self.poll_interval)
            except queue.Empty:
                if not self._process.is_alive() and not self._closing.is_set():
                    code = self._process.exitcode
                    logger.error(f"Worker process exited unexpectedly (exit code {code})")
                    on_failure(WorkerCrashedError(
                        f"Worker process exited unexpectedly (exit code {code})", exit_code=code,
                    ))
                    return
                continue
            except (EOFError, OSError) as e:
                if not self._closing.is_set():
                    on_failure(WorkerCrashedError(f"Worker channel closed: {type(e).__name__}"))
                return
            on_message(message)

    def post(self, message: WorkerMessage) -> None:
        if self._process is None or not self._process.is_alive():
            raise WorkerCrashedError("Worker process is not running")
        try:
            self._inbox.put(_without_plugins(message))
        except (ValueError, OSError) as e:
            raise WorkerTransportError(f"Failed to send message: {type(e).__name__}") from e

    def close(self) -> None:
        self._closing.set()
        if self._process is None:
            return
        try:
            self._inbox.put(None)
        except (ValueError, OSError) as e:
            logger.debug(f"Could not send shutdown sentinel: {type(e).__name__}")
        self._process.join(timeout=2.0)
        if self._process.is_alive():
            self._process.terminate()
            self._process.join(timeout=1.0)
        self._process = None

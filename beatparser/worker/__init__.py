"""Offload subpackage: wire protocol, worker runtime, transports and client."""

from beatparser.worker.client import OffloadClient, OffloadOperation
from beatparser.worker.protocol import MessageType, WorkerMessage
from beatparser.worker.runtime import WorkerRuntime, WorkerState
from beatparser.worker.transport import (
    ProcessWorkerTransport,
    ThreadWorkerTransport,
    WorkerTransport,
)

__all__ = [
    "OffloadClient",
    "OffloadOperation",
    "MessageType",
    "WorkerMessage",
    "WorkerRuntime",
    "WorkerState",
    "WorkerTransport",
    "ThreadWorkerTransport",
    "ProcessWorkerTransport",
]

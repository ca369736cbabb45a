"""Tests for the offload client: settlement, retries, timeouts and cancellation."""

import asyncio

import numpy as np
import pytest

from beatparser.errors import (
    InvalidInputError,
    InvalidInputReason,
    OperationCancelledError,
    OperationTimeoutError,
    WorkerCrashedError,
    WorkerTransportError,
    WorkerUnavailableError,
)
from beatparser.worker import MessageType, OffloadClient, ThreadWorkerTransport, WorkerTransport
from beatparser.worker.protocol import REQUEST_TYPES, error_message, progress_message, result_message


class ScriptedTransport(WorkerTransport):
    """In-memory transport; *script* decides how each posted message is answered."""

    def __init__(self, script=None):
        self.script = script
        self.posted = []
        self.closed = False

    def start(self, on_message, on_failure):
        self.on_message = on_message
        self.on_failure = on_failure

    def post(self, message):
        self.posted.append(message)
        if self.script is not None:
            self.script(self, message)

    def close(self):
        self.closed = True

    @property
    def requests(self):
        return [m for m in self.posted if m.type in REQUEST_TYPES]


def reply_ok(transport, message):
    if message.type in REQUEST_TYPES:
        transport.on_message(result_message(message.id, "ok"))


AUDIO = np.zeros(4096)


@pytest.mark.asyncio
async def test_timeout_rejects_and_cancels_worker_side():
    transport = ScriptedTransport()
    client = OffloadClient(lambda: transport, timeout=0.1, max_retries=0)
    with pytest.raises(OperationTimeoutError):
        await client.parse_buffer(AUDIO)
    assert client.pending_operation_count() == 0
    assert transport.posted[-1].type is MessageType.CANCEL
    assert transport.posted[-1].id == transport.requests[0].id


@pytest.mark.asyncio
async def test_cancel_ignores_late_result():
    transport = ScriptedTransport()
    client = OffloadClient(lambda: transport)
    await client.initialize()
    operation = client.submit(MessageType.PARSE_BUFFER, {"audio_data": AUDIO})
    assert client.is_busy()
    assert client.cancel(operation.id) == 1
    with pytest.raises(OperationCancelledError):
        await operation
    assert transport.posted[-1].type is MessageType.CANCEL

    transport.on_message(result_message(operation.id, "late"))
    await asyncio.sleep(0)
    assert client.pending_operation_count() == 0
    assert client.cancel(operation.id) == 0


@pytest.mark.asyncio
async def test_transport_errors_are_retried_with_fresh_ids():
    def flaky(transport, message):
        if message.type in REQUEST_TYPES and len(transport.requests) <= 2:
            raise WorkerTransportError("dropped")
        reply_ok(transport, message)

    transport = ScriptedTransport(flaky)
    client = OffloadClient(lambda: transport, retry_delay=0, max_retries=3)
    assert await client.parse_buffer(AUDIO) == "ok"
    ids = [m.id for m in transport.requests]
    assert len(ids) == 3
    assert len(set(ids)) == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    def broken(transport, message):
        raise WorkerTransportError("down")

    transport = ScriptedTransport(broken)
    client = OffloadClient(lambda: transport, retry_delay=0, max_retries=2)
    with pytest.raises(WorkerTransportError):
        await client.parse_buffer(AUDIO)
    assert len(transport.requests) == 3
    assert client.pending_operation_count() == 0


@pytest.mark.asyncio
async def test_start_failure():
    def factory():
        raise RuntimeError("cannot spawn")

    with pytest.raises(WorkerUnavailableError):
        await OffloadClient(factory).initialize()


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried():
    def reject(transport, message):
        transport.on_message(error_message(message.id, InvalidInputError(
            "Audio data too short", InvalidInputReason.TOO_SHORT, minimum=2048, actual=10,
        )))

    transport = ScriptedTransport(reject)
    client = OffloadClient(lambda: transport, retry_delay=0, max_retries=3)
    with pytest.raises(InvalidInputError) as exc:
        await client.parse_buffer([0.0] * 10)
    assert exc.value.reason is InvalidInputReason.TOO_SHORT
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_progress_percentage_is_clamped():
    def noisy(transport, message):
        for pct in (float("nan"), "abc", 150):
            transport.on_message(progress_message(message.id, 1, 2, "parse", pct))
        reply_ok(transport, message)

    seen = []
    client = OffloadClient(lambda: ScriptedTransport(noisy))
    result = await client.parse_buffer(AUDIO, progress_callback=lambda p: seen.append(p.percentage))
    assert result == "ok"
    assert seen == [0.0, 0.0, 100.0]


@pytest.mark.asyncio
async def test_crash_restarts_transport():
    instances = []

    def crash(transport, message):
        transport.on_failure(WorkerCrashedError("worker died", exit_code=-9))

    def factory():
        transport = ScriptedTransport(crash if not instances else reply_ok)
        instances.append(transport)
        return transport

    client = OffloadClient(factory, retry_delay=0, max_retries=1)
    assert await client.parse_buffer(AUDIO) == "ok"
    assert len(instances) == 2
    assert instances[0].closed


@pytest.mark.asyncio
async def test_terminate_rejects_pending():
    transport = ScriptedTransport()
    client = OffloadClient(lambda: transport)
    await client.initialize()
    operation = client.submit(MessageType.PARSE_BUFFER, {"audio_data": AUDIO})
    client.terminate()
    with pytest.raises(OperationCancelledError):
        await operation
    assert transport.closed


@pytest.mark.asyncio
async def test_thread_worker_end_to_end(click_120):
    seen = []
    async with OffloadClient(ThreadWorkerTransport, timeout=120) as client:
        result = await client.parse_buffer(click_120, progress_callback=lambda p: seen.append(p.percentage))
        batch = await client.process_batch([click_120, [0.0] * 10])
    assert abs(result.tempo.bpm - 120) < 3
    assert seen == sorted(seen)
    assert all(0.0 <= p <= 100.0 for p in seen)
    assert batch[0].tempo is not None
    assert batch[1].metadata["error_code"] == "INVALID_INPUT"


def test_retry_delay_is_constant_by_default():
    client = OffloadClient(ScriptedTransport, retry_delay=0.5)
    assert [client._retry_delay(n) for n in (1, 2, 3, 4)] == [0.5, 0.5, 0.5, 0.5]


def test_retry_delay_backs_off_when_enabled():
    client = OffloadClient(ScriptedTransport, retry_delay=0.5, retry_backoff=2.0)
    assert [client._retry_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
    assert client._retry_delay(20) == 30.0


@pytest.mark.asyncio
async def test_crash_on_post_restarts_transport():
    instances = []

    def dead(transport, message):
        raise WorkerCrashedError("Worker process is not running")

    def factory():
        transport = ScriptedTransport(dead if not instances else reply_ok)
        instances.append(transport)
        return transport

    client = OffloadClient(factory, retry_delay=0, max_retries=1)
    assert await client.parse_buffer(AUDIO) == "ok"
    assert len(instances) == 2
    assert instances[0].closed

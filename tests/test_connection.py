from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from typing import Any

import pytest

from codex_jsonl_rpc.connection import RpcConnection
from codex_jsonl_rpc.errors import (
    CodexCancelledError,
    CodexCapacityError,
    CodexProtocolError,
    CodexStreamClosedError,
    CodexTimeoutError,
    CodexTransportError,
)
from codex_jsonl_rpc.ids import RequestIdAllocator
from codex_jsonl_rpc.protocol import Notification, ServerRequest
from codex_jsonl_rpc.transport import Transport


class QueueTransport(Transport):
    def __init__(self) -> None:
        self.connect_calls = 0
        self.close_calls = 0
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def feed(self, *payloads: dict[str, Any]) -> None:
        for payload in payloads:
            self.incoming.put_nowait(payload)

    def end(self) -> None:
        self.incoming.put_nowait(None)

    async def connect(self) -> None:
        self.connect_calls += 1

    async def write_message(self, payload: Mapping[str, Any]) -> None:
        self.sent.append(dict(payload))

    async def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            payload = await self.incoming.get()
            if payload is None:
                return
            yield payload

    async def close(self) -> None:
        self.close_calls += 1


class FailingWriteTransport(QueueTransport):
    async def write_message(self, payload: Mapping[str, Any]) -> None:
        raise CodexTransportError("pipe closed")


async def _until(predicate: Any, *, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def test_request_resolves_without_queueing_events() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            request_id = await connection.send("model/list", {"limit": 20})
            assert request_id == 1
            assert transport.sent == [
                {"method": "model/list", "id": 1, "params": {"limit": 20}}
            ]

            transport.feed({"id": 1, "result": {"data": [{"id": "gpt-5"}]}})
            result = await connection.await_response(request_id, timeout=1.0)

            assert result == {"data": [{"id": "gpt-5"}]}
            assert connection.pending_events == 0

    asyncio.run(_run())


def test_events_received_while_waiting_stay_queued_in_order() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            request_id = await connection.send("turn/start", {"threadId": "t1"})
            transport.feed(
                {"method": "turn/started", "params": {"turn": {"id": "turn-1"}}},
                {"method": "item/commandExecution/requestApproval", "id": 99, "params": {}},
                {"method": "item/agentMessage/delta", "params": {"delta": "Hi"}},
                {"id": request_id, "result": {"turn": {"id": "turn-1"}}},
            )

            result = await connection.await_response(request_id, timeout=1.0)
            assert result == {"turn": {"id": "turn-1"}}
            assert connection.pending_events == 3

            first = await connection.next_event(timeout=1.0)
            second = await connection.next_event(timeout=1.0)
            third = await connection.next_event(timeout=1.0)

            assert isinstance(first, Notification) and first.method == "turn/started"
            assert isinstance(second, ServerRequest) and second.id == 99
            assert isinstance(third, Notification)
            assert third.params == {"delta": "Hi"}

    asyncio.run(_run())


def test_out_of_order_responses_resolve_matching_waiters() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            first = await connection.send("model/list")
            second = await connection.send("thread/start")
            transport.feed(
                {"id": second, "result": "second"},
                {"id": first, "result": "first"},
            )
            results = await asyncio.gather(
                connection.await_response(first, timeout=1.0),
                connection.await_response(second, timeout=1.0),
            )
            assert results == ["first", "second"]

    asyncio.run(_run())


def test_error_response_raises_protocol_error_with_code() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            task = asyncio.create_task(connection.request("thread/start", {}, timeout=1.0))
            await _until(lambda: transport.sent)
            transport.feed(
                {
                    "id": transport.sent[0]["id"],
                    "error": {"code": -32600, "message": "bad thread", "data": {"x": 1}},
                }
            )
            with pytest.raises(CodexProtocolError) as exc_info:
                await task
            assert str(exc_info.value) == "thread/start failed: bad thread"
            assert exc_info.value.code == -32600
            assert exc_info.value.data == {"x": 1}

    asyncio.run(_run())


def test_stream_end_fails_pending_waiters_and_event_reads() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        connection = RpcConnection(transport)
        await connection.start()
        request_id = await connection.send("model/list")
        transport.end()

        with pytest.raises(CodexStreamClosedError):
            await connection.await_response(request_id, timeout=1.0)
        with pytest.raises(CodexStreamClosedError):
            await connection.next_event(timeout=1.0)
        with pytest.raises(CodexStreamClosedError):
            await connection.send("model/list")
        assert connection.closed
        assert isinstance(connection.failure, CodexStreamClosedError)
        await connection.close()

    asyncio.run(_run())


def test_timeout_clears_waiter_and_late_response_is_dropped() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            request_id = await connection.send("model/list")
            with pytest.raises(CodexTimeoutError):
                await connection.await_response(request_id, timeout=0.01)
            assert connection.pending_requests == 0
            with pytest.raises(CodexProtocolError):
                await connection.await_response(request_id, timeout=0.01)

            transport.feed(
                {"id": request_id, "result": "late"},
                {"method": "turn/started", "params": {}},
            )
            event = await connection.next_event(timeout=1.0)
            assert isinstance(event, Notification)
            assert event.method == "turn/started"
            assert connection.pending_events == 0

    asyncio.run(_run())


def test_response_removes_pending_wait_on_arrival() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            request_ids = [await connection.send("model/list") for _ in range(100)]
            assert connection.pending_requests == 100

            transport.feed(*({"id": request_id, "result": request_id} for request_id in request_ids))
            await _until(lambda: connection.pending_requests == 0)

            assert await connection.await_response(request_ids[-1], timeout=1.0) == 100
            with pytest.raises(CodexProtocolError):
                await connection.await_response(request_ids[-1], timeout=0.01)
            assert connection.pending_events == 0

    asyncio.run(_run())


def test_cancel_event_aborts_wait() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            cancel = asyncio.Event()
            request_id = await connection.send("model/list")
            asyncio.get_running_loop().call_later(0.01, cancel.set)
            with pytest.raises(CodexCancelledError):
                await connection.await_response(request_id, cancel_event=cancel)

            with pytest.raises(CodexCancelledError):
                await connection.next_event(cancel_event=cancel)

    asyncio.run(_run())


def test_unclassifiable_messages_are_dropped() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            transport.feed(
                {"foo": 1},
                {"id": True, "result": 1},
                {"method": 5},
                {"method": "turn/started", "params": {}},
            )
            event = await connection.next_event(timeout=1.0)
            assert isinstance(event, Notification)
            assert event.method == "turn/started"
            assert connection.pending_events == 0

    asyncio.run(_run())


def test_event_queue_overflow_fails_connection() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        connection = RpcConnection(transport, event_capacity=2)
        await connection.start()
        request_id = await connection.send("turn/start")
        transport.feed(
            {"method": "n1"},
            {"method": "n2"},
            {"method": "n3"},
        )
        await _until(lambda: connection.failure is not None)

        assert isinstance(connection.failure, CodexCapacityError)
        with pytest.raises(CodexCapacityError):
            await connection.await_response(request_id, timeout=1.0)

        # Already-queued events remain readable before the failure surfaces.
        assert (await connection.next_event(timeout=1.0)).method == "n1"
        assert (await connection.next_event(timeout=1.0)).method == "n2"
        with pytest.raises(CodexCapacityError):
            await connection.next_event(timeout=1.0)
        with pytest.raises(CodexCapacityError):
            await connection.send("model/list")
        await connection.close()

    asyncio.run(_run())


def test_reply_and_notification_envelopes() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            await connection.reply_to(7, "accept")
            await connection.reply_error("srv-1", -32601, "client does not handle x")
            await connection.send_notification("initialized")

        assert transport.sent == [
            {"id": 7, "result": "accept"},
            {
                "id": "srv-1",
                "error": {"code": -32601, "message": "client does not handle x"},
            },
            {"method": "initialized", "params": {}},
        ]

    asyncio.run(_run())


def test_events_iterator_stops_at_stream_end() -> None:
    async def _run() -> list[str]:
        transport = QueueTransport()
        async with RpcConnection(transport) as connection:
            transport.feed({"method": "a"}, {"method": "b", "id": 3})
            transport.end()
            return [event.method async for event in connection.events()]

    assert asyncio.run(_run()) == ["a", "b"]


def test_close_is_idempotent_and_fails_waiters() -> None:
    async def _run() -> None:
        transport = QueueTransport()
        connection = RpcConnection(transport)
        await connection.start()
        await connection.start()
        assert transport.connect_calls == 1

        request_id = await connection.send("model/list")
        waiter = asyncio.create_task(connection.await_response(request_id))
        await asyncio.sleep(0)

        await connection.close()
        await connection.close()
        assert transport.close_calls == 1
        with pytest.raises(CodexStreamClosedError):
            await waiter
        with pytest.raises(CodexTransportError):
            await connection.send("model/list")
        with pytest.raises(CodexTransportError):
            await connection.start()

    asyncio.run(_run())


def test_send_requires_started_connection() -> None:
    async def _run() -> None:
        connection = RpcConnection(QueueTransport())
        with pytest.raises(CodexTransportError):
            await connection.send("model/list")

    asyncio.run(_run())


def test_failed_write_does_not_leave_waiter_behind() -> None:
    async def _run() -> None:
        transport = FailingWriteTransport()
        async with RpcConnection(transport) as connection:
            with pytest.raises(CodexTransportError):
                await connection.send("model/list")
            assert connection.ids.last == 1
            with pytest.raises(CodexProtocolError):
                await connection.await_response(1, timeout=0.01)

    asyncio.run(_run())


def test_shared_allocator_spans_connections() -> None:
    async def _run() -> None:
        ids = RequestIdAllocator()
        first = RpcConnection(QueueTransport(), ids=ids)
        second = RpcConnection(QueueTransport(), ids=ids)
        async with first, second:
            assert await first.send("a") == 1
            assert await second.send("b") == 2
            assert await first.send("c") == 3

    asyncio.run(_run())


def test_event_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RpcConnection(QueueTransport(), event_capacity=0)


def test_terminal_error_without_failure_reports_closed() -> None:
    connection = RpcConnection(QueueTransport())
    error = connection._terminal_error()
    assert isinstance(error, CodexTransportError)
    assert str(error) == "connection is closed"

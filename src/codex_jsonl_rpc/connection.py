from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

from .errors import (
    CodexCancelledError,
    CodexCapacityError,
    CodexError,
    CodexProtocolError,
    CodexStreamClosedError,
    CodexTimeoutError,
    CodexTransportError,
)
from .ids import RequestIdAllocator
from .protocol import (
    InboundEvent,
    RequestId,
    Response,
    classify_message,
    error_message,
    make_error_response,
    make_notification,
    make_request,
    make_result_response,
)
from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_EVENT_CAPACITY = 256

_STREAM_END = object()

T = TypeVar("T")


class RpcConnection:
    """Request/response correlation over a JSON-lines transport.

    One background pump task drains the transport. A response resolves and
    removes the pending wait registered for its id; a response nobody waits
    for is logged and dropped. Notifications and server requests go to a
    bounded FIFO event queue, in wire order, for a single consumer such as
    `TurnDemultiplexer`.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        ids: RequestIdAllocator | None = None,
        event_capacity: int = DEFAULT_EVENT_CAPACITY,
        request_timeout: float | None = None,
    ) -> None:
        """Create a connection bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            ids: Request id allocator; a private one is created when omitted.
            event_capacity: Event queue size. Overflow fails the connection
                with `CodexCapacityError`.
            request_timeout: Default timeout for `await_response`; None waits
                indefinitely.
        """
        if event_capacity < 1:
            raise ValueError("event_capacity must be at least 1")
        self._transport = transport
        self._ids = ids if ids is not None else RequestIdAllocator()
        self._request_timeout = request_timeout

        self._pending: dict[RequestId, asyncio.Future[Response]] = {}
        # Answered waits whose caller has not collected the response yet.
        self._resolved: dict[RequestId, asyncio.Future[Response]] = {}
        self._events: asyncio.Queue[Any] = asyncio.Queue(maxsize=event_capacity)
        self._failure: CodexError | None = None
        self._end_queued = False

        self._pump_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def ids(self) -> RequestIdAllocator:
        return self._ids

    @property
    def closed(self) -> bool:
        """True once the inbound stream ended or `close()` was called."""
        return self._closed or self._failure is not None

    @property
    def failure(self) -> CodexError | None:
        """Terminal error that ended the inbound stream, if any."""
        return self._failure

    @property
    def pending_requests(self) -> int:
        """Number of sent requests still waiting for a response."""
        return len(self._pending)

    @property
    def pending_events(self) -> int:
        """Number of queued events not yet consumed."""
        return self._events.qsize() - int(self._end_queued)

    async def start(self) -> RpcConnection:
        """Connect transport and start the pump exactly once."""
        if self._closed:
            raise CodexTransportError("connection is closed")
        if self._started:
            return self
        await self._transport.connect()
        self._pump_task = asyncio.create_task(self._pump())
        self._started = True
        return self

    async def __aenter__(self) -> RpcConnection:
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the pump, fail pending waits, and close the transport."""
        if self._closed:
            return
        self._closed = True

        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

        self._finish(CodexStreamClosedError("connection closed"))
        self._pending.clear()
        self._resolved.clear()
        await self._transport.close()

    async def send(self, method: str, params: Any = None) -> int:
        """Write a request and return its id without waiting for the reply.

        The pending wait is registered before the request is written, so a
        reply can never arrive ahead of its waiter.
        """
        self._ensure_open()
        request_id = self._ids.next()
        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._transport.write_message(make_request(request_id, method, params))
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        logger.debug("sent request %s id=%s", method, request_id)
        return request_id

    async def send_notification(self, method: str, params: Any = None) -> None:
        """Write a notification; no reply is expected."""
        self._ensure_open()
        await self._transport.write_message(make_notification(method, params))
        logger.debug("sent notification %s", method)

    async def await_response(
        self,
        request_id: RequestId,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """Wait for the response to `request_id` and return its result.

        Notifications and server requests arriving meanwhile stay queued for
        the event consumer.

        Raises:
            CodexProtocolError: The response carries an error, or no request
                with this id is pending.
            CodexStreamClosedError: The stream ended before the response.
            CodexTimeoutError: No response within the timeout.
            CodexCancelledError: `cancel_event` was set first.
        """
        future = self._pending.get(request_id) or self._resolved.get(request_id)
        if future is None:
            raise CodexProtocolError(f"no pending request with id {request_id!r}")

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        try:
            response = await _wait(
                future,
                timeout=timeout_seconds,
                cancel_event=cancel_event,
                what=f"response to request {request_id!r}",
            )
        finally:
            self._pending.pop(request_id, None)
            self._resolved.pop(request_id, None)

        if response.error is not None:
            code = response.error.get("code")
            raise CodexProtocolError(
                error_message(response.error, "JSON-RPC error"),
                code=code if isinstance(code, int) else None,
                data=response.error.get("data"),
            )
        return response.result

    async def request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and await its result."""
        request_id = await self.send(method, params)
        try:
            return await self.await_response(request_id, timeout=timeout)
        except CodexProtocolError as exc:
            raise CodexProtocolError(
                f"{method} failed: {exc}", code=exc.code, data=exc.data
            ) from exc

    async def reply_to(self, request_id: RequestId, result: Any) -> None:
        """Answer a server request with a success result."""
        self._ensure_open()
        await self._transport.write_message(make_result_response(request_id, result))
        logger.debug("replied to server request id=%s", request_id)

    async def reply_error(
        self,
        request_id: RequestId,
        code: int,
        message: str,
        data: Any = None,
    ) -> None:
        """Answer a server request with an error."""
        self._ensure_open()
        await self._transport.write_message(
            make_error_response(request_id, code, message, data)
        )
        logger.debug("replied error %s to server request id=%s", code, request_id)

    async def next_event(
        self,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> InboundEvent:
        """Return the next queued notification or server request.

        Raises the terminal stream error once the stream ended and the queue
        is drained.
        """
        if self._events.empty() and self._failure is not None:
            raise self._terminal_error()
        if not self._started:
            raise CodexTransportError("connection is not started")

        item = await _wait(
            self._events.get(),
            timeout=timeout,
            cancel_event=cancel_event,
            what="next event",
        )
        if item is _STREAM_END:
            self._end_queued = False
            raise self._terminal_error()
        return item

    async def events(self) -> AsyncIterator[InboundEvent]:
        """Iterate queued events until the stream closes."""
        while True:
            try:
                event = await self.next_event()
            except CodexStreamClosedError:
                return
            yield event

    def _ensure_open(self) -> None:
        if self._closed:
            raise CodexTransportError("connection is closed")
        if self._failure is not None:
            raise self._terminal_error()
        if not self._started:
            raise CodexTransportError("connection is not started")

    def _terminal_error(self) -> CodexError:
        if self._failure is None:
            return CodexTransportError("connection is closed")
        return type(self._failure)(str(self._failure))

    async def _pump(self) -> None:
        """Route inbound messages to pending waits or the event queue."""
        failure: CodexError = CodexStreamClosedError("app-server stream closed")
        try:
            async with contextlib.aclosing(self._transport.read_messages()) as messages:
                async for payload in messages:
                    message = classify_message(payload)
                    if message is None:
                        logger.debug("dropping message with neither id nor method")
                        continue

                    if isinstance(message, Response):
                        future = self._pending.pop(message.id, None)
                        if future is not None and not future.done():
                            future.set_result(message)
                            self._resolved[message.id] = future
                        else:
                            logger.warning(
                                "dropping response for unknown request id %r", message.id
                            )
                        continue

                    self._events.put_nowait(message)
        except asyncio.CancelledError:
            raise
        except asyncio.QueueFull:
            failure = CodexCapacityError(
                f"event queue exceeded capacity of {self._events.maxsize} messages"
            )
            logger.error("%s; stopping inbound pump", failure)
        except Exception as exc:
            failure = CodexStreamClosedError(f"inbound stream failed: {exc}")
            logger.warning("%s", failure)
        else:
            logger.debug("inbound stream reached end of file")
        self._finish(failure)

    def _finish(self, failure: CodexError) -> None:
        if self._failure is not None:
            return
        self._failure = failure
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(type(failure)(str(failure)))
        with contextlib.suppress(asyncio.QueueFull):
            self._events.put_nowait(_STREAM_END)
            self._end_queued = True


async def _wait(
    awaitable: Awaitable[T],
    *,
    timeout: float | None,
    cancel_event: asyncio.Event | None,
    what: str,
) -> T:
    """Await with an optional deadline and cancellation event."""
    if cancel_event is None:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CodexTimeoutError(f"{what} timed out after {timeout:.1f}s") from exc

    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CodexCancelledError(f"{what} cancelled")

    task = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        cancel_waiter.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()
    if cancel_waiter in done:
        raise CodexCancelledError(f"{what} cancelled")
    raise CodexTimeoutError(f"{what} timed out after {timeout:.1f}s")

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeAlias

from .connection import RpcConnection
from .models import (
    APPROVAL_DECISIONS,
    ApprovalDecision,
    ApprovalRequest,
    CommandApprovalRequest,
    FileChangeApprovalRequest,
    TurnResult,
)
from .protocol import (
    AGENT_MESSAGE_DELTA_METHOD,
    APPROVAL_METHODS,
    COMMAND_OUTPUT_DELTA_METHOD,
    ERROR_METHOD,
    FILE_CHANGE_APPROVAL_METHOD,
    FILE_CHANGE_OUTPUT_DELTA_METHOD,
    ITEM_COMPLETED_METHOD,
    ITEM_STARTED_METHOD,
    METHOD_NOT_FOUND,
    REASONING_SUMMARY_DELTA_METHOD,
    REASONING_TEXT_DELTA_METHOD,
    TURN_COMPLETED_METHODS,
    TURN_FAILED_METHODS,
    TURN_START_METHOD,
    TURN_STARTED_METHOD,
    InboundEvent,
    ServerRequest,
    error_message,
)

logger = logging.getLogger(__name__)

EventHandler: TypeAlias = Callable[[InboundEvent], Awaitable[None] | None]
ApprovalPolicy: TypeAlias = Callable[
    [ApprovalRequest], ApprovalDecision | Awaitable[ApprovalDecision]
]

# Delta stream names, also used as per-item buffer keys.
AGENT_MESSAGE_STREAM = "agentMessage"
REASONING_STREAM = "reasoning"
COMMAND_OUTPUT_STREAM = "commandOutput"
FILE_CHANGE_STREAM = "fileChange"


class TurnState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"


class TurnObserver:
    """Structured turn callbacks for renderers; every method is a no-op here."""

    def on_agent_message_delta(self, item_id: str | None, delta: str) -> None:
        pass

    def on_reasoning_delta(self, item_id: str | None, delta: str) -> None:
        pass

    def on_command_output_delta(self, item_id: str | None, delta: str) -> None:
        pass

    def on_file_change_delta(self, item_id: str | None, delta: str) -> None:
        pass

    def on_item_started(self, item: dict[str, Any]) -> None:
        pass

    def on_item_completed(self, item: dict[str, Any]) -> None:
        pass

    def on_approval(self, request: ApprovalRequest, decision: ApprovalDecision) -> None:
        pass

    def on_error(self, message: str, params: Any) -> None:
        pass

    def on_turn_completed(self, result: TurnResult) -> None:
        pass


def auto_approve(request: ApprovalRequest) -> ApprovalDecision:
    """Accept every approval request."""
    return "accept"


def auto_decline(request: ApprovalRequest) -> ApprovalDecision:
    """Decline every approval request; the turn continues without the action."""
    return "decline"


class TurnDemultiplexer:
    """Drive one turn by dispatching queued events to a method handler table.

    The demultiplexer is the single consumer of the connection's event queue
    for the duration of the turn. `run()` returns once a turn completion (or
    turn failure) notification arrives.
    """

    def __init__(
        self,
        connection: RpcConnection,
        *,
        observer: TurnObserver | None = None,
        approval_policy: ApprovalPolicy = auto_approve,
    ) -> None:
        self._connection = connection
        self._observer = observer if observer is not None else TurnObserver()
        self._approval_policy = approval_policy
        self._state = TurnState.IDLE
        self._result = TurnResult()
        self._buffers: dict[tuple[str, str | None], str] = {}

        self.handlers: dict[str, EventHandler] = {
            TURN_STARTED_METHOD: self._on_turn_started,
            AGENT_MESSAGE_DELTA_METHOD: self._on_agent_message_delta,
            REASONING_SUMMARY_DELTA_METHOD: self._on_reasoning_delta,
            REASONING_TEXT_DELTA_METHOD: self._on_reasoning_delta,
            COMMAND_OUTPUT_DELTA_METHOD: self._on_command_output_delta,
            FILE_CHANGE_OUTPUT_DELTA_METHOD: self._on_file_change_delta,
            ITEM_STARTED_METHOD: self._on_item_started,
            ITEM_COMPLETED_METHOD: self._on_item_completed,
            ERROR_METHOD: self._on_error,
        }
        for method in APPROVAL_METHODS:
            self.handlers[method] = self._on_approval_request
        for method in TURN_COMPLETED_METHODS:
            self.handlers[method] = self._on_turn_completed
        for method in TURN_FAILED_METHODS:
            self.handlers[method] = self._on_turn_failed

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def result(self) -> TurnResult:
        """Result accumulated so far; final once `state` is COMPLETED."""
        return self._result

    @property
    def connection(self) -> RpcConnection:
        return self._connection

    def register(self, method: str, handler: EventHandler) -> None:
        """Add or replace the handler for `method`."""
        self.handlers[method] = handler

    def buffer(self, stream: str, item_id: str | None = None) -> str:
        """Text accumulated for one in-progress item of a delta stream."""
        return self._buffers.get((stream, item_id), "")

    def complete(self, *, status: str, error: str | None = None) -> None:
        """Mark the turn finished; `run()` returns after the current event."""
        self._result.status = status
        if error is not None:
            self._result.error = error
        self._state = TurnState.COMPLETED
        self._observer.on_turn_completed(self._result)

    async def start(
        self,
        params: Mapping[str, Any],
        *,
        method: str = TURN_START_METHOD,
        timeout: float | None = None,
    ) -> Any:
        """Send the request that starts the turn and await its response.

        Events that arrive before the response stay queued for `run()`.
        """
        if self._state is not TurnState.IDLE:
            raise RuntimeError(f"turn already {self._state.value}")
        request_id = await self._connection.send(method, dict(params))
        self._state = TurnState.ACTIVE
        result = await self._connection.await_response(request_id, timeout=timeout)
        turn_id = _turn_id_from(result)
        if turn_id is not None:
            self._result.turn_id = turn_id
        return result

    async def run(
        self,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Consume events until the turn completes.

        Args:
            timeout: Longest wait for any single event, in seconds.
            cancel_event: Set it to abandon the turn with `CodexCancelledError`.

        A turn interrupted by a timeout or cancellation stays ACTIVE and may be
        resumed by calling `run()` again.
        """
        if self._state is TurnState.COMPLETED:
            raise RuntimeError("turn already completed")
        self._state = TurnState.ACTIVE
        while self._state is TurnState.ACTIVE:
            event = await self._connection.next_event(
                timeout=timeout,
                cancel_event=cancel_event,
            )
            await self.dispatch(event)
        return self._result

    async def dispatch(self, event: InboundEvent) -> None:
        """Route one event to its handler; unknown methods are ignored."""
        self._result.raw_events.append(event.to_dict())
        handler = self.handlers.get(event.method)
        if handler is None:
            if isinstance(event, ServerRequest):
                logger.warning("no handler for server request %s", event.method)
                await self._connection.reply_error(
                    event.id,
                    METHOD_NOT_FOUND,
                    f"client does not handle {event.method}",
                )
            else:
                logger.debug("ignoring notification %s", event.method)
            return
        outcome = handler(event)
        if inspect.isawaitable(outcome):
            await outcome

    def _append_delta(self, stream: str, event: InboundEvent) -> tuple[str | None, str] | None:
        params = _params(event)
        delta = params.get("delta")
        if not isinstance(delta, str):
            return None
        item_id = _optional_string(params.get("itemId"))
        key = (stream, item_id)
        self._buffers[key] = self._buffers.get(key, "") + delta
        return item_id, delta

    def _on_turn_started(self, event: InboundEvent) -> None:
        turn_id = _turn_id_from(_params(event))
        if turn_id is not None:
            self._result.turn_id = turn_id

    def _on_agent_message_delta(self, event: InboundEvent) -> None:
        appended = self._append_delta(AGENT_MESSAGE_STREAM, event)
        if appended is not None:
            self._result.agent_text += appended[1]
            self._observer.on_agent_message_delta(*appended)

    def _on_reasoning_delta(self, event: InboundEvent) -> None:
        appended = self._append_delta(REASONING_STREAM, event)
        if appended is not None:
            self._result.reasoning_text += appended[1]
            self._observer.on_reasoning_delta(*appended)

    def _on_command_output_delta(self, event: InboundEvent) -> None:
        appended = self._append_delta(COMMAND_OUTPUT_STREAM, event)
        if appended is not None:
            self._result.command_output += appended[1]
            self._observer.on_command_output_delta(*appended)

    def _on_file_change_delta(self, event: InboundEvent) -> None:
        appended = self._append_delta(FILE_CHANGE_STREAM, event)
        if appended is not None:
            self._result.file_diffs += appended[1]
            self._observer.on_file_change_delta(*appended)

    def _on_item_started(self, event: InboundEvent) -> None:
        item = _item(event)
        item_id = _optional_string(item.get("id"))
        self._drop_item_buffers(item_id)
        self._observer.on_item_started(item)

    def _on_item_completed(self, event: InboundEvent) -> None:
        item = _item(event)
        item_id = _optional_string(item.get("id"))
        if item.get("type") == "agentMessage":
            text = item.get("text")
            if not isinstance(text, str):
                text = self.buffer(AGENT_MESSAGE_STREAM, item_id)
            if text:
                self._result.agent_messages.append(text)
        self._drop_item_buffers(item_id)
        self._observer.on_item_completed(item)

    def _drop_item_buffers(self, item_id: str | None) -> None:
        for stream in (
            AGENT_MESSAGE_STREAM,
            REASONING_STREAM,
            COMMAND_OUTPUT_STREAM,
            FILE_CHANGE_STREAM,
        ):
            self._buffers.pop((stream, item_id), None)

    async def _on_approval_request(self, event: InboundEvent) -> None:
        if not isinstance(event, ServerRequest):
            logger.debug("ignoring %s sent without an id", event.method)
            return
        request = parse_approval_request(event)
        try:
            decision = self._approval_policy(request)
            if inspect.isawaitable(decision):
                decision = await decision
        except Exception:
            logger.exception("approval policy failed for %s; declining", event.method)
            decision = "decline"
        if decision not in APPROVAL_DECISIONS:
            logger.warning("approval policy returned %r; declining", decision)
            decision = "decline"
        await self._connection.reply_to(event.id, decision)
        self._result.approvals += 1
        self._observer.on_approval(request, decision)

    def _on_error(self, event: InboundEvent) -> None:
        params = _params(event)
        message = error_message(params.get("error"), "")
        if not message:
            message = error_message(params.get("message"), "unknown error")
        self._result.errors.append(message)
        self._observer.on_error(message, params)

    def _on_turn_completed(self, event: InboundEvent) -> None:
        params = _params(event)
        turn = params.get("turn")
        if not isinstance(turn, Mapping):
            turn = {}
        turn_id = _turn_id_from(params)
        if turn_id is not None:
            self._result.turn_id = turn_id
        status = turn.get("status")
        error = turn.get("error")
        message: str | None = None
        if error is not None:
            message = error_message(error, "turn failed")
            self._observer.on_error(message, params)
        self.complete(status=status if isinstance(status, str) else "completed", error=message)

    def _on_turn_failed(self, event: InboundEvent) -> None:
        params = _params(event)
        message = error_message(params.get("error"), "")
        if not message:
            message = error_message(params.get("message"), "turn failed")
        self._observer.on_error(message, params)
        self.complete(status="failed", error=message)


def parse_approval_request(event: ServerRequest) -> ApprovalRequest:
    """Build a typed approval request from a server request."""
    params = _params(event)
    if event.method == FILE_CHANGE_APPROVAL_METHOD:
        return FileChangeApprovalRequest(
            request_id=event.id,
            reason=_optional_string(params.get("reason")),
            grant_root=_optional_string(params.get("grantRoot")),
            thread_id=_optional_string(params.get("threadId")),
            turn_id=_optional_string(params.get("turnId")),
            item_id=_optional_string(params.get("itemId")),
            params=params,
        )
    return CommandApprovalRequest(
        request_id=event.id,
        command=_optional_string(params.get("command")),
        cwd=_optional_string(params.get("cwd")),
        reason=_optional_string(params.get("reason")),
        thread_id=_optional_string(params.get("threadId")),
        turn_id=_optional_string(params.get("turnId")),
        item_id=_optional_string(params.get("itemId")),
        params=params,
    )


def _params(event: InboundEvent) -> dict[str, Any]:
    params = event.params
    return dict(params) if isinstance(params, Mapping) else {}


def _item(event: InboundEvent) -> dict[str, Any]:
    item = _params(event).get("item")
    return dict(item) if isinstance(item, Mapping) else {}


def _optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _turn_id_from(payload: Any) -> str | None:
    """Turn id from `{"turnId": ...}` or `{"turn": {"id": ...}}`, if any."""
    if not isinstance(payload, Mapping):
        return None
    direct = payload.get("turnId")
    if isinstance(direct, str):
        return direct
    turn = payload.get("turn")
    if isinstance(turn, Mapping) and isinstance(turn.get("id"), str):
        return turn["id"]
    return None

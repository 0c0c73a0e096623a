from __future__ import annotations

import asyncio
import os
import shlex
from collections.abc import Mapping, Sequence
from typing import Any

from . import __version__
from .connection import DEFAULT_EVENT_CAPACITY, RpcConnection
from .errors import CodexProtocolError
from .ids import RequestIdAllocator
from .models import InitializeResult, ModelInfo, ThreadInfo, TurnResult
from .protocol import (
    INITIALIZE_METHOD,
    INITIALIZED_METHOD,
    MODEL_LIST_METHOD,
    THREAD_START_METHOD,
    TURN_INTERRUPT_METHOD,
)
from .transport import DEFAULT_LINE_LIMIT, StdioTransport, Transport, WebSocketTransport
from .turn import ApprovalPolicy, TurnDemultiplexer, TurnObserver, auto_approve


class CodexClient:
    """Async client for the Codex app-server JSON-lines protocol."""

    def __init__(
        self,
        connection: RpcConnection,
        *,
        request_timeout: float | None = 30.0,
        approval_policy: ApprovalPolicy = auto_approve,
    ) -> None:
        """Create a client bound to a connection.

        Args:
            connection: Started or startable connection.
            request_timeout: Default timeout for request/response calls. None
                waits indefinitely.
            approval_policy: Decides approval requests raised during turns.
        """
        self._connection = connection
        self._request_timeout = request_timeout
        self._approval_policy = approval_policy
        self._initialized = False

    @classmethod
    def from_transport(
        cls,
        transport: Transport,
        *,
        ids: RequestIdAllocator | None = None,
        event_capacity: int = DEFAULT_EVENT_CAPACITY,
        request_timeout: float | None = 30.0,
        approval_policy: ApprovalPolicy = auto_approve,
    ) -> CodexClient:
        """Create an unstarted client over an arbitrary transport."""
        connection = RpcConnection(transport, ids=ids, event_capacity=event_capacity)
        return cls(
            connection,
            request_timeout=request_timeout,
            approval_policy=approval_policy,
        )

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        line_limit: int = DEFAULT_LINE_LIMIT,
        event_capacity: int = DEFAULT_EVENT_CAPACITY,
        request_timeout: float | None = 30.0,
        approval_policy: ApprovalPolicy = auto_approve,
    ) -> CodexClient:
        """Create an unstarted client that spawns the app-server over stdio."""
        resolved_command = list(command) if command is not None else default_stdio_command()
        transport = StdioTransport(
            resolved_command,
            cwd=cwd,
            env=env,
            connect_timeout=connect_timeout,
            line_limit=line_limit,
        )
        return cls.from_transport(
            transport,
            event_capacity=event_capacity,
            request_timeout=request_timeout,
            approval_policy=approval_policy,
        )

    @classmethod
    def connect_websocket(
        cls,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float | None = 30.0,
        approval_policy: ApprovalPolicy = auto_approve,
    ) -> CodexClient:
        """Create an unstarted client for an app-server listening on a websocket."""
        transport = WebSocketTransport(url, headers=headers, connect_timeout=connect_timeout)
        return cls.from_transport(
            transport,
            request_timeout=request_timeout,
            approval_policy=approval_policy,
        )

    @property
    def connection(self) -> RpcConnection:
        return self._connection

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def request_timeout(self) -> float | None:
        return self._request_timeout

    async def start(self) -> CodexClient:
        """Connect transport and start the inbound pump once."""
        await self._connection.start()
        return self

    async def __aenter__(self) -> CodexClient:
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._connection.close()

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and await its result."""
        return await self._connection.request(
            method,
            dict(params) if params is not None else None,
            timeout=timeout if timeout is not None else self._request_timeout,
        )

    async def initialize(
        self,
        client_info: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> InitializeResult:
        """Perform the `initialize` handshake.

        The `initialized` notification is written right after the request,
        before waiting for the response.
        """
        info = dict(client_info) if client_info is not None else default_client_info()
        request_id = await self._connection.send(INITIALIZE_METHOD, {"clientInfo": info})
        await self._connection.send_notification(INITIALIZED_METHOD, {})
        try:
            result = await self._connection.await_response(
                request_id,
                timeout=timeout if timeout is not None else self._request_timeout,
            )
        except CodexProtocolError as exc:
            raise CodexProtocolError(
                f"{INITIALIZE_METHOD} failed: {exc}", code=exc.code, data=exc.data
            ) from exc
        self._initialized = True
        result_dict = result if isinstance(result, dict) else {"value": result}
        user_agent = result_dict.get("userAgent")
        server_info = result_dict.get("serverInfo")
        return InitializeResult(
            user_agent=user_agent if isinstance(user_agent, str) else None,
            server_info=server_info if isinstance(server_info, dict) else None,
            raw=result_dict,
        )

    async def list_models(self, *, limit: int = 20) -> list[ModelInfo]:
        """Return the models offered by the app-server."""
        result = await self.request(MODEL_LIST_METHOD, {"limit": limit})
        data = result.get("data") if isinstance(result, dict) else None
        if not isinstance(data, list):
            return []
        return [ModelInfo.model_validate(entry) for entry in data if isinstance(entry, dict)]

    async def start_thread(
        self,
        model: str | None = None,
        *,
        cwd: str | None = None,
        approval_policy: str | None = "never",
        sandbox: str | None = "workspace-write",
        params: Mapping[str, Any] | None = None,
    ) -> ThreadInfo:
        """Start a thread; `params` entries override the named arguments."""
        if not self._initialized:
            await self.initialize()

        payload: dict[str, Any] = {"cwd": cwd if cwd is not None else os.getcwd()}
        if model:
            payload["model"] = model
        if approval_policy is not None:
            payload["approvalPolicy"] = approval_policy
        if sandbox is not None:
            payload["sandbox"] = sandbox
        if params:
            payload.update(params)

        result = await self.request(THREAD_START_METHOD, payload)
        thread = result.get("thread") if isinstance(result, dict) else None
        thread_id = thread.get("id") if isinstance(thread, dict) else None
        if not isinstance(thread_id, str) or not thread_id:
            raise CodexProtocolError("thread/start succeeded but no thread id found")
        model_name = result.get("model") if isinstance(result, dict) else None
        return ThreadInfo(
            id=thread_id,
            model=model_name if isinstance(model_name, str) else model,
            raw=result,
        )

    def new_turn(self, *, observer: TurnObserver | None = None) -> TurnDemultiplexer:
        """Create a demultiplexer bound to this client's connection and policy."""
        return TurnDemultiplexer(
            self._connection,
            observer=observer,
            approval_policy=self._approval_policy,
        )

    async def run_turn(
        self,
        thread_id: str,
        text: str,
        *,
        observer: TurnObserver | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Send one user message and process its events until the turn completes.

        Args:
            thread_id: Thread to run the turn on.
            text: User input text.
            observer: Receives structured callbacks while the turn streams.
            timeout: Longest wait for any single turn event.
            cancel_event: Set it to abandon the turn with `CodexCancelledError`.
        """
        turn = self.new_turn(observer=observer)
        await turn.start(
            {"threadId": thread_id, "input": [{"type": "text", "text": text}]},
            timeout=self._request_timeout,
        )
        return await turn.run(timeout=timeout, cancel_event=cancel_event)

    async def interrupt_turn(self, thread_id: str, turn_id: str) -> None:
        """Send best-effort `turn/interrupt` for a running turn."""
        await self.request(TURN_INTERRUPT_METHOD, {"threadId": thread_id, "turnId": turn_id})


def pick_default_model(models: Sequence[ModelInfo]) -> ModelInfo | None:
    """First model flagged as default, else the first listed, else None."""
    for model in models:
        if model.is_default:
            return model
    return models[0] if models else None


def default_stdio_command() -> list[str]:
    """Return default app-server command for stdio mode."""
    from_env = os.getenv("CODEX_APP_SERVER_CMD")
    if from_env:
        return shlex.split(from_env)
    return ["codex", "app-server"]


def default_client_info() -> dict[str, str]:
    return {
        "name": "codex_jsonl_rpc",
        "title": "Codex JSON-lines RPC client",
        "version": __version__,
    }

from __future__ import annotations

import asyncio
import io
from collections.abc import AsyncIterator, Mapping
from typing import Any

import pytest

import codex_jsonl_rpc.client as client_module
from codex_jsonl_rpc.cli import ConsoleObserver, main, parse_args, run_session
from codex_jsonl_rpc.models import CommandApprovalRequest, TurnResult
from codex_jsonl_rpc.transport import Transport


class ChatServer(Transport):
    """Answers the setup requests; each turn echoes the user text."""

    instances: list[ChatServer] = []
    fail_method: str | None = None
    stall_turns = False

    def __init__(self, command: list[str], **kwargs: Any) -> None:
        self.command = command
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        ChatServer.instances.append(self)

    async def connect(self) -> None:
        return None

    def _push(self, *payloads: dict[str, Any]) -> None:
        for payload in payloads:
            self.incoming.put_nowait(payload)

    async def write_message(self, payload: Mapping[str, Any]) -> None:
        message = dict(payload)
        self.sent.append(message)
        method = message.get("method")
        if "id" not in message or method is None:
            return
        if method == self.fail_method:
            self._push({"id": message["id"], "error": {"code": -32000, "message": "no models"}})
            return
        results: dict[str, Any] = {
            "initialize": {"userAgent": "codex/test"},
            "model/list": {"data": [{"id": "gpt-5", "isDefault": True}]},
            "thread/start": {"thread": {"id": "thr-1"}},
            "turn/start": {"turn": {"id": "turn-1"}},
            "turn/interrupt": {},
        }
        self._push({"id": message["id"], "result": results.get(method)})
        if method == "turn/start" and not self.stall_turns:
            text = message["params"]["input"][0]["text"]
            self._push(
                {"method": "item/agentMessage/delta", "params": {"itemId": "m", "delta": f"echo {text}"}},
                {"method": "turn/completed", "params": {"turn": {"id": "turn-1", "status": "completed"}}},
            )
        if method == "turn/interrupt":
            self._push(
                {"method": "turn/completed", "params": {"turn": {"id": "turn-1", "status": "interrupted"}}}
            )

    async def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            payload = await self.incoming.get()
            if payload is None:
                return
            yield payload

    async def close(self) -> None:
        return None


@pytest.fixture
def chat_server(monkeypatch: pytest.MonkeyPatch) -> type[ChatServer]:
    ChatServer.instances = []
    ChatServer.fail_method = None
    ChatServer.stall_turns = False
    monkeypatch.setattr(client_module, "StdioTransport", ChatServer)
    return ChatServer


def test_console_observer_renders_turn() -> None:
    out = io.StringIO()
    observer = ConsoleObserver(out)
    observer.on_item_started({"type": "commandExecution", "command": "ls -la"})
    observer.on_approval(CommandApprovalRequest(request_id=1, command="ls -la"), "accept")
    observer.on_agent_message_delta("m", "Hi")
    observer.on_agent_message_delta("m", " there")
    observer.on_error("boom", {})
    observer.on_turn_completed(TurnResult(status="completed"))

    text = out.getvalue()
    assert "$ ls -la" in text
    assert "[auto-approve] ls -la" in text
    assert "\nagent> Hi there" in text
    assert text.count("agent> ") == 1
    assert "[error] boom" in text
    assert text.endswith("\n")


def test_console_observer_lists_file_changes() -> None:
    out = io.StringIO()
    ConsoleObserver(out).on_item_started(
        {"type": "fileChange", "changes": [{"path": "a.py", "kind": {"type": "update"}}]}
    )
    assert "[update] a.py" in out.getvalue()


def test_parse_args_defaults() -> None:
    args = parse_args([])
    assert args.cmd is None
    assert args.limit == 20
    assert args.approval_policy == "never"
    assert args.timeout == 30.0
    assert not args.decline_approvals


def test_run_session_chats_until_quit(
    chat_server: type[ChatServer],
    capsys: pytest.CaptureFixture[str],
) -> None:
    args = parse_args(["--cmd", "fake-codex app-server"])
    status = asyncio.run(run_session(args, stdin=io.StringIO("hello\n\n/quit\n")))

    assert status == 0
    out = capsys.readouterr().out
    assert "initialized" in out
    assert "* gpt-5" in out
    assert "using: gpt-5" in out
    assert "thread: thr-1" in out
    assert "agent> echo hello" in out

    server = chat_server.instances[0]
    assert server.command == ["fake-codex", "app-server"]
    turn_starts = [m for m in server.sent if m.get("method") == "turn/start"]
    assert len(turn_starts) == 1


def test_run_session_ends_on_eof(chat_server: type[ChatServer]) -> None:
    args = parse_args(["--cmd", "fake-codex"])
    assert asyncio.run(run_session(args, stdin=io.StringIO(""))) == 0


def test_run_session_setup_failure_exits_with_one(
    chat_server: type[ChatServer],
    capsys: pytest.CaptureFixture[str],
) -> None:
    chat_server.fail_method = "model/list"
    args = parse_args(["--cmd", "fake-codex"])
    status = asyncio.run(run_session(args, stdin=io.StringIO("hello\n")))

    assert status == 1
    assert "[error] model/list failed: no models" in capsys.readouterr().err


def test_inactive_turn_is_interrupted(
    chat_server: type[ChatServer],
    capsys: pytest.CaptureFixture[str],
) -> None:
    chat_server.stall_turns = True
    args = parse_args(["--cmd", "fake-codex", "--turn-timeout", "0.05"])
    status = asyncio.run(run_session(args, stdin=io.StringIO("hello\n/quit\n")))

    assert status == 0
    assert "interrupting turn-1" in capsys.readouterr().err
    methods = [m.get("method") for m in chat_server.instances[0].sent]
    assert "turn/interrupt" in methods


def test_main_exits_with_session_status(
    chat_server: type[ChatServer],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("/quit\n"))
    with pytest.raises(SystemExit) as exc_info:
        main(["--cmd", "fake-codex"])
    assert exc_info.value.code == 0

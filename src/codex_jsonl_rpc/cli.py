"""Interactive chat with a Codex app-server child process over stdio.

Setup failures (initialize, model list, thread start) exit with status 1 after
one diagnostic line. Turn failures are reported inline and the session goes on.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import sys
from typing import Any, TextIO

from .client import CodexClient, pick_default_model
from .errors import (
    CodexCapacityError,
    CodexError,
    CodexStreamClosedError,
    CodexTimeoutError,
)
from .models import ApprovalDecision, ApprovalRequest, CommandApprovalRequest, TurnResult
from .turn import TurnDemultiplexer, TurnObserver, auto_approve, auto_decline

QUIT_COMMAND = "/quit"

_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_CYAN = "\033[36m"
_RESET = "\033[0m"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI options."""
    parser = argparse.ArgumentParser(
        prog="codex-jsonl-chat",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server (default: $CODEX_APP_SERVER_CMD or 'codex app-server').",
    )
    parser.add_argument("--model", help="Model id to use instead of the server default.")
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of models to list.",
    )
    parser.add_argument(
        "--sandbox",
        default="workspace-write",
        help="Sandbox mode for the thread.",
    )
    parser.add_argument(
        "--approval-policy",
        default="never",
        help="Server-side approval policy for the thread.",
    )
    parser.add_argument(
        "--decline-approvals",
        action="store_true",
        help="Decline approval requests instead of auto-approving them.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Request timeout in seconds (<=0 disables it).",
    )
    parser.add_argument(
        "--turn-timeout",
        type=float,
        default=600.0,
        help="Turn inactivity timeout in seconds (<=0 disables it).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _normalize_timeout(timeout: float) -> float | None:
    if timeout <= 0:
        return None
    return timeout


class ConsoleObserver(TurnObserver):
    """Render turn events to a terminal."""

    def __init__(self, out: TextIO | None = None) -> None:
        self._out = out if out is not None else sys.stdout
        self._agent_printed = False

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def on_agent_message_delta(self, item_id: str | None, delta: str) -> None:
        if not self._agent_printed:
            self._write("\nagent> ")
            self._agent_printed = True
        self._write(delta)

    def on_reasoning_delta(self, item_id: str | None, delta: str) -> None:
        self._write(f"{_DIM}{delta}{_RESET}")

    def on_command_output_delta(self, item_id: str | None, delta: str) -> None:
        self._write(delta)

    def on_file_change_delta(self, item_id: str | None, delta: str) -> None:
        self._write(delta)

    def on_item_started(self, item: dict[str, Any]) -> None:
        item_type = item.get("type")
        if item_type == "commandExecution":
            self._write(f"\n  {_YELLOW}$ {item.get('command', '')}{_RESET}\n")
        elif item_type == "fileChange":
            changes = item.get("changes")
            for change in changes if isinstance(changes, list) else []:
                if isinstance(change, dict):
                    self._write(
                        f"\n  {_CYAN}[{_change_kind(change)}] {change.get('path', '')}{_RESET}\n"
                    )

    def on_approval(self, request: ApprovalRequest, decision: ApprovalDecision) -> None:
        label = "auto-approve" if decision == "accept" else decision
        if isinstance(request, CommandApprovalRequest):
            self._write(f"\n  {_YELLOW}[{label}] {request.command or ''}{_RESET}\n")
        else:
            self._write(f"\n  {_CYAN}[{label}] file change{_RESET}\n")

    def on_error(self, message: str, params: Any) -> None:
        self._write(f"\n{_RED}[error] {message}{_RESET}\n")

    def on_turn_completed(self, result: TurnResult) -> None:
        if self._agent_printed:
            self._write("\n")


def _change_kind(change: dict[str, Any]) -> str:
    kind = change.get("kind")
    if isinstance(kind, dict):
        kind = kind.get("type")
    return str(kind) if kind else "change"


async def _read_line(stream: TextIO) -> str:
    return await asyncio.to_thread(stream.readline)


async def _run_one_turn(
    client: CodexClient,
    thread_id: str,
    text: str,
    *,
    turn_timeout: float | None,
) -> TurnResult:
    turn: TurnDemultiplexer = client.new_turn(observer=ConsoleObserver())
    await turn.start(
        {"threadId": thread_id, "input": [{"type": "text", "text": text}]},
        timeout=client.request_timeout,
    )
    try:
        return await turn.run(timeout=turn_timeout)
    except CodexTimeoutError:
        turn_id = turn.result.turn_id
        if turn_id is None:
            raise
        print(f"\n[warn] turn inactive; interrupting {turn_id}", file=sys.stderr)
        await client.interrupt_turn(thread_id, turn_id)
        # Drain the interrupted turn so its events don't leak into the next one.
        return await turn.run(timeout=turn_timeout)


async def run_session(args: argparse.Namespace, *, stdin: TextIO | None = None) -> int:
    """Run the setup flow, then the interactive loop. Returns the exit status."""
    input_stream = stdin if stdin is not None else sys.stdin
    command = shlex.split(args.cmd) if args.cmd else None
    client = CodexClient.connect_stdio(
        command=command,
        cwd=os.getcwd(),
        request_timeout=_normalize_timeout(args.timeout),
        approval_policy=auto_decline if args.decline_approvals else auto_approve,
    )
    turn_timeout = _normalize_timeout(args.turn_timeout)

    try:
        await client.start()
        await client.initialize()
        print("initialized")

        models = await client.list_models(limit=args.limit)
        for model in models:
            mark = "* " if model.is_default else "  "
            print(f"{mark}{model.id} ({model.display_name or model.id})")
        chosen = args.model
        if chosen is None:
            default = pick_default_model(models)
            chosen = default.id if default is not None else None
        print(f"\nusing: {chosen or '(server default)'}")

        thread = await client.start_thread(
            chosen,
            approval_policy=args.approval_policy,
            sandbox=args.sandbox,
        )
        print(f"thread: {thread.id}")
    except CodexError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        await client.close()
        return 1

    try:
        while True:
            print("\nyou> ", end="", flush=True)
            line = await _read_line(input_stream)
            if not line:
                break
            text = line.strip()
            if not text:
                continue
            if text == QUIT_COMMAND:
                break

            try:
                await _run_one_turn(client, thread.id, text, turn_timeout=turn_timeout)
            except (CodexStreamClosedError, CodexCapacityError) as exc:
                print(f"\n[error] {exc}", file=sys.stderr)
                return 1
            except CodexError as exc:
                print(f"\n{_RED}[error] {exc}{_RESET}")
        return 0
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        status = asyncio.run(run_session(args))
    except KeyboardInterrupt:
        print("\n[interrupt] session cancelled", file=sys.stderr)
        status = 130
    raise SystemExit(status)

#!/usr/bin/env python3
"""Run a fixed list of prompts through one Codex app-server thread over stdio.

This example demonstrates:
- explicit initialize handshake
- default model selection from `model/list`
- several turns reusing one thread id
- a custom approval policy
"""

from __future__ import annotations

import argparse
import asyncio
import shlex
import sys

from codex_jsonl_rpc import (
    ApprovalDecision,
    ApprovalRequest,
    CodexClient,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
    CommandApprovalRequest,
    pick_default_model,
)

DEFAULT_PROMPTS = [
    "List the files in the current directory.",
    "Summarize what this project does in two sentences.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the scripted example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server, e.g. 'codex app-server'.",
    )
    parser.add_argument(
        "--turn-timeout",
        type=float,
        default=300.0,
        help="Longest wait for any single turn event in seconds.",
    )
    return parser.parse_args()


def read_only_policy(request: ApprovalRequest) -> ApprovalDecision:
    """Allow commands, refuse file changes."""
    if isinstance(request, CommandApprovalRequest):
        print(f"[approve] {request.command}", file=sys.stderr)
        return "accept"
    print("[decline] file change", file=sys.stderr)
    return "decline"


async def run_session(args: argparse.Namespace) -> int:
    """Run every prompt as one turn and print structured output."""
    prompts = args.prompts or DEFAULT_PROMPTS
    command = shlex.split(args.cmd) if args.cmd else None

    try:
        async with CodexClient.connect_stdio(
            command=command,
            approval_policy=read_only_policy,
        ) as client:
            init = await client.initialize()
            print(f"[init] user_agent={init.user_agent or 'unknown'}")

            model = pick_default_model(await client.list_models())
            thread = await client.start_thread(model.id if model is not None else None)

            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                result = await client.run_turn(thread.id, prompt, timeout=args.turn_timeout)
                print(f"[assistant:{index}] {result.agent_text}")
                print(
                    "[meta]"
                    f" thread_id={thread.id}"
                    f" turn_id={result.turn_id}"
                    f" status={result.status}"
                    f" approvals={result.approvals}"
                    f" events={len(result.raw_events)}"
                )
        return 0
    except CodexTimeoutError as exc:
        print(f"[error] timeout: {exc}", file=sys.stderr)
        return 2
    except CodexProtocolError as exc:
        details = f" code={exc.code}" if exc.code is not None else ""
        print(f"[error] protocol:{details} {exc}", file=sys.stderr)
        return 3
    except CodexTransportError as exc:
        print(f"[error] transport: {exc}", file=sys.stderr)
        return 4


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()

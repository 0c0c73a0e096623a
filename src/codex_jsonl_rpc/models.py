from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from .errors import CodexTurnFailedError
from .protocol import RequestId


class InitializeResult(BaseModel):
    """Parsed result for the `initialize` handshake response.

    Attributes:
        user_agent: Server user agent string, if present.
        server_info: Optional server identity/details object.
        raw: Full raw initialize result payload.
    """

    user_agent: str | None = None
    server_info: dict[str, Any] | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ModelInfo(BaseModel):
    """One entry of a `model/list` response."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    display_name: str | None = Field(default=None, alias="displayName")
    is_default: bool = Field(default=False, alias="isDefault")


class ThreadInfo(BaseModel):
    """Thread created by `thread/start`.

    Attributes:
        id: Server thread identifier.
        model: Model the thread runs with, when echoed by the server.
        raw: Full raw `thread/start` result payload.
    """

    id: str
    model: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TurnResult(BaseModel):
    """Outcome of one turn, accumulated by the demultiplexer.

    Attributes:
        turn_id: Turn identifier, when the server reported one.
        status: Final status from the completion notification.
        error: Error message carried by the completion notification.
        agent_text: Agent message deltas concatenated in arrival order.
        reasoning_text: Reasoning deltas concatenated in arrival order.
        command_output: Command output deltas concatenated in arrival order.
        file_diffs: File change deltas concatenated in arrival order.
        agent_messages: Texts of completed agent message items.
        errors: Messages of `error` notifications seen during the turn.
        approvals: Number of server approval requests answered.
        raw_events: Raw inbound messages consumed for the turn.
    """

    turn_id: str | None = None
    status: str = "unknown"
    error: str | None = None
    agent_text: str = ""
    reasoning_text: str = ""
    command_output: str = ""
    file_diffs: str = ""
    agent_messages: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    approvals: int = 0
    raw_events: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.error is not None or self.status == "failed"

    def raise_for_error(self) -> None:
        """Raise `CodexTurnFailedError` when the turn ended in error."""
        if self.failed:
            raise CodexTurnFailedError(
                f"turn {self.status}: {self.error or 'turn failed'}",
                result=self,
            )


#: Reply sent for an approval request. ``accept`` is the reference default.
ApprovalDecision: TypeAlias = Literal["accept", "acceptForSession", "decline", "cancel"]

APPROVAL_DECISIONS: frozenset[str] = frozenset(
    {"accept", "acceptForSession", "decline", "cancel"}
)


@dataclass(slots=True)
class CommandApprovalRequest:
    """Server request asking to approve a command execution."""

    request_id: RequestId
    command: str | None = None
    cwd: str | None = None
    reason: str | None = None
    thread_id: str | None = None
    turn_id: str | None = None
    item_id: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FileChangeApprovalRequest:
    """Server request asking to approve a set of file changes."""

    request_id: RequestId
    reason: str | None = None
    grant_root: str | None = None
    thread_id: str | None = None
    turn_id: str | None = None
    item_id: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


ApprovalRequest: TypeAlias = CommandApprovalRequest | FileChangeApprovalRequest

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypeAlias

# Client -> server requests.
INITIALIZE_METHOD = "initialize"
MODEL_LIST_METHOD = "model/list"
THREAD_START_METHOD = "thread/start"
TURN_START_METHOD = "turn/start"
TURN_INTERRUPT_METHOD = "turn/interrupt"

# Client -> server notifications.
INITIALIZED_METHOD = "initialized"

# Server -> client notifications.
TURN_STARTED_METHOD = "turn/started"
ITEM_STARTED_METHOD = "item/started"
ITEM_COMPLETED_METHOD = "item/completed"
AGENT_MESSAGE_DELTA_METHOD = "item/agentMessage/delta"
REASONING_SUMMARY_DELTA_METHOD = "item/reasoning/summaryTextDelta"
REASONING_TEXT_DELTA_METHOD = "item/reasoning/textDelta"
COMMAND_OUTPUT_DELTA_METHOD = "item/commandExecution/outputDelta"
FILE_CHANGE_OUTPUT_DELTA_METHOD = "item/fileChange/outputDelta"
ERROR_METHOD = "error"

# Server -> client requests that expect a reply.
COMMAND_APPROVAL_METHOD = "item/commandExecution/requestApproval"
FILE_CHANGE_APPROVAL_METHOD = "item/fileChange/requestApproval"

APPROVAL_METHODS = frozenset({COMMAND_APPROVAL_METHOD, FILE_CHANGE_APPROVAL_METHOD})

# Notification method aliases that may signal turn completion.
TURN_COMPLETED_METHODS = frozenset(
    {
        "turn/completed",
        "turn.completed",
        "turnCompleted",
    }
)

# Notification method aliases that may signal turn failure.
TURN_FAILED_METHODS = frozenset(
    {
        "turn/error",
        "turn.failed",
        "turn/failed",
        "turnFailed",
        "turn/errored",
    }
)

# JSON-RPC error code used when answering a server request the client cannot serve.
METHOD_NOT_FOUND = -32601

RequestId: TypeAlias = int | str


@dataclass(frozen=True, slots=True)
class Response:
    """Reply to a request this client sent."""

    id: RequestId
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class Notification:
    """Fire-and-forget message; never answered."""

    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "params": self.params}


@dataclass(frozen=True, slots=True)
class ServerRequest:
    """Request originated by the app-server; the client owes it exactly one reply."""

    id: RequestId
    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "id": self.id, "params": self.params}


Message: TypeAlias = Response | Notification | ServerRequest
InboundEvent: TypeAlias = Notification | ServerRequest


def make_request(
    request_id: int,
    method: str,
    params: Any = None,
) -> dict[str, Any]:
    """Build a request envelope."""
    return {
        "method": method,
        "id": request_id,
        "params": params if params is not None else {},
    }


def make_notification(method: str, params: Any = None) -> dict[str, Any]:
    """Build a notification envelope (no id, no reply expected)."""
    return {
        "method": method,
        "params": params if params is not None else {},
    }


def make_result_response(request_id: RequestId, result: Any) -> dict[str, Any]:
    """Build a success response envelope."""
    return {"id": request_id, "result": result}


def make_error_response(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build an error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"id": request_id, "error": error}


def extract_error(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return the error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def error_message(error: Any, default: str = "unknown error") -> str:
    """Best-effort human-readable message from an error object."""
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    if isinstance(error, str) and error:
        return error
    return default


def classify_message(payload: Any) -> Message | None:
    """Classify one decoded message.

    `method` without `id` is a notification, `id` without `method` a
    response, both a server request. Anything else returns None.
    """
    if not isinstance(payload, dict):
        return None

    method = payload.get("method")
    has_method = isinstance(method, str)
    request_id = payload.get("id")
    has_id = isinstance(request_id, (int, str)) and not isinstance(request_id, bool)

    if has_method and has_id:
        return ServerRequest(id=request_id, method=method, params=payload.get("params"))
    if has_method:
        return Notification(method=method, params=payload.get("params"))
    if has_id:
        error = extract_error(payload)
        if error is None and payload.get("error") is not None:
            error = {"message": str(payload["error"])}
        return Response(id=request_id, result=payload.get("result"), error=error)
    return None

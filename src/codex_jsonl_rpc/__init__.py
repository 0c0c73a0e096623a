__version__ = "0.1.0"

from .client import CodexClient, default_stdio_command, pick_default_model
from .connection import DEFAULT_EVENT_CAPACITY, RpcConnection
from .errors import (
    CodexCancelledError,
    CodexCapacityError,
    CodexError,
    CodexProtocolError,
    CodexStreamClosedError,
    CodexTimeoutError,
    CodexTransportError,
    CodexTurnFailedError,
)
from .ids import RequestIdAllocator
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    CommandApprovalRequest,
    FileChangeApprovalRequest,
    InitializeResult,
    ModelInfo,
    ThreadInfo,
    TurnResult,
)
from .protocol import Notification, Response, ServerRequest, classify_message
from .transport import (
    DEFAULT_LINE_LIMIT,
    StdioTransport,
    StreamTransport,
    Transport,
    WebSocketTransport,
)
from .turn import (
    TurnDemultiplexer,
    TurnObserver,
    TurnState,
    auto_approve,
    auto_decline,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalRequest",
    "CodexCancelledError",
    "CodexCapacityError",
    "CodexClient",
    "CodexError",
    "CodexProtocolError",
    "CodexStreamClosedError",
    "CodexTimeoutError",
    "CodexTransportError",
    "CodexTurnFailedError",
    "CommandApprovalRequest",
    "DEFAULT_EVENT_CAPACITY",
    "DEFAULT_LINE_LIMIT",
    "FileChangeApprovalRequest",
    "InitializeResult",
    "ModelInfo",
    "Notification",
    "RequestIdAllocator",
    "Response",
    "RpcConnection",
    "ServerRequest",
    "StdioTransport",
    "StreamTransport",
    "ThreadInfo",
    "Transport",
    "TurnDemultiplexer",
    "TurnObserver",
    "TurnResult",
    "TurnState",
    "WebSocketTransport",
    "auto_approve",
    "auto_decline",
    "classify_message",
    "default_stdio_command",
    "pick_default_model",
]

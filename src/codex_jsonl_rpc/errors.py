from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import TurnResult


class CodexError(Exception):
    """Base exception for the codex-jsonl-rpc package."""


class CodexTransportError(CodexError):
    """Raised when the underlying transport fails or disconnects unexpectedly."""


class CodexStreamClosedError(CodexTransportError):
    """Raised when the inbound stream ends while a caller still waits on it."""


class CodexTimeoutError(CodexError):
    """Raised when a response or turn wait exceeds its timeout."""


class CodexCancelledError(CodexError):
    """Raised when a response or turn wait is cancelled by the caller."""


class CodexCapacityError(CodexError):
    """Raised when the inbound event queue overflows its configured capacity."""


class CodexProtocolError(CodexError):
    """Raised when a response or the app-server protocol reports an error."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class CodexTurnFailedError(CodexProtocolError):
    """Raised by `TurnResult.raise_for_error()` for a turn that ended in error."""

    def __init__(self, message: str, *, result: TurnResult) -> None:
        super().__init__(message)
        self.result = result

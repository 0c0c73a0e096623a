from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import websockets

from .errors import CodexTransportError

logger = logging.getLogger(__name__)

# Streaming deltas and embedded diffs can make single lines several MiB long.
DEFAULT_LINE_LIMIT = 16 * 1024 * 1024

_PREVIEW_CHARS = 200


class Transport(ABC):
    """Abstract newline-delimited JSON message transport."""

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources."""
        raise NotImplementedError

    @abstractmethod
    async def write_message(self, payload: Mapping[str, Any]) -> None:
        """Send one JSON-serializable message."""
        raise NotImplementedError

    @abstractmethod
    def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded inbound messages until the peer goes away.

        Malformed input is dropped; it never ends the iteration.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError


def encode_message(payload: Mapping[str, Any]) -> bytes:
    """Serialize one message as a single newline-terminated UTF-8 line."""
    return (json.dumps(dict(payload), separators=(",", ":")) + "\n").encode("utf-8")


def decode_line(line: bytes | str) -> dict[str, Any] | None:
    """Decode one JSON object line, returning None for anything malformed."""
    try:
        text = line.decode("utf-8") if isinstance(line, (bytes, bytearray)) else line
    except UnicodeDecodeError:
        logger.debug("dropping inbound line with invalid UTF-8")
        return None
    text = text.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("dropping malformed inbound line: %.*s", _PREVIEW_CHARS, text)
        return None
    if not isinstance(payload, dict):
        logger.debug("dropping non-object inbound message: %.*s", _PREVIEW_CHARS, text)
        return None
    return payload


class StreamTransport(Transport):
    """JSON-lines transport over an asyncio stream reader/writer pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader | None = None,
        writer: Any = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        if self._reader is None or self._writer is None:
            raise CodexTransportError("stream transport has no reader/writer attached")

    async def write_message(self, payload: Mapping[str, Any]) -> None:
        """Write one JSON line; concurrent writers never interleave."""
        if self._writer is None:
            raise CodexTransportError("transport is not connected")
        data = encode_message(payload)
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except Exception as exc:
                raise CodexTransportError("failed writing to transport") from exc

    async def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded JSON objects until EOF or a read error."""
        if self._reader is None:
            raise CodexTransportError("transport is not connected")
        reader = self._reader
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                # StreamReader discards the oversized chunk before raising.
                logger.warning("dropping inbound line longer than the stream limit")
                continue
            except (ConnectionError, OSError) as exc:
                logger.warning("inbound stream failed: %s", exc)
                return
            if not line:
                return
            payload = decode_line(line)
            if payload is not None:
                yield payload

    async def close(self) -> None:
        writer = self._writer
        self._writer = None
        if writer is None:
            return
        try:
            writer.close()
        except Exception as exc:  # pragma: no cover
            logger.debug("error closing writer: %s", exc)


class StdioTransport(StreamTransport):
    """JSON-lines transport over a child process stdin/stdout pipe."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        line_limit: int = DEFAULT_LINE_LIMIT,
        capture_stderr: bool = False,
    ) -> None:
        """Configure stdio transport.

        Args:
            command: Command argv used to start the app-server process.
            cwd: Optional subprocess working directory; inherits the parent's.
            env: Optional environment for the subprocess.
            connect_timeout: Timeout for subprocess creation.
            line_limit: Longest inbound line accepted, in bytes.
            capture_stderr: Discard child stderr instead of inheriting it.
        """
        if not command:
            raise ValueError("stdio command must not be empty")
        super().__init__()
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._connect_timeout = connect_timeout
        self._line_limit = line_limit
        self._capture_stderr = capture_stderr
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def returncode(self) -> int | None:
        """Exit status of the child, or None while it runs (or before start)."""
        return self._proc.returncode if self._proc is not None else None

    async def connect(self) -> None:
        """Start subprocess if not already running."""
        if self._proc is not None:
            return
        try:
            self._proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *self._command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL if self._capture_stderr else None,
                    cwd=self._cwd,
                    env=self._env,
                    limit=self._line_limit,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise CodexTransportError(
                f"failed to start stdio transport command: {self._command!r}"
                f" ({exc.__class__.__name__}: {exc})"
            ) from exc
        self._reader = self._proc.stdout
        self._writer = self._proc.stdin
        logger.debug("started %r (pid=%s)", self._command, self._proc.pid)

    async def close(self) -> None:
        """Close stdin, then reap the child, escalating to terminate/kill."""
        if self._proc is None:
            return

        proc = self._proc
        self._proc = None
        await super().close()

        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=2.0)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
        logger.debug("child %r exited with %s", self._command, proc.returncode)


class WebSocketTransport(Transport):
    """JSON message transport over a websocket, one object per text frame."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure websocket transport.

        Args:
            url: Websocket endpoint URL.
            headers: Optional request headers.
            connect_timeout: Timeout for websocket handshake.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._socket: Any = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open websocket if not already connected."""
        if self._socket is not None:
            return
        try:
            self._socket = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                    max_size=DEFAULT_LINE_LIMIT,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise CodexTransportError(
                "failed to connect websocket transport: "
                f"{self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def write_message(self, payload: Mapping[str, Any]) -> None:
        """Send one JSON text frame over websocket."""
        if self._socket is None:
            raise CodexTransportError("websocket transport is not connected")
        async with self._write_lock:
            try:
                await self._socket.send(json.dumps(dict(payload), separators=(",", ":")))
            except Exception as exc:
                raise CodexTransportError("failed writing to websocket transport") from exc

    async def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded frames until the socket closes."""
        if self._socket is None:
            raise CodexTransportError("websocket transport is not connected")
        socket = self._socket
        while True:
            try:
                frame = await socket.recv()
            except websockets.ConnectionClosed:
                return
            payload = decode_line(frame)
            if payload is not None:
                yield payload

    async def close(self) -> None:
        """Close websocket connection."""
        if self._socket is None:
            return
        socket = self._socket
        self._socket = None
        try:
            await socket.close()
        except Exception as exc:
            logger.debug("error closing websocket: %s", exc)

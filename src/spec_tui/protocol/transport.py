"""Byte transports carrying JSON-RPC frames to and from the agent."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Protocol, Sequence

from ..utils import sanitize_environment
from .errors import ProcessTerminatedError, ProtocolDecodeError, ProtocolUnavailableError
from .messages import PROTOCOL_VERSION, encode_message

logger = logging.getLogger(__name__)

Framing = Literal["newline", "content-length"]

# Tool results can be large; the default 64 KiB line limit is not enough.
_STREAM_LIMIT = 2**24


class Transport(Protocol):
    """One live connection to the agent.

    ``receive`` returns ``None`` once the agent side is gone.
    """

    async def start(self) -> None:
        ...

    async def send(self, payload: bytes) -> None:
        ...

    async def receive(self) -> bytes | None:
        ...

    async def close(self) -> None:
        ...

    @property
    def returncode(self) -> int | None:
        ...


def frame_payload(payload: bytes, framing: Framing) -> bytes:
    if framing == "content-length":
        return f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii") + payload
    return payload + b"\n"


class StdioTransport:
    """Spawn the agent and talk to it over stdin/stdout."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        framing: Framing = "newline",
        env: dict[str, str] | None = None,
        close_timeout: float = 2.0,
        limit: int = _STREAM_LIMIT,
    ) -> None:
        if not argv:
            raise ValueError("Agent command must not be empty")
        if framing not in ("newline", "content-length"):
            raise ValueError(f"Unknown framing: {framing}")
        self._argv = [str(part) for part in argv]
        self._cwd = cwd
        self._framing: Framing = framing
        self._env = env
        self._close_timeout = close_timeout
        self._limit = limit
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=50)
        self._close_lock = asyncio.Lock()
        self._closed = False

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def framing(self) -> Framing:
        return self._framing

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("Transport already started")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._cwd) if self._cwd is not None else None,
                env=sanitize_environment(self._env),
                limit=self._limit,
            )
        except OSError as exc:
            raise ProtocolUnavailableError(f"Failed to start agent {self._argv[0]!r}: {exc}") from exc
        self._stderr_task = asyncio.create_task(self._pump_stderr(self._process.stderr))
        logger.info("Agent started", extra={"argv": self._argv, "pid": self._process.pid})

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise ProtocolUnavailableError("Transport not started")
        return self._process

    async def send(self, payload: bytes) -> None:
        process = self._require_process()
        if self._closed or process.stdin is None:
            raise ProcessTerminatedError(returncode=process.returncode)
        try:
            process.stdin.write(frame_payload(payload, self._framing))
            await process.stdin.drain()
        except ConnectionError as exc:
            raise ProcessTerminatedError(returncode=process.returncode) from exc

    async def receive(self) -> bytes | None:
        process = self._require_process()
        stdout = process.stdout
        if stdout is None:
            return None
        if self._framing == "content-length":
            return await self._receive_content_length(stdout)

        while True:
            line = await self._read_line(stdout)
            if not line:
                return None
            line = line.strip()
            if line:
                return line

    async def _read_line(self, stdout: asyncio.StreamReader) -> bytes:
        """Read one line; an empty result means EOF."""

        try:
            return await stdout.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            return exc.partial
        except asyncio.LimitOverrunError as exc:
            dropped = await self._discard_line(stdout, exc.consumed)
            raise ProtocolDecodeError(f"Frame exceeds {self._limit} bytes ({dropped} dropped)") from exc

    async def _discard_line(self, stdout: asyncio.StreamReader, consumed: int) -> int:
        dropped = 0
        while True:
            dropped += len(await stdout.readexactly(consumed))
            try:
                return dropped + len(await stdout.readuntil(b"\n"))
            except asyncio.IncompleteReadError as exc:
                return dropped + len(exc.partial)
            except asyncio.LimitOverrunError as exc:
                consumed = exc.consumed

    async def _receive_content_length(self, stdout: asyncio.StreamReader) -> bytes | None:
        length: int | None = None
        headers = 0
        while True:
            header = await self._read_line(stdout)
            if not header:
                return None
            header = header.strip()
            if not header:
                if headers == 0:
                    continue
                break
            headers += 1
            name, _, value = header.decode("ascii", errors="replace").partition(":")
            if name.strip().lower() == "content-length":
                try:
                    length = int(value.strip())
                except ValueError as exc:
                    raise ProtocolDecodeError(f"Invalid Content-Length header: {value.strip()!r}") from exc

        if length is None:
            raise ProtocolDecodeError("Frame has no Content-Length header")
        if length < 0:
            raise ProtocolDecodeError(f"Negative Content-Length: {length}")
        try:
            return await stdout.readexactly(length)
        except asyncio.IncompleteReadError:
            return None

    async def _pump_stderr(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # over the limit; readline already dropped it
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("Agent stderr", extra={"line": text})

    async def close(self) -> None:
        async with self._close_lock:
            process = self._process
            if process is None or self._closed:
                return
            self._closed = True
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._close_timeout)
            except asyncio.TimeoutError:
                logger.warning("Agent did not exit, killing it", extra={"pid": process.pid})
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

            if self._stderr_task is not None:
                try:
                    await asyncio.wait_for(self._stderr_task, timeout=self._close_timeout)
                except asyncio.TimeoutError:
                    logger.debug("Agent stderr still open after exit", extra={"pid": process.pid})
            logger.info("Agent stopped", extra={"pid": process.pid, "returncode": process.returncode})


Responder = Callable[[dict[str, Any]], Iterable[dict[str, Any]] | None]


class MemoryTransport:
    """In-process transport double.

    Every frame the client sends is decoded into ``sent``; an optional
    ``responder`` may answer it with zero or more messages. Tests can also
    inject frames directly with :meth:`feed` and simulate the agent exiting
    with :meth:`close_remote`.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self._responder = responder
        self._inbound: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._returncode: int | None = None
        self._eof = False
        self.sent: list[dict[str, Any]] = []
        self.started = False
        self.closed = False

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def methods(self) -> list[str | None]:
        return [message.get("method") for message in self.sent]

    async def start(self) -> None:
        self.started = True

    async def send(self, payload: bytes) -> None:
        if self.closed or self._eof:
            raise ProcessTerminatedError(returncode=self._returncode)
        message = json.loads(payload)
        self.sent.append(message)
        if self._responder is not None:
            for reply in self._responder(message) or ():
                self.feed(reply)

    def feed(self, message: dict[str, Any] | bytes | str) -> None:
        if isinstance(message, dict):
            frame = encode_message(message)
        elif isinstance(message, str):
            frame = message.encode("utf-8")
        else:
            frame = message
        self._inbound.put_nowait(frame)

    def close_remote(self, returncode: int = 0) -> None:
        self._returncode = returncode
        self._eof = True
        self._inbound.put_nowait(None)

    async def receive(self) -> bytes | None:
        frame = await self._inbound.get()
        if frame is None:
            # keep reporting EOF to later readers
            self._inbound.put_nowait(None)
        return frame

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._returncode is None:
            self._returncode = 0
        self._inbound.put_nowait(None)


class ScriptedAgent:
    """Transport factory whose :class:`MemoryTransport` instances behave like a compliant agent.

    ``on_call`` produces the replies to each ``tools/call`` request; without
    it calls are left unanswered.
    """

    def __init__(
        self,
        *,
        protocol_version: str = PROTOCOL_VERSION,
        tools: Iterable[str] = ("speckit.specify", "speckit.clarify", "speckit.plan", "speckit.tasks", "speckit.implement"),
        on_call: Callable[[dict[str, Any]], list[dict[str, Any]]] | None = None,
        reject_initialize: bool = False,
    ) -> None:
        self.protocol_version = protocol_version
        self.tools = list(tools)
        self.on_call = on_call
        self.reject_initialize = reject_initialize
        self.transports: list[MemoryTransport] = []

    def __call__(self) -> MemoryTransport:
        transport = MemoryTransport(self.respond)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> MemoryTransport:
        return self.transports[-1]

    def respond(self, message: dict[str, Any]) -> list[dict[str, Any]]:
        method = message.get("method")
        request_id = message.get("id")
        if method == "initialize":
            if self.reject_initialize:
                return [{"jsonrpc": "2.0", "id": request_id, "error": {"code": -32602, "message": "Unsupported client"}}]
            result = {
                "protocolVersion": self.protocol_version,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "scripted-agent", "version": "1.0"},
            }
            return [{"jsonrpc": "2.0", "id": request_id, "result": result}]
        if method == "tools/list":
            tools = [{"name": name, "inputSchema": {"type": "object"}} for name in self.tools]
            return [{"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools}}]
        if method == "tools/call" and self.on_call is not None:
            return self.on_call(message)
        if method == "shutdown":
            return [{"jsonrpc": "2.0", "id": request_id, "result": None}]
        return []


__all__ = [
    "Framing",
    "MemoryTransport",
    "Responder",
    "ScriptedAgent",
    "StdioTransport",
    "Transport",
    "frame_payload",
]

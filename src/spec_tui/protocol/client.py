"""JSON-RPC client session with the agent process.

The client owns one transport at a time. A background reader task
demultiplexes incoming frames: responses are matched to outstanding
requests by id and ``notifications/progress`` to tool calls by progress
token. Tool calls are exposed as :class:`ToolCall` streams of typed events.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Iterable, Mapping

from pydantic import ValidationError

from .. import __version__
from .errors import (
    HandshakeRejectedError,
    ProcessTerminatedError,
    ProtocolDecodeError,
    ProtocolError,
    ProtocolTimeoutError,
    ProtocolUnavailableError,
    RemoteError,
)
from .messages import (
    PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    ErrorCode,
    InitializeResult,
    JsonRpcMessage,
    ProgressParams,
    ToolDefinition,
    ToolResult,
    ToolsListResult,
    decode_message,
    encode_message,
    notification,
    request,
)
from .transport import Transport

logger = logging.getLogger(__name__)

CANCEL_METHOD = "$/cancelRequest"
PROGRESS_METHOD = "notifications/progress"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ToolProgress:
    request_id: int
    message: str | None
    progress: float
    total: float | None = None

    @property
    def ratio(self) -> float | None:
        if not self.total:
            return None
        return min(max(self.progress / self.total, 0.0), 1.0)


@dataclass(frozen=True, slots=True)
class ToolCompleted:
    request_id: int
    result: ToolResult


@dataclass(frozen=True, slots=True)
class ToolFailed:
    request_id: int
    error: ProtocolError


@dataclass(frozen=True, slots=True)
class ToolCancelled:
    request_id: int


ToolEvent = ToolProgress | ToolCompleted | ToolFailed | ToolCancelled
TERMINAL_EVENTS = (ToolCompleted, ToolFailed, ToolCancelled)


class ToolCall:
    """Async iterator over the events of one ``tools/call`` request.

    Yields any number of :class:`ToolProgress` followed by exactly one
    terminal event, then stops.
    """

    def __init__(self, request_id: int, name: str, client: "ProtocolClient") -> None:
        self.request_id = request_id
        self.name = name
        self._client = client
        self._queue: asyncio.Queue[ToolEvent] = asyncio.Queue()
        self._finished = False
        self._drained = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def finished(self) -> bool:
        return self._finished

    def push(self, event: ToolEvent) -> bool:
        """Queue ``event`` unless the stream already has its terminal event."""

        if self._finished:
            return False
        if isinstance(event, TERMINAL_EVENTS):
            self._finished = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._queue.put_nowait(event)
        return True

    def __aiter__(self) -> "ToolCall":
        return self

    async def __anext__(self) -> ToolEvent:
        if self._drained:
            raise StopAsyncIteration
        event = await self._queue.get()
        if isinstance(event, TERMINAL_EVENTS):
            self._drained = True
        return event

    def cancel(self) -> bool:
        return self._client.cancel(self.request_id)

    async def result(self) -> ToolResult:
        """Consume the stream and return the tool result, raising on failure."""

        async for event in self:
            if isinstance(event, ToolCompleted):
                return event.result
            if isinstance(event, ToolFailed):
                raise event.error
            if isinstance(event, ToolCancelled):
                raise ProtocolError(f"Tool call {self.request_id} was cancelled")
        raise ProtocolError(f"Tool call {self.request_id} ended without a result")


@dataclass(slots=True)
class _Pending:
    method: str
    future: asyncio.Future | None = None
    call: ToolCall | None = None


# Abandoned request ids remembered so late replies are recognised.
_RETIRED_LIMIT = 256


class ProtocolClient:
    """Drive the JSON-RPC lifecycle against an agent spawned by ``transport_factory``."""

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        *,
        client_name: str = "spec-tui",
        client_version: str = __version__,
        protocol_version: str = PROTOCOL_VERSION,
        supported_versions: Iterable[str] = SUPPORTED_PROTOCOL_VERSIONS,
        request_timeout: float = 30.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._transport_factory = transport_factory
        self._client_name = client_name
        self._client_version = client_version
        self._protocol_version = protocol_version
        self._supported_versions = frozenset(supported_versions)
        self._request_timeout = request_timeout
        self._shutdown_timeout = shutdown_timeout

        self._transport: Transport | None = None
        self._reader: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, _Pending] = {}
        self._retired: deque[int] = deque(maxlen=_RETIRED_LIMIT)
        self._state = SessionState.UNINITIALIZED
        self._server: InitializeResult | None = None
        self._tools: list[ToolDefinition] = []
        self._write_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self.decode_errors = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def server(self) -> InitializeResult | None:
        return self._server

    @property
    def tools(self) -> list[ToolDefinition]:
        return list(self._tools)

    @property
    def pending_ids(self) -> list[int]:
        return sorted(self._pending)

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> InitializeResult:
        """Perform the handshake, spawning the agent when no connection is open."""

        if self._state is SessionState.READY and self._server is not None:
            return self._server
        if self._state in (SessionState.INITIALIZING, SessionState.SHUTTING_DOWN):
            raise ProtocolUnavailableError(f"Cannot initialize while session is {self._state.value}")

        if self._transport is None:
            await self._open()
        self._state = SessionState.INITIALIZING
        params = {
            "protocolVersion": self._protocol_version,
            "capabilities": {},
            "clientInfo": {"name": self._client_name, "version": self._client_version},
        }
        try:
            raw = await self._request("initialize", params)
            result = InitializeResult.model_validate(raw)
        except RemoteError as exc:
            await self._abort()
            raise HandshakeRejectedError(f"Agent rejected initialize: {exc.message}") from exc
        except ValidationError as exc:
            await self._abort()
            raise HandshakeRejectedError(f"Invalid initialize result: {exc}") from exc
        except ProtocolError:
            await self._abort()
            raise

        if result.protocol_version not in self._supported_versions:
            await self._abort()
            raise HandshakeRejectedError(f"Unsupported protocol version: {result.protocol_version}")

        await self._send(notification("notifications/initialized"))
        self._server = result
        self._state = SessionState.READY
        logger.info(
            "Protocol session ready",
            extra={
                "protocol_version": result.protocol_version,
                "server_name": result.server_info.name if result.server_info else None,
            },
        )
        return result

    async def list_tools(self) -> list[ToolDefinition]:
        self._require_ready()
        raw = await self._request("tools/list")
        try:
            listing = ToolsListResult.model_validate(raw or {})
        except ValidationError as exc:
            raise ProtocolDecodeError(f"Invalid tools/list result: {exc}") from exc
        self._tools = list(listing.tools)
        logger.debug("Tool catalog loaded", extra={"tools": [tool.name for tool in self._tools]})
        return list(self._tools)

    async def call_tool(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> ToolCall:
        """Send ``tools/call`` and return the event stream for it.

        When ``timeout`` elapses before a terminal event, the stream ends with
        :class:`ToolFailed` carrying :class:`ProtocolTimeoutError` and the
        agent is asked to cancel the request.
        """

        self._require_ready()
        request_id = next(self._ids)
        call = ToolCall(request_id, name, self)
        self._pending[request_id] = _Pending("tools/call", call=call)
        params = {
            "name": name,
            "arguments": dict(arguments or {}),
            "_meta": {"progressToken": request_id},
        }
        try:
            await self._send(request(request_id, "tools/call", params))
        except ProtocolError:
            self._pending.pop(request_id, None)
            raise

        if timeout is not None and not call.finished:
            loop = asyncio.get_running_loop()
            call._timer = loop.call_later(timeout, self._expire, request_id, timeout)
        logger.info("Tool call sent", extra={"request_id": request_id, "tool": name})
        return call

    def cancel(self, request_id: int) -> bool:
        """Abandon ``request_id`` locally and notify the agent in the background.

        Returns ``False`` when the request is unknown or already cancelled.
        The id is retired so a late response is recognised and dropped.
        """

        entry = self._retire(request_id)
        if entry is None:
            return False
        if entry.call is not None:
            entry.call.push(ToolCancelled(request_id))
        if entry.future is not None and not entry.future.done():
            entry.future.set_exception(ProtocolError(f"Request {request_id} was cancelled"))
        logger.info("Request cancelled", extra={"request_id": request_id, "rpc_method": entry.method})
        self._spawn(self._send_cancel(request_id))
        return True

    async def flush(self) -> None:
        """Wait for background notifications (cancels) to be written."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Send ``shutdown`` then ``exit`` and close the transport whatever the agent answers."""

        if self._transport is None:
            self._state = SessionState.CLOSED
            return

        self._state = SessionState.SHUTTING_DOWN
        try:
            await self._request("shutdown", timeout=self._shutdown_timeout)
        except ProtocolError as exc:
            logger.info("Shutdown request did not complete", extra={"error": str(exc)})
        try:
            await self._send(notification("exit"))
        except ProtocolError as exc:
            logger.debug("Exit notification not delivered", extra={"error": str(exc)})

        await self.flush()
        await self._close_transport()
        self._state = SessionState.CLOSED
        self._tools = []
        self._server = None

    # ------------------------------------------------------------------ internals

    def _require_ready(self) -> None:
        if self._state is not SessionState.READY:
            raise ProtocolUnavailableError(f"Protocol session is {self._state.value}, not ready")

    def _spawn(self, coroutine: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _open(self) -> None:
        transport = self._transport_factory()
        await transport.start()
        self._transport = transport
        self._reader = asyncio.create_task(self._read_loop(transport), name="spec-tui-protocol-reader")

    async def _abort(self) -> None:
        await self._close_transport()
        self._state = SessionState.CLOSED

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        reader, self._reader = self._reader, None
        if transport is not None:
            await transport.close()
        if reader is not None and reader is not asyncio.current_task():
            try:
                await asyncio.wait_for(reader, timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Protocol reader did not stop after close")
        self._fail_pending(None)

    async def _send(self, payload: dict[str, Any]) -> None:
        transport = self._transport
        if transport is None:
            raise ProtocolUnavailableError("No agent connection")
        async with self._write_lock:
            await transport.send(encode_message(payload))
        logger.debug("Sent message", extra={"rpc_method": payload.get("method"), "request_id": payload.get("id")})

    async def _send_cancel(self, request_id: int) -> None:
        try:
            await self._send(notification(CANCEL_METHOD, {"id": request_id}))
        except ProtocolError as exc:
            logger.debug("Cancel notification not delivered", extra={"request_id": request_id, "error": str(exc)})

    async def _request(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _Pending(method, future=future)
        try:
            await self._send(request(request_id, method, params))
        except ProtocolError:
            self._pending.pop(request_id, None)
            raise

        limit = timeout if timeout is not None else self._request_timeout
        try:
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError as exc:
            self._retire(request_id)
            await self._send_cancel(request_id)
            raise ProtocolTimeoutError(f"{method} timed out after {limit:g}s") from exc
        except asyncio.CancelledError:
            self._pending.pop(request_id, None)
            raise

    def _retire(self, request_id: int) -> _Pending | None:
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            self._retired.append(request_id)
        return entry

    def _expire(self, request_id: int, timeout: float) -> None:
        entry = self._pending.get(request_id)
        if entry is None or entry.call is None:
            return
        self._retire(request_id)
        entry.call.push(ToolFailed(request_id, ProtocolTimeoutError(f"Tool call timed out after {timeout:g}s")))
        logger.warning("Tool call timed out", extra={"request_id": request_id, "timeout": timeout})
        self._spawn(self._send_cancel(request_id))

    def _fail_pending(self, returncode: int | None) -> None:
        pending, self._pending = self._pending, {}
        for request_id, entry in pending.items():
            error = ProcessTerminatedError(returncode=returncode)
            if entry.future is not None and not entry.future.done():
                entry.future.set_exception(error)
            if entry.call is not None:
                entry.call.push(ToolFailed(request_id, error))

    def _record_decode_error(self, error: Exception) -> None:
        self.decode_errors += 1
        logger.warning("Dropping malformed frame", extra={"error": str(error), "decode_errors": self.decode_errors})

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                try:
                    frame = await transport.receive()
                except ProtocolDecodeError as exc:
                    self._record_decode_error(exc)
                    continue
                if frame is None:
                    break
                try:
                    message = decode_message(frame)
                except ProtocolDecodeError as exc:
                    self._record_decode_error(exc)
                    continue
                await self._dispatch(message)
        except (OSError, ValueError) as exc:
            logger.error("Protocol reader failed", extra={"error": str(exc)})
        finally:
            await self._connection_lost(transport)

    async def _connection_lost(self, transport: Transport) -> None:
        await transport.close()
        returncode = transport.returncode
        if self._transport is transport:
            self._transport = None
            self._reader = None
            self._state = SessionState.CLOSED
            self._tools = []
            self._server = None
            logger.warning(
                "Agent connection lost",
                extra={"returncode": returncode, "pending": len(self._pending)},
            )
        self._fail_pending(returncode)

    async def _dispatch(self, message: JsonRpcMessage) -> None:
        if message.is_response:
            self._resolve(message)
        elif message.method == PROGRESS_METHOD:
            self._progress(message)
        elif message.id is not None:
            await self._answer(message)
        else:
            logger.debug("Ignoring notification", extra={"rpc_method": message.method})

    def _resolve(self, message: JsonRpcMessage) -> None:
        request_id = message.id
        entry = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if entry is None:
            if request_id in self._retired:
                logger.debug("Discarding late response", extra={"request_id": request_id})
            else:
                logger.warning("Discarding response for unknown request", extra={"request_id": request_id})
            return

        error = None
        if message.error is not None:
            error = RemoteError(message.error.code, message.error.message, message.error.data)

        if entry.future is not None:
            if entry.future.done():
                return
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(message.result)
        elif entry.call is not None:
            if error is not None:
                entry.call.push(ToolFailed(request_id, error))
                return
            try:
                result = ToolResult.model_validate(message.result or {})
            except ValidationError as exc:
                entry.call.push(ToolFailed(request_id, ProtocolDecodeError(f"Invalid tool result: {exc}")))
                return
            entry.call.push(ToolCompleted(request_id, result))

    def _progress(self, message: JsonRpcMessage) -> None:
        try:
            params = ProgressParams.model_validate(message.params or {})
        except ValidationError as exc:
            self._record_decode_error(exc)
            return
        token = params.progress_token
        entry = self._pending.get(token) if isinstance(token, int) else None
        if entry is None or entry.call is None:
            if token not in self._retired:
                logger.warning("Discarding progress for unknown token", extra={"progress_token": token})
            return
        entry.call.push(ToolProgress(token, params.message, params.progress, params.total))

    async def _answer(self, message: JsonRpcMessage) -> None:
        """Reply to agent-initiated requests; only ``ping`` is supported."""

        if message.method == "ping":
            reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message.id, "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message.id,
                "error": {"code": int(ErrorCode.METHOD_NOT_FOUND), "message": f"Method not found: {message.method}"},
            }
        try:
            await self._send(reply)
        except ProtocolError as exc:
            logger.debug("Reply not delivered", extra={"rpc_method": message.method, "error": str(exc)})


__all__ = [
    "CANCEL_METHOD",
    "PROGRESS_METHOD",
    "ProtocolClient",
    "SessionState",
    "TERMINAL_EVENTS",
    "ToolCall",
    "ToolCancelled",
    "ToolCompleted",
    "ToolEvent",
    "ToolFailed",
    "ToolProgress",
]

"""JSON-RPC 2.0 message models for the agent protocol."""

from __future__ import annotations

import json
from enum import IntEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ProtocolDecodeError

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2025-11-25"
SUPPORTED_PROTOCOL_VERSIONS = frozenset({"2025-11-25", "2025-06-18", "2025-03-26"})


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    TOOL_EXECUTION_ERROR = -32000
    TIMEOUT = -32001
    CANCELLED = -32002


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: Any = None


class JsonRpcMessage(BaseModel):
    """Any incoming frame: request, notification or response."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"]
    id: int | str | None = None
    method: str | None = None
    params: dict[str, Any] | list[Any] | None = None
    result: Any = None
    error: JsonRpcError | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "JsonRpcMessage":
        if self.method is None:
            if self.id is None:
                raise ValueError("response without id")
            if self.error is None and "result" not in self.model_fields_set:
                raise ValueError("response carries neither result nor error")
        return self

    @property
    def is_response(self) -> bool:
        return self.method is None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None


class ServerInfo(BaseModel):
    name: str
    version: str | None = None


class InitializeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    server_info: ServerInfo | None = Field(default=None, alias="serverInfo")


class ToolDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = Field(default=None, alias="inputSchema")


class ToolsListResult(BaseModel):
    tools: list[ToolDefinition] = Field(default_factory=list)


class ToolContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: str | None = None


class ToolResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: list[ToolContent] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content if block.text)


class ProgressParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    progress_token: int | str = Field(alias="progressToken")
    progress: float
    total: float | None = None
    message: str | None = None


def request(request_id: int, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def encode_message(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_message(raw: bytes | str) -> JsonRpcMessage:
    """Parse a single frame, raising :class:`ProtocolDecodeError` on bad input."""

    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolDecodeError(f"Malformed JSON frame: {exc}") from exc
    try:
        return JsonRpcMessage.model_validate(document)
    except ValidationError as exc:
        raise ProtocolDecodeError(f"Invalid JSON-RPC message: {exc}") from exc


__all__ = [
    "ErrorCode",
    "InitializeResult",
    "JSONRPC_VERSION",
    "JsonRpcError",
    "JsonRpcMessage",
    "PROTOCOL_VERSION",
    "ProgressParams",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "ServerInfo",
    "ToolContent",
    "ToolDefinition",
    "ToolResult",
    "ToolsListResult",
    "decode_message",
    "encode_message",
    "notification",
    "request",
]

"""JSON-RPC client for the workflow agent."""

from .client import (
    ProtocolClient,
    SessionState,
    ToolCall,
    ToolCancelled,
    ToolCompleted,
    ToolEvent,
    ToolFailed,
    ToolProgress,
)
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
    ToolDefinition,
    ToolResult,
)
from .transport import MemoryTransport, ScriptedAgent, StdioTransport, Transport

__all__ = [
    "ErrorCode",
    "HandshakeRejectedError",
    "InitializeResult",
    "MemoryTransport",
    "PROTOCOL_VERSION",
    "ProcessTerminatedError",
    "ProtocolClient",
    "ProtocolDecodeError",
    "ProtocolError",
    "ProtocolTimeoutError",
    "ProtocolUnavailableError",
    "RemoteError",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "ScriptedAgent",
    "SessionState",
    "StdioTransport",
    "ToolCall",
    "ToolCancelled",
    "ToolCompleted",
    "ToolDefinition",
    "ToolEvent",
    "ToolFailed",
    "ToolProgress",
    "ToolResult",
    "Transport",
]

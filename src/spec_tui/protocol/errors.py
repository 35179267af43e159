"""Errors raised by the agent protocol client."""

from __future__ import annotations

from typing import Any


class ProtocolError(RuntimeError):
    """Base class for protocol client errors."""


class ProtocolDecodeError(ProtocolError):
    """Raised when an incoming frame is not a valid JSON-RPC message."""


class HandshakeRejectedError(ProtocolError):
    """Raised when ``initialize`` fails or the agent speaks an unsupported version."""


class ProtocolUnavailableError(ProtocolError):
    """Raised when an operation needs a READY session."""


class ProtocolTimeoutError(ProtocolError):
    """Raised when a request produced no terminal event in time."""


class ProcessTerminatedError(ProtocolError):
    """Raised for requests outstanding when the agent process went away."""

    def __init__(self, message: str = "Agent process terminated", *, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message if returncode is None else f"{message} (exit code {returncode})")


class RemoteError(ProtocolError):
    """An error response returned by the agent."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error (code {code}): {message}")


__all__ = [
    "HandshakeRejectedError",
    "ProcessTerminatedError",
    "ProtocolDecodeError",
    "ProtocolError",
    "ProtocolTimeoutError",
    "ProtocolUnavailableError",
    "RemoteError",
]

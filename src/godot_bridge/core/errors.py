"""
Bridge error taxonomy.

Every per-request failure surfaces as one of these, so callers can tell a
timeout apart from a dropped editor or a tool that reported failure.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

JSON = Dict[str, Any]


class BridgeError(RuntimeError):
    code = "bridge_error"
    recoverable = True

    def __init__(self, message: str, data: Optional[JSON] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}


class NotConnectedError(BridgeError):
    code = "not_connected"


class ToolTimeoutError(BridgeError):
    code = "timeout"

    def __init__(self, tool: str, elapsed_ms: int) -> None:
        super().__init__(
            f"Tool {tool} timed out after {elapsed_ms}ms",
            {"tool": tool, "elapsed_ms": elapsed_ms},
        )
        self.tool = tool
        self.elapsed_ms = elapsed_ms


class EditorDisconnectedError(BridgeError):
    code = "disconnected"


class BridgeStoppedError(EditorDisconnectedError):
    code = "bridge_stopped"
    recoverable = False


class RemoteToolError(BridgeError):
    """The editor answered the request with success=false."""

    code = "tool_failed"

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(message, {"tool": tool})
        self.tool = tool


class BridgeStartError(BridgeError):
    code = "bind_failed"
    recoverable = False

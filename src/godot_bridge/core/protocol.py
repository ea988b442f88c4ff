"""
Editor wire protocol.

One JSON object per websocket text frame, discriminated by "type".

Bridge -> editor:
    {"type": "tool_invoke", "id": str, "tool": str, "args": {...}}
    {"type": "ping"}

Editor -> bridge:
    {"type": "tool_result", "id": str, "success": bool, "result"?: any, "error"?: str}
    {"type": "pong"}
    {"type": "godot_ready", "project_path": str}

A second editor connecting while one is active is closed right after the
handshake with SECOND_CONNECTION_CLOSE_CODE. Clients should treat it as
"try again later".
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

JSON = Dict[str, Any]

EDITOR_PATH = "/godot"
VISUALIZER_PATH = "/visualizer"

SECOND_CONNECTION_CLOSE_CODE = 4000
SECOND_CONNECTION_REASON = "Godot already connected"

# Largest single frame either side accepts. Scene dumps and project maps
# routinely exceed the 1-4 MiB defaults of the websocket libraries.
MAX_MESSAGE_SIZE = 100 * 1024 * 1024


@dataclass(frozen=True)
class ToolResult:
    id: str
    success: bool
    result: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Pong:
    pass


@dataclass(frozen=True)
class GodotReady:
    project_path: str


IncomingMessage = Union[ToolResult, Pong, GodotReady]


def _dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def make_tool_invoke(request_id: str, tool: str, args: JSON) -> str:
    return _dumps({"type": "tool_invoke", "id": request_id, "tool": tool, "args": args})


def make_ping() -> str:
    return _dumps({"type": "ping"})


def parse_incoming(message: Any) -> Optional[IncomingMessage]:
    """
    Validate a decoded frame. Returns None for anything that is not one of
    the three known shapes.
    """
    if not isinstance(message, dict):
        return None

    kind = message.get("type")
    if kind == "pong":
        return Pong()

    if kind == "godot_ready":
        project_path = message.get("project_path")
        if not isinstance(project_path, str):
            return None
        return GodotReady(project_path=project_path)

    if kind == "tool_result":
        request_id = message.get("id")
        success = message.get("success")
        error = message.get("error")
        if not isinstance(request_id, str) or not isinstance(success, bool):
            return None
        if error is not None and not isinstance(error, str):
            return None
        return ToolResult(id=request_id, success=success, result=message.get("result"), error=error)

    return None


def decode_frame(raw: Union[str, bytes]) -> Any:
    """Raises ValueError when the frame is not JSON."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)

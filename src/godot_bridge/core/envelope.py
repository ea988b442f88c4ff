"""
Structured error and tool-result builders shared by the HTTP and stdio surfaces.
"""

from __future__ import annotations

import json
import traceback
from typing import Any, Dict, Optional

from .errors import BridgeError

JSON = Dict[str, Any]


def build_error(
    code: str,
    message: str,
    recoverable: bool = True,
    details: Optional[JSON] = None,
) -> JSON:
    error: JSON = {
        "code": code,
        "message": message,
        "recoverable": recoverable,
    }
    if details:
        error["details"] = details
    return error


def error_to_json(exc: BaseException) -> JSON:
    if isinstance(exc, BridgeError):
        return build_error(exc.code, exc.message, exc.recoverable, exc.data)
    return build_error(
        "internal_error",
        str(exc) or type(exc).__name__,
        recoverable=False,
        details={
            "type": type(exc).__name__,
            "traceback": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__, limit=20)
            ),
        },
    )


def tool_result(payload: Any) -> JSON:
    """
    Wrap an editor result as MCP tool content. Strings pass through as text,
    everything else is serialized as JSON text.
    """
    if isinstance(payload, str):
        text = payload
    else:
        text = json.dumps(payload, ensure_ascii=False, default=str)
    return {"isError": False, "content": [{"type": "text", "text": text}]}


def tool_error(exc: BaseException) -> JSON:
    err = error_to_json(exc)
    return {
        "isError": True,
        "content": [{"type": "text", "text": f"[{err['code']}] {err['message']}"}],
        "error": err,
    }

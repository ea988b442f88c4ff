"""
Tolerant helpers for tool arguments coming from MCP clients.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

SCENE_PATH_KEYS = ("scenePath", "scene_path")
RESOURCE_PATH_KEYS = ("resourcePath", "resource_path")


def to_args(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def string_arg(args: Dict[str, Any], *keys: str) -> Optional[str]:
    """
    First non-empty string found under any of `keys`, in order.
    """
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def resource_key(args: Dict[str, Any]) -> Optional[str]:
    """
    The one place where tool arguments are mapped to the file they touch.

    Both camelCase and snake_case spellings are accepted. A scene path wins
    over a resource path; calls naming neither get no key and are not
    serialized.
    """
    scene_path = string_arg(args, *SCENE_PATH_KEYS)
    if scene_path:
        return f"scene:{scene_path}"

    resource_path = string_arg(args, *RESOURCE_PATH_KEYS)
    if resource_path:
        return f"resource:{resource_path}"

    return None

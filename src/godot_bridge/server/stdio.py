"""
MCP stdio host.

Composes the bridge and the visualizer relay, then serves line-delimited
JSON-RPC 2.0 on stdin/stdout. stdout carries JSON-RPC replies only; every
log line goes to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from godot_bridge.core.config import BridgeConfig
from godot_bridge.core.envelope import tool_error, tool_result
from godot_bridge.core.errors import BridgeError
from godot_bridge.server.bridge import EditorBridge
from godot_bridge.server.front_door import DEFAULT_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
from godot_bridge.server.visualizer import VisualizerRelay

logger = logging.getLogger(__name__)

JSON = Dict[str, Any]
Handler = Callable[[JSON], Awaitable[Any]]

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


@dataclass
class ToolSpec:
    name: str
    description: str
    input_schema: JSON


class MCPError(RuntimeError):
    def __init__(self, code: int, message: str, data: Optional[JSON] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data or {}


class ToolRegistry:
    """
    Local tools. Calls to any other name are forwarded to the editor.
    """

    def __init__(self, bridge: EditorBridge) -> None:
        self.bridge = bridge
        self._tools: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, Handler] = {}

    def register(self, spec: ToolSpec, handler: Handler) -> None:
        self._tools[spec.name] = spec
        self._handlers[spec.name] = handler

    def list_specs(self) -> List[JSON]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "inputSchema": t.input_schema,
            }
            for t in sorted(self._tools.values(), key=lambda x: x.name)
        ]

    async def call(self, name: str, arguments: Optional[JSON]) -> JSON:
        handler = self._handlers.get(name)
        try:
            if handler is not None:
                out = await handler(arguments or {})
            else:
                out = await self.bridge.invoke_tool(name, arguments or {})
        except BridgeError as exc:
            logger.warning("Tool %s failed: [%s] %s", name, exc.code, exc.message)
            return tool_error(exc)
        return tool_result(out)


def _make_registry(bridge: EditorBridge) -> ToolRegistry:
    reg = ToolRegistry(bridge)

    async def _status(_args: JSON) -> JSON:
        return bridge.get_status().as_dict()

    reg.register(
        ToolSpec(
            name="get_editor_status",
            description="Report whether the Godot editor is connected, its project and in-flight requests.",
            input_schema={
                "type": "object",
                "properties": {},
                "additionalProperties": False,
            },
        ),
        _status,
    )

    async def _invoke(args: JSON) -> Any:
        tool = args.get("tool")
        if not isinstance(tool, str) or not tool:
            raise BridgeError("invoke_editor_tool requires 'tool' (string)")
        tool_args = args.get("args")
        return await bridge.invoke_tool(tool, tool_args if isinstance(tool_args, dict) else {})

    reg.register(
        ToolSpec(
            name="invoke_editor_tool",
            description="Run a named tool inside the connected Godot editor.",
            input_schema={
                "type": "object",
                "properties": {
                    "tool": {"type": "string", "description": "Editor tool name"},
                    "args": {"type": "object", "description": "Tool arguments"},
                },
                "required": ["tool"],
                "additionalProperties": False,
            },
        ),
        _invoke,
    )

    return reg


def _params(req: JSON) -> JSON:
    params = req.get("params")
    if params is None:
        return {}
    if not isinstance(params, dict):
        raise MCPError(INVALID_PARAMS, f"{req.get('method')} params must be an object")
    return params


async def handle_request(req: Any, reg: ToolRegistry) -> Optional[JSON]:
    if not isinstance(req, dict) or req.get("jsonrpc") != "2.0":
        raise MCPError(INVALID_REQUEST, "jsonrpc must be '2.0'")

    req_id = req.get("id", None)
    method = req.get("method")

    # Notifications: id may be omitted
    def result(payload: Any) -> Optional[JSON]:
        if req_id is None:
            return None
        return {"jsonrpc": "2.0", "id": req_id, "result": payload}

    if method == "initialize":
        params = _params(req)
        protocol_version = params.get("protocolVersion")
        return result(
            {
                "protocolVersion": protocol_version if isinstance(protocol_version, str) else DEFAULT_PROTOCOL_VERSION,
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                "capabilities": {"tools": {}},
            }
        )

    if method == "notifications/initialized":
        return None

    if method == "ping":
        return result({})

    if method == "tools/list":
        return result({"tools": reg.list_specs()})

    if method == "tools/call":
        params = _params(req)
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not name:
            raise MCPError(INVALID_PARAMS, "tools/call requires params.name (string)")
        if not isinstance(arguments, dict):
            raise MCPError(INVALID_PARAMS, "tools/call params.arguments must be an object")
        return result(await reg.call(name, arguments))

    raise MCPError(METHOD_NOT_FOUND, f"Unknown method: {method}")


def _write(msg: JSON) -> None:
    sys.stdout.write(json.dumps(msg, ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()


def _err_to_json(exc: BaseException) -> JSON:
    if isinstance(exc, MCPError):
        return {"code": exc.code, "message": exc.message, "data": exc.data}
    return {"code": INTERNAL_ERROR, "message": str(exc), "data": {"type": type(exc).__name__}}


async def serve_line(line: str, reg: ToolRegistry) -> Optional[JSON]:
    """Handle one raw stdin line; returns the reply to write, if any."""
    try:
        req = json.loads(line)
    except ValueError:
        logger.warning("Invalid JSON on stdin: %s", line[:200])
        return {"jsonrpc": "2.0", "id": None, "error": {"code": PARSE_ERROR, "message": "Parse error"}}

    try:
        return await handle_request(req, reg)
    except Exception as exc:
        if not isinstance(exc, MCPError):
            logger.exception("Unhandled error serving request")
        req_id = req.get("id", None) if isinstance(req, dict) else None
        return {"jsonrpc": "2.0", "id": req_id, "error": _err_to_json(exc)}


async def serve_stdio(config: BridgeConfig) -> int:
    bridge = EditorBridge.from_config(config)
    relay = VisualizerRelay(bridge)
    await bridge.start()
    relay.attach()
    reg = _make_registry(bridge)

    inflight: Set[asyncio.Task] = set()

    async def _serve(line: str) -> None:
        reply = await serve_line(line, reg)
        if reply is not None:
            _write(reply)

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break  # stdin closed
            line = line.strip()
            if not line:
                continue
            task = asyncio.create_task(_serve(line))
            inflight.add(task)
            task.add_done_callback(inflight.discard)
    finally:
        relay.detach()
        await bridge.stop()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
    return 0


def _parse_args(argv: Optional[List[str]], defaults: BridgeConfig) -> BridgeConfig:
    ap = argparse.ArgumentParser(description="Godot editor bridge with an MCP stdio front end.")
    ap.add_argument("--host", default=defaults.host)
    ap.add_argument("--port", type=int, default=defaults.port)
    ap.add_argument("--timeout", type=float, default=defaults.timeout_s, help="Tool timeout in seconds")
    ap.add_argument("--keepalive", type=float, default=defaults.keepalive_s, help="Ping interval in seconds")
    ap.add_argument("--log-level", default=defaults.log_level)
    args = ap.parse_args(argv)
    if not 0 <= args.port <= 65535:
        ap.error("--port must be between 0 and 65535")
    return BridgeConfig(
        host=args.host,
        port=args.port,
        timeout_s=args.timeout,
        keepalive_s=args.keepalive,
        log_level=args.log_level.upper(),
    )


def main(argv: Optional[List[str]] = None) -> int:
    config = _parse_args(argv, BridgeConfig.from_env())
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(name)s:%(levelname)s] %(message)s",
    )
    try:
        return asyncio.run(serve_stdio(config))
    except BridgeError as exc:
        logger.error("Bridge failed to start: %s", exc.message)
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())

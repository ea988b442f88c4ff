"""
Reference implementation of the editor side of the bridge protocol.

Plays the Godot plug-in: connects to ws://<host>:<port>/godot, announces the
project, answers pings and runs tool_invoke frames through registered
handlers. Used by the test-suite and by tools/editor_stub.py.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from godot_bridge.core.protocol import MAX_MESSAGE_SIZE

JSON = Dict[str, Any]
ToolHandler = Callable[[JSON], Awaitable[Any]]


def bridge_url(host: str = "127.0.0.1", port: int = 6505, path: str = "/godot") -> str:
    return f"ws://{host}:{port}{path}"


class EditorClient:
    def __init__(self, url: str, project_path: Optional[str] = None, auto_pong: bool = True) -> None:
        self.url = url
        self.project_path = project_path
        self.auto_pong = auto_pong
        self.received: List[JSON] = []
        self.invocations: List[JSON] = []
        self.pings = 0
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._handlers: Dict[str, ToolHandler] = {}
        self.fallback: Optional[ToolHandler] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------
    # Handlers
    # -------------------------

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def tool(self, name: str) -> Callable[[ToolHandler], ToolHandler]:
        def _decorator(fn: ToolHandler) -> ToolHandler:
            self.register(name, fn)
            return fn

        return _decorator

    # -------------------------
    # Connection
    # -------------------------

    async def connect(self) -> "EditorClient":
        self._ws = await websockets.connect(self.url, ping_interval=None, max_size=MAX_MESSAGE_SIZE)
        self._reader = asyncio.create_task(self._read_loop())
        if self.project_path is not None:
            await self.announce_ready(self.project_path)
        return self

    async def __aenter__(self) -> "EditorClient":
        return await self.connect()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def announce_ready(self, project_path: str) -> None:
        self.project_path = project_path
        await self.send({"type": "godot_ready", "project_path": project_path})

    async def send(self, message: JSON) -> None:
        await self.send_raw(json.dumps(message))

    async def send_raw(self, text: str) -> None:
        if self._ws is None:
            raise RuntimeError("EditorClient is not connected")
        await self._ws.send(text)

    async def reply(self, request_id: str, success: bool, result: Any = None, error: Optional[str] = None) -> None:
        message: JSON = {"type": "tool_result", "id": request_id, "success": success}
        if result is not None:
            message["result"] = result
        if error is not None:
            message["error"] = error
        await self.send(message)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)

    async def wait_closed(self, timeout_s: Optional[float] = 5.0) -> Optional[int]:
        """Wait until the bridge closes the socket; returns the close code."""
        if self._reader is not None:
            await asyncio.wait_for(asyncio.shield(self._reader), timeout_s)
        return self.close_code

    # -------------------------
    # Inbound frames
    # -------------------------

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    continue
                self.received.append(message)

                kind = message.get("type")
                if kind == "ping":
                    self.pings += 1
                    if self.auto_pong:
                        await self.send({"type": "pong"})
                elif kind == "tool_invoke":
                    self.invocations.append(message)
                    task = asyncio.create_task(self._run_tool(message))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
        except ConnectionClosed:
            pass
        finally:
            self.close_code = self._ws.close_code
            self.close_reason = self._ws.close_reason

    async def _run_tool(self, message: JSON) -> None:
        request_id = message.get("id")
        tool = message.get("tool")
        handler = self._handlers.get(tool) or self.fallback
        if handler is None:
            await self._safe_reply(request_id, False, error=f"Unknown tool: {tool}")
            return
        try:
            result = await handler(message.get("args") or {})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._safe_reply(request_id, False, error=str(exc))
            return
        await self._safe_reply(request_id, True, result=result)

    async def _safe_reply(self, request_id: Any, success: bool, result: Any = None, error: Optional[str] = None) -> None:
        try:
            await self.reply(request_id, success, result=result, error=error)
        except ConnectionClosed:
            pass

"""
Editor bridge: the one authoritative Godot connection, request correlation,
heartbeats and per-resource serialization.

Typical use from the composing process:

    bridge = EditorBridge(port=6505, timeout_s=30.0)
    await bridge.start()
    result = await bridge.invoke_tool("create_scene", {"scenePath": "res://a.tscn"})
    await bridge.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from aiohttp import WSCloseCode, WSMsgType, web

from godot_bridge.core import protocol
from godot_bridge.core.coerce import resource_key, to_args
from godot_bridge.core.config import (
    DEFAULT_HOST,
    DEFAULT_KEEPALIVE_S,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_S,
    BridgeConfig,
)
from godot_bridge.core.errors import (
    BridgeStoppedError,
    EditorDisconnectedError,
    NotConnectedError,
    RemoteToolError,
)
from godot_bridge.core.events import (
    GODOT_CONNECTED,
    GODOT_DISCONNECTED,
    TOOL_END,
    TOOL_START,
    EventHub,
)
from godot_bridge.core.pending import PendingRequestTable
from godot_bridge.core.queue import ResourceQueue
from godot_bridge.server.front_door import DEFAULT_VISUALIZER_HTML, FrontDoor
from godot_bridge.server.observers import ObserverChannel

logger = logging.getLogger(__name__)

JSON = Dict[str, Any]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class EditorConnection:
    socket: web.WebSocketResponse
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_pong_at: Optional[datetime] = None
    project_path: Optional[str] = None


@dataclass
class BridgeStatus:
    port: int
    connected: bool
    project_path: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_pong_at: Optional[datetime] = None
    pending_requests: int = 0
    queued_resources: int = 0

    def as_dict(self) -> JSON:
        out: JSON = {
            "port": self.port,
            "connected": self.connected,
            "pendingRequests": self.pending_requests,
            "queuedResources": self.queued_resources,
        }
        if self.project_path is not None:
            out["projectPath"] = self.project_path
        if self.connected_at is not None:
            out["connectedAt"] = _iso(self.connected_at)
        if self.last_pong_at is not None:
            out["lastPongAt"] = _iso(self.last_pong_at)
        return out


class EditorBridge:
    def __init__(
        self,
        port: int = DEFAULT_PORT,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        host: str = DEFAULT_HOST,
        keepalive_s: float = DEFAULT_KEEPALIVE_S,
        events: Optional[EventHub] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout_s = timeout_s
        self.keepalive_s = keepalive_s
        self.events = events or EventHub()
        self.observers = ObserverChannel()
        self.visualizer_html = DEFAULT_VISUALIZER_HTML

        self._front_door: Optional[FrontDoor] = None
        self._start_lock = asyncio.Lock()
        self._connection: Optional[EditorConnection] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._pending = PendingRequestTable(timeout_s)
        self._queue = ResourceQueue()

    @classmethod
    def from_config(cls, config: BridgeConfig, events: Optional[EventHub] = None) -> "EditorBridge":
        return cls(
            port=config.port,
            timeout_s=config.timeout_s,
            host=config.host,
            keepalive_s=config.keepalive_s,
            events=events,
        )

    # -------------------------
    # Lifecycle
    # -------------------------

    @property
    def started(self) -> bool:
        return self._front_door is not None

    async def start(self) -> None:
        async with self._start_lock:
            if self._front_door is not None:
                return
            front_door = FrontDoor(self, self.host, self.port)
            self.port = await front_door.start()
            self._front_door = front_door

    async def stop(self) -> None:
        self._stop_keepalive()
        stopped = BridgeStoppedError("Godot bridge stopped")
        self._pending.reject_all(stopped)
        self._queue.clear(stopped)

        connection, self._connection = self._connection, None
        if connection is not None and not connection.socket.closed:
            await connection.socket.close(code=WSCloseCode.GOING_AWAY, message=b"Bridge stopping")

        await self.observers.close_all()

        front_door, self._front_door = self._front_door, None
        if front_door is not None:
            await front_door.stop()

        self.visualizer_html = DEFAULT_VISUALIZER_HTML
        logger.info("Godot bridge stopped")

    # -------------------------
    # Public facade
    # -------------------------

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.socket.closed

    def get_status(self) -> BridgeStatus:
        connection = self._connection
        return BridgeStatus(
            port=self.port,
            connected=self.is_connected(),
            project_path=connection.project_path if connection else None,
            connected_at=connection.connected_at if connection else None,
            last_pong_at=connection.last_pong_at if connection else None,
            pending_requests=len(self._pending),
            queued_resources=len(self._queue),
        )

    async def invoke_tool(self, tool_name: str, args: Optional[JSON] = None) -> Any:
        """
        Run `tool_name` in the editor and return its result.

        Calls whose arguments name a scene or resource file wait for earlier
        calls on the same file. Raises NotConnectedError, ToolTimeoutError,
        EditorDisconnectedError or RemoteToolError.
        """
        args = to_args(args)
        key = resource_key(args)
        if key is None:
            return await self._invoke_direct(tool_name, args)
        return await self._queue.enqueue(key, lambda: self._invoke_direct(tool_name, args, key))

    async def broadcast_to_visualizer(self, message: JSON) -> int:
        return await self.observers.broadcast(message)

    def set_visualizer_html(self, html: str) -> None:
        self.visualizer_html = html

    # -------------------------
    # Requests
    # -------------------------

    async def _invoke_direct(self, tool_name: str, args: JSON, key: Optional[str] = None) -> Any:
        connection = self._connection
        if connection is None or connection.socket.closed:
            raise NotConnectedError("Godot is not connected")

        pending = self._pending.register(tool_name, key)
        self.events.emit(TOOL_START, {"tool": tool_name, "id": pending.request_id, "args": args})

        try:
            await connection.socket.send_str(protocol.make_tool_invoke(pending.request_id, tool_name, args))
        except (ConnectionError, RuntimeError) as exc:
            self._pending.reject(pending.request_id, NotConnectedError(f"Failed to send {tool_name} to Godot: {exc}"))

        try:
            return await pending.future
        finally:
            # only does something when the caller was cancelled
            self._pending.pop(pending.request_id)

    # -------------------------
    # Editor connection
    # -------------------------

    async def handle_editor_upgrade(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=protocol.MAX_MESSAGE_SIZE)
        await ws.prepare(request)

        if self._connection is not None:
            logger.warning("Rejecting second Godot connection from %s", request.remote)
            await ws.close(
                code=protocol.SECOND_CONNECTION_CLOSE_CODE,
                message=protocol.SECOND_CONNECTION_REASON.encode("utf-8"),
            )
            return ws

        connection = EditorConnection(socket=ws)
        self._connection = connection
        self._start_keepalive(connection)
        logger.info("Godot editor connected from %s", request.remote)
        self.events.emit(GODOT_CONNECTED, {"projectPath": connection.project_path})

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self._handle_frame(connection, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error("WebSocket error: %s", ws.exception())
        finally:
            logger.warning("Godot disconnected (code=%s)", ws.close_code)
            if self._connection is connection:
                self._handle_disconnect(EditorDisconnectedError("Godot disconnected during request"))
        return ws

    def _handle_frame(self, connection: EditorConnection, raw: Union[str, bytes]) -> None:
        try:
            decoded = protocol.decode_frame(raw)
        except ValueError as exc:
            logger.error("Invalid JSON from Godot: %s", exc)
            return

        message = protocol.parse_incoming(decoded)
        if message is None:
            logger.warning("Ignoring unknown Godot message payload")
            return

        if isinstance(message, protocol.ToolResult):
            self._handle_tool_result(message)
        elif isinstance(message, protocol.GodotReady):
            connection.project_path = message.project_path
            logger.info("Godot ready: %s", message.project_path)
            self.events.emit(GODOT_CONNECTED, {"projectPath": message.project_path})
        elif isinstance(message, protocol.Pong):
            connection.last_pong_at = datetime.now(timezone.utc)

    def _handle_tool_result(self, message: protocol.ToolResult) -> None:
        pending = self._pending.pop(message.id)
        if pending is None:
            logger.warning("Received tool_result for unknown id=%s", message.id)
            return

        duration = pending.elapsed_ms()
        logger.debug("Tool %s finished in %dms", pending.tool_name, duration)
        self.events.emit(
            TOOL_END,
            {"tool": pending.tool_name, "id": message.id, "success": message.success, "duration": duration},
        )

        if pending.future.done():
            return
        if message.success:
            pending.future.set_result(message.result)
        else:
            error = message.error or f"Tool {pending.tool_name} failed"
            pending.future.set_exception(RemoteToolError(pending.tool_name, error))

    def _handle_disconnect(self, reason: Exception) -> None:
        self._stop_keepalive()
        self._connection = None
        self.events.emit(GODOT_DISCONNECTED, {})
        self._pending.reject_all(reason)
        self._queue.clear(reason)

    # -------------------------
    # Heartbeat
    # -------------------------

    def _start_keepalive(self, connection: EditorConnection) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive(connection))

    def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None:
            task.cancel()

    async def _keepalive(self, connection: EditorConnection) -> None:
        while True:
            await asyncio.sleep(self.keepalive_s)
            if connection.socket.closed:
                continue
            try:
                await connection.socket.send_str(protocol.make_ping())
            except (ConnectionError, RuntimeError) as exc:
                logger.warning("Failed to send ping: %s", exc)

"""
Observer (visualizer) websocket connections.

Any number of observers may be connected. They receive broadcast events and
can send commands for an optional handler; they never take part in tool
invocations and never affect the editor connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiohttp import WSCloseCode, WSMsgType, web

from godot_bridge.core.protocol import MAX_MESSAGE_SIZE

logger = logging.getLogger(__name__)

JSON = Dict[str, Any]
CommandHandler = Callable[[JSON], Awaitable[JSON]]
ConnectHook = Callable[[web.WebSocketResponse], Any]


class ObserverChannel:
    def __init__(self) -> None:
        self._sockets: Set[web.WebSocketResponse] = set()
        self._connect_hooks: List[ConnectHook] = []
        self.command_handler: Optional[CommandHandler] = None

    def __len__(self) -> int:
        return len(self._sockets)

    def add_connect_hook(self, hook: ConnectHook) -> None:
        self._connect_hooks.append(hook)

    def remove_connect_hook(self, hook: ConnectHook) -> None:
        try:
            self._connect_hooks.remove(hook)
        except ValueError:
            pass

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=MAX_MESSAGE_SIZE)
        await ws.prepare(request)
        self._sockets.add(ws)
        logger.info("Visualizer connected on %s (%d open)", request.path, len(self._sockets))

        try:
            for hook in list(self._connect_hooks):
                result = hook(ws)
                if asyncio.iscoroutine(result):
                    await result

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_command(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Visualizer socket error: %s", ws.exception())
        finally:
            self._sockets.discard(ws)
            logger.info("Visualizer disconnected (%d open)", len(self._sockets))
        return ws

    async def _handle_command(self, ws: web.WebSocketResponse, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.send(ws, {"ok": False, "error": "Invalid JSON"})
            return
        if not isinstance(message, dict):
            await self.send(ws, {"ok": False, "error": "Command must be a JSON object"})
            return

        if self.command_handler is None:
            result: JSON = {"ok": False, "error": f"Unknown command: {message.get('command')}"}
        else:
            try:
                result = await self.command_handler(message)
            except Exception as exc:
                logger.exception("Visualizer command failed")
                result = {"ok": False, "error": str(exc) or "Unknown error"}

        await self.send(ws, {"id": message.get("id"), **result})

    async def send(self, ws: web.WebSocketResponse, message: JSON) -> bool:
        if ws.closed:
            return False
        try:
            await ws.send_str(json.dumps(message, ensure_ascii=False, default=str))
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("Dropping visualizer message: %s", exc)
            return False
        return True

    async def broadcast(self, message: JSON) -> int:
        """
        Serialize once and write to every open observer. Closed or closing
        sockets are skipped. Returns how many observers were written to.
        """
        payload = json.dumps(message, ensure_ascii=False, default=str)
        sent = 0
        for ws in list(self._sockets):
            if ws.closed:
                continue
            try:
                await ws.send_str(payload)
            except (ConnectionError, RuntimeError) as exc:
                logger.debug("Skipping visualizer during broadcast: %s", exc)
                continue
            sent += 1
        return sent

    async def close_all(self) -> None:
        sockets = list(self._sockets)
        self._sockets.clear()
        for ws in sockets:
            if not ws.closed:
                await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Bridge stopping")

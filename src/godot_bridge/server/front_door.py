"""
Single listening port for plain HTTP and the two websocket roles.

Upgrade requests are routed by path before any HTTP routing: EDITOR_PATH
goes to the editor handler, every other path (VISUALIZER_PATH included) to
the observer handler. Plain requests get the small HTTP surface below, all
with permissive CORS.

    GET  /health            status snapshot
    GET  /, /index.html     visualizer page
    POST /, /mcp            minimal MCP "initialize" handshake

Every other method or path, including a listed path with the wrong method,
gets 404 {"error": "Not found"}. OPTIONS is always a 204 preflight.

The uptime reported by /health counts from when the listener was built,
which for the stdio host is process start up to a few milliseconds.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from aiohttp import web

from godot_bridge.core.errors import BridgeStartError
from godot_bridge.core.protocol import EDITOR_PATH

if TYPE_CHECKING:
    from godot_bridge.server.bridge import EditorBridge

logger = logging.getLogger(__name__)

JSON = Dict[str, Any]

SERVER_NAME = "godot-mcp"
SERVER_VERSION = "2.0.1"
DEFAULT_PROTOCOL_VERSION = "2025-06-18"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept",
}

DEFAULT_VISUALIZER_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Godot MCP Visualizer</title>
  </head>
  <body>
    <h1>Godot MCP Visualizer</h1>
    <p>Run the map_project tool to load visualization data.</p>
  </body>
</html>"""

_ERROR_TEXT = {
    400: "Bad request",
    404: "Not found",
}


def _json(payload: JSON, status: int = 200, no_cache: bool = False) -> web.Response:
    headers = {"Cache-Control": "no-cache"} if no_cache else None
    return web.Response(
        text=json.dumps(payload, ensure_ascii=False, default=str),
        status=status,
        content_type="application/json",
        charset="utf-8",
        headers=headers,
    )


def _is_upgrade(request: web.Request) -> bool:
    if request.method != "GET":
        return False
    upgrade = request.headers.get("Upgrade", "").lower()
    connection = request.headers.get("Connection", "").lower()
    return upgrade == "websocket" and "upgrade" in connection


def build_app(bridge: "EditorBridge") -> web.Application:
    started = time.monotonic()

    @web.middleware
    async def front_door(request: web.Request, handler) -> web.StreamResponse:
        if _is_upgrade(request):
            if request.path == EDITOR_PATH:
                return await bridge.handle_editor_upgrade(request)
            return await bridge.observers.handle(request)

        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
        else:
            try:
                response = await handler(request)
            except web.HTTPException as exc:
                # unknown path and unsupported method are both "not found"
                status = 404 if exc.status == 405 else exc.status
                text = _ERROR_TEXT.get(status, exc.reason)
                response = _json({"error": text}, status=status)

        response.headers.update(CORS_HEADERS)
        return response

    async def health(_request: web.Request) -> web.Response:
        payload = {
            "status": "ok",
            "serverName": SERVER_NAME,
            "version": SERVER_VERSION,
            "bridge": bridge.get_status().as_dict(),
            "uptime": round(time.monotonic() - started, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return _json(payload, no_cache=True)

    async def page(_request: web.Request) -> web.Response:
        return web.Response(
            text=bridge.visualizer_html,
            content_type="text/html",
            charset="utf-8",
            headers={"Cache-Control": "no-cache"},
        )

    async def handshake(request: web.Request) -> web.Response:
        try:
            body = json.loads(await request.text())
        except ValueError:
            return _json({"error": "Invalid JSON"}, status=400)

        if not isinstance(body, dict) or body.get("method") != "initialize":
            return _json({"error": "Unsupported method"}, status=400)

        request_id = body.get("id")
        if isinstance(request_id, bool) or not isinstance(request_id, (int, float, str)):
            request_id = 1
        params = body.get("params") if isinstance(body.get("params"), dict) else {}
        protocol_version = params.get("protocolVersion")
        if not isinstance(protocol_version, str):
            protocol_version = DEFAULT_PROTOCOL_VERSION

        return _json(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {
                    "protocolVersion": protocol_version,
                    "capabilities": {},
                    "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                },
            }
        )

    app = web.Application(middlewares=[front_door])
    app.router.add_get("/health", health)
    app.router.add_get("/", page)
    app.router.add_get("/index.html", page)
    app.router.add_post("/", handshake)
    app.router.add_post("/mcp", handshake)
    return app


class FrontDoor:
    """
    Owns the aiohttp runner and listening site for one bridge.
    """

    def __init__(self, bridge: "EditorBridge", host: str, port: int) -> None:
        self.bridge = bridge
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> int:
        """
        Bind and listen. Returns the bound port (useful with port 0).
        Raises BridgeStartError and leaves nothing listening when the bind fails.
        """
        runner = web.AppRunner(build_app(self.bridge), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise BridgeStartError(
                f"Could not listen on {self.host}:{self.port}: {exc}",
                {"host": self.host, "port": self.port},
            ) from exc

        self._runner = runner
        addresses = runner.addresses
        if addresses:
            self.port = int(addresses[0][1])
        logger.info("Unified HTTP+WS bridge listening on %s:%d", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

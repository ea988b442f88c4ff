import asyncio
import json
import time

import aiohttp
import websockets

from godot_bridge.server.front_door import DEFAULT_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
from bridge_helpers import http_url, recv_json, run, running_bridge, wait_until, ws_url


async def fetch(bridge, method, path, **kwargs):
    async with aiohttp.ClientSession() as session:
        async with session.request(method, http_url(bridge, path), **kwargs) as resp:
            body = await resp.text()
            return resp.status, resp.headers.copy(), body


def test_health_reports_bridge_status():
    async def scenario():
        async with running_bridge() as bridge:
            return bridge.port, await fetch(bridge, "GET", "/health")

    port, (status, headers, body) = run(scenario())
    assert status == 200
    assert headers["Content-Type"].startswith("application/json")
    assert headers["Cache-Control"] == "no-cache"
    assert headers["Access-Control-Allow-Origin"] == "*"

    payload = json.loads(body)
    assert payload["status"] == "ok"
    assert payload["serverName"] == SERVER_NAME
    assert payload["version"] == SERVER_VERSION
    assert payload["bridge"]["connected"] is False
    assert payload["bridge"]["port"] == port
    assert payload["uptime"] >= 0
    assert "timestamp" in payload


def test_visualizer_page_is_served_and_replaceable():
    async def scenario():
        async with running_bridge() as bridge:
            default = await fetch(bridge, "GET", "/")
            bridge.set_visualizer_html("<html><body>custom</body></html>")
            custom = await fetch(bridge, "GET", "/index.html")
            return default, custom

    (status, headers, body), (_, _, custom) = run(scenario())
    assert status == 200
    assert headers["Content-Type"].startswith("text/html")
    assert headers["Cache-Control"] == "no-cache"
    assert "Godot MCP Visualizer" in body
    assert custom == "<html><body>custom</body></html>"


def test_initialize_handshake_on_root_and_mcp():
    async def scenario():
        async with running_bridge() as bridge:
            echoed = await fetch(
                bridge,
                "POST",
                "/mcp",
                json={"jsonrpc": "2.0", "id": 5, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}},
            )
            default = await fetch(bridge, "POST", "/", json={"jsonrpc": "2.0", "method": "initialize"})
            return echoed, default

    (status, _, body), (default_status, _, default_body) = run(scenario())
    assert status == 200
    reply = json.loads(body)
    assert reply["jsonrpc"] == "2.0"
    assert reply["id"] == 5
    assert reply["result"]["protocolVersion"] == "2024-11-05"
    assert reply["result"]["capabilities"] == {}
    assert reply["result"]["serverInfo"] == {"name": SERVER_NAME, "version": SERVER_VERSION}

    assert default_status == 200
    fallback = json.loads(default_body)
    assert fallback["id"] == 1
    assert fallback["result"]["protocolVersion"] == DEFAULT_PROTOCOL_VERSION


def test_handshake_rejects_bad_requests():
    async def scenario():
        async with running_bridge() as bridge:
            bad_json = await fetch(bridge, "POST", "/mcp", data="{not json")
            other = await fetch(bridge, "POST", "/mcp", json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
            return bad_json, other

    (status, _, body), (other_status, _, other_body) = run(scenario())
    assert status == 400
    assert json.loads(body) == {"error": "Invalid JSON"}
    assert other_status == 400
    assert json.loads(other_body) == {"error": "Unsupported method"}


def test_unknown_paths_and_methods_get_not_found():
    async def scenario():
        async with running_bridge() as bridge:
            return [
                await fetch(bridge, "GET", "/nope"),
                await fetch(bridge, "PUT", "/nope"),
                await fetch(bridge, "GET", "/mcp"),
                await fetch(bridge, "POST", "/health"),
                await fetch(bridge, "DELETE", "/health"),
            ]

    responses = run(scenario())
    for status, headers, body in responses:
        assert status == 404
        assert json.loads(body) == {"error": "Not found"}
        assert headers["Access-Control-Allow-Origin"] == "*"


def test_health_uptime_counts_from_listener_start():
    async def scenario():
        before = time.monotonic()
        async with running_bridge() as bridge:
            await asyncio.sleep(0.05)
            _, _, body = await fetch(bridge, "GET", "/health")
        return json.loads(body)["uptime"], time.monotonic() - before

    uptime, elapsed = run(scenario())
    assert 0.05 <= uptime <= elapsed + 0.001


def test_preflight_is_answered_everywhere():
    async def scenario():
        async with running_bridge() as bridge:
            return await fetch(bridge, "OPTIONS", "/mcp"), await fetch(bridge, "OPTIONS", "/anything")

    (status, headers, body), (other_status, _, _) = run(scenario())
    assert status == 204
    assert other_status == 204
    assert body == ""
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in headers["Access-Control-Allow-Methods"]
    assert "Content-Type" in headers["Access-Control-Allow-Headers"]


def test_observers_connect_on_any_non_editor_path():
    async def scenario():
        async with running_bridge() as bridge:
            async with websockets.connect(ws_url(bridge, "/visualizer")) as viz, websockets.connect(
                ws_url(bridge, "/some/other/path")
            ) as other:
                await wait_until(lambda: len(bridge.observers) == 2)
                sent = await bridge.broadcast_to_visualizer({"type": "hello", "n": 1})
                got = (await recv_json(viz), await recv_json(other))
                connected = bridge.is_connected()
            return sent, got, connected

    sent, got, connected = run(scenario())
    assert sent == 2
    assert got == ({"type": "hello", "n": 1}, {"type": "hello", "n": 1})
    assert connected is False


def test_broadcast_skips_closed_observers():
    async def scenario():
        async with running_bridge() as bridge:
            staying = await websockets.connect(ws_url(bridge, "/visualizer"))
            leaving = await websockets.connect(ws_url(bridge, "/visualizer"))
            await wait_until(lambda: len(bridge.observers) == 2)

            await leaving.close()
            await wait_until(lambda: len(bridge.observers) == 1)
            sent = await bridge.broadcast_to_visualizer({"type": "tick"})
            msg = await recv_json(staying)
            await staying.close()
            return sent, msg

    sent, msg = run(scenario())
    assert sent == 1
    assert msg == {"type": "tick"}


def test_broadcast_with_no_observers_is_a_no_op():
    async def scenario():
        async with running_bridge() as bridge:
            return await bridge.broadcast_to_visualizer({"type": "tick"})

    assert run(scenario()) == 0


def test_observer_commands_without_relay():
    async def scenario():
        async with running_bridge() as bridge:
            async with websockets.connect(ws_url(bridge, "/visualizer")) as viz:
                await viz.send(json.dumps({"id": 7, "command": "map_project"}))
                reply = await recv_json(viz)
                await viz.send("{broken")
                broken = await recv_json(viz)
            return reply, broken

    reply, broken = run(scenario())
    assert reply == {"id": 7, "ok": False, "error": "Unknown command: map_project"}
    assert broken == {"ok": False, "error": "Invalid JSON"}


def test_observer_close_does_not_touch_editor_link():
    async def scenario():
        async with running_bridge() as bridge:
            editor = await websockets.connect(ws_url(bridge))
            await wait_until(bridge.is_connected)
            viz = await websockets.connect(ws_url(bridge, "/visualizer"))
            await wait_until(lambda: len(bridge.observers) == 1)
            await viz.close()
            await wait_until(lambda: len(bridge.observers) == 0)
            await asyncio.sleep(0.05)
            connected = bridge.is_connected()
            await editor.close()
            return connected

    assert run(scenario()) is True

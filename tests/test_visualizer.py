import json

import aiohttp
import pytest
import websockets

from godot_bridge.core.events import TOOL_START
from godot_bridge.server.front_door import DEFAULT_VISUALIZER_HTML
from godot_bridge.server.visualizer import MAX_ACTION_LOG, ActionEntry, VisualizerRelay
from godot_bridge.tools.editor_client import EditorClient
from bridge_helpers import http_url, recv_json, recv_until, run, running_bridge, wait_until, ws_url

TEMPLATE = '<html><script>const PROJECT = "%%PROJECT_DATA%%";</script></html>'


async def command(viz, request_id, name, args=None):
    await viz.send(json.dumps({"id": request_id, "command": name, "args": args or {}}))
    reply, _ = await recv_until(viz, lambda m: m.get("id") == request_id)
    return reply


def test_observer_gets_status_on_connect():
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            relay.attach()
            async with websockets.connect(ws_url(bridge, "/visualizer")) as viz:
                first = await recv_json(viz)
            relay.detach()
            return first

    first = run(scenario())
    assert first["type"] == "godot_status"
    assert first["status"]["connected"] is False


def test_bridge_events_are_relayed():
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            relay.attach()
            async with websockets.connect(ws_url(bridge, "/visualizer")) as viz:
                await recv_json(viz)

                editor = await EditorClient(ws_url(bridge), project_path="/p").connect()
                connected, _ = await recv_until(
                    viz, lambda m: m.get("type") == "connection_event" and m.get("projectPath") == "/p"
                )

                @editor.tool("get_scene_tree")
                async def _tree(_args):
                    return {"root": "Main"}

                await bridge.invoke_tool("get_scene_tree", {"depth": 1})
                start, _ = await recv_until(viz, lambda m: m.get("type") == "tool_event" and m["event"] == "start")
                end, _ = await recv_until(viz, lambda m: m.get("type") == "tool_event" and m["event"] == "end")

                await editor.close()
                gone, _ = await recv_until(
                    viz, lambda m: m.get("type") == "connection_event" and m["event"] == "godot_disconnected"
                )
            relay.detach()
            return connected, start, end, gone

    connected, start, end, gone = run(scenario())
    assert connected == {"type": "connection_event", "event": "godot_connected", "projectPath": "/p"}
    assert start["tool"] == "get_scene_tree"
    assert start["args"] == {"depth": 1}
    assert end["id"] == start["id"]
    assert end["success"] is True
    assert "duration" in end
    assert gone == {"type": "connection_event", "event": "godot_disconnected"}


def test_serve_injects_project_data_into_page(tmp_path):
    template_file = tmp_path / "visualizer.html"
    template_file.write_text(TEMPLATE, encoding="utf-8")

    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            url = relay.serve({"scripts": ["res://player.gd"]}, template_file, project_path="/p")
            async with aiohttp.ClientSession() as session:
                async with session.get(http_url(bridge, "/")) as resp:
                    page = await resp.text()
            state = (url, bridge.port, relay.attached, relay.project_path)
            relay.detach()
            return page, state, bridge.visualizer_html

    page, (url, port, attached, project_path), after_detach = run(scenario())
    assert '"%%PROJECT_DATA%%"' not in page
    assert 'const PROJECT = {"scripts": ["res://player.gd"]};' in page
    assert url == f"http://localhost:{port}"
    assert attached is True
    assert project_path == "/p"
    assert after_detach == DEFAULT_VISUALIZER_HTML


def test_serve_with_missing_template_file(tmp_path):
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            with pytest.raises(FileNotFoundError):
                relay.serve({}, tmp_path / "missing.html")
            return relay.attached

    assert run(scenario()) is False


def test_commands_and_action_log():
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            relay.attach()
            calls = []

            async def modify_variable(project_path, args):
                calls.append((project_path, args))
                return {"ok": True, "path": args["path"]}

            def read_script(project_path, args):
                return {"ok": True, "content": f"# {args['path']}"}

            relay.register_command("modify_variable", modify_variable, mutation=True)
            relay.register_command("read_script", read_script)

            async with websockets.connect(ws_url(bridge, "/visualizer")) as viz:
                await recv_json(viz)
                early = await command(viz, 1, "read_script", {"path": "res://a.gd"})
                relay.serve({}, TEMPLATE, project_path="/p")

                read = await command(viz, 2, "read_script", {"path": "res://a.gd"})
                unknown = await command(viz, 3, "explode")

                await viz.send(
                    json.dumps(
                        {
                            "id": 4,
                            "command": "modify_variable",
                            "args": {"path": "res://player.gd", "name": "speed", "reason": "too slow"},
                        }
                    )
                )
                action, before_reply = await recv_until(viz, lambda m: m.get("type") == "action_event")
                modified, _ = await recv_until(viz, lambda m: m.get("id") == 4)
                log = await command(viz, 5, "get_action_log")
            relay.detach()
            return early, read, unknown, action, before_reply, modified, log, calls

    early, read, unknown, action, before_reply, modified, log, calls = run(scenario())
    assert early == {"id": 1, "ok": False, "error": "No project path set. Call map_project first."}
    assert read == {"id": 2, "ok": True, "content": "# res://a.gd"}
    assert unknown == {"id": 3, "ok": False, "error": "Unknown command: explode"}

    assert modified == {"id": 4, "ok": True, "path": "res://player.gd"}
    assert calls == [("/p", {"path": "res://player.gd", "name": "speed", "reason": "too slow"})]
    # the action is broadcast before the command reply goes out
    assert all(m.get("id") != 4 for m in before_reply)
    assert action["entry"]["command"] == "modify_variable"
    assert action["entry"]["filePath"] == "res://player.gd"
    assert action["entry"]["reason"] == "too slow"

    assert log["ok"] is True
    assert [e["command"] for e in log["entries"]] == ["modify_variable"]


def test_failed_commands_are_not_logged():
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            relay.project_path = "/p"

            async def rename(_project_path, _args):
                return {"ok": False, "error": "File not found"}

            relay.register_command("rename_script", rename, mutation=True)
            result = await relay.handle_command({"command": "rename_script", "args": {"path": "res://x.gd"}})
            return result, len(relay.action_log)

    result, logged = run(scenario())
    assert result == {"ok": False, "error": "File not found"}
    assert logged == 0


def test_action_log_keeps_most_recent_entries():
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            for i in range(MAX_ACTION_LOG + 5):
                await relay.record_action(ActionEntry(command="modify_variable", file_path=f"res://{i}.gd"))
            return [entry.file_path for entry in relay.action_log]

    paths = run(scenario())
    assert len(paths) == MAX_ACTION_LOG
    assert paths[0] == "res://5.gd"
    assert paths[-1] == f"res://{MAX_ACTION_LOG + 4}.gd"


def test_detach_unhooks_everything():
    async def scenario():
        async with running_bridge() as bridge:
            relay = VisualizerRelay(bridge)
            relay.serve({}, TEMPLATE, project_path="/p")
            attached = (bridge.events.listener_count(TOOL_START), bridge.observers.command_handler is not None)
            relay.attach()
            relay.detach()
            detached = (bridge.events.listener_count(TOOL_START), bridge.observers.command_handler)
            return attached, detached, relay.attached, bridge.visualizer_html

    attached, detached, still_attached, html = run(scenario())
    assert attached == (1, True)
    assert detached == (0, None)
    assert still_attached is False
    assert html == DEFAULT_VISUALIZER_HTML

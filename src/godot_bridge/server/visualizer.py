"""
Visualizer relay: forwards bridge events to observer connections and serves
the observer command protocol.

The commands themselves (project mapping, script edits, diffs) belong to the
visualizer and are registered from outside with `register_command`.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from aiohttp import web

from godot_bridge.core.events import GODOT_CONNECTED, GODOT_DISCONNECTED, TOOL_END, TOOL_START
from godot_bridge.server.bridge import EditorBridge
from godot_bridge.server.front_door import DEFAULT_VISUALIZER_HTML

logger = logging.getLogger(__name__)

JSON = Dict[str, Any]
CommandFn = Callable[[str, JSON], Union[JSON, Awaitable[JSON]]]

MAX_ACTION_LOG = 100
PROJECT_DATA_PLACEHOLDER = '"%%PROJECT_DATA%%"'


@dataclass
class ActionEntry:
    command: str
    file_path: str
    details: JSON = field(default_factory=dict)
    reason: Optional[str] = None
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def as_dict(self) -> JSON:
        out = asdict(self)
        out["filePath"] = out.pop("file_path")
        if out["reason"] is None:
            del out["reason"]
        return out


class VisualizerRelay:
    def __init__(self, bridge: EditorBridge) -> None:
        self.bridge = bridge
        self.project_path: Optional[str] = None
        self.action_log: Deque[ActionEntry] = deque(maxlen=MAX_ACTION_LOG)
        self._commands: Dict[str, CommandFn] = {}
        self._mutations: Set[str] = set()
        self._unsubscribe: List[Callable[[], None]] = []

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribe)

    # -------------------------
    # Attach / detach
    # -------------------------

    def attach(self) -> None:
        if self.attached:
            return
        events = self.bridge.events
        self._unsubscribe = [
            events.subscribe(TOOL_START, self._on_tool_start),
            events.subscribe(TOOL_END, self._on_tool_end),
            events.subscribe(GODOT_CONNECTED, self._on_godot_connected),
            events.subscribe(GODOT_DISCONNECTED, self._on_godot_disconnected),
        ]
        self.bridge.observers.add_connect_hook(self._on_observer_connected)
        self.bridge.observers.command_handler = self.handle_command

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self.bridge.observers.remove_connect_hook(self._on_observer_connected)
        if self.bridge.observers.command_handler == self.handle_command:
            self.bridge.observers.command_handler = None
        self.bridge.set_visualizer_html(DEFAULT_VISUALIZER_HTML)
        logger.info("Visualizer detached from bridge")

    def serve(self, project_data: Any, template: Union[str, Path], project_path: Optional[str] = None) -> str:
        """
        Install the visualizer page with `project_data` injected and start
        relaying. `template` is either HTML text or a path to an HTML file
        containing the PROJECT_DATA_PLACEHOLDER token.
        """
        if isinstance(template, Path):
            try:
                html = template.read_text(encoding="utf-8")
            except OSError as exc:
                raise FileNotFoundError(f"Visualizer HTML template not found at {template}") from exc
        else:
            html = template

        html = html.replace(PROJECT_DATA_PLACEHOLDER, json.dumps(project_data, ensure_ascii=False))
        self.bridge.set_visualizer_html(html)
        if project_path is not None:
            self.project_path = project_path
        self.attach()

        url = f"http://localhost:{self.bridge.port}"
        logger.info("Visualizer serving at %s", url)
        return url

    # -------------------------
    # Bridge events
    # -------------------------

    async def _on_tool_start(self, event: JSON) -> None:
        await self.bridge.broadcast_to_visualizer({"type": "tool_event", "event": "start", **event})

    async def _on_tool_end(self, event: JSON) -> None:
        await self.bridge.broadcast_to_visualizer({"type": "tool_event", "event": "end", **event})

    async def _on_godot_connected(self, event: JSON) -> None:
        await self.bridge.broadcast_to_visualizer(
            {"type": "connection_event", "event": "godot_connected", **event}
        )

    async def _on_godot_disconnected(self, _event: JSON) -> None:
        await self.bridge.broadcast_to_visualizer({"type": "connection_event", "event": "godot_disconnected"})

    async def _on_observer_connected(self, ws: web.WebSocketResponse) -> None:
        await self.bridge.observers.send(
            ws, {"type": "godot_status", "status": self.bridge.get_status().as_dict()}
        )

    # -------------------------
    # Commands
    # -------------------------

    def register_command(self, name: str, handler: CommandFn, mutation: bool = False) -> None:
        """
        `handler(project_path, args)` returns a dict with an "ok" flag.
        Successful mutation commands are recorded in the action log.
        """
        self._commands[name] = handler
        if mutation:
            self._mutations.add(name)
        else:
            self._mutations.discard(name)

    async def handle_command(self, message: JSON) -> JSON:
        command = message.get("command")
        args = message.get("args") if isinstance(message.get("args"), dict) else {}

        if command == "get_action_log":
            return {"ok": True, "entries": [entry.as_dict() for entry in self.action_log]}

        if not self.project_path:
            return {"ok": False, "error": "No project path set. Call map_project first."}

        handler = self._commands.get(command) if isinstance(command, str) else None
        if handler is None:
            return {"ok": False, "error": f"Unknown command: {command}"}

        logger.info("Visualizer command: %s", command)
        result = handler(self.project_path, args)
        if hasattr(result, "__await__"):
            result = await result

        if result.get("ok") and command in self._mutations:
            await self.record_action(
                ActionEntry(
                    command=command,
                    file_path=str(args.get("path") or ""),
                    details=dict(args),
                    reason=args.get("reason") or None,
                )
            )
        return result

    async def record_action(self, entry: ActionEntry) -> None:
        self.action_log.append(entry)
        await self.bridge.broadcast_to_visualizer({"type": "action_event", "entry": entry.as_dict()})

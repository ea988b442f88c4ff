"""
Bridge notifications for downstream consumers.

Events and payloads:
    tool_start          {"tool", "id", "args"}
    tool_end            {"tool", "id", "success", "duration"}
    godot_connected     {"projectPath"}
    godot_disconnected  {}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

JSON = Dict[str, Any]
Listener = Callable[[JSON], Any]

TOOL_START = "tool_start"
TOOL_END = "tool_end"
GODOT_CONNECTED = "godot_connected"
GODOT_DISCONNECTED = "godot_disconnected"

EVENTS = (TOOL_START, TOOL_END, GODOT_CONNECTED, GODOT_DISCONNECTED)


class EventHub:
    """
    Explicit subscribe/emit channel. Listeners may be plain callables or
    coroutine functions; coroutine results are scheduled on the running loop.
    A failing listener is logged and never reaches the emitter.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {name: [] for name in EVENTS}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        if event not in self._listeners:
            raise ValueError(f"Unknown bridge event: {event}")
        self._listeners[event].append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(event, listener)

        return _unsubscribe

    def unsubscribe(self, event: str, listener: Listener) -> None:
        try:
            self._listeners.get(event, []).remove(listener)
        except ValueError:
            pass

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: JSON) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
            except Exception:
                logger.exception("Listener for %s failed", event)
                continue

            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async bridge listener failed: %s", exc)

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

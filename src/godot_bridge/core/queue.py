"""
Per-resource execution chains.

Tasks sharing a key run one at a time in submission order; tasks with
different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Set, TypeVar

T = TypeVar("T")


class ResourceQueue:
    """
    Serializes coroutines per key (for example "scene:res://main.tscn").

    For every key only the tail of the chain is stored: a future that settles
    when the most recently submitted task has finished, successfully or not.
    A key is dropped as soon as its last task finishes with nothing queued
    behind it.
    """

    def __init__(self) -> None:
        self._tails: Dict[str, asyncio.Future] = {}
        self._waiting: Set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._tails)

    def __contains__(self, key: str) -> bool:
        return key in self._tails

    async def enqueue(self, key: str, task: Callable[[], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        previous = self._tails.get(key)
        done = loop.create_future()
        self._tails[key] = done

        started = False
        try:
            if previous is not None and not previous.done():
                await self._wait_turn(loop, previous)
            started = True
            return await task()
        finally:
            if started or previous is None or previous.done():
                self._settle(key, done)
            else:
                # Cancelled before its turn: the next task must still wait
                # for the one ahead of us.
                previous.add_done_callback(lambda _prev: self._settle(key, done))

    def _settle(self, key: str, done: asyncio.Future) -> None:
        if not done.done():
            done.set_result(None)
        if self._tails.get(key) is done:
            del self._tails[key]

    async def _wait_turn(self, loop: asyncio.AbstractEventLoop, previous: asyncio.Future) -> None:
        gate = loop.create_future()

        def _open(_prev: asyncio.Future) -> None:
            if not gate.done():
                gate.set_result(None)

        previous.add_done_callback(_open)
        self._waiting.add(gate)
        try:
            await gate
        finally:
            self._waiting.discard(gate)
            previous.remove_done_callback(_open)

    def clear(self, exc: BaseException) -> None:
        """
        Forget every chain. Tasks still waiting for their turn fail with `exc`;
        a task already running is left to finish on its own.
        """
        waiting = list(self._waiting)
        self._waiting.clear()
        self._tails.clear()
        for gate in waiting:
            if not gate.done():
                gate.set_exception(exc)

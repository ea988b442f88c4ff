"""
Outstanding tool invocations, keyed by correlation id.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import ToolTimeoutError


@dataclass
class PendingRequest:
    request_id: str
    tool_name: str
    future: asyncio.Future
    started_at: float = field(default_factory=time.monotonic)
    timeout_handle: Optional[asyncio.TimerHandle] = None
    resource_key: Optional[str] = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class PendingRequestTable:
    """
    Each entry is settled exactly once: by its response, by its timeout, or
    by a sweep when the connection goes away. Whichever comes first removes
    the entry; the others find nothing and do nothing.
    """

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        self._entries: Dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, tool_name: str, resource_key: Optional[str] = None) -> PendingRequest:
        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        while request_id in self._entries:
            request_id = str(uuid.uuid4())

        pending = PendingRequest(
            request_id=request_id,
            tool_name=tool_name,
            future=loop.create_future(),
            resource_key=resource_key,
        )
        pending.timeout_handle = loop.call_later(self.timeout_s, self._expire, request_id)
        self._entries[request_id] = pending
        return pending

    def pop(self, request_id: str) -> Optional[PendingRequest]:
        pending = self._entries.pop(request_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        return pending

    def reject(self, request_id: str, exc: BaseException) -> Optional[PendingRequest]:
        pending = self.pop(request_id)
        if pending is not None and not pending.future.done():
            pending.future.set_exception(exc)
        return pending

    def reject_all(self, exc: BaseException) -> int:
        entries = list(self._entries)
        for request_id in entries:
            self.reject(request_id, exc)
        return len(entries)

    def _expire(self, request_id: str) -> None:
        pending = self._entries.get(request_id)
        if pending is None:
            return
        self.reject(request_id, ToolTimeoutError(pending.tool_name, pending.elapsed_ms()))

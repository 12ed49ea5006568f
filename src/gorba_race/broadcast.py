from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, Set

import socketio

log = logging.getLogger("broadcast")


class Broadcaster(Protocol):
    """Fire-and-forget delivery; never suspends the caller."""

    def emit(self, sid: str, event: str, data: Any = None) -> None: ...

    def emit_all(self, event: str, data: Any = None) -> None: ...


class SocketIOBroadcaster:
    def __init__(self, sio: socketio.AsyncServer) -> None:
        self.sio = sio
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, sid: str, event: str, data: Any = None) -> None:
        self._spawn(event, data, sid)

    def emit_all(self, event: str, data: Any = None) -> None:
        self._spawn(event, data, None)

    def _spawn(self, event: str, data: Any, to: Optional[str]) -> None:
        task = asyncio.get_running_loop().create_task(
            self.sio.emit(event, data, to=to)
        )
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Emit failed: %s", exc)

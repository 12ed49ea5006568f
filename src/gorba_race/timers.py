from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

log = logging.getLogger("timers")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Wall-clock scheduling on the running asyncio loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class WaitingTimer:
    """
    Grace window of one arena. Idle or pending; restart() always cancels the
    live deadline before scheduling a fresh full window, so a tier never has
    two deadlines.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        grace_s: float,
        on_expire: Callable[[], None],
        name: str = "",
    ) -> None:
        self.scheduler = scheduler
        self.grace_s = grace_s
        self.on_expire = on_expire
        self.name = name
        self._handle: Optional[TimerHandle] = None
        self.deadline: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def restart(self) -> None:
        self.cancel()
        self.deadline = self.scheduler.now() + self.grace_s
        self._handle = self.scheduler.call_later(self.grace_s, self._fire)
        log.debug("Waiting timer %s armed for %.1fs", self.name, self.grace_s)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        self.deadline = None
        log.debug("Waiting timer %s cleared", self.name)
        return True

    def _fire(self) -> None:
        self._handle = None
        self.deadline = None
        self.on_expire()

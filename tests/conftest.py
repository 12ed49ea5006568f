from __future__ import annotations

import heapq
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import base58
import pytest

from gorba_race.manager import RaceManager
from gorba_race.store import MemoryResultStore

FEES = {"bronze": 1_000, "silver": 2_000, "gold": 5_000}


def wallet(n: int) -> str:
    return base58.b58encode(bytes([n]) * 32).decode("ascii")


class _Handle:
    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Timers fire only when the test advances the clock."""

    def __init__(self) -> None:
        self._now = 0.0
        self._heap: List[Tuple[float, int, _Handle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Handle:
        handle = _Handle(callback)
        heapq.heappush(self._heap, (self._now + delay, next(self._seq), handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = when
            handle.callback()
        self._now = target

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.sent: List[Tuple[Optional[str], str, Any]] = []

    def emit(self, sid: str, event: str, data: Any = None) -> None:
        self.sent.append((sid, event, data))

    def emit_all(self, event: str, data: Any = None) -> None:
        self.sent.append((None, event, data))

    def events(self, event: str, sid: Optional[str] = None) -> List[Any]:
        return [d for s, e, d in self.sent if e == event and (sid is None or s == sid)]

    def recipients(self, event: str) -> List[Optional[str]]:
        return [s for s, e, _ in self.sent if e == event]

    def clear(self) -> None:
        self.sent.clear()


class FakeVerifier:
    def __init__(self, valid: bool = True) -> None:
        self.valid = valid
        self.calls: List[Tuple[str, str, int]] = []
        self.rejected: set = set()

    async def verify(self, signature: str, payer: str, min_lamports: int) -> bool:
        self.calls.append((signature, payer, min_lamports))
        return self.valid and signature not in self.rejected


class FakeTreasury:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: List[list] = []

    async def send_prizes(self, payouts) -> Optional[str]:
        batch = [p for p in payouts if p.lamports > 0]
        self.batches.append(batch)
        if self.fail:
            raise RuntimeError("RPC error: blockhash not found")
        return "prize-sig" if batch else None


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def treasury() -> FakeTreasury:
    return FakeTreasury()


@pytest.fixture
def store() -> MemoryResultStore:
    return MemoryResultStore()


@pytest.fixture
def manager(verifier, treasury, store, broadcaster, scheduler) -> RaceManager:
    return RaceManager(
        verifier=verifier,
        disbursement=treasury,
        store=store,
        broadcaster=broadcaster,
        arena_fees=FEES,
        scheduler=scheduler,
        clock=lambda: 1_700_000_000.0,
    )


async def join(
    manager: RaceManager, n: int, arena: str = "bronze", sig: Optional[str] = None
) -> str:
    """Connects player `n` and sends a paid join-race request."""
    sid = f"sid-{n}"
    manager.handle_connect(sid)
    data: Dict[str, Any] = {
        "walletAddress": wallet(n),
        "username": f"player{n}",
        "arena": arena,
        "paymentSig": sig or f"sig-{n}",
    }
    await manager.handle_join(sid, data)
    return sid

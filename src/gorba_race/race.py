from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .timers import TimerHandle


class RaceStatus(str, Enum):
    FORMING = "forming"
    COUNTDOWN = "countdown"
    ACTIVE = "active"
    FINISHED = "finished"


_NEXT_STATUS = {
    RaceStatus.FORMING: RaceStatus.COUNTDOWN,
    RaceStatus.COUNTDOWN: RaceStatus.ACTIVE,
    RaceStatus.ACTIVE: RaceStatus.FINISHED,
}


@dataclass
class Position:
    x: float = 225.0
    y: float = 500.0
    vx: float = 0.0
    vy: float = 0.0

    @staticmethod
    def parse(data: Any) -> Optional["Position"]:
        if not isinstance(data, dict):
            return None
        try:
            values = [float(data[k]) for k in ("x", "y", "vx", "vy")]
        except (KeyError, TypeError, ValueError):
            return None
        if not all(math.isfinite(v) for v in values):
            return None
        return Position(*values)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "vx": self.vx, "vy": self.vy}


@dataclass
class PlayerSession:
    sid: str
    wallet_address: str
    username: str
    arena: str
    joined_seq: int
    position: Position = field(default_factory=Position)
    score: float = 0
    score_reported: bool = False
    alive: bool = True
    connected: bool = True

    def public(self) -> Dict[str, str]:
        return {
            "id": self.sid,
            "username": self.username,
            "walletAddress": self.wallet_address,
        }


@dataclass
class Race:
    id: str
    arena: str
    seed: str
    entry_fee_lamports: int
    bank_lamports: int
    duration_s: float
    players: Dict[str, PlayerSession] = field(default_factory=dict)
    status: RaceStatus = RaceStatus.FORMING
    timers: List[TimerHandle] = field(default_factory=list, repr=False)

    def advance(self, status: RaceStatus) -> None:
        """Moves one step forward. Anything else is a logic error."""
        expected = _NEXT_STATUS.get(self.status)
        if status is not expected:
            raise RuntimeError(
                f"Race {self.id}: illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status

    def cancel_timers(self) -> None:
        for handle in self.timers:
            handle.cancel()
        self.timers.clear()

    def connected_players(self) -> List[PlayerSession]:
        return [p for p in self.players.values() if p.connected]

    def all_dead(self) -> bool:
        return all(not p.alive for p in self.players.values())

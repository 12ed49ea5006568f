from __future__ import annotations

from typing import Callable, Dict, List, Optional

from .race import PlayerSession
from .timers import Scheduler, WaitingTimer


class ArenaQueue:
    """Paid players of one tier waiting to be placed into a race, in arrival order."""

    def __init__(self, arena: str, max_players: int) -> None:
        self.arena = arena
        self.max_players = max_players
        self._players: List[PlayerSession] = []

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, sid: object) -> bool:
        return any(p.sid == sid for p in self._players)

    @property
    def players(self) -> List[PlayerSession]:
        return list(self._players)

    def join(self, player: PlayerSession) -> int:
        """Appends player. Returns its 1-based queue position."""
        if player.sid in self:
            raise ValueError(f"Player {player.sid} already queued in {self.arena}")
        if len(self._players) >= self.max_players:
            raise ValueError(f"Arena {self.arena} queue is full")
        self._players.append(player)
        return len(self._players)

    def remove(self, sid: str) -> Optional[PlayerSession]:
        for idx, player in enumerate(self._players):
            if player.sid == sid:
                return self._players.pop(idx)
        return None

    def claim(self, count: int) -> List[PlayerSession]:
        """Removes and returns up to `count` players from the front."""
        claimed = self._players[:count]
        del self._players[:count]
        return claimed

    def snapshot(self) -> List[Dict[str, object]]:
        return [
            {
                "id": p.sid,
                "username": p.username,
                "walletAddress": p.wallet_address,
                "position": i + 1,
            }
            for i, p in enumerate(self._players)
        ]


class Arena:
    """One tier: its fee, its queue and the queue's waiting timer."""

    def __init__(
        self,
        name: str,
        entry_fee_lamports: int,
        scheduler: Scheduler,
        min_players: int,
        max_players: int,
        waiting_time_s: float,
        on_timer_expired: Callable[["Arena"], None],
    ) -> None:
        self.name = name
        self.entry_fee_lamports = entry_fee_lamports
        self.min_players = min_players
        self.max_players = max_players
        self.queue = ArenaQueue(name, max_players)
        self.timer = WaitingTimer(
            scheduler,
            waiting_time_s,
            on_expire=lambda: on_timer_expired(self),
            name=name,
        )

    @property
    def has_quorum(self) -> bool:
        return len(self.queue) >= self.min_players

    @property
    def is_full(self) -> bool:
        return len(self.queue) >= self.max_players

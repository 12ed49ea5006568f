from __future__ import annotations

from typing import Any, Dict, Mapping

from .arena_queue import Arena
from .race import Race


class StatsReporter:
    def __init__(self, arenas: Mapping[str, Arena], races: Mapping[str, Race]) -> None:
        self.arenas = arenas
        self.races = races

    def snapshot(self) -> Dict[str, Any]:
        arena_queues = {name: len(arena.queue) for name, arena in self.arenas.items()}
        waiting = sum(arena_queues.values())
        racing = sum(len(race.connected_players()) for race in self.races.values())
        return {
            "activeRaces": len(self.races),
            "waitingPlayers": waiting,
            "totalPlayersOnline": waiting + racing,
            "arenaQueues": arena_queues,
        }

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import secrets
import time
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from .arena_queue import Arena
from .broadcast import Broadcaster
from .payments import SignatureCache, is_valid_address, short
from .prizes import house_edge_ceiling, settle, validate_distribution
from .project_constants import (
    COUNTDOWN_TIME_S,
    DEFAULT_ARENA,
    MAX_PLAYERS,
    MIN_PLAYERS,
    PRIZE_DISTRIBUTION_BPS,
    RACE_DURATION_S,
    WAITING_TIME_S,
)
from .race import PlayerSession, Position, Race, RaceStatus
from .stats import StatsReporter
from .store import ResultStore
from .timers import LoopScheduler, Scheduler
from .treasury import Payout

log = logging.getLogger("race")

MAX_USERNAME_LEN = 32


class Verifier(Protocol):
    async def verify(self, signature: str, payer: str, min_lamports: int) -> bool: ...


class Disbursement(Protocol):
    async def send_prizes(self, payouts: Iterable[Payout]) -> Optional[str]: ...


class JoinRejected(Exception):
    """A join-race request refused with a message safe to show the player."""


def parse_score(data: Any) -> Optional[float]:
    # Clients send either {"score": n} or a bare number.
    value = data.get("score") if isinstance(data, dict) else data
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def clean_username(raw: Any) -> str:
    name = raw.strip() if isinstance(raw, str) else ""
    return name[:MAX_USERNAME_LEN] or "Anonymous"


class RaceManager:
    """
    Owns every arena queue, waiting timer and live race of the process.

    All state changes happen synchronously inside handlers and timer
    callbacks. Only payment verification and prize settlement suspend, and
    neither holds a half-updated queue or race across the await.
    """

    def __init__(
        self,
        verifier: Verifier,
        disbursement: Disbursement,
        store: ResultStore,
        broadcaster: Broadcaster,
        arena_fees: Mapping[str, int],
        scheduler: Optional[Scheduler] = None,
        *,
        min_players: int = MIN_PLAYERS,
        max_players: int = MAX_PLAYERS,
        waiting_time_s: float = WAITING_TIME_S,
        countdown_s: float = COUNTDOWN_TIME_S,
        race_duration_s: float = RACE_DURATION_S,
        prize_table: Mapping[int, Sequence[int]] = PRIZE_DISTRIBUTION_BPS,
        signatures: Optional[SignatureCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not 2 <= min_players <= max_players:
            raise ValueError("Need 2 <= min_players <= max_players.")
        validate_distribution(prize_table)

        self.verifier = verifier
        self.disbursement = disbursement
        self.store = store
        self.broadcaster = broadcaster
        self.scheduler = scheduler or LoopScheduler()
        self.countdown_s = countdown_s
        self.race_duration_s = race_duration_s
        self.prize_table = prize_table
        self.signatures = signatures if signatures is not None else SignatureCache()
        self.clock = clock

        self.arenas: Dict[str, Arena] = {
            name: Arena(
                name,
                fee,
                self.scheduler,
                min_players=min_players,
                max_players=max_players,
                waiting_time_s=waiting_time_s,
                on_timer_expired=self._on_waiting_timer_expired,
            )
            for name, fee in arena_fees.items()
        }
        self.races: Dict[str, Race] = {}
        self.stats = StatsReporter(self.arenas, self.races)

        self._race_of: Dict[str, str] = {}
        self._connected: Set[str] = set()
        self._join_seq = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

        log.info("Race manager ready with arenas: %s", ", ".join(self.arenas))

    # ------------------------------------------------------------------ inbound

    def handle_connect(self, sid: str) -> None:
        self._connected.add(sid)
        log.debug("Player connected: %s", sid)

    def handle_disconnect(self, sid: str) -> None:
        self._connected.discard(sid)
        self.remove_player(sid)
        log.info("Player disconnected: %s", sid)

    def handle_leave(self, sid: str) -> None:
        self.remove_player(sid)
        self.broadcaster.emit(sid, "race-left", {})
        log.info("Player left race: %s", sid)

    def handle_room_stats(self, sid: str) -> None:
        self.broadcaster.emit(sid, "room-stats", self.stats.snapshot())

    async def handle_join(self, sid: str, data: Any) -> None:
        try:
            await self._join(sid, data)
        except JoinRejected as e:
            log.info("Join rejected for %s: %s", sid, e)
            self.broadcaster.emit(sid, "race-error", {"message": str(e)})
        except Exception:
            log.exception("Error handling join for %s", sid)
            self.broadcaster.emit(sid, "race-error", {"message": "Failed to join race"})

    def handle_position(self, sid: str, data: Any) -> None:
        found = self._find_player(sid)
        if found is None:
            return
        race, player = found
        if race.status is not RaceStatus.ACTIVE or not player.alive:
            return

        position = Position.parse(data)
        if position is None:
            log.debug("Ignoring malformed position from %s", sid)
            return
        player.position = position

        self._emit_race(
            race,
            "opponent-position",
            {
                "playerId": sid,
                "position": position.to_dict(),
                "username": player.username,
            },
            skip=sid,
        )

    def handle_score(self, sid: str, data: Any) -> None:
        found = self._find_player(sid)
        if found is None:
            return
        race, player = found
        if race.status is not RaceStatus.ACTIVE or not player.alive:
            return

        score = parse_score(data)
        if score is None:
            log.debug("Ignoring malformed score from %s", sid)
            return
        player.score = score
        player.score_reported = True

        self._emit_race(
            race,
            "score-update",
            {"playerId": sid, "username": player.username, "score": score},
        )

    def handle_died(self, sid: str) -> None:
        found = self._find_player(sid)
        if found is None:
            return
        race, player = found
        if race.status not in (RaceStatus.COUNTDOWN, RaceStatus.ACTIVE):
            return
        if not player.alive:
            return

        player.alive = False
        self._emit_race(
            race,
            "player-died",
            {"playerId": sid, "username": player.username, "finalScore": player.score},
            skip=sid,
        )
        log.info(
            "Player %s died in race %s with score %s", player.username, race.id, player.score
        )

        if race.status is RaceStatus.ACTIVE and race.all_dead():
            self._finish_race(race.id, "all players out")

    # ------------------------------------------------------------------ joining

    async def _join(self, sid: str, data: Any) -> None:
        if not isinstance(data, dict):
            raise JoinRejected("Invalid join request")

        signature = data.get("paymentSig")
        wallet = data.get("walletAddress")
        arena_name = data.get("arena") or DEFAULT_ARENA

        if not signature or not isinstance(signature, str):
            raise JoinRejected("Entry fee payment signature required")
        if not is_valid_address(wallet):
            raise JoinRejected("Invalid wallet address")
        arena = self.arenas.get(arena_name)
        if arena is None:
            raise JoinRejected("Unknown arena")
        if signature in self.signatures:
            raise JoinRejected("Payment signature already used")

        paid = await self.verifier.verify(signature, wallet, arena.entry_fee_lamports)
        if not paid:
            raise JoinRejected("Invalid or insufficient entry fee payment")

        # Another join with the same signature may have resolved during the await.
        if not self.signatures.consume(signature):
            raise JoinRejected("Payment signature already used")

        if sid not in self._connected:
            log.warning(
                "Player %s disconnected before admission; payment %s is spent",
                short(wallet),
                signature,
            )
            return

        self._admit(sid, wallet, clean_username(data.get("username")), arena)

    def _admit(self, sid: str, wallet: str, username: str, arena: Arena) -> None:
        self.remove_player(sid, rejoining=arena)

        player = PlayerSession(
            sid=sid,
            wallet_address=wallet,
            username=username,
            arena=arena.name,
            joined_seq=next(self._join_seq),
        )
        position = arena.queue.join(player)
        log.info(
            "Player %s joined %s arena queue. Queue: %d/%d",
            short(wallet),
            arena.name,
            len(arena.queue),
            arena.max_players,
        )

        self.broadcaster.emit(
            sid,
            "race-queue-joined",
            {
                "position": position,
                "totalPlayers": len(arena.queue),
                "maxPlayers": arena.max_players,
                "arena": arena.name,
            },
        )
        self._broadcast_queue(arena)
        self._broadcast_stats()
        self._evaluate(arena)

    def _evaluate(self, arena: Arena) -> None:
        if arena.is_full:
            arena.timer.cancel()
            self._start_race(arena, arena.queue.claim(arena.max_players))
            return

        if arena.has_quorum:
            arena.timer.restart()
            self._emit_queue(
                arena,
                "waiting-timer-started",
                {
                    "waitingTime": arena.timer.grace_s,
                    "currentPlayers": len(arena.queue),
                    "maxPlayers": arena.max_players,
                },
            )
            log.info(
                "Waiting timer for %s arena started: %.0fs, %d players",
                arena.name,
                arena.timer.grace_s,
                len(arena.queue),
            )

    def _on_waiting_timer_expired(self, arena: Arena) -> None:
        players = arena.queue.claim(arena.max_players)
        log.info(
            "Waiting timer for %s arena expired, starting race with %d players",
            arena.name,
            len(players),
        )
        if players:
            self._start_race(arena, players)

    # ----------------------------------------------------------------- removal

    def remove_player(self, sid: str, rejoining: Optional[Arena] = None) -> None:
        """
        Takes sid out of its queue or race. No-op if it is in neither.
        When sid is about to re-enter `rejoining`, that arena keeps its timer.
        """
        for arena in self.arenas.values():
            if arena.queue.remove(sid) is None:
                continue
            log.info(
                "Player removed from %s queue. Queue: %d/%d",
                arena.name,
                len(arena.queue),
                arena.max_players,
            )
            if arena is not rejoining and not arena.has_quorum and arena.timer.cancel():
                self._emit_queue(
                    arena,
                    "waiting-timer-cancelled",
                    {
                        "reason": "Not enough players",
                        "currentPlayers": len(arena.queue),
                        "minPlayers": arena.min_players,
                    },
                )
                log.info("Not enough players for %s race, timer cancelled", arena.name)
            self._broadcast_queue(arena)
            self._broadcast_stats()
            break

        race_id = self._race_of.pop(sid, None)
        if race_id is not None:
            self._forfeit(race_id, sid)

    def _forfeit(self, race_id: str, sid: str) -> None:
        race = self.races.get(race_id)
        if race is None:
            return
        player = race.players[sid]
        if race.status is RaceStatus.FINISHED:
            # Settlement already running; results keep this player and a
            # still-connected socket gets race-finished.
            if sid not in self._connected:
                player.connected = False
            return

        was_alive = player.alive
        player.connected = False
        player.alive = False

        if not race.connected_players():
            race.cancel_timers()
            self._drop_race(race)
            log.info("Race %s abandoned by all players, discarded without settlement", race.id)
            self._broadcast_stats()
            return

        if was_alive:
            self._emit_race(
                race,
                "player-died",
                {"playerId": sid, "username": player.username, "finalScore": player.score},
            )
        self._broadcast_stats()

        if race.status is RaceStatus.ACTIVE and race.all_dead():
            self._finish_race(race.id, "all players out")

    # --------------------------------------------------------------- lifecycle

    def _start_race(self, arena: Arena, players: Sequence[PlayerSession]) -> Race:
        now_ms = self.clock() * 1000
        race = Race(
            id=f"race_{int(now_ms)}_{secrets.token_hex(3)}",
            arena=arena.name,
            seed=secrets.token_hex(4),
            entry_fee_lamports=arena.entry_fee_lamports,
            bank_lamports=len(players) * arena.entry_fee_lamports,
            duration_s=self.race_duration_s,
            players={p.sid: p for p in players},
        )
        race.advance(RaceStatus.COUNTDOWN)
        self.races[race.id] = race
        for p in players:
            self._race_of[p.sid] = race.id

        self._emit_race(
            race,
            "race-starting",
            {
                "raceId": race.id,
                "players": [p.public() for p in players],
                "countdown": int(self.countdown_s * 1000),
                "duration": int(self.race_duration_s * 1000),
                "seed": race.seed,
            },
        )
        log.info(
            "Race %s starting in %s arena with %d players, bank %d lamports",
            race.id,
            arena.name,
            len(players),
            race.bank_lamports,
        )
        self._broadcast_stats()

        race.timers.append(
            self.scheduler.call_later(self.countdown_s, lambda: self._activate_race(race.id))
        )
        race.timers.append(
            self.scheduler.call_later(
                self.countdown_s + self.race_duration_s,
                lambda: self._finish_race(race.id, "time up"),
            )
        )
        return race

    def _activate_race(self, race_id: str) -> None:
        race = self.races.get(race_id)
        if race is None or race.status is not RaceStatus.COUNTDOWN:
            return
        race.advance(RaceStatus.ACTIVE)
        self._emit_race(
            race,
            "race-started",
            {"raceId": race.id, "startTime": int(self.clock() * 1000)},
        )
        log.info("Race %s activated", race.id)

        if race.all_dead():
            self._finish_race(race.id, "all players out")

    def _finish_race(self, race_id: str, reason: str) -> None:
        race = self.races.get(race_id)
        if race is None or race.status is not RaceStatus.ACTIVE:
            return
        race.advance(RaceStatus.FINISHED)
        race.cancel_timers()
        log.info("Race %s finished (%s)", race.id, reason)
        self._spawn(self._settle(race))

    async def _settle(self, race: Race) -> None:
        for p in race.players.values():
            if not p.score_reported:
                log.warning(
                    "No score reported by %s in race %s, settling with 0",
                    short(p.wallet_address),
                    race.id,
                )
                p.score = 0

        settlement = settle(race.bank_lamports, list(race.players.values()), self.prize_table)
        edge = settlement.house_edge_lamports
        ceiling = house_edge_ceiling(race.bank_lamports)
        if edge > ceiling:
            log.warning(
                "House edge (%d) exceeds expected (%d) in race %s",
                edge,
                ceiling,
                race.id,
            )

        prize_sig: Optional[str] = None
        try:
            prize_sig = await self.disbursement.send_prizes(settlement.payouts)
            if prize_sig:
                log.info("Prize payout tx for race %s: %s", race.id, prize_sig)
        except Exception:
            log.exception("Failed to send prize payouts for race %s", race.id)

        results = [r.to_dict() for r in settlement.results]
        record = {
            "race_id": race.id,
            "results": results,
            "additional_data": {
                "prizeTxSignature": prize_sig,
                "entryFeeLamports": race.entry_fee_lamports,
                "bankLamports": race.bank_lamports,
                "houseEdgeLamports": edge,
                "arena": race.arena,
                "seed": race.seed,
            },
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.store.insert_race_result(record)
        except Exception:
            log.exception("Failed to save results for race %s", race.id)

        self._emit_race(
            race,
            "race-finished",
            {
                "raceId": race.id,
                "results": results,
                "duration": int(race.duration_s * 1000),
                "prizeTxSignature": prize_sig,
            },
        )
        if settlement.results:
            winner = settlement.results[0]
            log.info(
                "Race %s winner: %s with score %s", race.id, winner.username, winner.score
            )

        self._drop_race(race)
        self._broadcast_stats()

    def _drop_race(self, race: Race) -> None:
        self.races.pop(race.id, None)
        for sid in race.players:
            if self._race_of.get(sid) == race.id:
                del self._race_of[sid]

    # ----------------------------------------------------------------- helpers

    def _find_player(self, sid: str) -> Optional[Tuple[Race, PlayerSession]]:
        race_id = self._race_of.get(sid)
        race = self.races.get(race_id) if race_id else None
        if race is None:
            return None
        return race, race.players[sid]

    def find_race(self, sid: str) -> Optional[Race]:
        found = self._find_player(sid)
        return found[0] if found else None

    def queued_arena(self, sid: str) -> Optional[str]:
        for name, arena in self.arenas.items():
            if sid in arena.queue:
                return name
        return None

    def _emit_race(
        self, race: Race, event: str, data: Any, skip: Optional[str] = None
    ) -> None:
        for player in race.connected_players():
            if player.sid != skip:
                self.broadcaster.emit(player.sid, event, data)

    def _emit_queue(self, arena: Arena, event: str, data: Any) -> None:
        for player in arena.queue.players:
            self.broadcaster.emit(player.sid, event, data)

    def _broadcast_queue(self, arena: Arena) -> None:
        snapshot = arena.queue.snapshot()
        for idx, player in enumerate(arena.queue.players):
            self.broadcaster.emit(
                player.sid,
                "queue-updated",
                {
                    "position": idx + 1,
                    "totalPlayers": len(snapshot),
                    "maxPlayers": arena.max_players,
                    "players": [
                        dict(entry, isYou=entry["id"] == player.sid) for entry in snapshot
                    ],
                },
            )

    def _broadcast_stats(self) -> None:
        self.broadcaster.emit_all("room-stats", self.stats.snapshot())

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Background task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Waits for every settlement in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for arena in self.arenas.values():
            arena.timer.cancel()
        for race in self.races.values():
            race.cancel_timers()
        await self.drain()

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Tuple

from .project_constants import (
    BPS_DENOMINATOR,
    HOUSE_EDGE_BPS,
    PRIZE_DISTRIBUTION_BPS,
    TOKEN_DECIMALS,
)
from .race import PlayerSession
from .treasury import Payout


@dataclass(frozen=True)
class PrizeResult:
    position: int
    player_id: str
    username: str
    wallet_address: str
    score: float
    is_alive: bool
    prize_lamports: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "position": self.position,
            "playerId": self.player_id,
            "username": self.username,
            "walletAddress": self.wallet_address,
            "score": self.score,
            "isAlive": self.is_alive,
            "prizeLamports": self.prize_lamports,
        }


@dataclass(frozen=True)
class Settlement:
    bank_lamports: int
    results: List[PrizeResult]
    payouts: List[Payout]

    @property
    def payouts_sum(self) -> int:
        return sum(p.lamports for p in self.payouts)

    @property
    def house_edge_lamports(self) -> int:
        return self.bank_lamports - self.payouts_sum


def to_tokens(lamports: int) -> float:
    return round(lamports / (10**TOKEN_DECIMALS), 4)


def validate_distribution(table: Mapping[int, Sequence[int]]) -> None:
    if not table:
        raise ValueError("Prize table is empty.")
    for count, shares in table.items():
        if count < 1:
            raise ValueError(f"Prize table row for {count} players is invalid.")
        if any(s < 0 for s in shares):
            raise ValueError(f"Negative share in prize table row {count}.")
        if sum(shares) >= BPS_DENOMINATOR:
            raise ValueError(
                f"Prize table row {count} pays out {sum(shares)} bps; "
                f"must be below {BPS_DENOMINATOR}."
            )


def shares_for(count: int, table: Mapping[int, Sequence[int]]) -> Tuple[int, ...]:
    """Row for `count` players; counts outside the table use the nearest row."""
    if count in table:
        return tuple(table[count])
    nearest = min(table, key=lambda k: (abs(k - count), -k))
    return tuple(table[nearest])


def rank_players(players: Sequence[PlayerSession]) -> List[PlayerSession]:
    # Higher score first; equal scores go to whoever entered the queue first.
    return sorted(players, key=lambda p: (-p.score, p.joined_seq))


def house_edge_ceiling(bank_lamports: int, edge_bps: int = HOUSE_EDGE_BPS) -> int:
    # +1 lamport of rounding slack
    return bank_lamports * edge_bps // BPS_DENOMINATOR + 1


def settle(
    bank_lamports: int,
    players: Sequence[PlayerSession],
    table: Mapping[int, Sequence[int]] = PRIZE_DISTRIBUTION_BPS,
) -> Settlement:
    if bank_lamports < 0:
        raise ValueError("Bank cannot be negative.")

    ranked = rank_players(players)
    shares = shares_for(len(ranked), table) if ranked else ()

    results: List[PrizeResult] = []
    for idx, player in enumerate(ranked):
        bps = shares[idx] if idx < len(shares) else 0
        results.append(
            PrizeResult(
                position=idx + 1,
                player_id=player.sid,
                username=player.username,
                wallet_address=player.wallet_address,
                score=player.score,
                is_alive=player.alive,
                prize_lamports=bank_lamports * bps // BPS_DENOMINATOR,
            )
        )

    payouts = [
        Payout(to=r.wallet_address, lamports=r.prize_lamports)
        for r in results
        if r.prize_lamports > 0
    ]
    return Settlement(bank_lamports=bank_lamports, results=results, payouts=payouts)

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from .rpc import RpcClient

log = logging.getLogger("treasury")


@dataclass(frozen=True)
class Payout:
    to: str
    lamports: int


def load_keypair(secret_base58: str) -> Keypair:
    try:
        raw = base58.b58decode(secret_base58.strip())
    except ValueError as e:
        raise RuntimeError(f"Treasury secret is not valid base58: {e}") from None
    if len(raw) != 64:
        raise RuntimeError(
            f"Treasury secret must decode to 64 bytes, got {len(raw)}."
        )
    try:
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise RuntimeError(f"Treasury secret is not a valid keypair: {e}") from None


class Treasury:
    """Holds the treasury key and pays race prizes from it."""

    def __init__(
        self,
        keypair: Keypair,
        rpc: RpcClient,
        confirm_timeout_s: float = 60.0,
        confirm_poll_s: float = 1.0,
    ) -> None:
        self.keypair = keypair
        self.rpc = rpc
        self.confirm_timeout_s = confirm_timeout_s
        self.confirm_poll_s = confirm_poll_s

    @classmethod
    def from_secret(cls, secret_base58: str, rpc: RpcClient, **kwargs) -> "Treasury":
        return cls(load_keypair(secret_base58), rpc, **kwargs)

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    def build_transaction(self, payouts: List[Payout], blockhash: str) -> Transaction:
        payer = self.keypair.pubkey()
        instructions = [
            transfer(
                TransferParams(
                    from_pubkey=payer,
                    to_pubkey=Pubkey.from_string(p.to),
                    lamports=int(p.lamports),
                )
            )
            for p in payouts
        ]
        recent = Hash.from_string(blockhash)
        message = Message.new_with_blockhash(instructions, payer, recent)
        return Transaction([self.keypair], message, recent)

    async def send_prizes(self, payouts: Iterable[Payout]) -> Optional[str]:
        """
        Sends every non-zero payout in a single transaction signed by the
        treasury and waits for confirmation. Returns the signature, or None
        when there is nothing to pay.
        """
        valid = [p for p in payouts if p.lamports > 0]
        if not valid:
            return None

        blockhash = await self.rpc.get_latest_blockhash()
        tx = self.build_transaction(valid, blockhash)
        encoded = base64.b64encode(bytes(tx)).decode("ascii")

        signature = await self.rpc.send_transaction(encoded)
        log.info(
            "Prize tx %s submitted (%d transfers, %d lamports)",
            signature,
            len(valid),
            sum(p.lamports for p in valid),
        )
        await self.rpc.confirm_transaction(
            signature,
            timeout_s=self.confirm_timeout_s,
            poll_interval_s=self.confirm_poll_s,
        )
        return signature

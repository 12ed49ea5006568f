from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Set

import base58

from .rpc import RpcClient

log = logging.getLogger("payments")

SYSTEM_PROGRAM = "system"
PUBKEY_LEN = 32


def is_valid_address(address: Any) -> bool:
    """A base58 string decoding to a 32-byte public key."""
    if not isinstance(address, str) or not address:
        return False
    try:
        raw = base58.b58decode(address)
    except ValueError:
        return False
    return len(raw) == PUBKEY_LEN


def short(address: str) -> str:
    return address[:8]


class SignatureCache:
    """Transaction signatures already spent on a queue entry. Never evicted."""

    def __init__(self, consumed: Iterable[str] = ()) -> None:
        self._consumed: Set[str] = set(consumed)

    def __contains__(self, signature: object) -> bool:
        return signature in self._consumed

    def __len__(self) -> int:
        return len(self._consumed)

    def consume(self, signature: str) -> bool:
        """Marks signature as spent. Returns False if it already was."""
        if signature in self._consumed:
            return False
        self._consumed.add(signature)
        return True


def find_transfers(tx: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    """Yields parsed `info` dicts of top-level system transfer instructions."""
    message = (tx.get("transaction") or {}).get("message") or {}
    for ix in message.get("instructions") or []:
        if ix.get("program") != SYSTEM_PROGRAM:
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info")
        if isinstance(info, dict):
            yield info


def transfer_matches(
    info: Dict[str, Any], payer: str, treasury: str, min_lamports: int
) -> bool:
    try:
        lamports = int(info.get("lamports", 0))
    except (TypeError, ValueError):
        return False
    return (
        info.get("source") == payer
        and info.get("destination") == treasury
        and lamports >= min_lamports
    )


class PaymentVerifier:
    def __init__(
        self,
        rpc: RpcClient,
        treasury_address: str,
        commitment: str = "confirmed",
    ) -> None:
        self.rpc = rpc
        self.treasury_address = treasury_address
        self.commitment = commitment

    async def verify(self, signature: str, payer: str, min_lamports: int) -> bool:
        """
        True only if `signature` is a successful transaction holding a system
        transfer of at least `min_lamports` from `payer` to the treasury.
        Every lookup or parse failure is a rejection.
        """
        try:
            tx = await self.rpc.get_parsed_transaction(signature, self.commitment)
        except Exception as e:
            log.warning("Payment lookup failed for %s: %s", signature, e)
            return False

        return self.check_transaction(tx, signature, payer, min_lamports)

    def check_transaction(
        self,
        tx: Optional[Dict[str, Any]],
        signature: str,
        payer: str,
        min_lamports: int,
    ) -> bool:
        if not tx:
            log.info("Payment %s not found on chain", signature)
            return False

        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            log.info("Payment %s failed on chain: %s", signature, meta["err"])
            return False

        try:
            transfers = list(find_transfers(tx))
        except (AttributeError, TypeError) as e:
            log.warning("Malformed transaction %s: %s", signature, e)
            return False

        if not transfers:
            log.info("Payment %s has no transfer instruction", signature)
            return False

        for info in transfers:
            if transfer_matches(info, payer, self.treasury_address, min_lamports):
                return True

        log.info(
            "Payment %s does not pay %d lamports from %s to treasury",
            signature,
            min_lamports,
            short(payer),
        )
        return False

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import TimedRotatingFileHandler

import uvicorn

from .config import Settings
from .payments import PaymentVerifier
from .prizes import house_edge_ceiling, settle, to_tokens
from .project_constants import ARENA_FEE_MULTIPLIERS, DEFAULT_ARENA, MAX_PLAYERS
from .race import PlayerSession
from .rpc import RpcClient
from .server import create_server
from .treasury import load_keypair

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool, level: str = "INFO", log_dir: str | None = None) -> None:
    level_no = logging.DEBUG if verbose else getattr(logging, level, logging.INFO)
    logging.basicConfig(level=level_no, format="%(levelname)s: %(message)s")

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        root = logging.getLogger()
        formatter = logging.Formatter(LOG_FORMAT)

        all_logs = TimedRotatingFileHandler(
            os.path.join(log_dir, "application.log"), when="midnight", backupCount=14
        )
        all_logs.setLevel(level_no)
        all_logs.setFormatter(formatter)
        root.addHandler(all_logs)

        errors = TimedRotatingFileHandler(
            os.path.join(log_dir, "error.log"), when="midnight", backupCount=30
        )
        errors.setLevel(logging.ERROR)
        errors.setFormatter(formatter)
        root.addHandler(errors)


def cmd_serve(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    setup_logging(args.verbose, settings.log_level, settings.log_dir)
    log = logging.getLogger("serve")

    server = create_server(settings, rpc_timeout_s=args.timeout)
    host = args.host or settings.host
    port = args.port or settings.port
    log.info("Race server running on %s:%d", host, port)
    uvicorn.run(server.app, host=host, port=port, log_level="warning")
    return 0


def cmd_verify_payment(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    setup_logging(args.verbose, settings.log_level)

    fee = settings.arena_fees()[args.arena]
    treasury_address = str(load_keypair(settings.treasury_secret).pubkey())

    async def run() -> bool:
        rpc = RpcClient(settings.rpc_url, timeout_s=args.timeout)
        try:
            verifier = PaymentVerifier(rpc, treasury_address)
            return await verifier.verify(args.sig, args.payer, fee)
        finally:
            await rpc.close()

    ok = asyncio.run(run())

    print(f"Signature     : {args.sig}")
    print(f"Payer         : {args.payer}")
    print(f"Treasury      : {treasury_address}")
    print(f"Arena         : {args.arena} ({fee} lamports)")
    print("✅ PAYMENT VALID" if ok else "❌ PAYMENT NOT VALID")
    return 0 if ok else 1


def cmd_prize_table(args: argparse.Namespace) -> int:
    if args.bank < 0:
        raise SystemExit("Bank cannot be negative.")
    if not 1 <= args.players <= MAX_PLAYERS:
        raise SystemExit(f"Players must be between 1 and {MAX_PLAYERS}.")

    # Descending scores so rank i gets the i-th share.
    players = [
        PlayerSession(
            sid=f"p{i}",
            wallet_address=f"rank-{i}",
            username=f"rank-{i}",
            arena=DEFAULT_ARENA,
            joined_seq=i,
            score=args.players - i,
        )
        for i in range(1, args.players + 1)
    ]
    result = settle(args.bank, players)

    print(f"Bank          : {args.bank} lamports ({to_tokens(args.bank)})")
    print(f"Players       : {args.players}")
    print("-" * 40)
    for r in result.results:
        print(f"#{r.position}            : {r.prize_lamports} lamports")
    print("-" * 40)
    print(f"Paid out      : {result.payouts_sum}")
    print(f"Transfers     : {len(result.payouts)}")
    print(f"House edge    : {result.house_edge_lamports}")
    print(f"Edge ceiling  : {house_edge_ceiling(args.bank)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gorba-race",
        description="Paid multiplayer race arena server.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=30.0, help="RPC timeout seconds.")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the realtime race server.")
    s.add_argument("--host", default=None, help="Bind address (else HOST env).")
    s.add_argument("--port", type=int, default=None, help="Bind port (else PORT env).")
    s.set_defaults(func=cmd_serve)

    v = sub.add_parser(
        "verify-payment", help="Check an entry-fee payment against the treasury."
    )
    v.add_argument("--sig", required=True, help="Transaction signature.")
    v.add_argument("--payer", required=True, help="Expected payer wallet address.")
    v.add_argument(
        "--arena",
        default=DEFAULT_ARENA,
        choices=sorted(ARENA_FEE_MULTIPLIERS),
        help="Arena whose entry fee is required.",
    )
    v.set_defaults(func=cmd_verify_payment)

    t = sub.add_parser("prize-table", help="Show the payout split for a bank.")
    t.add_argument("--bank", required=True, type=int, help="Bank in lamports.")
    t.add_argument("--players", type=int, default=MAX_PLAYERS, help="Participants.")
    t.set_defaults(func=cmd_prize_table)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    raise SystemExit(args.func(args))

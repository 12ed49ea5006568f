from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict

from dotenv import load_dotenv

from .project_constants import (
    ARENA_FEE_MULTIPLIERS,
    DEFAULT_FRONTEND_URL,
    DEFAULT_RPC_URL,
)


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    treasury_secret: str
    entry_fee_lamports: int
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    frontend_url: str = DEFAULT_FRONTEND_URL
    host: str = "0.0.0.0"
    port: int = 3002
    log_level: str = "INFO"
    log_dir: str | None = None

    @staticmethod
    def from_env(rpc_url_override: str | None = None) -> "Settings":
        load_dotenv()

        # If user provides --rpc-url, trust it.
        rpc_url = rpc_url_override or os.getenv("GOR_RPC", "").strip() or DEFAULT_RPC_URL

        secret = os.getenv("RACE_TREASURY_SECRET", "").strip()
        if not secret:
            raise RuntimeError(
                "Missing RACE_TREASURY_SECRET. Put it in .env or export it."
            )

        raw_fee = os.getenv("ENTRY_FEE_LAMPORTS", "").strip()
        try:
            fee = int(raw_fee)
        except ValueError:
            raise RuntimeError(
                f"ENTRY_FEE_LAMPORTS must be an integer, got {raw_fee!r}"
            ) from None
        if fee <= 0:
            raise RuntimeError("ENTRY_FEE_LAMPORTS must be a positive integer.")

        port_raw = os.getenv("PORT", "").strip()

        return Settings(
            rpc_url=rpc_url,
            treasury_secret=secret,
            entry_fee_lamports=fee,
            supabase_url=os.getenv("SUPABASE_URL", "").strip() or None,
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY", "").strip() or None,
            frontend_url=os.getenv("FRONTEND_URL", "").strip() or DEFAULT_FRONTEND_URL,
            host=os.getenv("HOST", "").strip() or "0.0.0.0",
            port=int(port_raw) if port_raw else 3002,
            log_level=os.getenv("LOG_LEVEL", "").strip().upper() or "INFO",
            log_dir=os.getenv("LOG_DIR", "").strip() or None,
        )

    def arena_fees(self) -> Dict[str, int]:
        return {
            arena: self.entry_fee_lamports * mult
            for arena, mult in ARENA_FEE_MULTIPLIERS.items()
        }

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

from __future__ import annotations

import logging
from dataclasses import dataclass

import socketio

from .broadcast import SocketIOBroadcaster
from .config import Settings
from .manager import RaceManager
from .payments import PaymentVerifier
from .rpc import RpcClient
from .store import MemoryResultStore, ResultStore, SupabaseResultStore
from .treasury import Treasury

log = logging.getLogger("server")


@dataclass
class RaceServer:
    sio: socketio.AsyncServer
    app: socketio.ASGIApp
    manager: RaceManager
    rpc: RpcClient
    store: ResultStore


def build_store(settings: Settings) -> ResultStore:
    if settings.has_supabase:
        return SupabaseResultStore(settings.supabase_url, settings.supabase_service_key)
    log.warning("SUPABASE_URL/SUPABASE_SERVICE_KEY not set; race results kept in memory only")
    return MemoryResultStore()


def register_handlers(sio: socketio.AsyncServer, manager: RaceManager) -> None:
    @sio.event
    async def connect(sid, environ, auth=None):
        manager.handle_connect(sid)

    @sio.event
    async def disconnect(sid, *args):
        manager.handle_disconnect(sid)

    @sio.on("join-race")
    async def join_race(sid, data=None):
        await manager.handle_join(sid, data)

    @sio.on("player-position")
    async def player_position(sid, data=None):
        manager.handle_position(sid, data)

    @sio.on("player-score")
    async def player_score(sid, data=None):
        manager.handle_score(sid, data)

    @sio.on("player-died")
    async def player_died(sid, data=None):
        manager.handle_died(sid)

    @sio.on("leave-race")
    async def leave_race(sid, data=None):
        manager.handle_leave(sid)

    @sio.on("get-room-stats")
    async def get_room_stats(sid, data=None):
        manager.handle_room_stats(sid)


def create_server(settings: Settings, rpc_timeout_s: float = 30.0) -> RaceServer:
    rpc = RpcClient(settings.rpc_url, timeout_s=rpc_timeout_s)
    treasury = Treasury.from_secret(settings.treasury_secret, rpc)
    verifier = PaymentVerifier(rpc, treasury.address)
    store = build_store(settings)

    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=[settings.frontend_url],
    )
    manager = RaceManager(
        verifier=verifier,
        disbursement=treasury,
        store=store,
        broadcaster=SocketIOBroadcaster(sio),
        arena_fees=settings.arena_fees(),
    )
    register_handlers(sio, manager)

    async def on_shutdown():
        log.info("Shutting down race server")
        await manager.close()
        await store.close()
        await rpc.close()

    app = socketio.ASGIApp(sio, on_shutdown=on_shutdown)
    log.info("Treasury address: %s", treasury.address)
    for arena, fee in settings.arena_fees().items():
        log.info("Arena %-6s entry fee: %d lamports", arena, fee)
    return RaceServer(sio=sio, app=app, manager=manager, rpc=rpc, store=store)

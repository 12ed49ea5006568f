"""Countdown, active play, settlement and cleanup of a single race."""

import asyncio

import pytest

from gorba_race.manager import RaceManager
from gorba_race.race import Race, RaceStatus

from conftest import FEES, FakeTreasury, join, wallet


async def form_race(manager, scheduler, count):
    sids = [await join(manager, n) for n in range(1, count + 1)]
    if count < 4:
        scheduler.advance(15)
    (race,) = manager.races.values()
    return race, sids


async def active_race(manager, scheduler, count):
    race, sids = await form_race(manager, scheduler, count)
    scheduler.advance(3)
    assert race.status is RaceStatus.ACTIVE
    return race, sids


async def test_race_starting_payload(manager, broadcaster, scheduler):
    race, (a, b) = await form_race(manager, scheduler, 2)

    starting = broadcaster.events("race-starting", a)[0]
    assert starting["raceId"] == race.id
    assert starting["countdown"] == 3000
    assert starting["duration"] == 60000
    assert starting["seed"] == race.seed
    assert starting["players"] == [
        {"id": a, "username": "player1", "walletAddress": wallet(1)},
        {"id": b, "username": "player2", "walletAddress": wallet(2)},
    ]
    assert broadcaster.events("race-starting", b) == [starting]
    assert race.bank_lamports == 2_000
    assert broadcaster.events("room-stats")[-1]["activeRaces"] == 1


async def test_countdown_then_active(manager, broadcaster, scheduler):
    race, (a, _) = await form_race(manager, scheduler, 2)
    assert race.status is RaceStatus.COUNTDOWN

    scheduler.advance(2)
    assert broadcaster.events("race-started") == []

    scheduler.advance(1)
    assert race.status is RaceStatus.ACTIVE
    assert broadcaster.events("race-started", a) == [
        {"raceId": race.id, "startTime": 1_700_000_000_000}
    ]


async def test_updates_ignored_during_countdown(manager, broadcaster, scheduler):
    race, (a, _) = await form_race(manager, scheduler, 2)
    manager.handle_score(a, {"score": 50})
    manager.handle_position(a, {"x": 1, "y": 2, "vx": 0, "vy": 0})
    assert race.players[a].score == 0
    assert broadcaster.events("score-update") == []
    assert broadcaster.events("opponent-position") == []


async def test_position_relayed_to_opponents_only(manager, broadcaster, scheduler):
    race, (a, b, c) = await active_race(manager, scheduler, 3)

    manager.handle_position(a, {"x": 10, "y": 20.5, "vx": 1, "vy": -2})

    assert broadcaster.recipients("opponent-position") == [b, c]
    assert broadcaster.events("opponent-position", b)[0] == {
        "playerId": a,
        "position": {"x": 10.0, "y": 20.5, "vx": 1.0, "vy": -2.0},
        "username": "player1",
    }

    manager.handle_position(a, {"x": "nan?"})
    assert len(broadcaster.events("opponent-position")) == 2


async def test_score_updates_last_write_wins(manager, broadcaster, scheduler):
    race, (a, b) = await active_race(manager, scheduler, 2)

    manager.handle_score(a, {"score": 900})
    manager.handle_score(a, 400)
    manager.handle_score(a, {"score": "lots"})

    assert race.players[a].score == 400
    assert broadcaster.recipients("score-update") == [a, b, a, b]
    assert broadcaster.events("score-update", b)[-1] == {
        "playerId": a,
        "username": "player1",
        "score": 400,
    }


async def test_all_dead_settles_early(manager, broadcaster, scheduler, treasury, store):
    race, (a, b, c) = await active_race(manager, scheduler, 3)
    manager.handle_score(a, 300)
    manager.handle_score(b, 900)
    manager.handle_score(c, 500)

    manager.handle_died(a)
    assert broadcaster.recipients("player-died") == [b, c]
    assert broadcaster.events("player-died", b)[0] == {
        "playerId": a,
        "username": "player1",
        "finalScore": 300,
    }
    manager.handle_died(b)
    assert race.status is RaceStatus.ACTIVE
    manager.handle_died(c)
    assert race.status is RaceStatus.FINISHED

    await manager.drain()

    finished = broadcaster.events("race-finished", a)[0]
    assert finished["raceId"] == race.id
    assert finished["prizeTxSignature"] == "prize-sig"
    assert finished["duration"] == 60000
    assert [r["playerId"] for r in finished["results"]] == [b, c, a]
    assert [r["prizeLamports"] for r in finished["results"]] == [2_250, 450, 0]

    assert len(treasury.batches) == 1
    assert [(p.to, p.lamports) for p in treasury.batches[0]] == [
        (wallet(2), 2_250),
        (wallet(3), 450),
    ]

    (record,) = store.records
    assert record["race_id"] == race.id
    assert record["additional_data"]["bankLamports"] == 3_000
    assert record["additional_data"]["houseEdgeLamports"] == 300
    assert record["additional_data"]["prizeTxSignature"] == "prize-sig"
    assert record["additional_data"]["entryFeeLamports"] == 1_000

    assert manager.races == {}
    assert manager.find_race(a) is None
    assert broadcaster.events("room-stats")[-1]["activeRaces"] == 0

    # the race-end timer was cancelled; nothing settles twice
    scheduler.advance(120)
    await manager.drain()
    assert len(store.records) == 1


async def test_duration_expiry_settles(manager, broadcaster, scheduler, store):
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(a, 10)
    manager.handle_score(b, 20)

    scheduler.advance(59)
    assert race.status is RaceStatus.ACTIVE
    scheduler.advance(1)
    assert race.status is RaceStatus.FINISHED
    await manager.drain()

    results = broadcaster.events("race-finished", a)[0]["results"]
    assert [r["playerId"] for r in results] == [b, a]
    assert results[0]["prizeLamports"] == 1_800
    assert len(store.records) == 1


async def test_missing_score_settles_as_zero(manager, broadcaster, scheduler, caplog):
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(b, 5)

    scheduler.advance(60)
    await manager.drain()

    results = broadcaster.events("race-finished", b)[0]["results"]
    assert [(r["playerId"], r["score"]) for r in results] == [(b, 5), (a, 0)]
    assert "No score reported" in caplog.text


async def test_tied_scores_favour_earlier_join(manager, broadcaster, scheduler):
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(b, 100)
    manager.handle_score(a, 100)

    scheduler.advance(60)
    await manager.drain()

    results = broadcaster.events("race-finished", a)[0]["results"]
    assert results[0]["playerId"] == a


async def test_disbursement_failure_still_reports(
    manager, broadcaster, scheduler, treasury, store, caplog
):
    treasury.fail = True
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(a, 1)
    manager.handle_score(b, 2)

    scheduler.advance(60)
    await manager.drain()

    assert broadcaster.events("race-finished", a)[0]["prizeTxSignature"] is None
    assert store.records[0]["additional_data"]["prizeTxSignature"] is None
    assert "Failed to send prize payouts" in caplog.text
    assert manager.races == {}


async def test_persistence_failure_still_broadcasts(
    manager, broadcaster, scheduler, store, caplog
):
    async def broken(record):
        raise RuntimeError("database unavailable")

    store.insert_race_result = broken
    race, (a, b) = await active_race(manager, scheduler, 2)

    scheduler.advance(60)
    await manager.drain()

    assert len(broadcaster.events("race-finished", a)) == 1
    assert "Failed to save results" in caplog.text


async def test_house_edge_anomaly_is_warned(
    verifier, treasury, store, broadcaster, scheduler, caplog
):
    manager = RaceManager(
        verifier,
        treasury,
        store,
        broadcaster,
        {"bronze": 1_000},
        scheduler,
        prize_table={2: (5_000, 0), 3: (5_000, 0, 0), 4: (5_000, 0, 0, 0)},
    )
    race, (a, b) = await active_race(manager, scheduler, 2)

    scheduler.advance(60)
    await manager.drain()

    assert "House edge (1000) exceeds expected (201)" in caplog.text
    assert broadcaster.events("race-finished", a)[0]["results"][0]["prizeLamports"] == 1_000


async def test_scenario_d_disconnected_player_keeps_score(
    manager, broadcaster, scheduler, treasury
):
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(a, 700)
    manager.handle_score(b, 200)

    manager.handle_disconnect(a)
    assert race.status is RaceStatus.ACTIVE
    assert broadcaster.events("player-died", b)[-1]["playerId"] == a
    assert broadcaster.events("room-stats")[-1]["totalPlayersOnline"] == 1

    manager.handle_died(b)
    assert race.status is RaceStatus.FINISHED
    await manager.drain()

    results = broadcaster.events("race-finished", b)[0]["results"]
    assert [(r["playerId"], r["score"]) for r in results] == [(a, 700), (b, 200)]
    assert broadcaster.events("race-finished", a) == []
    assert treasury.batches[0][0].to == wallet(1)


async def test_scenario_d_expiry_after_disconnect(manager, broadcaster, scheduler):
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(a, 50)
    manager.handle_leave(a)

    scheduler.advance(60)
    await manager.drain()

    results = broadcaster.events("race-finished", b)[0]["results"]
    assert {r["playerId"]: r["score"] for r in results}[a] == 50


async def test_orphaned_race_discarded(manager, broadcaster, scheduler, treasury, store):
    race, (a, b) = await active_race(manager, scheduler, 2)

    manager.handle_disconnect(a)
    manager.handle_disconnect(b)

    assert manager.races == {}
    scheduler.advance(120)
    await manager.drain()
    assert treasury.batches == []
    assert store.records == []
    assert broadcaster.events("race-finished") == []


async def test_orphaned_during_countdown(manager, scheduler, store):
    race, (a, b) = await form_race(manager, scheduler, 2)
    manager.handle_leave(a)
    manager.handle_leave(b)

    assert manager.races == {}
    scheduler.advance(120)
    await manager.drain()
    assert race.status is RaceStatus.COUNTDOWN
    assert store.records == []


async def test_all_out_during_countdown_settles_on_activation(
    manager, broadcaster, scheduler, store
):
    race, (a, b) = await form_race(manager, scheduler, 2)
    manager.handle_died(a)
    manager.handle_died(b)
    assert race.status is RaceStatus.COUNTDOWN

    scheduler.advance(3)
    assert race.status is RaceStatus.FINISHED
    await manager.drain()
    assert len(store.records) == 1


async def test_joining_again_forfeits_current_race(manager, scheduler):
    race, (a, b) = await active_race(manager, scheduler, 2)

    await join(manager, 1, sig="sig-next")

    assert manager.queued_arena(a) == "bronze"
    assert manager.find_race(a) is None
    assert race.players[a].alive is False
    assert race.status is RaceStatus.ACTIVE


async def test_rejoin_while_settling_still_gets_results(
    verifier, store, broadcaster, scheduler
):
    released = asyncio.Event()

    class HeldTreasury(FakeTreasury):
        async def send_prizes(self, payouts):
            await released.wait()
            return await super().send_prizes(payouts)

    treasury = HeldTreasury()
    manager = RaceManager(
        verifier, treasury, store, broadcaster, FEES, scheduler, clock=lambda: 0.0
    )
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(a, 900)
    manager.handle_score(b, 1)
    scheduler.advance(60)
    assert race.status is RaceStatus.FINISHED

    await join(manager, 1, sig="sig-next")
    assert manager.queued_arena(a) == "bronze"
    assert race.players[a].connected is True

    released.set()
    await manager.drain()

    (finished,) = broadcaster.events("race-finished", a)
    assert finished["results"][0]["playerId"] == a
    assert finished["results"][0]["prizeLamports"] == 1_800
    assert treasury.batches[0][0].to == wallet(1)
    assert manager.queued_arena(a) == "bronze"


async def test_dead_player_updates_ignored(manager, broadcaster, scheduler):
    race, (a, b) = await active_race(manager, scheduler, 2)
    manager.handle_score(a, 10)
    manager.handle_died(a)
    manager.handle_score(a, 999)
    manager.handle_died(a)

    assert race.players[a].score == 10
    assert len(broadcaster.events("player-died")) == 1


@pytest.mark.parametrize(
    "path",
    [
        [RaceStatus.ACTIVE],
        [RaceStatus.FINISHED],
        [RaceStatus.COUNTDOWN, RaceStatus.FINISHED],
        [RaceStatus.COUNTDOWN, RaceStatus.ACTIVE, RaceStatus.COUNTDOWN],
        [RaceStatus.COUNTDOWN, RaceStatus.ACTIVE, RaceStatus.FINISHED, RaceStatus.ACTIVE],
    ],
)
def test_status_only_moves_forward(path):
    race = Race(
        id="r",
        arena="bronze",
        seed="s",
        entry_fee_lamports=1,
        bank_lamports=2,
        duration_s=60,
    )
    *ok, bad = path
    for status in ok:
        race.advance(status)
    with pytest.raises(RuntimeError):
        race.advance(bad)

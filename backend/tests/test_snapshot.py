"""
Unit tests for snapshot building and the snapshot generator.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import TENANT_B, World, goal_payload, make_event, make_game
from engine.snapshot import build_snapshot, clock_to_seconds
from shared.errors import NotFoundError
from shared.models.enums import EventType, GameStatus, SnapshotStatus

NOW = datetime(2026, 2, 1, 20, 0, tzinfo=timezone.utc)


def test_clock_to_seconds() -> None:
    assert clock_to_seconds("12:34") == 754
    assert clock_to_seconds("00:00") == 0
    assert clock_to_seconds("soon") is None


def test_recent_events_are_newest_first_and_limited() -> None:
    game = make_game(status=GameStatus.LIVE)
    events = [
        make_event(game, EventType.SHOT_ON_GOAL, {
            **goal_payload(game.home_team_id), "on_target": True,
        }, occurred_at=NOW - timedelta(minutes=i))
        for i in range(15)
    ]

    snapshot = build_snapshot(game, events, now=NOW)

    assert len(snapshot.recent_events) == 10
    times = [e.occurred_at for e in snapshot.recent_events]
    assert times == sorted(times, reverse=True)
    assert times[0] == NOW


def test_clock_comes_from_newest_timed_event() -> None:
    game = make_game(status=GameStatus.LIVE)
    older = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id, "15:00"),
                       occurred_at=NOW - timedelta(minutes=10))
    newer = make_event(game, EventType.GOAL_SCORED, goal_payload(game.away_team_id, "08:20"),
                       occurred_at=NOW - timedelta(minutes=2))
    untimed = make_event(game, EventType.PERIOD_ENDED, {"period": 1}, occurred_at=NOW)

    snapshot = build_snapshot(game, [older, untimed, newer], now=NOW)

    assert snapshot.clock_seconds == 500


def test_clock_found_beyond_the_recent_window() -> None:
    game = make_game(status=GameStatus.LIVE)
    timed = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id, "01:05"),
                       occurred_at=NOW - timedelta(hours=1))
    periods = [
        make_event(game, EventType.PERIOD_ENDED, {"period": 1}, occurred_at=NOW - timedelta(minutes=i))
        for i in range(3)
    ]
    snapshot = build_snapshot(game, [timed, *periods], now=NOW, recent_limit=2)
    assert snapshot.clock_seconds == 65
    assert timed not in snapshot.recent_events


def test_empty_game_snapshot() -> None:
    game = make_game()
    snapshot = build_snapshot(game, [], now=NOW)
    assert (snapshot.home_score, snapshot.away_score) == (0, 0)
    assert snapshot.period == 1
    assert snapshot.clock_seconds == 0
    assert snapshot.status == SnapshotStatus.SCHEDULED
    assert snapshot.snapshot_version == "1.0"
    assert snapshot.generated_at == NOW


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (GameStatus.LIVE, SnapshotStatus.IN_PROGRESS),
        (GameStatus.FINAL, SnapshotStatus.FINAL),
        (GameStatus.CANCELLED, SnapshotStatus.POSTPONED),
    ],
)
def test_status_mapping(status: GameStatus, expected: SnapshotStatus) -> None:
    assert build_snapshot(make_game(status=status), [], now=NOW).status == expected


@pytest.mark.asyncio
async def test_generator_loads_game_and_events(world: World) -> None:
    live = world.games.add(world.game.model_copy(update={"status": GameStatus.LIVE, "home_score": 2}))
    event = make_event(live, EventType.GOAL_SCORED, goal_payload(world.home.id, "03:00"))
    world.events.events[event.event_id] = event

    snapshot = await world.service.get_snapshot(str(live.tenant_id), live.id)

    assert snapshot.game_id == live.id
    assert snapshot.home_score == 2
    assert snapshot.status == SnapshotStatus.IN_PROGRESS
    assert [e.event_id for e in snapshot.recent_events] == [event.event_id]
    assert snapshot.clock_seconds == 180


@pytest.mark.asyncio
async def test_generator_hides_games_of_other_tenants(world: World) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        await world.service.get_snapshot(TENANT_B, world.game.id)
    assert exc_info.value.code == "GAME_NOT_FOUND"

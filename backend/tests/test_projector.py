"""
Unit tests for the game state projector: the pure transition function and the
locked project() sequence over in-memory repositories.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from conftest import (
    FakeEventStore,
    FakeGameRepository,
    FakeSession,
    TENANT_A,
    TENANT_B,
    goal_payload,
    make_event,
    make_game,
)
from engine.projector import GameProjector, apply_event, check_reversal_target
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.models.enums import EventType, GameStatus

STARTED = {"start_time": "2026-01-10T19:00:00Z"}


def _side_event_payload(event_type: EventType, team_id: uuid.UUID) -> dict:
    payload = {"team_id": str(team_id), "player_id": str(uuid.uuid4()), "period": 2, "time_remaining": "08:00"}
    if event_type == EventType.PENALTY_ASSESSED:
        payload.update(penalty_type="tripping", duration_minutes=2)
    else:
        payload["on_target"] = True
    return payload


# ── apply_event ─────────────────────────────────────────────────────────

class TestStatusTransitions:

    def test_start_scheduled_game(self) -> None:
        game = make_game()
        updated = apply_event(game, make_event(game, EventType.GAME_STARTED, STARTED))
        assert updated.status == GameStatus.LIVE
        assert game.status == GameStatus.SCHEDULED

    def test_start_postponed_game(self) -> None:
        game = make_game(status=GameStatus.POSTPONED)
        assert apply_event(game, make_event(game, EventType.GAME_STARTED, STARTED)).status == GameStatus.LIVE

    def test_cannot_start_live_game(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        with pytest.raises(ConflictError) as exc_info:
            apply_event(game, make_event(game, EventType.GAME_STARTED, STARTED))
        assert exc_info.value.code == "INVALID_STATUS_TRANSITION"

    def test_cancel_live_game(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        event = make_event(game, EventType.GAME_CANCELLED, {
            "reason": "weather", "cancelled_at": "2026-01-10T20:00:00Z",
        })
        assert apply_event(game, event).status == GameStatus.CANCELLED

    def test_cancelled_game_cannot_restart(self) -> None:
        game = make_game(status=GameStatus.CANCELLED)
        with pytest.raises(ConflictError):
            apply_event(game, make_event(game, EventType.GAME_STARTED, STARTED))

    def test_finalize_sets_status_and_scores(self) -> None:
        game = make_game(status=GameStatus.LIVE, home_score=2, away_score=2)
        event = make_event(game, EventType.GAME_FINALIZED, {"final_home_score": 3, "final_away_score": 2})
        updated = apply_event(game, event)
        assert updated.status == GameStatus.FINAL
        assert (updated.home_score, updated.away_score) == (3, 2)


class TestScoring:

    def test_goal_increments_scoring_side(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        updated = apply_event(game, make_event(game, EventType.GOAL_SCORED, goal_payload(game.away_team_id)))
        assert (updated.home_score, updated.away_score) == (0, 1)

    def test_goal_for_unknown_team(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        with pytest.raises(ValidationError) as exc_info:
            apply_event(game, make_event(game, EventType.GOAL_SCORED, goal_payload(uuid.uuid4())))
        assert exc_info.value.code == "TEAM_NOT_IN_GAME"

    def test_penalty_and_shot_leave_score_alone(self) -> None:
        game = make_game(status=GameStatus.LIVE, home_score=1)
        shot = make_event(game, EventType.SHOT_ON_GOAL, goal_payload(game.home_team_id))
        assert apply_event(game, shot).home_score == 1

    def test_period_end_advances_period(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        event = make_event(game, EventType.PERIOD_ENDED, {"period": 1, "home_score": 0, "away_score": 0})
        assert apply_event(game, event).current_period == 2

    def test_late_period_end_never_moves_period_back(self) -> None:
        game = make_game(status=GameStatus.LIVE).model_copy(update={"current_period": 3})
        event = make_event(game, EventType.PERIOD_ENDED, {"period": 1, "home_score": 0, "away_score": 0})
        assert apply_event(game, event).current_period == 3

    def test_score_correction(self) -> None:
        game = make_game(status=GameStatus.LIVE, home_score=2)
        event = make_event(game, EventType.SCORE_CORRECTED, {
            "team_id": str(game.home_team_id), "old_score": 2, "new_score": 1, "reason": "offside review",
        })
        assert apply_event(game, event).home_score == 1

    def test_score_correction_mismatch(self) -> None:
        game = make_game(status=GameStatus.LIVE, home_score=2)
        event = make_event(game, EventType.SCORE_CORRECTED, {
            "team_id": str(game.home_team_id), "old_score": 3, "new_score": 1, "reason": "typo",
        })
        with pytest.raises(ConflictError) as exc_info:
            apply_event(game, event)
        assert exc_info.value.code == "SCORE_CORRECTION_MISMATCH"


class TestReversal:

    def test_goal_reversal_decrements(self) -> None:
        game = make_game(status=GameStatus.LIVE, home_score=1)
        goal = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id))
        reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(goal.event_id)})
        assert apply_event(game, reversal, reversal_target=goal).home_score == 0

    def test_goal_reversal_never_goes_negative(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        goal = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id))
        reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(goal.event_id)})
        with pytest.raises(ConflictError) as exc_info:
            apply_event(game, reversal, reversal_target=goal)
        assert exc_info.value.code == "SCORE_WOULD_GO_NEGATIVE"

    @pytest.mark.parametrize("event_type", [EventType.PENALTY_ASSESSED, EventType.SHOT_ON_GOAL])
    def test_penalty_and_shot_reversal_keeps_scores(self, event_type: EventType) -> None:
        game = make_game(status=GameStatus.LIVE, home_score=2, away_score=1)
        target = make_event(game, event_type, _side_event_payload(event_type, game.home_team_id))
        reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(target.event_id)})
        now = datetime(2026, 1, 10, 20, 15, tzinfo=timezone.utc)

        updated = apply_event(game, reversal, reversal_target=target, now=now)

        assert (updated.home_score, updated.away_score) == (2, 1)
        assert updated.status == GameStatus.LIVE
        assert updated.updated_at == now

    def test_missing_target(self) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            check_reversal_target(None, str(uuid.uuid4()))
        assert exc_info.value.code == "EVENT_NOT_FOUND"

    def test_already_reversed_target(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        goal = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id))
        goal = goal.model_copy(update={"reversed_by": uuid.uuid4()})
        with pytest.raises(ConflictError) as exc_info:
            check_reversal_target(goal, str(goal.event_id))
        assert exc_info.value.code == "EVENT_ALREADY_REVERSED"

    def test_non_reversible_target(self) -> None:
        game = make_game(status=GameStatus.LIVE)
        started = make_event(game, EventType.GAME_STARTED, STARTED)
        with pytest.raises(ConflictError) as exc_info:
            check_reversal_target(started, str(started.event_id))
        assert exc_info.value.code == "EVENT_NOT_REVERSIBLE"


class TestFinalizedGames:

    @pytest.mark.parametrize("event_type,payload", [
        (EventType.GOAL_SCORED, None),
        (EventType.GAME_CANCELLED, {"reason": "late", "cancelled_at": "2026-01-10T22:00:00Z"}),
        (EventType.GAME_FINALIZED, {"final_home_score": 1, "final_away_score": 0}),
    ])
    def test_final_game_rejects_events(self, event_type: EventType, payload: dict | None) -> None:
        game = make_game(status=GameStatus.FINAL, home_score=1)
        event = make_event(game, event_type, payload or goal_payload(game.home_team_id))
        with pytest.raises(ConflictError) as exc_info:
            apply_event(game, event)
        assert exc_info.value.code == "GAME_ALREADY_FINALIZED"

    def test_final_game_rejects_reversal(self) -> None:
        game = make_game(status=GameStatus.FINAL, home_score=1)
        goal = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id))
        reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(goal.event_id)})
        with pytest.raises(ConflictError) as exc_info:
            apply_event(game, reversal, reversal_target=goal)
        assert exc_info.value.code == "GAME_ALREADY_FINALIZED"


def test_apply_event_stamps_updated_at() -> None:
    game = make_game()
    now = datetime(2026, 1, 10, 19, 5, tzinfo=timezone.utc)
    assert apply_event(game, make_event(game, EventType.GAME_STARTED, STARTED), now=now).updated_at == now


# ── GameProjector.project ───────────────────────────────────────────────

@pytest.fixture
def repos() -> tuple[FakeGameRepository, FakeEventStore]:
    return FakeGameRepository(), FakeEventStore()


@pytest.mark.asyncio
async def test_project_appends_and_saves(repos: tuple[FakeGameRepository, FakeEventStore]) -> None:
    games, events = repos
    game = games.add(make_game(status=GameStatus.LIVE))
    goal = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id))

    outcome = await GameProjector(games, events).project(FakeSession(), TENANT_A, game.id, goal)

    assert outcome.duplicate is False
    assert outcome.game.home_score == 1
    assert games.games[game.id].home_score == 1
    assert list(events.events) == [goal.event_id]


@pytest.mark.asyncio
async def test_rejected_event_is_not_stored(repos: tuple[FakeGameRepository, FakeEventStore]) -> None:
    games, events = repos
    game = games.add(make_game(status=GameStatus.SCHEDULED))
    goal = make_event(game, EventType.GOAL_SCORED, goal_payload(uuid.uuid4()))

    with pytest.raises(ValidationError):
        await GameProjector(games, events).project(FakeSession(), TENANT_A, game.id, goal)
    assert events.events == {}
    assert games.games[game.id].home_score == 0


@pytest.mark.asyncio
async def test_project_unknown_game_for_tenant(repos: tuple[FakeGameRepository, FakeEventStore]) -> None:
    games, events = repos
    game = games.add(make_game(TENANT_A))
    event = make_event(game, EventType.GAME_STARTED, STARTED)
    with pytest.raises(NotFoundError) as exc_info:
        await GameProjector(games, events).project(FakeSession(), TENANT_B, game.id, event)
    assert exc_info.value.code == "GAME_NOT_FOUND"


@pytest.mark.asyncio
async def test_project_reversal_marks_target(repos: tuple[FakeGameRepository, FakeEventStore]) -> None:
    games, events = repos
    game = games.add(make_game(status=GameStatus.LIVE))
    projector = GameProjector(games, events)
    goal = make_event(game, EventType.GOAL_SCORED, goal_payload(game.away_team_id))
    await projector.project(FakeSession(), TENANT_A, game.id, goal)

    reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(goal.event_id)})
    outcome = await projector.project(FakeSession(), TENANT_A, game.id, reversal)

    assert outcome.game.away_score == 0
    assert events.events[goal.event_id].reversed_by == reversal.event_id

    again = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(goal.event_id)})
    with pytest.raises(ConflictError) as exc_info:
        await projector.project(FakeSession(), TENANT_A, game.id, again)
    assert exc_info.value.code == "EVENT_ALREADY_REVERSED"


@pytest.mark.asyncio
async def test_project_reversal_of_other_game_event(repos: tuple[FakeGameRepository, FakeEventStore]) -> None:
    games, events = repos
    game = games.add(make_game(status=GameStatus.LIVE))
    other = games.add(make_game(status=GameStatus.LIVE))
    projector = GameProjector(games, events)
    goal = make_event(other, EventType.GOAL_SCORED, goal_payload(other.home_team_id))
    await projector.project(FakeSession(), TENANT_A, other.id, goal)

    reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(goal.event_id)})
    with pytest.raises(NotFoundError):
        await projector.project(FakeSession(), TENANT_A, game.id, reversal)
    assert games.games[other.id].home_score == 1


@pytest.mark.asyncio
async def test_project_duplicate_key_returns_original(repos: tuple[FakeGameRepository, FakeEventStore]) -> None:
    games, events = repos
    game = games.add(make_game(status=GameStatus.LIVE))
    projector = GameProjector(games, events)
    first = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id), idempotency_key="g-1")
    await projector.project(FakeSession(), TENANT_A, game.id, first)

    retry = make_event(game, EventType.GOAL_SCORED, goal_payload(game.home_team_id), idempotency_key="g-1")
    outcome = await projector.project(FakeSession(), TENANT_A, game.id, retry)

    assert outcome.duplicate is True
    assert outcome.event.event_id == first.event_id
    assert games.games[game.id].home_score == 1
    assert len(events.events) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("event_type", [EventType.PENALTY_ASSESSED, EventType.SHOT_ON_GOAL])
async def test_project_penalty_and_shot_reversal(
    repos: tuple[FakeGameRepository, FakeEventStore], event_type: EventType
) -> None:
    games, events = repos
    game = games.add(make_game(status=GameStatus.LIVE, away_score=1))
    projector = GameProjector(games, events)
    target = make_event(game, event_type, _side_event_payload(event_type, game.away_team_id))
    await projector.project(FakeSession(), TENANT_A, game.id, target)

    reversal = make_event(game, EventType.EVENT_REVERSAL, {"reversed_event_id": str(target.event_id)})
    outcome = await projector.project(FakeSession(), TENANT_A, game.id, reversal)

    assert (outcome.game.home_score, outcome.game.away_score) == (0, 1)
    assert games.games[game.id].away_score == 1
    assert reversal.event_id in events.events
    assert events.events[target.event_id].reversed_by == reversal.event_id

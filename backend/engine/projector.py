"""
Game state projector.

``apply_event`` is the pure transition function ``(game, event) -> game'``.
``GameProjector`` runs it under the game's row lock: the new state is
computed first, then the event is appended and the aggregate written in the
same transaction, so a rejected event is never stored.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from engine.event_store import EventStore, utcnow
from engine.repositories import GameRepository
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.models.domain import Game, GameEvent
from shared.models.enums import EventType, GameStatus
from shared.models.payloads import (
    EventReversalPayload,
    GameFinalizedPayload,
    GoalScoredPayload,
    PeriodEndedPayload,
    ScoreCorrectedPayload,
)
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# Allowed source statuses for status-changing events.
_TRANSITIONS: dict[EventType, tuple[frozenset[GameStatus], GameStatus]] = {
    EventType.GAME_STARTED: (
        frozenset({GameStatus.SCHEDULED, GameStatus.POSTPONED}),
        GameStatus.LIVE,
    ),
    EventType.GAME_FINALIZED: (
        frozenset({GameStatus.SCHEDULED, GameStatus.LIVE, GameStatus.POSTPONED}),
        GameStatus.FINAL,
    ),
    EventType.GAME_CANCELLED: (
        frozenset({GameStatus.SCHEDULED, GameStatus.LIVE, GameStatus.POSTPONED}),
        GameStatus.CANCELLED,
    ),
}


@dataclass(frozen=True)
class ProjectionOutcome:
    game: Game
    event: GameEvent
    duplicate: bool = False


def ensure_not_finalized(game: Game) -> None:
    if game.status == GameStatus.FINAL:
        raise ConflictError(
            "GAME_ALREADY_FINALIZED",
            "Cannot create events for finalized games",
            {"game_id": str(game.id)},
        )


def check_reversal_target(target: Optional[GameEvent], reversed_event_id: str) -> GameEvent:
    """Reversal preconditions, checked in order: exists, not reversed, reversible."""
    if target is None:
        raise NotFoundError(
            "EVENT_NOT_FOUND",
            "Event to reverse was not found",
            {"reversed_event_id": reversed_event_id},
        )
    if target.is_reversed:
        raise ConflictError(
            "EVENT_ALREADY_REVERSED",
            "Event has already been reversed",
            {"reversed_event_id": reversed_event_id, "reversed_by": str(target.reversed_by)},
        )
    if not target.event_type.is_reversible:
        raise ConflictError(
            "EVENT_NOT_REVERSIBLE",
            f"Events of type {target.event_type.value} cannot be reversed",
            {"reversed_event_id": reversed_event_id, "event_type": target.event_type.value},
        )
    return target


def _require_side(game: Game, team_id: str) -> str:
    side = game.side_of(team_id)
    if side is None:
        raise ValidationError(
            "TEAM_NOT_IN_GAME",
            f"Team {team_id} is not part of game {game.id}",
            {"team_id": team_id, "game_id": str(game.id)},
        )
    return side


def _transition(game: Game, event_type: EventType) -> GameStatus:
    allowed, target = _TRANSITIONS[event_type]
    if game.status not in allowed:
        raise ConflictError(
            "INVALID_STATUS_TRANSITION",
            f"Cannot apply {event_type.value} to a {game.status.value} game",
            {"status": game.status.value, "event_type": event_type.value},
        )
    return target


def apply_event(
    game: Game,
    event: GameEvent,
    *,
    reversal_target: Optional[GameEvent] = None,
    now: Optional[datetime] = None,
) -> Game:
    """Return the game state after ``event``. The input game is not modified."""
    ensure_not_finalized(game)
    update: dict[str, object] = {"updated_at": now or utcnow()}
    etype = event.event_type
    payload = event.typed_payload

    if etype in _TRANSITIONS:
        update["status"] = _transition(game, etype)
        if isinstance(payload, GameFinalizedPayload):
            update["home_score"] = payload.final_home_score
            update["away_score"] = payload.final_away_score

    elif isinstance(payload, GoalScoredPayload):
        side = _require_side(game, payload.team_id)
        field = f"{side}_score"
        update[field] = getattr(game, field) + 1

    elif isinstance(payload, PeriodEndedPayload):
        update["current_period"] = max(game.current_period, payload.period + 1)

    elif isinstance(payload, ScoreCorrectedPayload):
        side = _require_side(game, payload.team_id)
        field = f"{side}_score"
        current = getattr(game, field)
        if current != payload.old_score:
            raise ConflictError(
                "SCORE_CORRECTION_MISMATCH",
                f"Expected {side} score {payload.old_score}, current score is {current}",
                {"team_id": payload.team_id, "old_score": payload.old_score, "current_score": current},
            )
        update[field] = payload.new_score

    elif isinstance(payload, EventReversalPayload):
        target = check_reversal_target(reversal_target, payload.reversed_event_id)
        if target.event_type == EventType.GOAL_SCORED:
            side = _require_side(game, target.payload["team_id"])
            field = f"{side}_score"
            current = getattr(game, field)
            if current <= 0:
                raise ConflictError(
                    "SCORE_WOULD_GO_NEGATIVE",
                    f"Cannot reverse goal: {side} score is already 0",
                    {"reversed_event_id": payload.reversed_event_id},
                )
            update[field] = current - 1
        # Penalty and shot reversals only touch updated_at.

    return game.model_copy(update=update)


class GameProjector:
    """Applies one event to its game inside the caller's transaction."""

    def __init__(self, games: GameRepository, events: EventStore) -> None:
        self._games = games
        self._events = events

    async def project(
        self,
        session: AsyncSession,
        tenant_id: str,
        game_id: str | uuid.UUID,
        event: GameEvent,
    ) -> ProjectionOutcome:
        game = await self._games.lock_for_update(session, tenant_id, game_id)
        if game is None:
            raise NotFoundError("GAME_NOT_FOUND", "Game not found", {"game_id": str(game_id)})
        if event.idempotency_key:
            # Concurrent retries serialize on the row lock; the loser sees the winner here.
            existing = await self._events.find_by_idempotency_key(
                session, tenant_id, event.idempotency_key
            )
            if existing is not None:
                return ProjectionOutcome(game=game, event=existing, duplicate=True)
        ensure_not_finalized(game)

        target: Optional[GameEvent] = None
        payload = event.typed_payload
        if isinstance(payload, EventReversalPayload):
            target = await self._events.get(session, tenant_id, game.id, payload.reversed_event_id)
            check_reversal_target(target, payload.reversed_event_id)

        updated = apply_event(game, event, reversal_target=target)

        appended = await self._events.append(session, event)
        if appended.duplicate:
            return ProjectionOutcome(game=game, event=appended.event, duplicate=True)

        await self._games.save_state(session, tenant_id, updated)
        if target is not None:
            await self._events.mark_reversed(session, tenant_id, target.event_id, event.event_id)

        logger.info(
            "event_projected",
            tenant_id=tenant_id,
            game_id=str(game.id),
            event_id=str(event.event_id),
            event_type=event.event_type.value,
            status=updated.status.value,
            home_score=updated.home_score,
            away_score=updated.away_score,
        )
        return ProjectionOutcome(game=updated, event=appended.event)

"""
Snapshot generation: a read-only materialization of one game for subscribers.
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Optional

from engine.event_store import EventStore, utcnow
from engine.repositories import GameRepository
from shared.config import Settings, get_settings
from shared.errors import NotFoundError
from shared.models.domain import SNAPSHOT_VERSION, Game, GameEvent, GameSnapshot
from shared.models.enums import SnapshotStatus
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.metrics import SNAPSHOT_GENERATION, observe

logger = get_logger(__name__)


def clock_to_seconds(value: str) -> Optional[int]:
    try:
        minutes, seconds = value.split(":")
        return int(minutes) * 60 + int(seconds)
    except ValueError:
        return None


def build_snapshot(
    game: Game,
    events: list[GameEvent],
    *,
    now: datetime,
    recent_limit: int = 10,
) -> GameSnapshot:
    """Newest ``recent_limit`` events first; clock taken from the newest timed event."""
    ordered = sorted(events, key=lambda e: (e.occurred_at, str(e.event_id)), reverse=True)
    recent = ordered[:recent_limit]
    clock_seconds = 0
    for event in ordered:
        remaining = event.payload.get("time_remaining")
        if isinstance(remaining, str):
            parsed = clock_to_seconds(remaining)
            if parsed is not None:
                clock_seconds = parsed
                break
    return GameSnapshot(
        game_id=game.id,
        home_score=game.home_score,
        away_score=game.away_score,
        period=game.current_period or 1,
        clock_seconds=clock_seconds,
        status=SnapshotStatus.from_game_status(game.status),
        recent_events=recent,
        snapshot_version=SNAPSHOT_VERSION,
        generated_at=now,
    )


class SnapshotGenerator:
    def __init__(
        self,
        db: DatabaseManager,
        games: GameRepository,
        events: EventStore,
        settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._games = games
        self._events = events
        self._settings = settings or get_settings()

    async def generate(self, tenant_id: str, game_id: str | uuid.UUID) -> GameSnapshot:
        """Load the game and its events, then build a snapshot."""
        start = time.perf_counter()
        async with self._db.read_session() as session:
            game = await self._games.find_by_id(session, tenant_id, game_id)
            if game is None:
                raise NotFoundError("GAME_NOT_FOUND", "Game not found", {"game_id": str(game_id)})
            events = await self._events.list_by_game(session, tenant_id, game.id)
        return self._finish(game, events, start, variant="load")

    async def generate_from_game(self, tenant_id: str, game: Game) -> GameSnapshot:
        """Build a snapshot from an aggregate the caller already holds."""
        start = time.perf_counter()
        async with self._db.read_session() as session:
            events = await self._events.list_by_game(session, tenant_id, game.id)
        return self._finish(game, events, start, variant="from_game")

    def _finish(self, game: Game, events: list[GameEvent], start: float, variant: str) -> GameSnapshot:
        snapshot = build_snapshot(
            game, events, now=utcnow(), recent_limit=self._settings.recent_events_limit
        )
        elapsed = time.perf_counter() - start
        duration_ms = round(elapsed * 1000, 2)
        observe(SNAPSHOT_GENERATION, elapsed, variant=variant)
        log = logger.warning if duration_ms > self._settings.snapshot_slow_threshold_ms else logger.debug
        log(
            "snapshot_generated",
            game_id=str(game.id),
            variant=variant,
            duration_ms=duration_ms,
            event_count=len(events),
        )
        return snapshot

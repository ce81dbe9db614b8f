"""
Scoring service: the write path from a submitted event to a broadcast snapshot.

    validate -> idempotency check -> lock + project + append (one transaction)
    -> standings on GAME_FINALIZED -> snapshot -> broadcast (best effort)
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from engine.broadcast import BroadcastDispatcher, RedisDeliveryTransport
from engine.connections import ConnectionRegistry
from engine.event_store import EventStore, check_occurred_at, new_game_event, utcnow
from engine.projector import GameProjector
from engine.repositories import (
    GameRepository,
    SeasonRepository,
    StandingsRepository,
    TeamRepository,
)
from engine.snapshot import SnapshotGenerator
from engine.standings import StandingsEngine
from engine.tenant_guard import TenantGuard, validate_tenant_id
from engine.validation import (
    validate_event_payload,
    validate_idempotency_key,
    validate_spatial_coordinates,
)
from shared.config import Settings, get_settings
from shared.errors import NotFoundError, ScoreBaseError, ValidationError
from shared.models.domain import EventMetadata, GameEvent, GameSnapshot, TeamStanding
from shared.models.enums import EventType, MessageType
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.metrics import EVENT_WRITE_LATENCY, EVENTS_REJECTED, IDEMPOTENT_REPLAYS, inc, observe
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


def _parse_id(value: str | uuid.UUID, field: str, code: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(code, f"{label} must be a valid UUID", {field: str(value)}) from None


def parse_game_id(game_id: str | uuid.UUID) -> uuid.UUID:
    return _parse_id(game_id, "game_id", "INVALID_GAME_ID", "Game ID")


def parse_season_id(season_id: str | uuid.UUID) -> uuid.UUID:
    return _parse_id(season_id, "season_id", "INVALID_SEASON_ID", "Season ID")


@dataclass(frozen=True)
class SubmissionResult:
    event: GameEvent
    snapshot: GameSnapshot
    duplicate: bool = False


class ScoringService:
    def __init__(
        self,
        db: DatabaseManager,
        games: GameRepository,
        events: EventStore,
        projector: GameProjector,
        standings: StandingsEngine,
        snapshots: SnapshotGenerator,
        dispatcher: BroadcastDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._games = games
        self._events = events
        self._projector = projector
        self._standings = standings
        self._snapshots = snapshots
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()

    async def submit_event(
        self,
        tenant_id: str,
        game_id: str | uuid.UUID,
        event_type: Any,
        payload: Any,
        metadata: EventMetadata,
        *,
        occurred_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        spatial_coordinates: Optional[Any] = None,
    ) -> SubmissionResult:
        try:
            return await self._submit(
                tenant_id,
                game_id,
                event_type,
                payload,
                metadata,
                occurred_at=occurred_at,
                idempotency_key=idempotency_key,
                spatial_coordinates=spatial_coordinates,
            )
        except ScoreBaseError as exc:
            inc(EVENTS_REJECTED, code=exc.code)
            logger.info(
                "event_rejected",
                tenant_id=tenant_id,
                game_id=str(game_id),
                event_type=str(event_type),
                code=exc.code,
                message=exc.message,
            )
            raise

    async def _submit(
        self,
        tenant_id: str,
        game_id: str | uuid.UUID,
        event_type: Any,
        payload: Any,
        metadata: EventMetadata,
        *,
        occurred_at: Optional[datetime],
        idempotency_key: Optional[str],
        spatial_coordinates: Optional[Any],
    ) -> SubmissionResult:
        tenant_id = validate_tenant_id(tenant_id)
        game_id = parse_game_id(game_id)
        typed = validate_event_payload(event_type, payload)
        spatial = validate_spatial_coordinates(spatial_coordinates)
        idempotency_key = validate_idempotency_key(idempotency_key)
        now = utcnow()
        effective_at = check_occurred_at(
            occurred_at, now, timedelta(hours=self._settings.late_event_window_hours)
        )

        if idempotency_key:
            existing = await self._find_existing(tenant_id, idempotency_key)
            if existing is not None:
                return await self._replay(tenant_id, existing)

        event = new_game_event(
            tenant_id=tenant_id,
            game_id=game_id,
            event_type=typed.event_type,
            payload=payload,
            metadata=metadata,
            occurred_at=effective_at,
            now=now,
            ttl_days=self._settings.event_ttl_days,
            idempotency_key=idempotency_key,
            spatial_coordinates=spatial,
        )

        start = time.perf_counter()
        async with self._db.transaction(self._settings.db_transaction_timeout_s) as session:
            outcome = await self._projector.project(session, tenant_id, game_id, event)
        observe(EVENT_WRITE_LATENCY, time.perf_counter() - start, event_type=event.event_type.value)

        if outcome.duplicate:
            return await self._replay(tenant_id, outcome.event)

        if event.event_type == EventType.GAME_FINALIZED:
            await self._standings.recalculate(tenant_id, outcome.game.season_id)

        snapshot = await self._snapshots.generate_from_game(tenant_id, outcome.game)
        await self._dispatcher.broadcast(tenant_id, outcome.game.id, snapshot, MessageType.SNAPSHOT_UPDATE)
        return SubmissionResult(event=outcome.event, snapshot=snapshot)

    async def _find_existing(self, tenant_id: str, idempotency_key: str) -> Optional[GameEvent]:
        async with self._db.read_session() as session:
            return await self._events.find_by_idempotency_key(session, tenant_id, idempotency_key)

    async def _replay(self, tenant_id: str, original: GameEvent) -> SubmissionResult:
        inc(IDEMPOTENT_REPLAYS)
        logger.info(
            "event_idempotent_replay",
            tenant_id=tenant_id,
            event_id=str(original.event_id),
            idempotency_key=original.idempotency_key,
        )
        if original.event_type == EventType.GAME_FINALIZED:
            # A retried finalize may follow a failed recalculation.
            await self._recalculate_for_game(tenant_id, original.game_id)
        snapshot = await self._snapshots.generate(tenant_id, original.game_id)
        return SubmissionResult(event=original, snapshot=snapshot, duplicate=True)

    async def _recalculate_for_game(self, tenant_id: str, game_id: uuid.UUID) -> None:
        async with self._db.read_session() as session:
            game = await self._games.find_by_id(session, tenant_id, game_id)
        if game is None:
            raise NotFoundError("GAME_NOT_FOUND", "Game not found", {"game_id": str(game_id)})
        await self._standings.recalculate(tenant_id, game.season_id)

    async def list_events(self, tenant_id: str, game_id: str | uuid.UUID) -> list[GameEvent]:
        tenant_id = validate_tenant_id(tenant_id)
        game_id = parse_game_id(game_id)
        async with self._db.read_session() as session:
            game = await self._games.find_by_id(session, tenant_id, game_id)
            if game is None:
                raise NotFoundError("GAME_NOT_FOUND", "Game not found", {"game_id": str(game_id)})
            return await self._events.list_by_game(session, tenant_id, game.id)

    async def get_snapshot(self, tenant_id: str, game_id: str | uuid.UUID) -> GameSnapshot:
        return await self._snapshots.generate(validate_tenant_id(tenant_id), parse_game_id(game_id))

    async def get_standings(self, tenant_id: str, season_id: str | uuid.UUID) -> list[TeamStanding]:
        return await self._standings.get_standings(
            validate_tenant_id(tenant_id), parse_season_id(season_id)
        )

    async def purge_expired_events(self) -> int:
        async with self._db.transaction() as session:
            return await self._events.purge_expired(session)


def create_scoring_service(
    db: DatabaseManager,
    redis: RedisManager,
    settings: Settings | None = None,
) -> ScoringService:
    """Wire the engine against live Postgres and Redis managers."""
    settings = settings or get_settings()
    guard = TenantGuard()
    games = GameRepository(guard)
    events = EventStore(guard)
    standings = StandingsEngine(
        db,
        SeasonRepository(guard),
        TeamRepository(guard),
        games,
        StandingsRepository(guard),
        settings,
    )
    dispatcher = BroadcastDispatcher(
        ConnectionRegistry(redis, settings),
        RedisDeliveryTransport(redis),
        settings,
    )
    return ScoringService(
        db=db,
        games=games,
        events=events,
        projector=GameProjector(games, events),
        standings=standings,
        snapshots=SnapshotGenerator(db, games, events, settings),
        dispatcher=dispatcher,
        settings=settings,
    )

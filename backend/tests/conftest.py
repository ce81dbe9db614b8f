"""
Shared fixtures: in-memory stand-ins for the Postgres repositories, the event
log and the connection registry, plus a fully wired ScoringService on top.

The fakes keep the same tenant scoping as the real repositories: a row of
another tenant is simply not found.
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional

import pytest

from engine.broadcast import BroadcastDispatcher
from engine.event_store import AppendResult, new_game_event, utcnow
from engine.projector import GameProjector
from engine.service import ScoringService
from engine.snapshot import SnapshotGenerator
from engine.standings import StandingsEngine
from shared.config import Settings
from shared.errors import ConflictError, NotFoundError
from shared.models.domain import (
    Connection,
    EventMetadata,
    Game,
    GameEvent,
    Season,
    Team,
    TeamStanding,
)
from shared.models.enums import EventType, GameStatus

TENANT_A = "11111111-1111-4111-8111-111111111111"
TENANT_B = "22222222-2222-4222-8222-222222222222"


def make_game(
    tenant_id: str = TENANT_A,
    *,
    status: GameStatus = GameStatus.SCHEDULED,
    home_score: int = 0,
    away_score: int = 0,
    season_id: Optional[uuid.UUID] = None,
    home_team_id: Optional[uuid.UUID] = None,
    away_team_id: Optional[uuid.UUID] = None,
    scheduled_at: Optional[datetime] = None,
) -> Game:
    return Game(
        id=uuid.uuid4(),
        tenant_id=uuid.UUID(tenant_id),
        season_id=season_id or uuid.uuid4(),
        home_team_id=home_team_id or uuid.uuid4(),
        away_team_id=away_team_id or uuid.uuid4(),
        scheduled_at=scheduled_at or datetime(2026, 1, 10, 19, 0, tzinfo=timezone.utc),
        status=status,
        home_score=home_score,
        away_score=away_score,
    )


def make_event(
    game: Game,
    event_type: EventType,
    payload: dict[str, Any],
    *,
    occurred_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> GameEvent:
    now = utcnow()
    return new_game_event(
        tenant_id=game.tenant_id,
        game_id=game.id,
        event_type=event_type,
        payload=payload,
        metadata=EventMetadata(user_id="scorer-1"),
        occurred_at=occurred_at or now,
        now=now,
        ttl_days=90,
        idempotency_key=idempotency_key,
    )


def goal_payload(team_id: uuid.UUID, time_remaining: str = "12:34", period: int = 1) -> dict[str, Any]:
    return {
        "team_id": str(team_id),
        "player_id": str(uuid.uuid4()),
        "period": period,
        "time_remaining": time_remaining,
    }


# ── In-memory persistence ───────────────────────────────────────────────

class FakeSession:
    """Placeholder handed to repositories; the fakes never touch it."""


class FakeDatabase:
    def __init__(self) -> None:
        self.transactions = 0
        self.reads = 0

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[FakeSession]:
        self.reads += 1
        yield FakeSession()

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[FakeSession]:
        yield FakeSession()

    @asynccontextmanager
    async def transaction(self, timeout_s: float | None = None) -> AsyncIterator[FakeSession]:
        self.transactions += 1
        yield FakeSession()


class FakeGameRepository:
    def __init__(self) -> None:
        self.games: dict[uuid.UUID, Game] = {}

    def add(self, game: Game) -> Game:
        self.games[game.id] = game
        return game

    def _scoped(self, tenant_id: str, game_id: Any) -> Optional[Game]:
        game = self.games.get(uuid.UUID(str(game_id)))
        if game is None or str(game.tenant_id) != tenant_id:
            return None
        return game.model_copy()

    async def find_by_id(self, session: Any, tenant_id: str, game_id: Any) -> Optional[Game]:
        return self._scoped(tenant_id, game_id)

    async def lock_for_update(self, session: Any, tenant_id: str, game_id: Any) -> Optional[Game]:
        return self._scoped(tenant_id, game_id)

    async def find_by_season(
        self,
        session: Any,
        tenant_id: str,
        season_id: Any,
        status: Optional[GameStatus] = None,
    ) -> list[Game]:
        sid = uuid.UUID(str(season_id))
        return [
            g.model_copy()
            for g in self.games.values()
            if str(g.tenant_id) == tenant_id
            and g.season_id == sid
            and (status is None or g.status == status)
        ]

    async def save_state(self, session: Any, tenant_id: str, game: Game) -> None:
        assert str(game.tenant_id) == tenant_id
        self.games[game.id] = game


class FakeEventStore:
    def __init__(self) -> None:
        self.events: dict[uuid.UUID, GameEvent] = {}

    async def append(self, session: Any, event: GameEvent) -> AppendResult:
        if event.idempotency_key:
            existing = await self.find_by_idempotency_key(
                session, str(event.tenant_id), event.idempotency_key
            )
            if existing is not None:
                return AppendResult(event=existing, duplicate=True)
        self.events[event.event_id] = event
        return AppendResult(event=event, duplicate=False)

    async def find_by_idempotency_key(
        self, session: Any, tenant_id: str, idempotency_key: str
    ) -> Optional[GameEvent]:
        for event in self.events.values():
            if str(event.tenant_id) == tenant_id and event.idempotency_key == idempotency_key:
                return event
        return None

    async def get(self, session: Any, tenant_id: str, game_id: Any, event_id: Any) -> Optional[GameEvent]:
        event = self.events.get(uuid.UUID(str(event_id)))
        if event is None or str(event.tenant_id) != tenant_id or event.game_id != uuid.UUID(str(game_id)):
            return None
        return event

    async def list_by_game(self, session: Any, tenant_id: str, game_id: Any) -> list[GameEvent]:
        gid = uuid.UUID(str(game_id))
        found = [e for e in self.events.values() if str(e.tenant_id) == tenant_id and e.game_id == gid]
        return sorted(found, key=lambda e: (e.occurred_at, str(e.event_id)))

    async def mark_reversed(self, session: Any, tenant_id: str, event_id: Any, reversal_event_id: Any) -> None:
        eid = uuid.UUID(str(event_id))
        rid = uuid.UUID(str(reversal_event_id))
        event = self.events.get(eid)
        if event is None or str(event.tenant_id) != tenant_id:
            raise NotFoundError("EVENT_NOT_FOUND", "Event not found")
        if event.reversed_by not in (None, rid):
            raise ConflictError("EVENT_ALREADY_REVERSED", "Event has already been reversed")
        self.events[eid] = event.model_copy(update={"reversed_by": rid})

    async def purge_expired(self, session: Any, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()).timestamp()
        expired = [eid for eid, e in self.events.items() if e.ttl <= cutoff]
        for eid in expired:
            del self.events[eid]
        return len(expired)


class FakeSeasonRepository:
    def __init__(self) -> None:
        self.seasons: dict[uuid.UUID, Season] = {}

    async def find_by_id(self, session: Any, tenant_id: str, season_id: Any) -> Optional[Season]:
        season = self.seasons.get(uuid.UUID(str(season_id)))
        if season is None or str(season.tenant_id) != tenant_id:
            return None
        return season


class FakeTeamRepository:
    def __init__(self) -> None:
        self.teams: list[Team] = []
        self.tenants: dict[uuid.UUID, str] = {}

    async def find_by_league(self, session: Any, tenant_id: str, league_id: Any) -> list[Team]:
        lid = uuid.UUID(str(league_id))
        return [t for t in self.teams if t.league_id == lid and self.tenants.get(lid) == tenant_id]


class FakeStandingsRepository:
    def __init__(self) -> None:
        self.rows: dict[tuple[uuid.UUID, uuid.UUID], TeamStanding] = {}
        self.upserts = 0

    async def find_by_season(self, session: Any, tenant_id: str, season_id: Any) -> list[TeamStanding]:
        sid = uuid.UUID(str(season_id))
        rows = [s for (season, _), s in self.rows.items() if season == sid]
        return sorted(rows, key=lambda s: (-s.points, -s.goal_differential))

    async def upsert_many(self, session: Any, tenant_id: str, standings: list[TeamStanding], now: datetime) -> None:
        self.upserts += 1
        for standing in standings:
            self.rows[(standing.season_id, standing.team_id)] = standing.model_copy(update={"updated_at": now})


# ── Broadcast doubles ───────────────────────────────────────────────────

class FakeRegistry:
    def __init__(self) -> None:
        self.connections: list[Connection] = []

    def connect(self, game: Game, connection_id: Optional[str] = None, tenant_id: Optional[str] = None) -> Connection:
        conn = Connection(
            connection_id=connection_id or uuid.uuid4().hex,
            game_id=game.id,
            tenant_id=uuid.UUID(tenant_id) if tenant_id else game.tenant_id,
            user_id="viewer",
            instance_id="test-instance",
            connected_at=utcnow(),
            ttl=int((utcnow() + timedelta(days=1)).timestamp()),
        )
        self.connections.append(conn)
        return conn

    async def list_for_game(self, game_id: Any, tenant_id: str) -> list[Connection]:
        gid = uuid.UUID(str(game_id))
        return [c for c in self.connections if c.game_id == gid and str(c.tenant_id) == tenant_id]


class RecordingTransport:
    def __init__(self, failing: frozenset[str] = frozenset()) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.failing = set(failing)

    async def send(self, connection: Connection, message: dict[str, Any]) -> None:
        if connection.connection_id in self.failing:
            raise ConnectionError(f"socket {connection.connection_id} is gone")
        self.sent.append((connection.connection_id, message))


# ── Wired world ─────────────────────────────────────────────────────────

@dataclass
class World:
    settings: Settings
    db: FakeDatabase
    games: FakeGameRepository
    events: FakeEventStore
    seasons: FakeSeasonRepository
    teams: FakeTeamRepository
    standings: FakeStandingsRepository
    registry: FakeRegistry
    transport: RecordingTransport
    service: ScoringService
    season: Season
    home: Team
    away: Team
    game: Game
    extra: dict[str, Any] = field(default_factory=dict)


def build_world(tenant_id: str = TENANT_A, *, status: GameStatus = GameStatus.SCHEDULED) -> World:
    settings = Settings()
    db = FakeDatabase()
    games = FakeGameRepository()
    events = FakeEventStore()
    seasons = FakeSeasonRepository()
    teams = FakeTeamRepository()
    standings = FakeStandingsRepository()
    registry = FakeRegistry()
    transport = RecordingTransport()

    league_id = uuid.uuid4()
    season = Season(id=uuid.uuid4(), league_id=league_id, tenant_id=uuid.UUID(tenant_id), name="2026")
    seasons.seasons[season.id] = season
    home = Team(id=uuid.uuid4(), league_id=league_id, name="Harbor City Gulls")
    away = Team(id=uuid.uuid4(), league_id=league_id, name="Northfield Pines")
    teams.teams.extend([home, away])
    teams.tenants[league_id] = tenant_id

    game = games.add(make_game(
        tenant_id,
        status=status,
        season_id=season.id,
        home_team_id=home.id,
        away_team_id=away.id,
    ))

    service = ScoringService(
        db=db,
        games=games,
        events=events,
        projector=GameProjector(games, events),
        standings=StandingsEngine(db, seasons, teams, games, standings, settings),
        snapshots=SnapshotGenerator(db, games, events, settings),
        dispatcher=BroadcastDispatcher(registry, transport, settings),
        settings=settings,
    )
    return World(
        settings=settings,
        db=db,
        games=games,
        events=events,
        seasons=seasons,
        teams=teams,
        standings=standings,
        registry=registry,
        transport=transport,
        service=service,
        season=season,
        home=home,
        away=away,
        game=game,
    )


@pytest.fixture
def world() -> World:
    return build_world()


@pytest.fixture
def metadata() -> EventMetadata:
    return EventMetadata(user_id="scorer-1", source="test")

"""
Pydantic v2 domain models for the ScoreBase engine.
These are the canonical wire/internal representations — NOT ORM models.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import EventType, GameStatus, MessageType, SnapshotStatus
from shared.models.payloads import PAYLOAD_MODELS, EventPayloadModel

EVENT_VERSION = "1.0"
SNAPSHOT_VERSION = "1.0"
MAX_IDEMPOTENCY_KEY_LENGTH = 255


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Identity ────────────────────────────────────────────────────────────
class AuthContext(DomainModel):
    """Verified caller identity supplied by the identity provider."""
    user_id: str
    tenant_id: str
    roles: list[str] = Field(default_factory=list)
    username: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


# ── Events ──────────────────────────────────────────────────────────────
class EventMetadata(DomainModel):
    user_id: str
    source: str = "api"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SpatialCoordinates(DomainModel):
    """Normalized rink/pitch position, both axes in [0.0, 1.0]."""
    x: float
    y: float
    zone: Optional[str] = None


class GameEvent(DomainModel):
    """Immutable record of something that happened in a game."""
    event_id: uuid.UUID
    game_id: uuid.UUID
    tenant_id: uuid.UUID
    event_type: EventType
    event_version: str = EVENT_VERSION
    occurred_at: datetime
    sort_key: str
    payload: dict[str, Any]
    metadata: EventMetadata
    ttl: int
    idempotency_key: Optional[str] = None
    reversed_by: Optional[uuid.UUID] = None
    spatial_coordinates: Optional[SpatialCoordinates] = None
    created_at: datetime

    @property
    def typed_payload(self) -> EventPayloadModel:
        """The payload parsed into its EventType variant."""
        return PAYLOAD_MODELS[self.event_type].model_validate(self.payload)

    @property
    def is_reversed(self) -> bool:
        return self.reversed_by is not None


# ── Relational aggregates ───────────────────────────────────────────────
class Season(DomainModel):
    id: uuid.UUID
    league_id: uuid.UUID
    tenant_id: uuid.UUID
    name: str


class Team(DomainModel):
    id: uuid.UUID
    league_id: uuid.UUID
    name: str


class Game(DomainModel):
    """Mutable game aggregate, projected from the event stream."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    season_id: uuid.UUID
    home_team_id: uuid.UUID
    away_team_id: uuid.UUID
    scheduled_at: datetime
    status: GameStatus = GameStatus.SCHEDULED
    home_score: int = 0
    away_score: int = 0
    current_period: int = 1
    location: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def side_of(self, team_id: str | uuid.UUID) -> Optional[str]:
        """'home' or 'away' for a participating team, None otherwise."""
        tid = uuid.UUID(str(team_id))
        if tid == self.home_team_id:
            return "home"
        if tid == self.away_team_id:
            return "away"
        return None


class TeamStanding(DomainModel):
    season_id: uuid.UUID
    team_id: uuid.UUID
    games_played: int = 0
    wins: int = 0
    losses: int = 0
    ties: int = 0
    points: int = 0
    goals_for: int = 0
    goals_against: int = 0
    goal_differential: int = 0
    streak: Optional[str] = None
    updated_at: Optional[datetime] = None


# ── Snapshots & subscriptions ───────────────────────────────────────────
class GameSnapshot(DomainModel):
    """Point-in-time materialization of a game for subscribers."""
    game_id: uuid.UUID
    home_score: int
    away_score: int
    period: int
    clock_seconds: int
    status: SnapshotStatus
    recent_events: list[GameEvent] = Field(default_factory=list)
    snapshot_version: str = SNAPSHOT_VERSION
    generated_at: datetime


class Connection(DomainModel):
    """A live subscriber session bound to one game."""
    connection_id: str
    game_id: uuid.UUID
    tenant_id: uuid.UUID
    user_id: str
    instance_id: str
    connected_at: datetime
    ttl: int


class BroadcastMessage(DomainModel):
    message_type: MessageType
    timestamp: datetime
    data: GameSnapshot

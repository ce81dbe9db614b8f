"""Domain enumerations for the ScoreBase engine."""
from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    GAME_STARTED = "GAME_STARTED"
    GOAL_SCORED = "GOAL_SCORED"
    PENALTY_ASSESSED = "PENALTY_ASSESSED"
    SHOT_ON_GOAL = "SHOT_ON_GOAL"
    PERIOD_ENDED = "PERIOD_ENDED"
    GAME_FINALIZED = "GAME_FINALIZED"
    GAME_CANCELLED = "GAME_CANCELLED"
    SCORE_CORRECTED = "SCORE_CORRECTED"
    EVENT_REVERSAL = "EVENT_REVERSAL"

    @property
    def is_reversible(self) -> bool:
        return self in (
            EventType.GOAL_SCORED,
            EventType.PENALTY_ASSESSED,
            EventType.SHOT_ON_GOAL,
        )


class GameStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINAL = "final"
    POSTPONED = "postponed"
    CANCELLED = "cancelled"


class SnapshotStatus(str, Enum):
    """Externally visible game status carried in snapshots."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    FINAL = "final"
    POSTPONED = "postponed"

    @classmethod
    def from_game_status(cls, status: GameStatus) -> "SnapshotStatus":
        return _SNAPSHOT_STATUS_MAP[status]


_SNAPSHOT_STATUS_MAP: dict[GameStatus, SnapshotStatus] = {
    GameStatus.SCHEDULED: SnapshotStatus.SCHEDULED,
    GameStatus.LIVE: SnapshotStatus.IN_PROGRESS,
    GameStatus.FINAL: SnapshotStatus.FINAL,
    GameStatus.POSTPONED: SnapshotStatus.POSTPONED,
    GameStatus.CANCELLED: SnapshotStatus.POSTPONED,
}


class GameResult(str, Enum):
    WIN = "W"
    LOSS = "L"
    TIE = "T"


class MessageType(str, Enum):
    """Broadcast message kinds pushed to subscribers."""
    INITIAL_SNAPSHOT = "initial_snapshot"
    SNAPSHOT_UPDATE = "snapshot_update"


class WSClientOp(str, Enum):
    PING = "ping"
    RESYNC = "resync"


class WSServerMsgType(str, Enum):
    PONG = "pong"
    PING = "ping"
    ERROR = "error"
    STATE = "state"

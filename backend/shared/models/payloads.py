"""
Event payload variants, one frozen pydantic model per EventType.

The models reject unknown fields and never coerce types: integers must be
JSON integers, identifiers must be UUID strings, clock values must be MM:SS.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, ClassVar, Optional, Union

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, StrictBool, StrictInt, StrictStr
from pydantic_core import PydanticCustomError

from shared.models.enums import EventType

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE | re.ASCII)
CLOCK_RE = re.compile(r"[0-9]{2}:[0-9]{2}", re.ASCII)


def _check_uuid(value: str) -> str:
    if not UUID_RE.fullmatch(value):
        raise PydanticCustomError("uuid_format", "Invalid format, expected uuid")
    return value


def _check_clock(value: str) -> str:
    if not CLOCK_RE.fullmatch(value):
        raise PydanticCustomError("clock_pattern", "Does not match required pattern")
    return value


def _require_datetime_text(value: Any) -> Any:
    if isinstance(value, (str, datetime)):
        return value
    raise PydanticCustomError("datetime_format", "Invalid format, expected date-time")


UUIDStr = Annotated[StrictStr, AfterValidator(_check_uuid)]
ClockStr = Annotated[StrictStr, AfterValidator(_check_clock)]
Period = Annotated[StrictInt, Field(ge=1)]
NonNegativeInt = Annotated[StrictInt, Field(ge=0)]
NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]
DateTimeStr = Annotated[datetime, BeforeValidator(_require_datetime_text)]


class EventPayloadModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    event_type: ClassVar[EventType]


class GameStartedPayload(EventPayloadModel):
    event_type = EventType.GAME_STARTED

    start_time: DateTimeStr
    location: Optional[StrictStr] = None


class GoalScoredPayload(EventPayloadModel):
    event_type = EventType.GOAL_SCORED

    team_id: UUIDStr
    player_id: UUIDStr
    assist_player_id: Optional[UUIDStr] = None
    period: Period
    time_remaining: ClockStr


class PenaltyAssessedPayload(EventPayloadModel):
    event_type = EventType.PENALTY_ASSESSED

    team_id: UUIDStr
    player_id: UUIDStr
    penalty_type: NonEmptyStr
    duration_minutes: NonNegativeInt
    period: Period
    time_remaining: ClockStr


class ShotOnGoalPayload(EventPayloadModel):
    event_type = EventType.SHOT_ON_GOAL

    team_id: UUIDStr
    player_id: UUIDStr
    period: Period
    time_remaining: ClockStr
    on_target: Optional[StrictBool] = None


class PeriodEndedPayload(EventPayloadModel):
    event_type = EventType.PERIOD_ENDED

    period: Period
    home_score: NonNegativeInt
    away_score: NonNegativeInt


class GameFinalizedPayload(EventPayloadModel):
    event_type = EventType.GAME_FINALIZED

    final_home_score: NonNegativeInt
    final_away_score: NonNegativeInt


class GameCancelledPayload(EventPayloadModel):
    event_type = EventType.GAME_CANCELLED

    reason: NonEmptyStr
    cancelled_at: DateTimeStr


class ScoreCorrectedPayload(EventPayloadModel):
    event_type = EventType.SCORE_CORRECTED

    team_id: UUIDStr
    old_score: NonNegativeInt
    new_score: NonNegativeInt
    reason: NonEmptyStr


class EventReversalPayload(EventPayloadModel):
    event_type = EventType.EVENT_REVERSAL

    reversed_event_id: UUIDStr
    reason: Optional[NonEmptyStr] = None


EventPayload = Union[
    GameStartedPayload,
    GoalScoredPayload,
    PenaltyAssessedPayload,
    ShotOnGoalPayload,
    PeriodEndedPayload,
    GameFinalizedPayload,
    GameCancelledPayload,
    ScoreCorrectedPayload,
    EventReversalPayload,
]

PAYLOAD_MODELS: dict[EventType, type[EventPayloadModel]] = {
    model.event_type: model
    for model in (
        GameStartedPayload,
        GoalScoredPayload,
        PenaltyAssessedPayload,
        ShotOnGoalPayload,
        PeriodEndedPayload,
        GameFinalizedPayload,
        GameCancelledPayload,
        ScoreCorrectedPayload,
        EventReversalPayload,
    )
}

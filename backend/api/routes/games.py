"""
Game REST endpoints.

POST /v1/games/{id}/events   — Submit a scoring event (scorekeeper role).
GET  /v1/games/{id}/events   — Ordered event log for a game.
GET  /v1/games/{id}/snapshot — Current game state snapshot.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel, Field

from engine.service import ScoringService
from engine.validation import validate_idempotency_key
from shared.errors import ValidationError
from shared.models.domain import AuthContext
from shared.utils.logging import get_logger

from api.auth import get_auth_context, request_metadata, require_scorekeeper
from api.dependencies import get_scoring_service

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/games", tags=["games"])


class EventCreateRequest(BaseModel):
    event_type: str
    payload: Any = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    spatial_coordinates: Optional[Any] = None


def _idempotency_key(header_value: Optional[str], body_value: Optional[str]) -> Optional[str]:
    if header_value and body_value and header_value != body_value:
        raise ValidationError(
            "IDEMPOTENCY_KEY_MISMATCH",
            "Idempotency-Key header and body field disagree",
        )
    return validate_idempotency_key(header_value or body_value)


@router.post("/{game_id}/events", status_code=201)
async def submit_event(
    game_id: str,
    body: EventCreateRequest,
    request: Request,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    auth: AuthContext = Depends(require_scorekeeper),
    service: ScoringService = Depends(get_scoring_service),
) -> dict[str, Any]:
    """
    Validate, store and project one event, then return the refreshed snapshot.

    A repeated idempotency key returns the original event with 200.
    """
    result = await service.submit_event(
        auth.tenant_id,
        game_id,
        body.event_type,
        body.payload,
        request_metadata(request, auth),
        occurred_at=body.occurred_at,
        idempotency_key=_idempotency_key(idempotency_key, body.idempotency_key),
        spatial_coordinates=body.spatial_coordinates,
    )
    if result.duplicate:
        response.status_code = 200
    return {
        "event": result.event.model_dump(mode="json"),
        "snapshot": result.snapshot.model_dump(mode="json"),
        "duplicate": result.duplicate,
    }


@router.get("/{game_id}/events")
async def list_events(
    game_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: ScoringService = Depends(get_scoring_service),
) -> dict[str, Any]:
    events = await service.list_events(auth.tenant_id, game_id)
    return {
        "game_id": game_id,
        "events": [e.model_dump(mode="json") for e in events],
        "count": len(events),
    }


@router.get("/{game_id}/snapshot")
async def get_snapshot(
    game_id: str,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
    service: ScoringService = Depends(get_scoring_service),
) -> dict[str, Any]:
    snapshot = await service.get_snapshot(auth.tenant_id, game_id)
    response.headers["Cache-Control"] = "no-store"
    return snapshot.model_dump(mode="json")

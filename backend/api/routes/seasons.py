"""
Season REST endpoints.

GET /v1/seasons/{id}/standings — League table for a season.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from engine.service import ScoringService
from shared.models.domain import AuthContext

from api.auth import get_auth_context
from api.dependencies import get_scoring_service

router = APIRouter(prefix="/v1/seasons", tags=["seasons"])


@router.get("/{season_id}/standings")
async def get_standings(
    season_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: ScoringService = Depends(get_scoring_service),
) -> dict[str, Any]:
    """Standings ordered by points, then goal differential."""
    standings = await service.get_standings(auth.tenant_id, season_id)
    return {
        "season_id": season_id,
        "standings": [s.model_dump(mode="json") for s in standings],
    }

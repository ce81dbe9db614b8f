"""
Tenant-scoped relational repositories.

All statements run through the TenantGuard. Tables below ``leagues`` carry no
tenant column, so every statement reaches the tenant through
``seasons -> leagues`` and selects ``l.tenant_id`` so the guard can verify rows.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from engine.tenant_guard import TenantGuard
from shared.models.domain import Game, Season, Team, TeamStanding
from shared.models.enums import GameStatus

_GAME_COLUMNS = """
    g.id, g.season_id, g.home_team_id, g.away_team_id, g.scheduled_at,
    g.status, g.home_score, g.away_score, g.current_period, g.location,
    g.created_at, g.updated_at, l.tenant_id
"""

_GAME_FROM = """
    FROM games g
    JOIN seasons s ON g.season_id = s.id
    JOIN leagues l ON s.league_id = l.id
"""


def _game(row: dict[str, Any]) -> Game:
    return Game.model_validate({**row, "status": GameStatus(row["status"])})


class GameRepository:
    def __init__(self, guard: TenantGuard) -> None:
        self._guard = guard

    async def find_by_id(
        self, session: AsyncSession, tenant_id: str, game_id: str | uuid.UUID
    ) -> Optional[Game]:
        row = await self._guard.fetch_one(
            session,
            tenant_id,
            f"SELECT {_GAME_COLUMNS} {_GAME_FROM} WHERE l.tenant_id = :tenant_id AND g.id = :game_id",
            {"game_id": str(game_id)},
        )
        return _game(row) if row else None

    async def lock_for_update(
        self, session: AsyncSession, tenant_id: str, game_id: str | uuid.UUID
    ) -> Optional[Game]:
        """Read the game and hold its row lock until the transaction ends."""
        row = await self._guard.fetch_one(
            session,
            tenant_id,
            f"SELECT {_GAME_COLUMNS} {_GAME_FROM} "
            "WHERE l.tenant_id = :tenant_id AND g.id = :game_id FOR UPDATE OF g",
            {"game_id": str(game_id)},
        )
        return _game(row) if row else None

    async def find_by_season(
        self,
        session: AsyncSession,
        tenant_id: str,
        season_id: str | uuid.UUID,
        status: Optional[GameStatus] = None,
    ) -> list[Game]:
        query = f"SELECT {_GAME_COLUMNS} {_GAME_FROM} WHERE l.tenant_id = :tenant_id AND g.season_id = :season_id"
        params: dict[str, Any] = {"season_id": str(season_id)}
        if status is not None:
            query += " AND g.status = :status"
            params["status"] = status.value
        query += " ORDER BY g.scheduled_at ASC, g.id ASC"
        rows = await self._guard.fetch_all(session, tenant_id, query, params)
        return [_game(r) for r in rows]

    async def save_state(self, session: AsyncSession, tenant_id: str, game: Game) -> None:
        """Persist the projected fields of the aggregate."""
        await self._guard.execute(
            session,
            tenant_id,
            """
            UPDATE games g
            SET status = :status,
                home_score = :home_score,
                away_score = :away_score,
                current_period = :current_period,
                updated_at = :updated_at
            FROM seasons s
            JOIN leagues l ON s.league_id = l.id
            WHERE g.season_id = s.id AND l.tenant_id = :tenant_id AND g.id = :game_id
            RETURNING g.id, l.tenant_id
            """,
            {
                "game_id": str(game.id),
                "status": game.status.value,
                "home_score": game.home_score,
                "away_score": game.away_score,
                "current_period": game.current_period,
                "updated_at": game.updated_at,
            },
        )


class SeasonRepository:
    def __init__(self, guard: TenantGuard) -> None:
        self._guard = guard

    async def find_by_id(
        self, session: AsyncSession, tenant_id: str, season_id: str | uuid.UUID
    ) -> Optional[Season]:
        row = await self._guard.fetch_one(
            session,
            tenant_id,
            """
            SELECT s.id, s.league_id, s.name, l.tenant_id
            FROM seasons s
            JOIN leagues l ON s.league_id = l.id
            WHERE l.tenant_id = :tenant_id AND s.id = :season_id
            """,
            {"season_id": str(season_id)},
        )
        return Season.model_validate(row) if row else None


class TeamRepository:
    def __init__(self, guard: TenantGuard) -> None:
        self._guard = guard

    async def find_by_league(
        self, session: AsyncSession, tenant_id: str, league_id: str | uuid.UUID
    ) -> list[Team]:
        rows = await self._guard.fetch_all(
            session,
            tenant_id,
            """
            SELECT t.id, t.league_id, t.name, l.tenant_id
            FROM teams t
            JOIN leagues l ON t.league_id = l.id
            WHERE l.tenant_id = :tenant_id AND t.league_id = :league_id
            ORDER BY t.name ASC
            """,
            {"league_id": str(league_id)},
        )
        return [Team.model_validate(r) for r in rows]


class StandingsRepository:
    def __init__(self, guard: TenantGuard) -> None:
        self._guard = guard

    async def find_by_season(
        self, session: AsyncSession, tenant_id: str, season_id: str | uuid.UUID
    ) -> list[TeamStanding]:
        rows = await self._guard.fetch_all(
            session,
            tenant_id,
            """
            SELECT st.season_id, st.team_id, st.games_played, st.wins, st.losses,
                   st.ties, st.points, st.goals_for, st.goals_against,
                   st.goal_differential, st.streak, st.updated_at, l.tenant_id
            FROM standings st
            JOIN seasons s ON st.season_id = s.id
            JOIN leagues l ON s.league_id = l.id
            WHERE l.tenant_id = :tenant_id AND st.season_id = :season_id
            ORDER BY st.points DESC, st.goal_differential DESC, st.team_id ASC
            """,
            {"season_id": str(season_id)},
        )
        return [TeamStanding.model_validate(r) for r in rows]

    async def upsert_many(
        self,
        session: AsyncSession,
        tenant_id: str,
        standings: list[TeamStanding],
        now: datetime,
    ) -> None:
        """Upsert each row keyed on (season_id, team_id); only seasons of the tenant match."""
        for standing in standings:
            await self._guard.execute(
                session,
                tenant_id,
                """
                INSERT INTO standings (
                    id, season_id, team_id, games_played, wins, losses, ties, points,
                    goals_for, goals_against, goal_differential, streak, updated_at
                )
                SELECT CAST(:id AS uuid), s.id, CAST(:team_id AS uuid),
                       CAST(:games_played AS integer), CAST(:wins AS integer),
                       CAST(:losses AS integer), CAST(:ties AS integer), CAST(:points AS integer),
                       CAST(:goals_for AS integer), CAST(:goals_against AS integer),
                       CAST(:goal_differential AS integer), CAST(:streak AS varchar),
                       CAST(:updated_at AS timestamptz)
                FROM seasons s
                JOIN leagues l ON s.league_id = l.id
                WHERE s.id = :season_id AND l.tenant_id = :tenant_id
                ON CONFLICT (season_id, team_id) DO UPDATE SET
                    games_played = EXCLUDED.games_played,
                    wins = EXCLUDED.wins,
                    losses = EXCLUDED.losses,
                    ties = EXCLUDED.ties,
                    points = EXCLUDED.points,
                    goals_for = EXCLUDED.goals_for,
                    goals_against = EXCLUDED.goals_against,
                    goal_differential = EXCLUDED.goal_differential,
                    streak = EXCLUDED.streak,
                    updated_at = EXCLUDED.updated_at
                """,
                {
                    "id": str(uuid.uuid4()),
                    "season_id": str(standing.season_id),
                    "team_id": str(standing.team_id),
                    "games_played": standing.games_played,
                    "wins": standing.wins,
                    "losses": standing.losses,
                    "ties": standing.ties,
                    "points": standing.points,
                    "goals_for": standing.goals_for,
                    "goals_against": standing.goals_against,
                    "goal_differential": standing.goal_differential,
                    "streak": standing.streak,
                    "updated_at": now,
                },
            )

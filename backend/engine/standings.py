"""
Standings derivation.

A season table is never patched: every recalculation replays all FINAL games
of the season in chronological order and upserts every team row in full.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from engine.event_store import utcnow
from engine.repositories import GameRepository, SeasonRepository, StandingsRepository, TeamRepository
from shared.config import Settings, get_settings
from shared.errors import NotFoundError
from shared.models.domain import Game, TeamStanding
from shared.models.enums import GameResult, GameStatus
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.metrics import STANDINGS_CALCULATION_DURATION, observe

logger = get_logger(__name__)

WIN_POINTS = 3
TIE_POINTS = 1
RECENT_RESULTS_LIMIT = 10


def calculate_streak(results: list[GameResult]) -> Optional[str]:
    """Streak from results ordered most-recent first, e.g. [W, W, L] -> 'W2'."""
    if not results:
        return None
    latest = results[0]
    count = 1
    for result in results[1:]:
        if result != latest:
            break
        count += 1
    return f"{latest.value}{count}"


@dataclass
class _Accumulator:
    wins: int = 0
    losses: int = 0
    ties: int = 0
    goals_for: int = 0
    goals_against: int = 0
    recent: list[GameResult] = field(default_factory=list)

    def record(self, result: GameResult, scored: int, conceded: int) -> None:
        if result == GameResult.WIN:
            self.wins += 1
        elif result == GameResult.LOSS:
            self.losses += 1
        else:
            self.ties += 1
        self.goals_for += scored
        self.goals_against += conceded
        self.recent.insert(0, result)
        del self.recent[RECENT_RESULTS_LIMIT:]


def _results(home: int, away: int) -> tuple[GameResult, GameResult]:
    if home > away:
        return GameResult.WIN, GameResult.LOSS
    if home < away:
        return GameResult.LOSS, GameResult.WIN
    return GameResult.TIE, GameResult.TIE


def compute_standings(
    season_id: uuid.UUID,
    team_ids: Iterable[uuid.UUID],
    finalized_games: Iterable[Game],
) -> list[TeamStanding]:
    """Pure, deterministic standings table for one season.

    Games involving a team outside ``team_ids`` are skipped. Rows come back
    ordered by points, then goal differential, then team id.
    """
    table: dict[uuid.UUID, _Accumulator] = {tid: _Accumulator() for tid in team_ids}
    ordered = sorted(finalized_games, key=lambda g: (g.scheduled_at, str(g.id)))

    for game in ordered:
        if game.status != GameStatus.FINAL:
            continue
        home = table.get(game.home_team_id)
        away = table.get(game.away_team_id)
        if home is None or away is None:
            logger.warning(
                "standings_game_skipped",
                game_id=str(game.id),
                reason="team_not_in_league",
            )
            continue
        home_result, away_result = _results(game.home_score, game.away_score)
        home.record(home_result, game.home_score, game.away_score)
        away.record(away_result, game.away_score, game.home_score)

    standings = [
        TeamStanding(
            season_id=season_id,
            team_id=team_id,
            games_played=acc.wins + acc.losses + acc.ties,
            wins=acc.wins,
            losses=acc.losses,
            ties=acc.ties,
            points=acc.wins * WIN_POINTS + acc.ties * TIE_POINTS,
            goals_for=acc.goals_for,
            goals_against=acc.goals_against,
            goal_differential=acc.goals_for - acc.goals_against,
            streak=calculate_streak(acc.recent),
        )
        for team_id, acc in table.items()
    ]
    standings.sort(key=lambda s: (-s.points, -s.goal_differential, str(s.team_id)))
    return standings


class StandingsEngine:
    """Recomputes and persists a season table in its own transaction."""

    def __init__(
        self,
        db: DatabaseManager,
        seasons: SeasonRepository,
        teams: TeamRepository,
        games: GameRepository,
        standings: StandingsRepository,
        settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._seasons = seasons
        self._teams = teams
        self._games = games
        self._standings = standings
        self._settings = settings or get_settings()

    async def recalculate(self, tenant_id: str, season_id: str | uuid.UUID) -> list[TeamStanding]:
        start = time.perf_counter()
        outcome = "error"
        try:
            async with self._db.transaction(self._settings.db_transaction_timeout_s) as session:
                season = await self._seasons.find_by_id(session, tenant_id, season_id)
                if season is None:
                    raise NotFoundError(
                        "SEASON_NOT_FOUND", "Season not found", {"season_id": str(season_id)}
                    )
                teams = await self._teams.find_by_league(session, tenant_id, season.league_id)
                games = await self._games.find_by_season(
                    session, tenant_id, season.id, status=GameStatus.FINAL
                )
                table = compute_standings(season.id, [t.id for t in teams], games)
                await self._standings.upsert_many(session, tenant_id, table, utcnow())
            outcome = "success"
            return table
        finally:
            elapsed = time.perf_counter() - start
            observe(STANDINGS_CALCULATION_DURATION, elapsed, outcome=outcome)
            logger.info(
                "standings_recalculated" if outcome == "success" else "standings_recalculation_failed",
                tenant_id=tenant_id,
                season_id=str(season_id),
                duration_ms=round(elapsed * 1000, 2),
            )

    async def get_standings(self, tenant_id: str, season_id: str | uuid.UUID) -> list[TeamStanding]:
        async with self._db.read_session() as session:
            season = await self._seasons.find_by_id(session, tenant_id, season_id)
            if season is None:
                raise NotFoundError("SEASON_NOT_FOUND", "Season not found", {"season_id": str(season_id)})
            return await self._standings.find_by_season(session, tenant_id, season.id)

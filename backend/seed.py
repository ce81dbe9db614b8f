"""
Seed script for ScoreBase.

Creates a demo tenant with one league, one season, four teams with rosters and
a round of scheduled games, then prints a scorekeeper token for that tenant so
events can be submitted straight away. Re-running is a no-op for rows that
already exist.

Usage:
    docker compose exec api python -m seed
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.auth import create_token
from shared.config import get_settings
from shared.models.enums import GameStatus
from shared.models.orm import GameORM, LeagueORM, PlayerORM, SeasonORM, TeamORM, TenantORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

DEMO_NAMESPACE = uuid.UUID("6f1c3a52-9d0e-4b7a-8c41-2f5e7d9a1b30")

DEMO_TEAMS: list[dict[str, str]] = [
    {"name": "Harbor City Gulls", "abbreviation": "HCG"},
    {"name": "Northfield Pines", "abbreviation": "NFP"},
    {"name": "Riverside Otters", "abbreviation": "RVO"},
    {"name": "Summit Ridge Elk", "abbreviation": "SRE"},
]
PLAYERS_PER_TEAM = 6
POSITIONS = ("C", "LW", "RW", "D", "D", "G")


def demo_id(*parts: str) -> uuid.UUID:
    """Stable ids so re-seeding finds the rows it created last time."""
    return uuid.uuid5(DEMO_NAMESPACE, "/".join(parts))


async def seed() -> None:
    setup_logging("seed")
    settings = get_settings()
    db = DatabaseManager(settings)
    await db.connect()

    tenant_id = demo_id("tenant")
    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)

    try:
        async with db.write_session() as session:
            created = 0
            created += await _add_missing(session, TenantORM(id=tenant_id, name="Demo Hockey Association"))
            league_id = demo_id("league")
            created += await _add_missing(session, LeagueORM(
                id=league_id, tenant_id=tenant_id, name="Demo Premier Division", sport_type="hockey",
            ))
            season_id = demo_id("season", str(now.year))
            created += await _add_missing(session, SeasonORM(
                id=season_id, league_id=league_id, name=f"{now.year} Regular Season",
                start_date=now - timedelta(days=1), end_date=now + timedelta(days=120),
            ))

            team_ids: list[uuid.UUID] = []
            for team in DEMO_TEAMS:
                team_id = demo_id("team", team["abbreviation"])
                team_ids.append(team_id)
                created += await _add_missing(session, TeamORM(id=team_id, league_id=league_id, **team))
                for number in range(1, PLAYERS_PER_TEAM + 1):
                    created += await _add_missing(session, PlayerORM(
                        id=demo_id("player", team["abbreviation"], str(number)),
                        team_id=team_id,
                        name=f"{team['abbreviation']} Player {number}",
                        jersey_number=number,
                        position=POSITIONS[number - 1],
                    ))

            game_ids: list[uuid.UUID] = []
            pairings = [(0, 1), (2, 3)]
            for index, (home, away) in enumerate(pairings):
                game_id = demo_id("game", str(index))
                game_ids.append(game_id)
                created += await _add_missing(session, GameORM(
                    id=game_id,
                    season_id=season_id,
                    home_team_id=team_ids[home],
                    away_team_id=team_ids[away],
                    scheduled_at=now + timedelta(hours=index + 1),
                    status=GameStatus.SCHEDULED.value,
                    location=f"{DEMO_TEAMS[home]['name']} Arena",
                ))
    finally:
        await db.disconnect()

    token = create_token(
        "demo-scorekeeper",
        str(tenant_id),
        [settings.scorekeeper_role],
        username="scorekeeper",
        settings=settings,
    )
    logger.info("seed_complete", rows_created=created, tenant_id=str(tenant_id))

    print(f"\n{'='*60}")
    print(f"  ScoreBase Seed — {now.strftime('%Y-%m-%d %H:%M UTC')}")
    print(f"{'='*60}")
    print(f"  Tenant:  {tenant_id}")
    print(f"  Season:  {season_id}")
    for game_id in game_ids:
        print(f"  Game:    {game_id}")
    print(f"  Rows created: {created}")
    print()
    print("  Scorekeeper token (Authorization: Bearer ...):")
    print(f"  {token}")
    print(f"{'='*60}\n")


async def _add_missing(session: AsyncSession, row: object) -> int:
    """Insert ``row`` unless a row with its primary key already exists."""
    model = type(row)
    existing = await session.execute(select(model).where(model.id == row.id))  # type: ignore[attr-defined]
    if existing.scalar_one_or_none() is not None:
        return 0
    session.add(row)
    await session.flush()
    return 1


if __name__ == "__main__":
    asyncio.run(seed())

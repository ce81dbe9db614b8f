#!/usr/bin/env python3
"""
Create the ScoreBase schema (tenants, leagues, seasons, teams, players, games,
standings, game_events) from the ORM metadata. Safe to re-run: existing tables
are left alone.
From repo root: python3 backend/run_migration_001.py
Requires SB_DATABASE_URL (or DATABASE_URL) in the environment, or .env in backend/.
"""
import asyncio
import os
import sys

# Backend dir on path so "shared" resolves (run from repo root or backend/)
_backend_dir = os.path.dirname(os.path.abspath(__file__))
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)
os.chdir(_backend_dir)

from sqlalchemy.exc import SQLAlchemyError

from shared.config import get_settings
from shared.models.orm import Base
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def main() -> None:
    setup_logging("migration")
    settings = get_settings()
    db = DatabaseManager(settings)
    await db.connect()
    try:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "migration_applied",
            migration="001_initial_schema",
            tables=sorted(Base.metadata.tables),
        )
    except SQLAlchemyError as exc:
        logger.error("migration_failed", migration="001_initial_schema", error=str(exc))
        sys.exit(1)
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(main())

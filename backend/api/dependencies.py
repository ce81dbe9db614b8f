"""
Dependency injection for the API service.
Module-level singletons are set at startup; the scoring service is built
lazily on first use and can be swapped or cleared in tests.
"""
from __future__ import annotations

from engine.service import ScoringService, create_scoring_service
from shared.utils.database import DatabaseManager
from shared.utils.redis_manager import RedisManager

# Module-level singletons, initialized at startup
_redis: RedisManager | None = None
_db: DatabaseManager | None = None
_scoring: ScoringService | None = None


def init_dependencies(
    redis: RedisManager,
    db: DatabaseManager,
    scoring: ScoringService | None = None,
) -> None:
    """Initialize module-level singletons. Called once at startup."""
    global _redis, _db, _scoring
    _redis = redis
    _db = db
    _scoring = scoring


def reset_dependencies() -> None:
    """Forget every singleton. Used at shutdown and between tests."""
    global _redis, _db, _scoring
    _redis = None
    _db = None
    _scoring = None


def get_redis() -> RedisManager:
    """FastAPI dependency: returns the shared RedisManager."""
    if _redis is None:
        raise RuntimeError("RedisManager not initialized — call init_dependencies first")
    return _redis


def get_db() -> DatabaseManager:
    """FastAPI dependency: returns the shared DatabaseManager."""
    if _db is None:
        raise RuntimeError("DatabaseManager not initialized — call init_dependencies first")
    return _db


def get_scoring_service() -> ScoringService:
    """FastAPI dependency: returns the shared ScoringService, building it on first use."""
    global _scoring
    if _scoring is None:
        _scoring = create_scoring_service(get_db(), get_redis())
    return _scoring

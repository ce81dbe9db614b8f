"""
FastAPI application factory for the ScoreBase API service.

Creates the app with:
- REST routes (games, seasons)
- WebSocket endpoint for live game subscriptions
- Middleware stack
- Health check endpoints
- Lifespan management (startup/shutdown)
- Background purge of expired events
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Dict, Optional, Union

from fastapi import FastAPI, Query, WebSocket
from sqlalchemy import text

from engine.service import ScoringService
from shared.config import get_settings
from shared.errors import AuthError
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from api.auth import BEARER_PREFIX, verify_token
from api.dependencies import get_db, get_redis, get_scoring_service, init_dependencies, reset_dependencies
from api.middleware import setup_middleware
from api.routes.games import router as games_router
from api.routes.seasons import router as seasons_router
from api.ws.manager import WebSocketManager, close_code_for

logger = get_logger(__name__)

# Retry connection on startup (Redis/DB may come up after the API container)
_CONNECT_RETRY_ATTEMPTS = 10
_CONNECT_RETRY_BASE_DELAY_S = 2.0

_ws_manager: Optional[WebSocketManager] = None


async def event_purge_loop(scoring: ScoringService) -> None:
    """Background task: delete events past their retention window."""
    settings = get_settings()
    logger.info("event_purge_started", interval_s=settings.event_purge_interval_s)
    while True:
        try:
            await asyncio.sleep(settings.event_purge_interval_s)
            await scoring.purge_expired_events()
        except asyncio.CancelledError:
            logger.info("event_purge_stopped")
            break
        except Exception as exc:
            logger.error("event_purge_error", error=str(exc), exc_info=True)
            await asyncio.sleep(60)


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[None]], name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Handles startup (connect to Redis/Postgres, start WS manager) and
    shutdown (graceful cleanup).
    """
    global _ws_manager

    settings = get_settings()
    setup_logging("api", {"instance_id": settings.instance_id})
    if settings.metrics_enabled:
        start_metrics_server(settings.metrics_port)

    redis = RedisManager(settings)
    db = DatabaseManager(settings)

    await _connect_with_retry(redis.connect, "Redis")
    await _connect_with_retry(db.connect, "Database")

    init_dependencies(redis, db)

    scoring = get_scoring_service()
    _ws_manager = WebSocketManager(redis, scoring, settings=settings)
    await _ws_manager.start()

    purge_task = asyncio.create_task(event_purge_loop(scoring))

    logger.info(
        "api_service_started",
        host=settings.api_host,
        port=settings.api_port,
        instance_id=settings.instance_id,
    )

    yield

    # Shutdown
    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass

    if _ws_manager:
        await _ws_manager.stop()
        _ws_manager = None
    await db.disconnect()
    await redis.disconnect()
    reset_dependencies()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing without DB/Redis."""
    app = FastAPI(
        title="ScoreBase API",
        description="Multi-tenant live scoring and standings",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    setup_middleware(app)

    app.include_router(games_router)
    app.include_router(seasons_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness() -> Dict[str, Union[str, bool]]:
        """Readiness check of downstream dependencies."""
        redis_ok = False
        db_ok = False

        try:
            await get_redis().client.ping()
            redis_ok = True
        except Exception as exc:
            logger.warning("readiness_redis_failed", error=str(exc))

        try:
            async with get_db().read_session() as session:
                await session.execute(text("SELECT 1"))
                db_ok = True
        except Exception as exc:
            logger.warning("readiness_database_failed", error=str(exc))

        return {
            "status": "ok" if (redis_ok and db_ok) else "degraded",
            "redis": redis_ok,
            "database": db_ok,
        }

    @app.websocket("/v1/ws/games/{game_id}")
    async def websocket_endpoint(
        ws: WebSocket,
        game_id: str,
        token: Optional[str] = Query(None),
    ) -> None:
        """
        WebSocket endpoint for live updates of one game.

        Authenticate with ``?token=`` or an Authorization header.

        Client operations:
        - ping: {"op": "ping"}
        - resync: {"op": "resync"}

        Server messages:
        - state: Connection accepted
        - initial_snapshot: Full snapshot on connect and on resync
        - snapshot_update: Pushed after every accepted event
        - pong / ping / error
        """
        if _ws_manager is None:
            await ws.close(code=1013, reason="service_unavailable")
            return

        authorization = f"{BEARER_PREFIX}{token}" if token else ws.headers.get("authorization")
        try:
            auth = verify_token(authorization)
        except AuthError as exc:
            await ws.accept()
            await ws.close(code=close_code_for(exc), reason=exc.code)
            logger.info("ws_auth_failed", code=exc.code)
            return

        await _ws_manager.handle_connection(ws, game_id, auth)

    return app


# For running with uvicorn directly
app = create_app()

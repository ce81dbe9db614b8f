"""
Redis-backed registry of live subscriber connections.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

from engine.event_store import utcnow
from shared.config import Settings, get_settings
from shared.models.domain import Connection
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class ConnectionRegistry:
    """Tracks which connections watch which game, with a 24h expiry per record."""

    def __init__(self, redis: RedisManager, settings: Settings | None = None) -> None:
        self._redis = redis
        self._settings = settings or get_settings()

    def new_connection(
        self,
        *,
        connection_id: str,
        game_id: str | uuid.UUID,
        tenant_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Connection:
        connected_at = now or utcnow()
        return Connection(
            connection_id=connection_id,
            game_id=uuid.UUID(str(game_id)),
            tenant_id=uuid.UUID(str(tenant_id)),
            user_id=user_id,
            instance_id=self._settings.instance_id,
            connected_at=connected_at,
            ttl=int((connected_at + timedelta(seconds=self._settings.connection_ttl_s)).timestamp()),
        )

    async def register(self, connection: Connection) -> None:
        await self._redis.store_connection(
            connection.connection_id,
            str(connection.game_id),
            connection.model_dump_json(),
            self._settings.connection_ttl_s,
        )
        logger.debug(
            "connection_registered",
            connection_id=connection.connection_id,
            game_id=str(connection.game_id),
        )

    async def remove(self, connection: Connection) -> None:
        await self._redis.delete_connection(connection.connection_id, str(connection.game_id))

    async def list_for_game(self, game_id: str | uuid.UUID, tenant_id: str) -> list[Connection]:
        """Live connections of a game within the tenant; expired entries are pruned."""
        records = await self._redis.load_game_connections(str(game_id))
        expired = [cid for cid, raw in records.items() if raw is None]
        if expired:
            await self._redis.prune_game_connections(str(game_id), expired)

        tenant = uuid.UUID(str(tenant_id))
        connections: list[Connection] = []
        for raw in records.values():
            if raw is None:
                continue
            conn = Connection.model_validate_json(raw)
            if conn.tenant_id != tenant:
                continue
            connections.append(conn)
        return connections
